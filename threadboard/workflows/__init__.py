"""Workflow packages for Threadboard services."""
