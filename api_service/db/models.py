"""Declarative base and shared column helpers for the Threadboard API service."""

from __future__ import annotations

from sqlalchemy import JSON, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _json_variant() -> JSON:
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def json_dict() -> JSON:
    """JSON object column stored as JSONB on PostgreSQL; written once, never mutated."""

    return _json_variant()


def mutable_json_list() -> JSON:
    """JSON list column stored as JSONB on PostgreSQL; in-place appends are tracked."""

    return MutableList.as_mutable(_json_variant())


__all__ = ["Base", "json_dict", "mutable_json_list"]
