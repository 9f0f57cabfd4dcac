"""Thread lifecycle, queue promotion and board projection for agent coding sessions."""

__version__ = "0.1.0"
