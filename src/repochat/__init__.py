"""Streamed, citation-backed Q&A over a catalog of tracked repositories."""

__version__ = "0.1.0"
