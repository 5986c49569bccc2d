"""Deterministic knowledge ingestion and citation-gated retrieval."""

__version__ = "0.1.0"
