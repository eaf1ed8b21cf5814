"""Hierarchical chunked coherence pipeline for long-form documents."""

__version__ = "0.1.0"
