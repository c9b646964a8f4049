"""Neverending: batch-gated serialized fiction generation."""

__version__ = "0.1.0"
