"""Hybrid vector + graph retrieval that assembles token-budgeted context bundles."""

__version__ = "0.1.0"
