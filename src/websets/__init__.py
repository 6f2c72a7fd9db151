"""Websets: enrichment orchestration and versioned dataset engine."""

__version__ = "0.1.0"
