"""
Call Sheet Contact Extraction.

This package provides tools for pulling contacts out of production call sheets:
- Normalizing text and scoring layout structure
- Section-aware chunking for LLM extraction
- Rule-table pattern extraction
- Rate-limited LLM extraction with chunk-level fallbacks
- Reconciliation, normalization and quality scoring
"""
