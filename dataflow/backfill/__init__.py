"""
Backfill Service

Resumable historical candle collection with shared rate limiting.
"""
