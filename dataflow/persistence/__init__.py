"""
Persistence Layer

PostgreSQL gateway for the per-interval candle tables and the retention job
that bounds their size.
"""
