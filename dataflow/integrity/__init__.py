"""
Integrity Audit

Read-only comparison of stored candles against the historical source.
"""
