"""
Dataflow Layer

Event I/O layer for the candle engine. Contains:
- candle_aggregation: Bucket alignment, live candle building and rollups
- persistence: PostgreSQL gateway and retention
- backfill: Resumable historical collection
- integrity: Audit of stored candles against the historical source
- adapters: NATS and historical HTTP source clients
- query: Read-only HTTP API
"""
