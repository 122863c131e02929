"""
Provider data sync.

Key components:
- CursorStore: durable resume points per job key
- SyncEngine: resumable paginated ingestion with idempotent upserts
- WorkerPool / Backfiller: bounded multi-unit backfills
- SyncOrchestrator: full-season and scheduled runs
"""
