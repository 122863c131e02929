"""
Services module for the ingestion pipeline.

This module organizes services into:
- core: Provider API client
- sync: Cursor store, paginated sync engine, backfills and the orchestrator
- metrics: Merge/compute engine for canonical metric documents
- standings: Standings and matchup aggregation
- notifications: Change detection, alerts and webhook delivery
- jobs: Background job registry with event streaming
"""
