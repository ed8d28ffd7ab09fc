"""Whoop sync infrastructure for Prime.

Modules:
    orchestrator — Per-user sync pipeline (window → fetch → normalize → persist)
    scheduler    — Batch runner over all active connections (bounded concurrency)
    repository   — Postgres persistence (keyed upserts, logs, connections)
    dedup        — Same-day deduplication and upsert query builder
"""
