"""Glucose sync infrastructure.

Modules:
    scheduler — Tick orchestrator (per-user pipelines, deadline, locks)
    session   — In-memory bearer session cache with proactive refresh
    retry     — Bounded exponential backoff with jitter (tenacity)
    store     — Reading gateway, progress store, connection directory
    dedup     — Idempotency key and insert-once SQL
"""
