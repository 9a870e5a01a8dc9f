"""Glucose sync infrastructure.

Modules:
    engine    — Refresh engine (token, fetch, reconcile, persist, history view)
    scheduler — Background poller (5-minute interval, backoff after throttling)
    dedup     — Timestamp-keyed deduplication helpers
"""
