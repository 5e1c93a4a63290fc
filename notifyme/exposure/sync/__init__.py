"""Exposure sync infrastructure.

Modules:
    scheduler — Serialized sync pass (fetch → decode → match → dedup → cursor)
    cursor    — Incremental, monotonically non-decreasing sync cursor
    dedup     — Notification ledger (at most one notification per check-in)
"""
