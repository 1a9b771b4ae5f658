"""Sync infrastructure for HealthSync.

Modules:
    orchestrator — Per-session sync state machine (device ensure, backfill, source sync)
    backfill     — Look-back window planning and resumable backfill state
    dedup        — Natural-key dedup for readings and daily activity
"""
