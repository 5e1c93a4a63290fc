"""NotifyMe exposure matching and diary synchronization engine.

This package fetches batches of problematic events from the backend, matches
them against the local check-in diary through a pluggable match provider,
and decides when the user needs to be notified.

Subpackages:
    sync/  — Sync scheduler, sync cursor, notification dedup ledger

Core modules:
    base          — MatchProvider ABC and canonical data models
    diary         — Check-in diary store
    backend       — Problematic events HTTP client
    decoder       — Protobuf batch decoder
    match_engine  — Event × diary matching and retention sweep
    notifier      — State change observers
    storage       — Persisted key/value state
    config_loader — Load/validate/hot-reload exposure_config.yaml
"""

from notifyme.exposure.base import (
    CheckInRecord,
    ExposureMatch,
    ExposureResultSet,
    MatchPayload,
    MatchProvider,
    ProblematicEventRecord,
    SyncOutcome,
    VenueInfo,
)
from notifyme.exposure.config_loader import ExposureConfig, get_exposure_config

__all__ = [
    "MatchProvider",
    "CheckInRecord",
    "VenueInfo",
    "ProblematicEventRecord",
    "MatchPayload",
    "ExposureMatch",
    "ExposureResultSet",
    "SyncOutcome",
    "ExposureConfig",
    "get_exposure_config",
]
