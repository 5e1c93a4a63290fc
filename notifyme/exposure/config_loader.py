"""Load, validate, and hot-reload the exposure engine configuration.

The config lives in ``exposure_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_exposure_config()`` to re-read from
disk after an update — no restart required.

Usage::

    from notifyme.exposure.config_loader import get_exposure_config

    config = get_exposure_config()
    config.retention.max_days_to_keep   # 14
    config.sync.interval_seconds        # 900
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger("notifyme.exposure.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "exposure_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class RetentionConfig:
    """Retention horizon for provider data and diary visits."""

    max_days_to_keep: int = 14
    prune_diary: bool = True


@dataclass
class SyncConfig:
    """Sync trigger and serialization settings."""

    interval_seconds: int = 900
    coalesce_concurrent: bool = True


@dataclass
class BackendConfig:
    """Problematic event endpoint settings."""

    endpoint: str = "traceKeys"
    accept: str = "application/protobuf"


@dataclass
class DecoderConfig:
    """Wire format normalization settings."""

    time_divisor: int = 1000


@dataclass
class ExposureConfig:
    """Complete, validated exposure engine configuration.

    Attributes:
        version:   Config schema version string.
        retention: Retention sweep parameters.
        sync:      Scheduler parameters.
        backend:   Endpoint and content negotiation.
        decoder:   Wire unit normalization.
    """

    version: str = "1.0"
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when exposure_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Exposure config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> ExposureConfig:
    """Validate the raw YAML dict and construct an ExposureConfig.

    Every problem is collected before raising so one run reports them all.

    Raises:
        ConfigValidationError: If any value is missing its expected type or range.
    """
    errors: list[str] = []

    def _section(name: str) -> dict:
        value = raw.get(name) or {}
        if not isinstance(value, dict):
            errors.append(f"'{name}' must be a mapping")
            return {}
        return value

    def _int(d: dict, key: str, section: str, default: int, minimum: int) -> int:
        value = d.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{section}.{key} must be an integer, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{section}.{key} = {number} must be >= {minimum}")
        return number

    def _bool(d: dict, key: str, section: str, default: bool) -> bool:
        value = d.get(key, default)
        if not isinstance(value, bool):
            errors.append(f"{section}.{key} must be true or false, got {value!r}")
            return default
        return value

    version = str(raw.get("version", "1.0"))

    # ── Retention ──
    ret_raw = _section("retention")
    retention = RetentionConfig(
        max_days_to_keep=_int(ret_raw, "max_days_to_keep", "retention", 14, 1),
        prune_diary=_bool(ret_raw, "prune_diary", "retention", True),
    )

    # ── Sync ──
    sync_raw = _section("sync")
    sync = SyncConfig(
        interval_seconds=_int(sync_raw, "interval_seconds", "sync", 900, 1),
        coalesce_concurrent=_bool(sync_raw, "coalesce_concurrent", "sync", True),
    )

    # ── Backend ──
    be_raw = _section("backend")
    endpoint = str(be_raw.get("endpoint", "traceKeys")).strip("/")
    if not endpoint:
        errors.append("backend.endpoint must not be empty")
    backend = BackendConfig(
        endpoint=endpoint,
        accept=str(be_raw.get("accept", "application/protobuf")),
    )

    # ── Decoder ──
    dec_raw = _section("decoder")
    decoder = DecoderConfig(
        time_divisor=_int(dec_raw, "time_divisor", "decoder", 1000, 1),
    )

    if errors:
        raise ConfigValidationError(
            f"exposure_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return ExposureConfig(
        version=version,
        retention=retention,
        sync=sync,
        backend=backend,
        decoder=decoder,
        _raw=raw,
    )


def load_exposure_config(path: Path | None = None) -> ExposureConfig:
    """Load and validate the exposure config from disk.

    Args:
        path: Override path to YAML. Uses the bundled exposure_config.yaml by default.

    Returns:
        Validated ExposureConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded exposure config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: ExposureConfig | None = None
_config_lock = threading.Lock()


def get_exposure_config() -> ExposureConfig:
    """Return the global ExposureConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_exposure_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_exposure_config()
    return _config


def reload_exposure_config(path: Path | None = None) -> ExposureConfig:
    """Reload the exposure config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_exposure_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info(
        "Reloaded exposure config: %s → %s",
        old_version,
        new_config.version,
    )
    return new_config
