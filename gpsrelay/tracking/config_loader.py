"""Load and validate the tracker configuration.

Tuning defaults live in ``tracker_config.yaml`` alongside this module.  The
service entry point merges in the endpoint and credentials from
``gpsrelay.config.Settings`` (plus any tuning overrides set in the
environment) and validates the result once at startup.

Usage::

    from gpsrelay.tracking.config_loader import load_tracker_config

    config = load_tracker_config(overrides=settings.tracker_overrides())
    config.upload_url          # "https://ingest.example.com/api/GPSEntries"
    config.retry_interval_seconds  # 600
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("gpsrelay.tracking.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "tracker_config.yaml"


@dataclass(frozen=True)
class TrackerConfig:
    """Complete, validated configuration for one Tracker.

    Attributes:
        base_url:                    Ingestion API root, no trailing slash.
        client_id:                   OAuth client id.
        client_secret:               OAuth client secret.
        max_stored:                  Queue capacity; oldest samples are evicted beyond it.
        retry_interval_seconds:      Fixed wait after a failed upload.
        min_sample_interval_seconds: Samples closer than this to the last stored one are dropped.
        token_path:                  OAuth token endpoint path.
        upload_path:                 Single-sample upload path.
        bulk_upload_path:            Batch upload path (used when batch_size > 1).
        batch_size:                  Samples per upload request.
        http_timeout_seconds:        Per-request timeout.
        fatal_on_client_error:       Drop samples rejected with a 4xx instead of retrying.
        flush_on_stop:               Make one best-effort drain pass when tracking stops.
        token_leeway_seconds:        Refresh the access token this long before it expires.
    """

    base_url: str
    client_id: str
    client_secret: str
    max_stored: int = 1000
    retry_interval_seconds: int = 600
    min_sample_interval_seconds: int = 10
    token_path: str = "/connect/token"
    upload_path: str = "/api/GPSEntries"
    bulk_upload_path: str = "/api/GPSEntries/bulk"
    batch_size: int = 1
    http_timeout_seconds: float = 30.0
    fatal_on_client_error: bool = False
    flush_on_stop: bool = False
    token_leeway_seconds: int = 0

    @property
    def token_url(self) -> str:
        return self.base_url + self.token_path

    @property
    def upload_url(self) -> str:
        return self.base_url + self.upload_path

    @property
    def bulk_upload_url(self) -> str:
        return self.base_url + self.bulk_upload_path

    def __repr__(self) -> str:
        return (
            f"TrackerConfig(base_url={self.base_url!r}, client_id={self.client_id!r}, "
            f"max_stored={self.max_stored}, retry_interval_seconds={self.retry_interval_seconds}, "
            f"batch_size={self.batch_size})"
        )


class ConfigValidationError(ValueError):
    """Raised when the tracker configuration fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed or not a mapping.
    """
    if not path.exists():
        raise FileNotFoundError(f"Tracker config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return data


def _validate_and_build(raw: dict) -> TrackerConfig:
    """Validate a flat config dict and construct a TrackerConfig.

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _string(key: str, required: bool = False, default: str = "") -> str:
        value = raw.get(key, default)
        if value is None or (required and not str(value).strip()):
            errors.append(f"'{key}' is required")
            return default
        return str(value).strip()

    def _int(key: str, default: int, minimum: int) -> int:
        value = raw.get(key, default)
        if isinstance(value, bool):
            errors.append(f"'{key}' must be an integer, got {value!r}")
            return default
        try:
            result = int(value)
        except (TypeError, ValueError):
            errors.append(f"'{key}' must be an integer, got {value!r}")
            return default
        if result < minimum:
            errors.append(f"'{key}' = {result} must be >= {minimum}")
        return result

    def _float(key: str, default: float) -> float:
        value = raw.get(key, default)
        try:
            result = float(value)
        except (TypeError, ValueError):
            errors.append(f"'{key}' must be a number, got {value!r}")
            return default
        if result <= 0:
            errors.append(f"'{key}' = {result} must be positive")
        return result

    def _path(key: str, default: str) -> str:
        value = _string(key, default=default)
        if not value.startswith("/"):
            errors.append(f"'{key}' must start with '/', got {value!r}")
        return value

    base_url = _string("base_url", required=True).rstrip("/")
    if base_url and not base_url.startswith(("http://", "https://")):
        errors.append(f"'base_url' must be an http(s) URL, got {base_url!r}")

    config = TrackerConfig(
        base_url=base_url,
        client_id=_string("client_id", required=True),
        client_secret=_string("client_secret", required=True),
        max_stored=_int("max_stored", 1000, minimum=1),
        retry_interval_seconds=_int("retry_interval_seconds", 600, minimum=1),
        min_sample_interval_seconds=_int("min_sample_interval_seconds", 10, minimum=0),
        token_path=_path("token_path", "/connect/token"),
        upload_path=_path("upload_path", "/api/GPSEntries"),
        bulk_upload_path=_path("bulk_upload_path", "/api/GPSEntries/bulk"),
        batch_size=_int("batch_size", 1, minimum=1),
        http_timeout_seconds=_float("http_timeout_seconds", 30.0),
        fatal_on_client_error=bool(raw.get("fatal_on_client_error", False)),
        flush_on_stop=bool(raw.get("flush_on_stop", False)),
        token_leeway_seconds=_int("token_leeway_seconds", 0, minimum=0),
    )

    if config.batch_size > config.max_stored:
        errors.append(
            f"'batch_size' = {config.batch_size} cannot exceed 'max_stored' = {config.max_stored}"
        )

    if errors:
        raise ConfigValidationError(
            f"Tracker config has {len(errors)} validation error(s):\n"
            + "\n".join(f"  - {e}" for e in errors)
        )
    return config


def load_tracker_config(
    path: Path | None = None, overrides: dict[str, Any] | None = None
) -> TrackerConfig:
    """Load the YAML defaults, apply overrides and validate.

    Args:
        path:      Override path to YAML. Uses the bundled tracker_config.yaml by default.
        overrides: Values that take precedence over the file (endpoint, credentials, tuning).

    Returns:
        Validated TrackerConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    raw.update(overrides or {})
    config = _validate_and_build(raw)
    logger.info("Loaded tracker config from %s: %r", target, config)
    return config
