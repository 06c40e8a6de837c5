"""Application configuration loaded from environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "gpsrelay"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Ingestion API ---
    api_base_url: str
    client_id: str
    client_secret: str  # never logged

    # --- Local state ---
    data_dir: Path = Path("./data")
    tracker_config_path: Path | None = None  # defaults to the bundled tracker_config.yaml
    autostart: bool = True

    # --- Tuning overrides (None = keep the YAML value) ---
    max_stored: int | None = None
    retry_interval_seconds: int | None = None
    min_sample_interval_seconds: int | None = None
    batch_size: int | None = None
    http_timeout_seconds: float | None = None
    fatal_on_client_error: bool | None = None
    flush_on_stop: bool | None = None
    token_leeway_seconds: int | None = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def tracker_overrides(self) -> dict:
        """Return the values that take precedence over tracker_config.yaml."""
        overrides = {
            "base_url": self.api_base_url,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        for key in (
            "max_stored",
            "retry_interval_seconds",
            "min_sample_interval_seconds",
            "batch_size",
            "http_timeout_seconds",
            "fatal_on_client_error",
            "flush_on_stop",
            "token_leeway_seconds",
        ):
            value = getattr(self, key)
            if value is not None:
                overrides[key] = value
        return overrides

    @property
    def state_file(self) -> Path:
        return self.data_dir / "tracker_state.json"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
