from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from replaytrace.utils import read_json

_REQUIRED = ("api_url", "sdk_key")


class ConfigurationError(ValueError):
    """Raised when a capture config is missing required keys."""


class CaptureConfig(BaseModel):
    """Options recognized by the capture engine."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    api_url: str | None = Field(default=None, alias="apiUrl")
    sdk_key: str | None = Field(default=None, alias="sdkKey")
    batch_size: int = Field(default=50, ge=1, alias="batchSize")
    flush_interval: float = Field(default=10.0, ge=0, alias="flushInterval")
    session_timeout: float = Field(default=30 * 60.0, gt=0, alias="sessionTimeout")
    max_queue_size: int = Field(default=1000, ge=1, alias="maxQueueSize")
    session_check_interval: float = Field(default=60.0, gt=0, alias="sessionCheckInterval")
    compress_snapshots: bool = Field(default=False, alias="compressSnapshots")
    request_timeout: float = Field(default=15.0, gt=0, alias="requestTimeout")
    beacon_timeout: float = Field(default=2.0, gt=0, alias="beaconTimeout")

    def missing_keys(self) -> list[str]:
        return [name for name in _REQUIRED if not getattr(self, name)]

    def require_complete(self) -> None:
        missing = self.missing_keys()
        if missing:
            raise ConfigurationError(f"missing required config: {', '.join(missing)}")

    @classmethod
    def from_env(cls, prefix: str = "REPLAYTRACE_") -> CaptureConfig:
        """Build a config from prefixed environment variables, e.g. REPLAYTRACE_API_URL."""
        settings = CaptureSettings(_env_prefix=prefix)
        return cls.model_validate(settings.model_dump(exclude_none=True))

    @classmethod
    def from_file(cls, path: Path) -> CaptureConfig:
        payload = read_json(path)
        if payload is None:
            raise ConfigurationError(f"config file not found: {path}")
        if not isinstance(payload, dict):
            raise ConfigurationError(f"config file must hold a JSON object: {path}")
        return cls.model_validate(payload)


class CaptureSettings(BaseSettings):
    """Environment view of `CaptureConfig`.

    Every field is optional here; defaults and bounds stay on `CaptureConfig`.
    """

    model_config = SettingsConfigDict(
        env_prefix="REPLAYTRACE_",
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
    )

    api_url: str | None = None
    sdk_key: str | None = None
    batch_size: int | None = None
    flush_interval: float | None = None
    session_timeout: float | None = None
    max_queue_size: int | None = None
    session_check_interval: float | None = None
    compress_snapshots: bool | None = None
    request_timeout: float | None = None
    beacon_timeout: float | None = None
