from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

DEFAULT_MODEL = "default"
DEFAULT_MAX_API_REQUESTS = 10
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0
LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class Settings:
    default_model: str
    max_api_requests: int
    request_timeout_seconds: float | None
    log_level: str
    record_traffic: bool


@dataclass(slots=True)
class GenerationConfig:
    """Per-session generation parameters, copied into every request snapshot."""

    model: str = DEFAULT_MODEL
    temperature: float | None = None
    max_output_tokens: int | None = None
    tool_choice: str | None = None
    schema: Any = None
    choice_count: int = 1
    max_api_requests: int = DEFAULT_MAX_API_REQUESTS
    request_timeout_seconds: float | None = DEFAULT_REQUEST_TIMEOUT_SECONDS
    record_traffic: bool = False
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.max_api_requests = max(1, int(self.max_api_requests))
        self.choice_count = max(1, int(self.choice_count))

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "GenerationConfig":
        values: dict[str, Any] = {
            "model": settings.default_model,
            "max_api_requests": settings.max_api_requests,
            "request_timeout_seconds": settings.request_timeout_seconds,
            "record_traffic": settings.record_traffic,
        }
        values.update(overrides)
        return cls(**values)

    def copy(self) -> "GenerationConfig":
        return replace(self, params=dict(self.params))


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _parse_timeout(value: str | None, default: float) -> float | None:
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    # zero or negative disables the per-call timeout
    if parsed <= 0:
        return None
    return parsed


def _parse_log_level(value: str | None) -> str:
    normalized = (value or "").strip().upper()
    if normalized in LOG_LEVELS:
        return normalized
    return "INFO"


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    source = os.environ if env is None else env
    return Settings(
        default_model=(source.get("GENLOOP_DEFAULT_MODEL") or DEFAULT_MODEL).strip(),
        max_api_requests=max(1, _parse_int(source.get("GENLOOP_MAX_API_REQUESTS"), DEFAULT_MAX_API_REQUESTS)),
        request_timeout_seconds=_parse_timeout(
            source.get("GENLOOP_REQUEST_TIMEOUT_SECONDS"), DEFAULT_REQUEST_TIMEOUT_SECONDS
        ),
        log_level=_parse_log_level(source.get("GENLOOP_LOG_LEVEL")),
        record_traffic=_parse_bool(source.get("GENLOOP_RECORD_TRAFFIC"), False),
    )
