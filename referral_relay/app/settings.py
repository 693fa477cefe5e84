from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_GHL_API_BASE = "https://services.leadconnectorhq.com"
DEFAULT_GHL_API_VERSION = "2021-07-28"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _optional_float_env(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


@dataclass(frozen=True)
class Settings:
    app_env: str
    ghl_api_key: str
    ghl_location_id: str
    ghl_api_base: str
    ghl_api_version: str
    ghl_timeout_seconds: Optional[float]
    rate_limit_window_ms: int
    rate_limit_max_requests: int
    host: str
    port: int
    log_level: str

    def missing_required(self) -> list[str]:
        missing: list[str] = []
        if not self.ghl_api_key:
            missing.append("GHL_API_KEY")
        if not self.ghl_location_id:
            missing.append("GHL_LOCATION_ID")
        return missing


def load_settings() -> Settings:
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        ghl_api_key=os.getenv("GHL_API_KEY", "").strip(),
        ghl_location_id=os.getenv("GHL_LOCATION_ID", "").strip(),
        ghl_api_base=os.getenv("GHL_API_BASE", DEFAULT_GHL_API_BASE).strip().rstrip("/"),
        ghl_api_version=os.getenv("GHL_API_VERSION", DEFAULT_GHL_API_VERSION).strip(),
        ghl_timeout_seconds=_optional_float_env("GHL_TIMEOUT_SECONDS"),
        rate_limit_window_ms=max(1, _int_env("RATE_LIMIT_WINDOW_MS", 60_000)),
        rate_limit_max_requests=max(1, _int_env("RATE_LIMIT_MAX_REQUESTS", 10)),
        host=os.getenv("HOST", "0.0.0.0").strip(),
        port=_int_env("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
