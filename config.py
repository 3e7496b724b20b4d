"""Lightweight configuration helpers for the relay service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_AUTH_ROOT = "/app/auth_info"
FALLBACK_AUTH_ROOT = "/tmp/auth_info"
DEFAULT_PORT = 3000


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _coerce_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    cleaned = value.strip().lower()
    if not cleaned:
        return default
    return cleaned in {"1", "true", "yes", "on"}


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _parse_origins(raw: str | None) -> tuple[str, ...]:
    if not raw or not raw.strip():
        return ("*",)
    origins = tuple(part.strip() for part in raw.split(",") if part.strip())
    return origins or ("*",)


def _resolve_auth_root(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_AUTH_ROOT)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path(FALLBACK_AUTH_ROOT)
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class RelayConfig:
    api_id: int
    api_hash: str
    auth_root: Path
    host: str
    port: int
    device_model: str
    system_version: str
    app_version: str
    lang_code: str
    system_lang_code: str
    restart_delay: float
    qr_refresh_limit: int
    sse_keepalive: float
    resume_on_start: bool
    cors_origins: tuple[str, ...]
    log_level: str

    @property
    def has_credentials(self) -> bool:
        return self.api_id > 0 and bool(self.api_hash)


def relay_config() -> RelayConfig:
    auth_root = _resolve_auth_root(os.getenv("AUTH_ROOT"))

    device_model = os.getenv("TG_DEVICE_MODEL", "tgrelay").strip() or "tgrelay"
    system_version = os.getenv("TG_SYSTEM_VERSION", "1.0").strip() or "1.0"
    app_version = os.getenv("TG_APP_VERSION", "1.0").strip() or "1.0"
    lang = os.getenv("TG_LANG", "en").strip() or "en"

    return RelayConfig(
        api_id=_coerce_int(os.getenv("TELEGRAM_API_ID")),
        api_hash=(os.getenv("TELEGRAM_API_HASH") or "").strip(),
        auth_root=auth_root,
        host=(os.getenv("HOST") or "0.0.0.0").strip() or "0.0.0.0",
        port=_coerce_int(os.getenv("PORT"), DEFAULT_PORT),
        device_model=device_model,
        system_version=system_version,
        app_version=app_version,
        lang_code=lang,
        system_lang_code=lang,
        restart_delay=_parse_duration(os.getenv("RELAY_RESTART_DELAY"), default=1.0),
        qr_refresh_limit=max(0, _coerce_int(os.getenv("RELAY_QR_REFRESH_LIMIT"), 5)),
        sse_keepalive=_parse_duration(os.getenv("RELAY_SSE_KEEPALIVE"), default=15.0),
        resume_on_start=_coerce_bool(os.getenv("RELAY_RESUME_ON_START"), True),
        cors_origins=_parse_origins(os.getenv("CORS_ORIGINS")),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
    )


__all__ = ["RelayConfig", "relay_config"]
