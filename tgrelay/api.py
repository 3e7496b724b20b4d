from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Body, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from config import relay_config

from .connection import TelethonConnectionFactory
from .errors import (
    InvalidPasswordError,
    InvalidSessionIdError,
    PasswordNotRequestedError,
    SendFailedError,
    SessionNotConnectedError,
    SessionNotFoundError,
)
from .events import StatusBroker
from .manager import SessionManager
from .qr import qr_png_base64


logger = logging.getLogger("tgrelay.api")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _optional_text(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateSessionRequest(_CamelModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    @field_validator("session_id", mode="before")
    @classmethod
    def _strip_session_id(cls, value: Any) -> Any:
        return _optional_text(value)


class SendMessageRequest(_CamelModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    number: Optional[str] = None
    message: Optional[str] = None

    @field_validator("session_id", "number", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _optional_text(value)

    @field_validator("message", mode="before")
    @classmethod
    def _coerce_message(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str) and not value.strip():
            return None
        return value


class PasswordRequest(_CamelModel):
    password: Optional[SecretStr] = None


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status, headers=dict(NO_STORE_HEADERS))


def _ok(body: Any) -> JSONResponse:
    return JSONResponse(body, headers=dict(NO_STORE_HEADERS))


def _parse(model: type[BaseModel], raw_payload: Any) -> Optional[BaseModel]:
    data = raw_payload if isinstance(raw_payload, dict) else {}
    try:
        return model.model_validate(data)
    except ValidationError:
        return None


def _utc_now_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def create_app() -> FastAPI:
    cfg = relay_config()
    broker = StatusBroker()
    factory = TelethonConnectionFactory(
        api_id=cfg.api_id,
        api_hash=cfg.api_hash,
        device_model=cfg.device_model,
        system_version=cfg.system_version,
        app_version=cfg.app_version,
        lang_code=cfg.lang_code,
        system_lang_code=cfg.system_lang_code,
        qr_refresh_limit=cfg.qr_refresh_limit,
    )
    manager = SessionManager(
        cfg.auth_root,
        factory,
        broker=broker,
        restart_delay=cfg.restart_delay,
    )

    app = FastAPI(title="tgrelay")
    app.state.session_manager = manager
    app.state.status_broker = broker
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup() -> None:
        if not cfg.has_credentials:
            logger.warning("telegram api credentials are not configured")
            return
        if cfg.resume_on_start:
            await manager.bootstrap()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        logger.info("stage=shutting_down")
        await manager.shutdown()

    @app.get("/health")
    async def health():
        stats = manager.stats_snapshot()
        return _ok(
            {
                "ok": True,
                "time": _utc_now_iso(),
                "sessions": int(stats.get("total", 0)),
                "connected": int(stats.get("connected", 0)),
            }
        )

    @app.get("/sessions")
    async def list_sessions():
        return _ok(manager.snapshot())

    @app.post("/sessions")
    async def create_session(raw_payload: Any = Body(default=None)):
        payload = _parse(CreateSessionRequest, raw_payload)
        if payload is None:
            return _error(400, "Invalid request body")
        if not payload.session_id:
            return _error(400, "Missing sessionId")
        if not cfg.has_credentials:
            return _error(503, "Telegram credentials missing")
        try:
            state, created = await manager.start_session(payload.session_id)
        except InvalidSessionIdError:
            return _error(400, "Invalid sessionId")
        except Exception:
            logger.exception(
                "event=create_session_failed session_id=%s", payload.session_id
            )
            return _error(500, "Failed to start session")
        return _ok(
            {"status": "created" if created else "ok", "sessionId": state.session_id}
        )

    @app.get("/sessions/{session_id}/qr")
    async def session_qr(session_id: str):
        state = manager.get(session_id)
        if state is None:
            return _error(404, "Session not found")
        if state.is_connected:
            return _ok({"qr": None, "message": "connected"})
        try:
            png = qr_png_base64(state.last_qr)
        except Exception:
            logger.exception("event=qr_render_failed session_id=%s", session_id)
            return _error(500, "Failed to render QR")
        if png:
            return _ok({"qr": png, "message": "scan"})
        return _ok({"qr": None, "message": "no-qr"})

    @app.post("/sessions/{session_id}/password")
    async def session_password(session_id: str, raw_payload: Any = Body(default=None)):
        payload = _parse(PasswordRequest, raw_payload)
        if payload is None or payload.password is None or not payload.password.get_secret_value():
            return _error(400, "Missing password")
        try:
            await manager.submit_password(session_id, payload.password.get_secret_value())
        except SessionNotFoundError:
            return _error(404, "Session not found")
        except PasswordNotRequestedError:
            return _error(409, "Password not requested")
        except InvalidPasswordError:
            logger.warning("event=password_invalid session_id=%s", session_id)
            return _error(401, "Invalid password")
        except Exception:
            logger.exception("event=password_submit_failed session_id=%s", session_id)
            return _error(500, "Failed to submit password")
        return _ok({"status": "submitted", "sessionId": session_id})

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str):
        deleted = await manager.delete_session(session_id)
        if not deleted:
            return _error(404, "Session not found")
        return _ok({"status": "deleted", "sessionId": session_id})

    @app.post("/send-message")
    async def send_message(raw_payload: Any = Body(default=None)):
        payload = _parse(SendMessageRequest, raw_payload)
        if payload is None:
            return _error(400, "Invalid request body")
        if not payload.session_id:
            return _error(400, "Missing sessionId")
        if not payload.number or not payload.message:
            return _error(400, "Missing number or message")
        try:
            result = await manager.send_text(
                payload.session_id, payload.number, payload.message
            )
        except SessionNotConnectedError:
            return _error(503, "Session not connected")
        except ValueError:
            return _error(400, "Invalid number")
        except SendFailedError:
            return _error(500, "Failed to send message")
        return _ok(
            {
                "status": "sent",
                "sessionId": payload.session_id,
                "to": payload.number,
                "messageId": result.message_id,
            }
        )

    @app.get("/events")
    async def events(request: Request):
        stream = broker.stream(
            manager.snapshot,
            keepalive=cfg.sse_keepalive,
            is_disconnected=request.is_disconnected,
        )
        return StreamingResponse(
            stream, media_type="text/event-stream", headers=dict(SSE_HEADERS)
        )

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(
            data.decode("utf-8"),
            media_type=CONTENT_TYPE_LATEST,
            headers=dict(NO_STORE_HEADERS),
        )

    return app


__all__ = ["create_app"]
