from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from telethon import TelegramClient, functions
from telethon.errors import (
    AuthKeyDuplicatedError,
    AuthKeyUnregisteredError,
    ForbiddenError,
    PasswordHashInvalidError,
    RPCError,
    SessionExpiredError,
    SessionPasswordNeededError,
    SessionRevokedError,
    UserDeactivatedBanError,
    UserDeactivatedError,
)

from .errors import InvalidPasswordError, PasswordNotRequestedError
from .peers import Peer


LOGGER = logging.getLogger("tgrelay.connection")

SESSION_FILE_STEM = "telethon"
HEARTBEAT_INTERVAL = 60.0
PASSWORD_TIMEOUT = 90.0
DEFAULT_QR_TTL = 30.0


class DisconnectReason(enum.IntEnum):
    LOGGED_OUT = 401
    FORBIDDEN = 403
    TIMED_OUT = 408
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


_LOGGED_OUT_ERRORS = (
    AuthKeyUnregisteredError,
    SessionRevokedError,
    SessionExpiredError,
    UserDeactivatedError,
    UserDeactivatedBanError,
)


@dataclass(slots=True)
class ConnectionUpdate:
    """One state change reported by a connection.

    ``connection`` is ``connecting``, ``open``, ``close``, ``password`` or
    ``None`` for a bare QR refresh.
    """

    connection: Optional[str] = None
    qr: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None


UpdateCallback = Callable[[ConnectionUpdate], Awaitable[None]]


def classify_error(exc: BaseException) -> DisconnectReason:
    if isinstance(exc, _LOGGED_OUT_ERRORS):
        return DisconnectReason.LOGGED_OUT
    if isinstance(exc, AuthKeyDuplicatedError):
        return DisconnectReason.CONNECTION_REPLACED
    if isinstance(exc, ForbiddenError):
        return DisconnectReason.FORBIDDEN
    if isinstance(exc, RPCError):
        return DisconnectReason.BAD_SESSION
    if isinstance(exc, (ConnectionError, OSError, asyncio.TimeoutError)):
        return DisconnectReason.UNAVAILABLE_SERVICE
    return DisconnectReason.BAD_SESSION


def _seconds_until(expires: Any) -> float:
    if expires is None:
        return DEFAULT_QR_TTL
    try:
        deadline = float(expires.timestamp())
    except AttributeError:
        try:
            deadline = float(expires)
        except (TypeError, ValueError):
            return DEFAULT_QR_TTL
    return max(deadline - time.time(), 1.0)


def ensure_session_file(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
    except OSError as exc:
        LOGGER.warning("event=session_file_prepare_failed path=%s error=%s", path, exc)
        return
    try:
        os.chmod(path, 0o600)
    except OSError as exc:
        LOGGER.warning("event=session_file_chmod_failed path=%s error=%s", path, exc)


class TelethonConnection:
    """Drive a single ``TelegramClient`` and report its state as updates."""

    def __init__(
        self,
        session_id: str,
        client: TelegramClient,
        on_update: UpdateCallback,
        *,
        qr_refresh_limit: int = 5,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        password_timeout: float = PASSWORD_TIMEOUT,
    ) -> None:
        self.session_id = session_id
        self._client = client
        self._on_update = on_update
        self._qr_refresh_limit = qr_refresh_limit
        self._heartbeat_interval = heartbeat_interval
        self._password_timeout = password_timeout
        self._task: Optional[asyncio.Task[None]] = None
        self._awaiting_password = False
        self._password_accepted = asyncio.Event()
        self._closing = False

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name=f"tgrelay:{self.session_id}")

    async def _emit(self, update: ConnectionUpdate) -> None:
        try:
            await self._on_update(update)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception(
                "stage=update_callback_failed session_id=%s connection=%s",
                self.session_id,
                update.connection,
            )

    async def _run(self) -> None:
        try:
            code, error = await self._serve()
        finally:
            with contextlib.suppress(Exception):
                await self._client.disconnect()
        if self._closing:
            return
        LOGGER.info(
            "stage=connection_closed session_id=%s code=%s error=%s",
            self.session_id,
            int(code),
            error,
        )
        await self._emit(
            ConnectionUpdate(connection="close", status_code=int(code), error=error)
        )

    async def _serve(self) -> tuple[DisconnectReason, Optional[str]]:
        try:
            await self._emit(ConnectionUpdate(connection="connecting"))
            await self._client.connect()
            if not await self._client.is_user_authorized():
                failure = await self._authorize()
                if failure is not None:
                    return DisconnectReason.TIMED_OUT, failure
            await self._emit(ConnectionUpdate(connection="open"))
            await self._watch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            code = classify_error(exc)
            LOGGER.warning(
                "stage=connection_error session_id=%s code=%s error=%r",
                self.session_id,
                int(code),
                exc,
            )
            return code, str(exc) or exc.__class__.__name__
        if self._closing:
            return DisconnectReason.CONNECTION_CLOSED, None
        return DisconnectReason.TIMED_OUT, "connection_lost"

    async def _authorize(self) -> Optional[str]:
        qr_login = await self._client.qr_login()
        refreshes = 0
        while True:
            await self._emit(ConnectionUpdate(qr=qr_login.url))
            try:
                await qr_login.wait(timeout=_seconds_until(qr_login.expires))
            except asyncio.TimeoutError:
                if refreshes >= self._qr_refresh_limit:
                    LOGGER.info(
                        "stage=qr_timeout session_id=%s refreshes=%s",
                        self.session_id,
                        refreshes,
                    )
                    return "qr_login_timeout"
                refreshes += 1
                await qr_login.recreate()
                LOGGER.info(
                    "stage=qr_refresh session_id=%s refresh=%s", self.session_id, refreshes
                )
                continue
            except SessionPasswordNeededError:
                return await self._await_password()
            LOGGER.info("stage=qr_scanned session_id=%s", self.session_id)
            return None

    async def _await_password(self) -> Optional[str]:
        self._awaiting_password = True
        self._password_accepted.clear()
        LOGGER.info("stage=password_required session_id=%s", self.session_id)
        await self._emit(ConnectionUpdate(connection="password"))
        try:
            await asyncio.wait_for(self._password_accepted.wait(), self._password_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("stage=password_timeout session_id=%s", self.session_id)
            return "password_timeout"
        finally:
            self._awaiting_password = False
        return None

    async def _watch(self) -> None:
        disconnected = self._client.disconnected
        while True:
            try:
                await asyncio.wait_for(
                    asyncio.shield(disconnected), timeout=self._heartbeat_interval
                )
                return
            except asyncio.TimeoutError:
                await self._client(functions.updates.GetStateRequest())

    @property
    def awaiting_password(self) -> bool:
        return self._awaiting_password

    async def submit_password(self, password: str) -> None:
        if not self._awaiting_password:
            raise PasswordNotRequestedError(self.session_id)
        try:
            await self._client.sign_in(password=password)
        except PasswordHashInvalidError as exc:
            raise InvalidPasswordError(self.session_id) from exc
        self._password_accepted.set()

    async def send_text(self, peer: Peer, text: str) -> Optional[int]:
        message = await self._client.send_message(peer, text)
        return getattr(message, "id", None)

    async def logout(self) -> None:
        await self._client.log_out()

    async def close(self) -> None:
        self._closing = True
        with contextlib.suppress(Exception):
            await self._client.disconnect()
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


class TelethonConnectionFactory:
    """Build ``TelethonConnection`` objects from the relay configuration."""

    def __init__(
        self,
        *,
        api_id: int,
        api_hash: str,
        device_model: str,
        system_version: str,
        app_version: str,
        lang_code: str,
        system_lang_code: str,
        qr_refresh_limit: int = 5,
    ) -> None:
        self._api_id = api_id
        self._api_hash = api_hash
        self._device_model = device_model
        self._system_version = system_version
        self._app_version = app_version
        self._lang_code = lang_code
        self._system_lang_code = system_lang_code
        self._qr_refresh_limit = qr_refresh_limit

    def __call__(
        self, session_id: str, session_dir: Path, on_update: UpdateCallback
    ) -> TelethonConnection:
        session_path = session_dir / f"{SESSION_FILE_STEM}.session"
        ensure_session_file(session_path)
        client = TelegramClient(
            str(session_dir / SESSION_FILE_STEM),
            self._api_id,
            self._api_hash,
            device_model=self._device_model,
            system_version=self._system_version,
            app_version=self._app_version,
            lang_code=self._lang_code,
            system_lang_code=self._system_lang_code,
        )
        return TelethonConnection(
            session_id,
            client,
            on_update,
            qr_refresh_limit=self._qr_refresh_limit,
        )


__all__ = [
    "ConnectionUpdate",
    "DisconnectReason",
    "SESSION_FILE_STEM",
    "TelethonConnection",
    "TelethonConnectionFactory",
    "UpdateCallback",
    "classify_error",
    "ensure_session_file",
]
