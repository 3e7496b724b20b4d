from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

from .connection import (
    SESSION_FILE_STEM,
    ConnectionUpdate,
    DisconnectReason,
    UpdateCallback,
)
from .errors import (
    InvalidSessionIdError,
    PasswordNotRequestedError,
    SendFailedError,
    SessionNotConnectedError,
    SessionNotFoundError,
)
from .events import StatusBroker
from .metrics import (
    DISCONNECTS,
    MESSAGES_SENT,
    SESSION_RESTARTS,
    SESSIONS_AWAITING_PASSWORD,
    SESSIONS_AWAITING_QR,
    SESSIONS_CONNECTED,
    SESSIONS_LOGGED_OUT,
)
from .peers import to_peer


LOGGER = logging.getLogger("tgrelay")

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,63}$")


class Connection(Protocol):
    session_id: str

    async def start(self) -> None: ...

    async def send_text(self, peer: Any, text: str) -> Optional[int]: ...

    async def submit_password(self, password: str) -> None: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...


ConnectionFactory = Callable[[str, Path, UpdateCallback], Connection]


def normalize_session_id(raw: object) -> str:
    value = str(raw if raw is not None else "").strip()
    if not value:
        raise InvalidSessionIdError("missing_session_id")
    if not SESSION_ID_PATTERN.match(value):
        raise InvalidSessionIdError("invalid_session_id")
    return value


@dataclass(slots=True)
class SessionState:
    session_id: str
    connection: Optional[Connection] = None
    is_connected: bool = False
    last_qr: Optional[str] = None
    awaiting_password: bool = False
    connecting: bool = False
    retired: bool = False
    last_status_code: Optional[int] = None
    last_error: Optional[str] = None
    restart_task: Optional[asyncio.Task[Any]] = None
    restarts: int = 0
    created_at: float = 0.0
    last_seen: Optional[float] = None

    @property
    def has_qr(self) -> bool:
        return self.last_qr is not None

    @property
    def status(self) -> str:
        if self.is_connected:
            return "connected"
        if self.retired:
            return "logged_out"
        if self.awaiting_password:
            return "awaiting_password"
        if self.last_qr is not None:
            return "awaiting_qr"
        if self.connecting:
            return "connecting"
        return "closed"

    def to_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "isConnected": self.is_connected,
            "hasQR": self.has_qr,
            "status": self.status,
        }


@dataclass(slots=True)
class SendResult:
    session_id: str
    peer: Any
    message_id: Optional[int]


class SessionManager:
    """In-memory registry of sessions and the lifecycle driven by their updates."""

    def __init__(
        self,
        auth_root: Path,
        connection_factory: ConnectionFactory,
        *,
        broker: Optional[StatusBroker] = None,
        restart_delay: float = 1.0,
    ) -> None:
        self._auth_root = auth_root
        self._auth_root.mkdir(parents=True, exist_ok=True)
        self._factory = connection_factory
        self._broker = broker or StatusBroker()
        self._restart_delay = restart_delay
        self._sessions: Dict[str, SessionState] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def broker(self) -> StatusBroker:
        return self._broker

    def session_dir(self, session_id: str) -> Path:
        return self._auth_root / session_id

    def get(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        return state

    def snapshot(self) -> list[dict[str, Any]]:
        return [state.to_payload() for state in self._sessions.values()]

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {
            "total": len(self._sessions),
            "connected": 0,
            "awaiting_qr": 0,
            "awaiting_password": 0,
            "logged_out": 0,
        }
        for state in self._sessions.values():
            status = state.status
            if status in counts:
                counts[status] += 1
        return counts

    def _update_metrics(self) -> None:
        stats = self.stats_snapshot()
        SESSIONS_CONNECTED.set(stats["connected"])
        SESSIONS_AWAITING_QR.set(stats["awaiting_qr"])
        SESSIONS_AWAITING_PASSWORD.set(stats["awaiting_password"])
        SESSIONS_LOGGED_OUT.set(stats["logged_out"])

    def _publish(self) -> None:
        self._update_metrics()
        self._broker.publish(self.snapshot())

    def _set_status(self, state: SessionState, *, reason: str) -> None:
        LOGGER.info(
            "stage=state_transition session_id=%s status=%s reason=%s",
            state.session_id,
            state.status,
            reason,
        )
        self._publish()

    def _build_connection(self, state: SessionState) -> Connection:
        session_id = state.session_id
        session_dir = self.session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        connection: Optional[Connection] = None

        async def _on_update(update: ConnectionUpdate) -> None:
            await self._handle_update(session_id, connection, update)

        connection = self._factory(session_id, session_dir, _on_update)
        return connection

    async def start_session(self, raw_session_id: object) -> tuple[SessionState, bool]:
        """Start a session unless a live one is registered.

        Returns the state and whether a new connection was created.
        """

        session_id = normalize_session_id(raw_session_id)
        async with self._lock:
            state = self._sessions.get(session_id)
            if state is not None and not state.retired and state.connection is not None:
                return state, False
            registered = state is not None
            if state is None:
                state = SessionState(session_id=session_id, created_at=time.time())
            else:
                await self._discard_connection(state)
                if state.retired:
                    self._reset_credentials(session_id)
                    LOGGER.info("stage=session_relogin session_id=%s", session_id)
            try:
                connection = self._build_connection(state)
            except Exception:
                LOGGER.exception("stage=session_build_failed session_id=%s", session_id)
                raise
            # registered only once a connection exists
            self._sessions[session_id] = state
            state.retired = False
            state.connection = connection
            state.connecting = True
            state.last_error = None
        try:
            await connection.start()
        except Exception:
            async with self._lock:
                if state.connection is connection:
                    state.connection = None
                    state.connecting = False
                    if not registered and self._sessions.get(session_id) is state:
                        self._sessions.pop(session_id, None)
            with contextlib.suppress(Exception):
                await connection.close()
            LOGGER.exception("stage=session_start_failed session_id=%s", session_id)
            self._publish()
            raise
        LOGGER.info("stage=session_started session_id=%s", session_id)
        self._publish()
        return state, True

    def _reset_credentials(self, session_id: str) -> None:
        session_dir = self.session_dir(session_id)
        for path in session_dir.glob(f"{SESSION_FILE_STEM}.session*"):
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

    async def _discard_connection(self, state: SessionState) -> None:
        task = state.restart_task
        state.restart_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        connection = state.connection
        state.connection = None
        if connection is not None:
            with contextlib.suppress(Exception):
                await connection.close()

    async def _handle_update(
        self,
        session_id: str,
        connection: Optional[Connection],
        update: ConnectionUpdate,
    ) -> None:
        state = self._sessions.get(session_id)
        if state is None or connection is None or state.connection is not connection:
            LOGGER.debug(
                "stage=stale_update session_id=%s connection=%s",
                session_id,
                update.connection,
            )
            return
        state.last_seen = time.time()

        if update.qr:
            state.last_qr = update.qr
            state.is_connected = False
            state.awaiting_password = False
            self._set_status(state, reason="qr")

        if update.connection == "connecting":
            state.connecting = True
            self._publish()
        elif update.connection == "password":
            state.last_qr = None
            state.awaiting_password = True
            self._set_status(state, reason="password_required")
        elif update.connection == "open":
            state.is_connected = True
            state.connecting = False
            state.last_qr = None
            state.awaiting_password = False
            state.last_error = None
            state.last_status_code = None
            LOGGER.info("stage=connected session_id=%s", session_id)
            self._set_status(state, reason="open")
        elif update.connection == "close":
            self._handle_close(state, update)

    def _handle_close(self, state: SessionState, update: ConnectionUpdate) -> None:
        code = update.status_code
        should_restart = code != DisconnectReason.LOGGED_OUT
        state.is_connected = False
        state.connecting = False
        state.awaiting_password = False
        state.last_qr = None
        state.last_status_code = code
        state.last_error = update.error
        DISCONNECTS.labels(str(code) if code is not None else "unknown").inc()
        LOGGER.info(
            "stage=connection_closed session_id=%s code=%s reconnect=%s",
            state.session_id,
            code,
            should_restart,
        )
        if should_restart and not self._closed:
            closed = state.connection
            state.restart_task = asyncio.create_task(
                self._restart_later(state.session_id, closed)
            )
        elif not should_restart:
            state.retired = True
            state.connection = None
        self._set_status(state, reason=f"close:{code}")

    async def _restart_later(self, session_id: str, closed: Optional[Connection]) -> None:
        await asyncio.sleep(self._restart_delay)
        async with self._lock:
            state = self._sessions.get(session_id)
            if state is None or state.retired or self._closed:
                return
            if state.connection is not closed:
                return
            state.restart_task = None
            state.restarts += 1
            SESSION_RESTARTS.inc()
            LOGGER.info(
                "stage=session_restart session_id=%s attempt=%s", session_id, state.restarts
            )
            try:
                connection = self._build_connection(state)
            except Exception as exc:
                LOGGER.exception("stage=session_restart_failed session_id=%s", session_id)
                self._retry_restart(state, exc)
                return
            state.connection = connection
            state.connecting = True
        try:
            await connection.start()
        except Exception as exc:
            LOGGER.exception("stage=session_restart_failed session_id=%s", session_id)
            if state.connection is connection and self._sessions.get(session_id) is state:
                self._retry_restart(state, exc)
            with contextlib.suppress(Exception):
                await connection.close()
            return
        self._publish()

    def _retry_restart(self, state: SessionState, exc: BaseException) -> None:
        # connection=None lets start_session rebuild before the retry fires
        state.connection = None
        state.connecting = False
        state.last_error = str(exc) or exc.__class__.__name__
        if not self._closed:
            state.restart_task = asyncio.create_task(
                self._restart_later(state.session_id, None)
            )
        self._set_status(state, reason="restart_failed")

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            state = self._sessions.pop(session_id, None)
        if state is None:
            return False
        connection = state.connection
        task = state.restart_task
        state.restart_task = None
        state.connection = None
        if task is not None and not task.done():
            task.cancel()
        if connection is not None:
            try:
                await connection.logout()
            except Exception as exc:
                LOGGER.warning(
                    "stage=logout_failed session_id=%s error=%s", session_id, exc
                )
            with contextlib.suppress(Exception):
                await connection.close()
        LOGGER.info("stage=session_deleted session_id=%s", session_id)
        self._publish()
        return True

    async def send_text(self, session_id: str, number: object, text: str) -> SendResult:
        state = self._sessions.get(session_id)
        if state is None or not state.is_connected or state.connection is None:
            MESSAGES_SENT.labels("not_connected").inc()
            raise SessionNotConnectedError(session_id)
        peer = to_peer(number)
        try:
            message_id = await state.connection.send_text(peer, str(text))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            MESSAGES_SENT.labels("failed").inc()
            LOGGER.error(
                "stage=send_fail session_id=%s peer=%s error=%s", session_id, peer, exc
            )
            raise SendFailedError(str(exc)) from exc
        MESSAGES_SENT.labels("sent").inc()
        state.last_seen = time.time()
        LOGGER.info("stage=send_ok session_id=%s peer=%s", session_id, peer)
        return SendResult(session_id=session_id, peer=peer, message_id=message_id)

    async def submit_password(self, session_id: str, password: str) -> None:
        state = self.require(session_id)
        if not state.awaiting_password or state.connection is None:
            raise PasswordNotRequestedError(session_id)
        await state.connection.submit_password(password)
        LOGGER.info("stage=password_ok session_id=%s", session_id)

    def stored_session_ids(self) -> list[str]:
        found: list[str] = []
        for path in sorted(self._auth_root.iterdir()):
            if not path.is_dir():
                continue
            session_file = path / f"{SESSION_FILE_STEM}.session"
            try:
                if not session_file.is_file() or session_file.stat().st_size == 0:
                    continue
            except OSError:
                continue
            if SESSION_ID_PATTERN.match(path.name):
                found.append(path.name)
        return found

    async def bootstrap(self) -> list[str]:
        started: list[str] = []
        for session_id in self.stored_session_ids():
            try:
                await self.start_session(session_id)
            except Exception:
                LOGGER.exception("stage=bootstrap_failed session_id=%s", session_id)
                continue
            started.append(session_id)
        LOGGER.info("stage=bootstrap sessions=%s", len(started))
        return started

    async def shutdown(self) -> None:
        self._closed = True
        async with self._lock:
            states = list(self._sessions.values())
        for state in states:
            await self._discard_connection(state)
            state.is_connected = False
            state.connecting = False
        self._update_metrics()
        self._broker.close()
        LOGGER.info("stage=shutdown sessions=%s", len(states))


__all__ = [
    "Connection",
    "ConnectionFactory",
    "SendResult",
    "SessionManager",
    "SessionState",
    "normalize_session_id",
]
