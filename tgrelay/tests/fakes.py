from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from config import RelayConfig
from tgrelay.connection import ConnectionUpdate, UpdateCallback
from tgrelay.errors import InvalidPasswordError, PasswordNotRequestedError


class FakeConnection:
    def __init__(self, session_id: str, session_dir: Path, on_update: UpdateCallback) -> None:
        self.session_id = session_id
        self.session_dir = session_dir
        self.on_update = on_update
        self.started = False
        self.closed = False
        self.logged_out = False
        self.fail_start: Optional[Exception] = None
        self.fail_send: Optional[Exception] = None
        self.fail_logout: Optional[Exception] = None
        self.reject_password = False
        self.awaiting_password = False
        self.sent: list[tuple[Any, str]] = []
        self.passwords: list[str] = []

    async def start(self) -> None:
        if self.fail_start is not None:
            raise self.fail_start
        self.started = True

    async def emit(self, **kwargs: Any) -> None:
        await self.on_update(ConnectionUpdate(**kwargs))

    async def send_text(self, peer: Any, text: str) -> Optional[int]:
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append((peer, text))
        return 4242

    async def submit_password(self, password: str) -> None:
        if not self.awaiting_password:
            raise PasswordNotRequestedError(self.session_id)
        if self.reject_password:
            raise InvalidPasswordError(self.session_id)
        self.passwords.append(password)

    async def logout(self) -> None:
        self.logged_out = True
        if self.fail_logout is not None:
            raise self.fail_logout

    async def close(self) -> None:
        self.closed = True


class FakeConnectionFactory:
    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.build_error: Optional[Exception] = None
        self.start_error: Optional[Exception] = None
        self.build_failures = 0

    def __call__(
        self, session_id: str, session_dir: Path, on_update: UpdateCallback
    ) -> FakeConnection:
        if self.build_error is not None:
            self.build_failures += 1
            raise self.build_error
        connection = FakeConnection(session_id, session_dir, on_update)
        connection.fail_start = self.start_error
        self.connections.append(connection)
        return connection

    def for_session(self, session_id: str) -> list[FakeConnection]:
        return [conn for conn in self.connections if conn.session_id == session_id]

    def latest(self, session_id: str) -> FakeConnection:
        return self.for_session(session_id)[-1]


def make_config(auth_root: Path, **overrides: Any) -> RelayConfig:
    values: dict[str, Any] = dict(
        api_id=1,
        api_hash="hash",
        auth_root=auth_root,
        host="127.0.0.1",
        port=3000,
        device_model="Test",
        system_version="1.0",
        app_version="1.0",
        lang_code="en",
        system_lang_code="en",
        restart_delay=0.01,
        qr_refresh_limit=1,
        sse_keepalive=0.05,
        resume_on_start=False,
        cors_origins=("*",),
        log_level="INFO",
    )
    values.update(overrides)
    return RelayConfig(**values)

