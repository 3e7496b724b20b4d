from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from tgrelay.connection import DisconnectReason
from tgrelay.errors import (
    InvalidSessionIdError,
    PasswordNotRequestedError,
    SendFailedError,
    SessionNotConnectedError,
    SessionNotFoundError,
)
from tgrelay.events import StatusBroker
from tgrelay.manager import SessionManager, normalize_session_id
from tgrelay.tests.fakes import FakeConnectionFactory


def _manager(tmp_path: Path, factory: FakeConnectionFactory, **kwargs) -> SessionManager:
    return SessionManager(tmp_path, factory, restart_delay=0.01, **kwargs)


@pytest.mark.anyio
async def test_start_session_registers_and_starts_connection(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)

    state, created = await manager.start_session("  alice ")

    assert created is True
    assert state.session_id == "alice"
    assert state.status == "connecting"
    assert (tmp_path / "alice").is_dir()
    connection = fake_factory.latest("alice")
    assert connection.started is True
    assert state.connection is connection


@pytest.mark.anyio
async def test_start_session_is_idempotent_for_live_sessions(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    first, _ = await manager.start_session("alice")

    second, created = await manager.start_session("alice")

    assert created is False
    assert second is first
    assert len(fake_factory.connections) == 1


@pytest.mark.anyio
async def test_start_session_rolls_back_when_connection_fails(tmp_path: Path):
    class FailingFactory(FakeConnectionFactory):
        def __call__(self, session_id, session_dir, on_update):
            connection = super().__call__(session_id, session_dir, on_update)
            connection.fail_start = RuntimeError("boom")
            return connection

    factory = FailingFactory()
    manager = _manager(tmp_path, factory)

    with pytest.raises(RuntimeError):
        await manager.start_session("alice")

    assert manager.get("alice") is None
    assert factory.latest("alice").closed is True


@pytest.mark.anyio
async def test_start_session_registers_nothing_when_factory_fails(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    fake_factory.build_error = OSError("session file locked")

    with pytest.raises(OSError):
        await manager.start_session("alice")

    assert manager.get("alice") is None
    assert manager.snapshot() == []

    fake_factory.build_error = None
    state, created = await manager.start_session("alice")
    assert created is True
    assert state.connection is fake_factory.latest("alice")
    assert state.connection.started is True


@pytest.mark.parametrize("raw", ["", "   ", None, "../etc", ".hidden", "a/b", "x" * 65])
def test_normalize_session_id_rejects_unsafe_values(raw):
    with pytest.raises(InvalidSessionIdError):
        normalize_session_id(raw)


def test_normalize_session_id_accepts_numbers():
    assert normalize_session_id(62812345) == "62812345"


@pytest.mark.anyio
async def test_qr_then_open_updates_state(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    state, _ = await manager.start_session("alice")
    connection = fake_factory.latest("alice")

    await connection.emit(qr="tg://login?token=abc")
    assert state.has_qr is True
    assert state.status == "awaiting_qr"
    assert manager.snapshot() == [
        {"sessionId": "alice", "isConnected": False, "hasQR": True, "status": "awaiting_qr"}
    ]

    await connection.emit(connection="open")
    assert state.is_connected is True
    assert state.has_qr is False
    assert manager.stats_snapshot()["connected"] == 1


@pytest.mark.anyio
async def test_close_schedules_restart_with_new_connection(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    state, _ = await manager.start_session("alice")
    first = fake_factory.latest("alice")
    await first.emit(connection="open")

    await first.emit(
        connection="close", status_code=int(DisconnectReason.TIMED_OUT), error="connection_lost"
    )
    assert state.is_connected is False
    assert state.last_status_code == 408

    await asyncio.sleep(0.05)

    connections = fake_factory.for_session("alice")
    assert len(connections) == 2
    assert state.connection is connections[-1]
    assert connections[-1].started is True
    assert state.restarts == 1
    assert manager.get("alice") is state


@pytest.mark.anyio
async def test_failed_restart_build_is_retried(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    state, _ = await manager.start_session("alice")
    first = fake_factory.latest("alice")
    fake_factory.build_error = OSError("session file locked")

    await first.emit(connection="close", status_code=int(DisconnectReason.TIMED_OUT))
    await asyncio.sleep(0.05)

    assert fake_factory.build_failures >= 1
    assert state.connection is None
    assert state.status == "closed"
    assert state.last_error == "session file locked"
    assert state.restart_task is not None

    fake_factory.build_error = None
    await asyncio.sleep(0.05)

    connections = fake_factory.for_session("alice")
    assert len(connections) == 2
    assert state.connection is connections[-1]
    assert connections[-1].started is True
    assert state.status == "connecting"


@pytest.mark.anyio
async def test_failed_restart_start_is_retried(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    state, _ = await manager.start_session("alice")
    first = fake_factory.latest("alice")
    fake_factory.start_error = RuntimeError("dc unreachable")

    await first.emit(connection="close", status_code=int(DisconnectReason.UNAVAILABLE_SERVICE))
    await asyncio.sleep(0.05)

    failed = fake_factory.for_session("alice")[1:]
    assert failed
    assert all(conn.closed for conn in failed)
    assert state.connection is None or state.connection in failed
    assert manager.get("alice") is state

    fake_factory.start_error = None
    await asyncio.sleep(0.05)

    latest = fake_factory.latest("alice")
    assert latest.started is True
    assert state.connection is latest


@pytest.mark.anyio
async def test_start_session_rebuilds_after_failed_restart(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    state, _ = await manager.start_session("alice")
    fake_factory.build_error = OSError("session file locked")
    await fake_factory.latest("alice").emit(
        connection="close", status_code=int(DisconnectReason.TIMED_OUT)
    )
    await asyncio.sleep(0.05)
    assert state.connection is None
    pending = state.restart_task

    fake_factory.build_error = None
    again, created = await manager.start_session("alice")
    await asyncio.sleep(0.05)

    assert again is state
    assert created is True
    assert state.connection is fake_factory.latest("alice")
    assert state.connection.started is True
    assert pending is not None and pending.cancelled()
    assert len(fake_factory.for_session("alice")) == 2


@pytest.mark.anyio
async def test_logged_out_close_retires_session(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    state, _ = await manager.start_session("alice")
    connection = fake_factory.latest("alice")
    await connection.emit(qr="tg://login?token=abc")

    await connection.emit(connection="close", status_code=int(DisconnectReason.LOGGED_OUT))
    await asyncio.sleep(0.05)

    assert len(fake_factory.for_session("alice")) == 1
    assert state.retired is True
    assert state.last_qr is None
    assert state.status == "logged_out"
    assert manager.get("alice") is state


@pytest.mark.anyio
async def test_retired_session_can_be_started_again(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    await manager.start_session("alice")
    session_file = tmp_path / "alice" / "telethon.session"
    session_file.write_bytes(b"stale")
    await fake_factory.latest("alice").emit(
        connection="close", status_code=int(DisconnectReason.LOGGED_OUT)
    )

    state, created = await manager.start_session("alice")

    assert created is True
    assert state.retired is False
    assert not session_file.exists()
    assert len(fake_factory.for_session("alice")) == 2


@pytest.mark.anyio
async def test_updates_from_replaced_connection_are_ignored(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    state, _ = await manager.start_session("alice")
    first = fake_factory.latest("alice")
    await first.emit(connection="close", status_code=int(DisconnectReason.BAD_SESSION))
    await asyncio.sleep(0.05)

    await first.emit(connection="open")

    assert state.is_connected is False


@pytest.mark.anyio
async def test_delete_session_logs_out_and_cancels_restart(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    await manager.start_session("alice")
    connection = fake_factory.latest("alice")
    connection.fail_logout = RuntimeError("network down")
    await connection.emit(connection="close", status_code=int(DisconnectReason.TIMED_OUT))

    deleted = await manager.delete_session("alice")
    await asyncio.sleep(0.05)

    assert deleted is True
    assert connection.logged_out is True
    assert connection.closed is True
    assert manager.get("alice") is None
    assert len(fake_factory.connections) == 1
    assert await manager.delete_session("alice") is False


@pytest.mark.anyio
async def test_send_text_requires_connected_session(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    with pytest.raises(SessionNotConnectedError):
        await manager.send_text("ghost", "+1 555 0100", "hi")

    await manager.start_session("alice")
    with pytest.raises(SessionNotConnectedError):
        await manager.send_text("alice", "+1 555 0100", "hi")


@pytest.mark.anyio
async def test_send_text_normalizes_recipient(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    await manager.start_session("alice")
    connection = fake_factory.latest("alice")
    await connection.emit(connection="open")

    result = await manager.send_text("alice", "+1 (555) 0100", "hello")

    assert connection.sent == [("+15550100", "hello")]
    assert result.message_id == 4242


@pytest.mark.anyio
async def test_send_text_wraps_library_errors(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    await manager.start_session("alice")
    connection = fake_factory.latest("alice")
    await connection.emit(connection="open")
    connection.fail_send = RuntimeError("flood")

    with pytest.raises(SendFailedError):
        await manager.send_text("alice", "12345", "hello")


@pytest.mark.anyio
async def test_submit_password_flow(tmp_path: Path, fake_factory):
    manager = _manager(tmp_path, fake_factory)
    with pytest.raises(SessionNotFoundError):
        await manager.submit_password("ghost", "secret")

    state, _ = await manager.start_session("alice")
    with pytest.raises(PasswordNotRequestedError):
        await manager.submit_password("alice", "secret")

    connection = fake_factory.latest("alice")
    connection.awaiting_password = True
    await connection.emit(connection="password")
    assert state.status == "awaiting_password"

    await manager.submit_password("alice", "secret")
    assert connection.passwords == ["secret"]


@pytest.mark.anyio
async def test_changes_are_published_to_subscribers(tmp_path: Path, fake_factory):
    broker = StatusBroker()
    manager = _manager(tmp_path, fake_factory, broker=broker)
    queue = broker.subscribe()

    await manager.start_session("alice")
    await fake_factory.latest("alice").emit(connection="open")

    snapshots = []
    while not queue.empty():
        snapshots.append(queue.get_nowait())
    assert snapshots[-1] == [
        {"sessionId": "alice", "isConnected": True, "hasQR": False, "status": "connected"}
    ]


@pytest.mark.anyio
async def test_bootstrap_starts_stored_sessions(tmp_path: Path, fake_factory):
    for name, content in (("alice", b"creds"), ("bob", b""), ("..bad", b"creds")):
        directory = tmp_path / name
        directory.mkdir()
        (directory / "telethon.session").write_bytes(content)
    (tmp_path / "carol").mkdir()

    manager = _manager(tmp_path, fake_factory)
    started = await manager.bootstrap()

    assert started == ["alice"]
    assert manager.get("alice") is not None
    assert manager.get("bob") is None


@pytest.mark.anyio
async def test_shutdown_closes_connections_without_logout(tmp_path: Path, fake_factory):
    broker = StatusBroker()
    manager = _manager(tmp_path, fake_factory, broker=broker)
    queue = broker.subscribe()
    await manager.start_session("alice")
    connection = fake_factory.latest("alice")
    await connection.emit(connection="open")

    await manager.shutdown()

    assert connection.closed is True
    assert connection.logged_out is False
    last = None
    while not queue.empty():
        last = queue.get_nowait()
    assert last is None
