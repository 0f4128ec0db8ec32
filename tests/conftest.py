from __future__ import annotations

import os
import socket
from typing import Any, Optional

import pytest

from collab.auth import mint_token
from collab.coordinator import Coordinator
from collab.executions import ExecutionManager
from collab.hub import Hub
from collab.store import RoomStore

from .fakes import FakeExecutor, FakeSocket

LOCAL_HOSTS = {"127.0.0.1", "localhost", "::1", None}

_real_getaddrinfo = socket.getaddrinfo
_real_create_connection = socket.create_connection


class NetworkBlockedError(RuntimeError):
    pass


def _guarded_getaddrinfo(host, *args: Any, **kwargs: Any) -> Any:
    if host in LOCAL_HOSTS:
        return _real_getaddrinfo(host, *args, **kwargs)
    raise NetworkBlockedError(
        "Network access is disabled during tests. "
        "Mark the test with @pytest.mark.network or set ALLOW_NETWORK=1."
    )


def _guarded_create_connection(address, *args: Any, **kwargs: Any) -> Any:
    if address[0] in LOCAL_HOSTS:
        return _real_create_connection(address, *args, **kwargs)
    raise NetworkBlockedError("Network access is disabled during tests.")


@pytest.fixture(autouse=True)
def _disable_network(monkeypatch: pytest.MonkeyPatch, request: pytest.FixtureRequest) -> None:
    """Prevent accidental outbound calls (Judge0) in unit tests; loopback stays open."""

    if os.getenv("ALLOW_NETWORK") == "1" or request.node.get_closest_marker("network"):
        return

    monkeypatch.setattr(socket, "getaddrinfo", _guarded_getaddrinfo)
    monkeypatch.setattr(socket, "create_connection", _guarded_create_connection)


@pytest.fixture
def store() -> RoomStore:
    return RoomStore()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def coordinator(store: RoomStore, executor: FakeExecutor) -> Coordinator:
    hub = Hub()
    executions = ExecutionManager(hub, executor, input_delay=0, completion_delay=0)
    return Coordinator(store, executor, hub=hub, executions=executions)


@pytest.fixture
async def room(store: RoomStore) -> dict:
    owner = await store.create_user("owner")
    room = await store.create_room("Pairing", owner["id"], language="js", code="x")
    await store.create_session(room["room_id"])
    return room


@pytest.fixture
def connect(coordinator: Coordinator, store: RoomStore):
    """Open an authenticated fake socket for a new (or given) user"""

    async def _connect(username: str, user_id: Optional[str] = None):
        user = await store.find_user(user_id) if user_id else None
        if user is None:
            user = await store.create_user(username, avatar=f"{username}.png")
        ws = FakeSocket()
        conn = await coordinator.connect(ws, mint_token(user["id"], user["username"]))
        return conn, ws

    return _connect
