import asyncio

import pytest

from collab.errors import ExecutionNotFound, ExternalServiceFailure, UnsupportedLanguage
from collab.executions import TERMINATED_EXIT_CODE, ExecutionManager
from collab.hub import Hub
from collab.state import Connection

from .fakes import FakeExecutor, FakeSocket


@pytest.fixture
def hub_and_socket():
    hub = Hub()
    ws = FakeSocket()
    hub.add("sid_a", ws)
    return hub, ws


@pytest.fixture
def conn() -> Connection:
    return Connection(sid="sid_a", user_id="u1", username="alice")


def _manager(hub, executor=None) -> ExecutionManager:
    return ExecutionManager(hub, executor or FakeExecutor(), input_delay=0, completion_delay=0)


async def test_unsupported_language_creates_nothing(hub_and_socket, conn) -> None:
    hub, ws = hub_and_socket
    manager = _manager(hub)

    with pytest.raises(UnsupportedLanguage) as exc:
        await manager.start(conn, "ex1", "room", "cobol", "DISPLAY 'HI'.")

    assert "ex1" not in manager
    assert len(manager) == 0
    assert ws.sent == []
    assert exc.value.payload()["executionId"] == "ex1"


async def test_run_streams_output_then_completes(hub_and_socket, conn) -> None:
    hub, ws = hub_and_socket
    executor = FakeExecutor(result={
        "stdout": "42\n", "stderr": "warning\n", "compileOutput": "", "exitCode": 0, "status": "success", "memory": 2048,
    })
    manager = _manager(hub, executor)

    await manager.start(conn, "ex1", "room", "py", "print(42)", "stdin")
    await manager.drain()

    assert ws.events() == ["execution-output", "execution-output", "execution-error", "execution-complete"]
    outputs = ws.data("execution-output")
    assert outputs[0]["stream"] == "system"
    assert outputs[1]["output"] == "42\n"
    assert ws.data("execution-error")[0]["error"] == "warning\n"
    complete = ws.data("execution-complete")[0]
    assert complete["exitCode"] == 0
    assert complete["memoryUsed"] == 2048
    assert executor.calls == [("python", "print(42)", "stdin")]
    assert "ex1" not in manager
    assert conn.executions == set()


async def test_backend_failure_emits_error_and_deletes(hub_and_socket, conn) -> None:
    hub, ws = hub_and_socket
    manager = _manager(hub, FakeExecutor(error=ExternalServiceFailure("Code execution failed: down")))

    await manager.start(conn, "ex1", "room", "go", "package main")
    await manager.drain()

    assert ws.data("execution-error")[0]["message"] == "Code execution failed: down"
    assert "execution-complete" not in ws.events()
    assert len(manager) == 0


async def test_stop_unknown_is_noop(hub_and_socket) -> None:
    hub, ws = hub_and_socket
    manager = _manager(hub)

    assert await manager.stop("missing") is False
    assert ws.sent == []


async def test_stop_while_running_drops_late_result(hub_and_socket, conn) -> None:
    hub, ws = hub_and_socket
    executor = FakeExecutor()
    executor.gate = asyncio.Event()
    manager = _manager(hub, executor)

    await manager.start(conn, "ex1", "room", "javascript", "while(true){}")
    await asyncio.sleep(0)
    assert await manager.stop("ex1") is True
    executor.gate.set()
    await manager.drain()

    [complete] = ws.data("execution-complete")
    assert complete["terminated"] is True
    assert complete["exitCode"] == TERMINATED_EXIT_CODE
    assert [o["stream"] for o in ws.data("execution-output")] == ["system"]
    assert "ex1" not in manager


async def test_send_input_unknown_execution(hub_and_socket) -> None:
    hub, _ = hub_and_socket
    manager = _manager(hub)

    with pytest.raises(ExecutionNotFound):
        await manager.send_input("nope", "1")


async def test_send_input_is_simulated(hub_and_socket, conn) -> None:
    hub, ws = hub_and_socket
    executor = FakeExecutor()
    executor.gate = asyncio.Event()
    manager = _manager(hub, executor)
    await manager.start(conn, "ex1", "room", "python", "input()")

    await manager.send_input("ex1", "7")
    await asyncio.sleep(0.01)
    executor.gate.set()
    await manager.drain()

    outputs = ws.data("execution-output")
    assert outputs[1] == {"executionId": "ex1", "output": "7\n", "stream": "stdin"}
    assert outputs[2]["simulated"] is True
    [complete] = ws.data("execution-complete")
    assert complete["simulated"] is True
    assert len(manager) == 0


async def test_abandon_drops_owned_sessions(hub_and_socket, conn) -> None:
    hub, ws = hub_and_socket
    executor = FakeExecutor()
    executor.gate = asyncio.Event()
    manager = _manager(hub, executor)
    await manager.start(conn, "ex1", "room", "rust", "fn main(){}")

    await manager.abandon(conn)
    executor.gate.set()
    await manager.drain()

    assert len(manager) == 0
    assert "execution-complete" not in ws.events()


async def test_coordinator_routes_interactive_events(coordinator, connect, room) -> None:
    a, ws_a = await connect("alice")
    await coordinator.dispatch(a.sid, "join-room", room["room_id"])
    ws_a.clear()

    await coordinator.dispatch(a.sid, "start-interactive-execution", {
        "executionId": "ex9", "roomId": room["room_id"], "language": "brainfuck", "code": "+",
    })
    await coordinator.dispatch(a.sid, "stop-execution", {"executionId": "ex9"})
    await coordinator.dispatch(a.sid, "send-execution-input", {"executionId": "ex9", "input": "1"})

    errors = ws_a.data("execution-error")
    assert [e["code"] for e in errors] == ["unsupported_language", "execution_not_found"]
    assert ws_a.events() == ["execution-error", "execution-error"]
    assert len(coordinator.executions) == 0
