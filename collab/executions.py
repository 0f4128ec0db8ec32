"""
Interactive execution sessions and their streaming protocol

    started -> execution-output* -> execution-complete
    started -> execution-complete (terminated, via stop)
    started -> execution-error -> (session removed)

The Judge0 backend is batch only: stdin is submitted with the source. Input
sent while a run is live is acknowledged and answered with a simulated
continuation (flagged ``simulated: true``); it never reaches the program.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from .errors import ExecutionNotFound, ExternalServiceFailure, MissingField, UnsupportedLanguage
from .judge0 import LANGUAGE_IDS, normalize_language

logger = logging.getLogger("codecollab")

TERMINATED_EXIT_CODE = -1


@dataclass
class ExecutionSession:
    execution_id: str
    room_id: str
    user_id: str
    language: str
    code: str
    sid: str  # owning connection; back-reference only
    start_time: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)


class ExecutionManager:
    """Owns the execution session table. Mutated only by start, send_input and stop."""

    def __init__(self, hub, executor, input_delay: float = 0.5, completion_delay: float = 1.0):
        self.hub = hub
        self.executor = executor
        self.input_delay = input_delay
        self.completion_delay = completion_delay
        self._sessions: Dict[str, ExecutionSession] = {}
        self._tasks: Set[asyncio.Task] = set()

    def get(self, execution_id: str) -> Optional[ExecutionSession]:
        return self._sessions.get(execution_id)

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def _finish(self, session: ExecutionSession) -> bool:
        """Remove ``session`` if it is still the live one for its id"""
        if self._sessions.get(session.execution_id) is not session:
            return False
        del self._sessions[session.execution_id]
        return True

    async def _output(self, session: ExecutionSession, text: str, stream: str = "stdout", **extra) -> None:
        await self.hub.emit(session.sid, "execution-output", {
            "executionId": session.execution_id,
            "output": text,
            "stream": stream,
            **extra,
        })

    async def _error(self, session: ExecutionSession, text: str, stream: str = "stderr") -> None:
        await self.hub.emit(session.sid, "execution-error", {
            "executionId": session.execution_id,
            "error": text,
            "message": text,
            "stream": stream,
        })

    # ============================================================
    # START
    # ============================================================

    async def start(self, conn, execution_id: Optional[str], room_id: str,
                    language: Optional[str], code: Optional[str], stdin: str = "") -> ExecutionSession:
        if not execution_id:
            raise MissingField("executionId")
        lang = normalize_language(language)
        if lang is None:
            raise UnsupportedLanguage(str(language), LANGUAGE_IDS, execution_id)
        if code is None:
            raise MissingField("code")

        session = ExecutionSession(execution_id, room_id, conn.user_id, lang, code, conn.sid)
        self._sessions[execution_id] = session
        conn.executions.add(execution_id)
        logger.info(f"▶️ Execution {execution_id} started: {lang} by {conn.username} in {room_id}")

        await self._output(session, f"Starting {lang} execution...\n", stream="system")
        # The run outlives this call so stop/input events from the same socket are not queued behind it
        self._spawn(self._run(conn, session, stdin))
        return session

    async def _run(self, conn, session: ExecutionSession, stdin: str) -> None:
        execution_id = session.execution_id
        lang, code = session.language, session.code
        try:
            try:
                result = await self.executor.execute(lang, code, stdin)
            except ExternalServiceFailure as e:
                if self._finish(session):
                    await self._error(session, e.message, stream="system")
                return
            except Exception:
                logger.exception(f"Execution {execution_id} crashed")
                if self._finish(session):
                    await self._error(session, "Execution failed", stream="system")
                return

            # Stopped while the call was in flight
            if self._sessions.get(execution_id) is not session:
                logger.info(f"Execution {execution_id} finished after stop; result dropped")
                return

            if result.get("compileOutput"):
                await self._error(session, result["compileOutput"], stream="compile")
            if result.get("stdout"):
                await self._output(session, result["stdout"])
            if result.get("stderr"):
                await self._error(session, result["stderr"])

            if self._finish(session):
                await self.hub.emit(session.sid, "execution-complete", {
                    "executionId": execution_id,
                    "exitCode": result.get("exitCode", 0),
                    "status": result.get("status"),
                    "executionTime": session.elapsed_ms(),
                    "memoryUsed": result.get("memory", 0),
                })
        finally:
            self._finish(session)
            conn.executions.discard(execution_id)

    # ============================================================
    # INPUT (simulated)
    # ============================================================

    async def send_input(self, execution_id: Optional[str], text: Optional[str]) -> None:
        if not execution_id:
            raise MissingField("executionId")
        session = self._sessions.get(execution_id)
        if session is None:
            raise ExecutionNotFound(execution_id)

        await self._output(session, f"{text or ''}\n", stream="stdin")
        self._spawn(self._simulate_continuation(session, text or ""))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Execution task failed: {task.exception()!r}")

    async def _simulate_continuation(self, session: ExecutionSession, text: str) -> None:
        await asyncio.sleep(self.input_delay)
        if self._sessions.get(session.execution_id) is not session:
            return
        await self._output(session, f"Input received: {text}\n", simulated=True)

        await asyncio.sleep(self.completion_delay)
        if self._finish(session):
            await self.hub.emit(session.sid, "execution-complete", {
                "executionId": session.execution_id,
                "exitCode": 0,
                "executionTime": session.elapsed_ms(),
                "memoryUsed": 0,
                "simulated": True,
            })

    async def drain(self) -> None:
        """Wait for in-flight runs and simulated continuations"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ============================================================
    # STOP
    # ============================================================

    async def stop(self, execution_id: Optional[str]) -> bool:
        """Terminate a live session. Unknown ids are ignored."""
        session = self._sessions.get(execution_id) if execution_id else None
        if session is None:
            return False
        # The in-flight HTTP call is not aborted; its result finds no session
        self._finish(session)
        logger.info(f"⏹️ Execution {execution_id} stopped")
        await self.hub.emit(session.sid, "execution-complete", {
            "executionId": execution_id,
            "exitCode": TERMINATED_EXIT_CODE,
            "executionTime": session.elapsed_ms(),
            "memoryUsed": 0,
            "terminated": True,
        })
        return True

    async def abandon(self, conn) -> None:
        """Drop every session owned by a closing connection without emitting"""
        for execution_id in list(conn.executions):
            session = self._sessions.get(execution_id)
            if session is not None and session.sid == conn.sid:
                self._finish(session)
        conn.executions.clear()
