"""
Room session coordinator

Single entry point for every event on an authenticated socket. Owns the
connection registry, room presence, the execution table and the transport
groups; everything persistent goes through the store as best-effort writes
that never hold back the realtime relay.
"""
import asyncio
import functools
import json
import logging
from typing import Any, Optional, Set

from .auth import verify_token
from .errors import (
    AuthenticationFailed, CollabError, ExecutionNotAllowed, MissingField,
    NotRoomMember, RoomNotFound, WhiteboardDisabled,
)
from .executions import ExecutionManager
from .hub import Hub
from .signaling import SIGNALS, SignalingRelay
from .state import Connection, ConnectionRegistry, RoomMembership
from .store import best_effort
from .utils import generate_message_id, generate_sid, iso_now
from .vfs import VirtualFileSystem

logger = logging.getLogger("codecollab")

# Relayed to the rest of the room under the same name, with attribution
PASSTHROUGH_EVENTS = (
    "active-file-changed",
    "file-tree-updated",
    "language-changed",
    "code-execution-result",
)


def _room_ref(data: Any) -> Optional[str]:
    """Room events carry either a bare room id or ``{"roomId": ...}``"""
    if isinstance(data, dict):
        return data.get("roomId")
    if isinstance(data, str):
        return data
    return None


def _require(data: Any, name: str) -> Any:
    value = data.get(name) if isinstance(data, dict) else None
    if value is None or value == "":
        raise MissingField(name)
    return value


class Coordinator:
    def __init__(self, store, executor, hub: Optional[Hub] = None,
                 vfs: Optional[VirtualFileSystem] = None,
                 executions: Optional[ExecutionManager] = None):
        self.store = store
        self.executor = executor
        self.hub = hub or Hub()
        self.vfs = vfs or VirtualFileSystem()
        self.registry = ConnectionRegistry()
        self.membership = RoomMembership()
        self.executions = executions or ExecutionManager(self.hub, executor)
        self.signaling = SignalingRelay(self.registry, self.hub)
        self._tasks: Set[asyncio.Task] = set()

        self._handlers = {
            "join-room": self.join_room,
            "leave-room": self.leave_room,
            "code-change": self.code_change,
            "execute-code": self.execute_code,
            "cursor-position": self.cursor_position,
            "typing-start": self.typing_start,
            "typing-stop": self.typing_stop,
            "chat-message": self.chat_message,
            "whiteboard-draw": self.whiteboard_draw,
            "whiteboard-clear": self.whiteboard_clear,
            "whiteboard-sync-request": self.whiteboard_sync_request,
            "whiteboard-cursor": self.whiteboard_cursor,
            "screen-share-start": self.screen_share_start,
            "screen-share-stop": self.screen_share_stop,
            "file-content-changed": self.file_content_changed,
            "user-activity": self.user_activity,
            "subscribe-to-file-system": self.subscribe_to_file_system,
            "unsubscribe-from-file-system": self.unsubscribe_from_file_system,
            "start-interactive-execution": self.start_interactive_execution,
            "send-execution-input": self.send_execution_input,
            "stop-execution": self.stop_execution,
        }
        for event in SIGNALS:
            self._handlers[event] = functools.partial(self._signal, event=event)
        for event in PASSTHROUGH_EVENTS:
            self._handlers[event] = functools.partial(self._passthrough, event=event)
        # Batch runs wait on the execution API; the socket keeps reading meanwhile
        self._background = {"execute-code"}

    @property
    def events(self):
        return sorted(self._handlers)

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def connect(self, ws, token: Optional[str]) -> Connection:
        """Authenticate and register a socket. Raises AuthenticationFailed."""
        user_id = verify_token(token)
        user = await self.store.find_user(user_id)
        if user is None:
            raise AuthenticationFailed(f"Unknown user {user_id}")

        conn = Connection(
            sid=generate_sid(),
            user_id=user_id,
            username=user.get("username") or user_id,
            avatar=user.get("avatar"),
        )
        self.registry.register(conn)
        self.hub.add(conn.sid, ws)
        await best_effort(self.store.set_user_status(user_id, "online"), "presence online")
        logger.info(f"🔌 {conn.username} connected ({conn.sid}, {len(self.registry)} live)")
        return conn

    async def disconnect(self, sid: str) -> None:
        conn = self.registry.unregister(sid)
        self.hub.remove(sid)
        if conn is None:
            return

        self._release_subscription(conn)
        await self.executions.abandon(conn)
        if self.registry.sid_for_user(conn.user_id) is None:
            await best_effort(self.store.set_user_status(conn.user_id, "offline"), "presence offline")

        room_id, storage_id = conn.current_room_id, conn.current_room_storage_id
        conn.current_room_id = conn.current_room_storage_id = None
        if room_id:
            self._drop_presence(room_id, conn.user_id)
            await best_effort(self.store.mark_session_left(storage_id, conn.user_id), "session left")
            room = (await best_effort(self.store.find_room(room_id), "participants lookup")).value
            participants = await self._participants(room_id, room)
            await self.hub.emit_to_room(room_id, "room-participants-updated", participants)
            await self.hub.emit_to_room(room_id, "user-disconnected", {
                "userId": conn.user_id,
                "username": conn.username,
            })
        logger.info(f"👋 {conn.username} disconnected ({sid})")

    async def dispatch(self, sid: str, event: str, data: Any = None) -> None:
        """Route one inbound event. No exception escapes."""
        conn = self.registry.get(sid)
        if conn is None:
            return
        handler = self._handlers.get(event)
        if handler is None:
            await self.hub.emit(sid, "error", {"message": f"Unknown event: {event}", "code": "unknown_event"})
            return
        if event in self._background:
            self._spawn(self._guarded(conn, event, handler, data))
        else:
            await self._guarded(conn, event, handler, data)

    async def _guarded(self, conn: Connection, event: str, handler, data: Any) -> None:
        try:
            await handler(conn, data)
        except CollabError as e:
            logger.info(f"{event} from {conn.username} rejected: {e.message}")
            await self.hub.emit(conn.sid, e.event, e.payload())
        except Exception:
            logger.exception(f"{event} handler failed for {conn.username}")
            await self.hub.emit(conn.sid, "error", {"message": f"Failed to handle {event}", "code": "internal"})

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for background handlers and execution tasks"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.executions.drain()

    # ============================================================
    # HELPERS
    # ============================================================

    def _member_room(self, conn: Connection, data: Any) -> str:
        """Canonical room id for a room-scoped event; the sender must be in that room"""
        ref = _room_ref(data)
        if not ref:
            raise MissingField("roomId")
        if not conn.in_room(ref):
            raise NotRoomMember()
        return conn.current_room_id

    def _attribution(self, conn: Connection) -> dict:
        return {"userId": conn.user_id, "username": conn.username, "timestamp": iso_now()}

    async def _relay(self, conn: Connection, room_id: str, event: str, data: Any) -> int:
        return await self.hub.emit_to_room(room_id, event, data, skip_sid=conn.sid)

    def _drop_presence(self, room_id: str, user_id: str) -> None:
        # Another tab of the same user still in the room keeps the identity present
        if not self.registry.in_room(room_id, user_id):
            self.membership.discard(room_id, user_id)

    async def _participants(self, room_id: str, room: Optional[dict]) -> list:
        """Live members of ``room_id`` enriched with their persisted participant record"""
        records = {p["user"]: p for p in (room or {}).get("participants", [])}
        participants = []
        for user_id in sorted(self.membership.members(room_id)):
            live = self.registry.in_room(room_id, user_id)
            record = records.get(user_id)
            if record is None and not live:
                continue
            entry = {
                "userId": user_id,
                "username": live[0].username if live else user_id,
                "avatar": live[0].avatar if live else None,
                "role": record["role"] if record else "guest",
                "isActive": bool(live),
            }
            if record is not None and not live:
                user = (await best_effort(self.store.find_user(user_id), "participant profile")).value
                if user:
                    entry.update(username=user.get("username"), avatar=user.get("avatar"))
            participants.append(entry)
        return participants

    def _release_subscription(self, conn: Connection) -> None:
        if conn.fs_unsubscribe is not None:
            conn.fs_unsubscribe()
            conn.fs_unsubscribe = None

    # ============================================================
    # ROOM MEMBERSHIP
    # ============================================================

    async def join_room(self, conn: Connection, data: Any) -> None:
        ref = _room_ref(data)
        if not ref:
            raise MissingField("roomId")
        room = await self.store.find_room(ref)
        if room is None:
            raise RoomNotFound()

        room_id = room["room_id"]
        if conn.current_room_id and conn.current_room_id != room_id:
            await self._leave(conn)

        self.hub.join(conn.sid, room_id)
        conn.current_room_id = room_id
        conn.current_room_storage_id = room["_id"]
        self.membership.add(room_id, conn.user_id)
        await best_effort(self.store.mark_session_joined(room["_id"], conn.user_id), "session join")

        await self._relay(conn, room_id, "user-joined", conn.identity())

        participants = await self._participants(room_id, room)
        await self.hub.emit(conn.sid, "room-participants", participants)
        await self._relay(conn, room_id, "room-participants-updated", participants)
        await self.hub.emit(conn.sid, "code-sync", {"code": room.get("code"), "language": room.get("language")})
        logger.info(f"✅ {conn.username} joined {room.get('name')} ({room_id})")

    async def leave_room(self, conn: Connection, data: Any) -> None:
        ref = _room_ref(data)
        if not ref:
            raise MissingField("roomId")
        if not conn.in_room(ref):
            logger.debug(f"{conn.username} left {ref} without being in it")
            return
        await self._leave(conn)
        await best_effort(self.store.set_user_status(conn.user_id, "online"), "presence online")

    async def _leave(self, conn: Connection) -> None:
        room_id, storage_id = conn.current_room_id, conn.current_room_storage_id
        self.hub.leave(conn.sid, room_id)
        conn.current_room_id = conn.current_room_storage_id = None
        self._release_subscription(conn)
        await best_effort(self.store.mark_session_left(storage_id, conn.user_id), "session left")
        self._drop_presence(room_id, conn.user_id)
        await self.hub.emit_to_room(room_id, "user-left", {"userId": conn.user_id, "username": conn.username})
        logger.info(f"🚪 {conn.username} left {room_id}")

    # ============================================================
    # CODE
    # ============================================================

    async def code_change(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        code = _require(data, "code")
        language = data.get("language")

        # Last write wins; ``operation`` is forwarded untouched
        await best_effort(self.store.update_room_code(room_id, code, language), "code change")
        await self._relay(conn, room_id, "code-update", {
            "code": code,
            "language": language,
            "cursor": data.get("cursor"),
            "operation": data.get("operation"),
            **self._attribution(conn),
        })

    async def execute_code(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        room = await self.store.find_room(room_id)
        if room is None:
            raise RoomNotFound()
        if not room.get("settings", {}).get("codeExecution", True):
            raise ExecutionNotAllowed()
        code = _require(data, "code")
        language = data.get("language") or room.get("language")

        await self.hub.emit(conn.sid, "execution-started", {"status": "running", "language": language})
        result = await self.executor.execute(language, code, data.get("input") or "")
        await self.hub.emit_to_room(room_id, "execution-result", {
            **result,
            "language": language,
            **self._attribution(conn),
        })
        await best_effort(self.store.increment_executions(room_id), "execution counter")

    async def cursor_position(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        position = _require(data, "position")
        await self._relay(conn, room_id, "cursor-update", {
            "userId": conn.user_id,
            "username": conn.username,
            "position": position,
            "selection": data.get("selection"),
        })

    async def typing_start(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        await self._relay(conn, room_id, "user-typing", {"userId": conn.user_id, "username": conn.username})

    async def typing_stop(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        await self._relay(conn, room_id, "user-stopped-typing", {"userId": conn.user_id, "username": conn.username})

    # ============================================================
    # CHAT / ACTIVITY
    # ============================================================

    async def chat_message(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        message = _require(data, "message")
        kind = data.get("type") or "text"
        timestamp = iso_now()

        await best_effort(self._persist_chat(conn, room_id, message, kind, timestamp), "chat log")
        await self.hub.emit_to_room(room_id, "new-message", {
            "id": generate_message_id(conn.user_id),
            "userId": conn.user_id,
            "username": conn.username,
            "avatar": conn.avatar,
            "message": message,
            "type": kind,
            "timestamp": timestamp,
        })

    async def _persist_chat(self, conn: Connection, room_id: str, message: str, kind: str, timestamp: str) -> bool:
        room = await self.store.find_room(room_id)
        if room is None:
            return False
        session = await self.store.find_active_session(room["_id"])
        if session is None:
            return False
        await self.store.append_chat(session["_id"], {
            "user": conn.user_id,
            "message": message,
            "type": kind,
            "timestamp": timestamp,
        })
        return True

    async def user_activity(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        activity = _require(data, "activity")
        timestamp = iso_now()
        await best_effort(self.store.append_activity(room_id, {
            "user": conn.user_id,
            "action": activity,
            "data": data.get("data"),
            "timestamp": timestamp,
        }), "activity log")
        await self._relay(conn, room_id, "user-activity", {
            "userId": conn.user_id,
            "username": conn.username,
            "activity": activity,
            "data": data.get("data"),
            "timestamp": timestamp,
        })

    # ============================================================
    # WHITEBOARD
    # ============================================================

    async def _require_whiteboard(self, room_id: str) -> None:
        room = await self.store.find_room(room_id)
        if room is not None and not room.get("settings", {}).get("whiteboard", True):
            raise WhiteboardDisabled()

    async def whiteboard_draw(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        await self._require_whiteboard(room_id)
        draw_data = _require(data, "drawData")
        saved = await best_effort(self.store.save_whiteboard(room_id, json.dumps(draw_data)), "whiteboard draw")
        await self._relay(conn, room_id, "whiteboard-update", {
            "drawData": draw_data,
            "version": saved.value,
            "userId": conn.user_id,
            "username": conn.username,
        })

    async def whiteboard_clear(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        await self._require_whiteboard(room_id)
        saved = await best_effort(self.store.save_whiteboard(room_id, None), "whiteboard clear")
        await self._relay(conn, room_id, "whiteboard-cleared", {"userId": conn.user_id, "version": saved.value})

    async def whiteboard_sync_request(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        room = await self.store.find_room(room_id)
        board = (room or {}).get("whiteboard") or {}
        if board.get("data") is None:
            return
        await self.hub.emit(conn.sid, "whiteboard-sync", {
            "drawData": json.loads(board["data"]),
            "version": board.get("version"),
        })

    async def whiteboard_cursor(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        position = _require(data, "position")
        await self._relay(conn, room_id, "whiteboard-cursor-update", {
            "userId": conn.user_id,
            "username": conn.username,
            "position": position,
            "color": data.get("color"),
        })

    # ============================================================
    # SIGNALING / SCREEN SHARE
    # ============================================================

    async def _signal(self, conn: Connection, data: Any, event: str) -> None:
        if isinstance(data, dict):
            await self.signaling.relay(conn, event, data)

    async def screen_share_start(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        await self._relay(conn, room_id, "user-screen-sharing", {"userId": conn.user_id, "username": conn.username})

    async def screen_share_stop(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        await self._relay(conn, room_id, "user-stopped-screen-sharing", {"userId": conn.user_id, "username": conn.username})

    # ============================================================
    # FILES
    # ============================================================

    async def file_content_changed(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        file_id = _require(data, "fileId")
        content = data.get("content") or ""
        await best_effort(
            self.store.update_file_content(room_id, file_id, content, conn.user_id), "file content"
        )
        await self._relay(conn, room_id, "file-content-changed", {
            "fileId": file_id,
            "content": content,
            **self._attribution(conn),
        })

    async def _passthrough(self, conn: Connection, data: Any, event: str) -> None:
        room_id = self._member_room(conn, data)
        payload = {k: v for k, v in data.items() if k != "roomId"} if isinstance(data, dict) else {}
        await self._relay(conn, room_id, event, {**payload, **self._attribution(conn)})

    async def subscribe_to_file_system(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        # One subscription per socket
        self._release_subscription(conn)
        fs = self.vfs.get(room_id)
        hub, sid = self.hub, conn.sid

        async def forward(event: str, payload: dict) -> None:
            await hub.emit(sid, "virtual-fs-event", {"event": event, "data": payload, "timestamp": iso_now()})

        conn.fs_unsubscribe = fs.subscribe(forward)
        await forward("subscribed", {"roomId": room_id, "tree": await fs.get_file_tree()})

    async def unsubscribe_from_file_system(self, conn: Connection, data: Any = None) -> None:
        self._release_subscription(conn)

    # ============================================================
    # INTERACTIVE EXECUTION
    # ============================================================

    async def start_interactive_execution(self, conn: Connection, data: Any) -> None:
        room_id = self._member_room(conn, data)
        await self.executions.start(
            conn,
            data.get("executionId"),
            room_id,
            data.get("language"),
            data.get("code"),
            data.get("input") or "",
        )

    async def send_execution_input(self, conn: Connection, data: Any) -> None:
        if not isinstance(data, dict):
            raise MissingField("executionId")
        await self.executions.send_input(data.get("executionId"), data.get("input"))

    async def stop_execution(self, conn: Connection, data: Any) -> None:
        if isinstance(data, dict):
            await self.executions.stop(data.get("executionId"))
