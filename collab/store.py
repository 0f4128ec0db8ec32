"""
Document store for rooms, users and sessions

In-memory, dict-per-document storage reached through async finders and
updaters. Reads return copies so callers never hold live documents.
"""
import copy
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional

from .errors import PersistenceFailure
from .utils import generate_room_code, generate_room_id, generate_storage_id, utc_now

logger = logging.getLogger("codecollab")

ACTIVITY_LOG_CAP = 100

DEFAULT_CODE = "// Start coding here...\n"

# Room settings use the client's camelCase keys
DEFAULT_SETTINGS = {
    "codeExecution": True,
    "whiteboard": True,
    "videoChat": True,
    "screenShare": True,
    "fileSystem": True,
    "maxParticipants": 10,
}

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)
_STORAGE_ID_RE = re.compile(r"^[0-9a-f]{24}$", re.I)


# ============================================================
# ROOM REFERENCES
# ============================================================

class RefKind(Enum):
    EXTERNAL = "external"
    STORAGE = "storage"
    INVALID = "invalid"


@dataclass(frozen=True)
class RoomRef:
    kind: RefKind
    value: str


def parse_room_ref(ref: Any) -> RoomRef:
    """Classify a client supplied room reference. UUID form is checked first."""
    if not isinstance(ref, str):
        return RoomRef(RefKind.INVALID, str(ref))
    ref = ref.strip()
    if _UUID_RE.match(ref):
        return RoomRef(RefKind.EXTERNAL, ref)
    if _STORAGE_ID_RE.match(ref):
        return RoomRef(RefKind.STORAGE, ref)
    return RoomRef(RefKind.INVALID, ref)


def normalize_settings(settings: Optional[dict]) -> dict:
    """Accept ``code_execution`` as well as ``codeExecution``; stored keys are camelCase"""
    normalized = {}
    for key, value in (settings or {}).items():
        head, *rest = str(key).split("_")
        normalized[head + "".join(part.title() for part in rest)] = value
    return normalized


# ============================================================
# BEST-EFFORT WRITES
# ============================================================

@dataclass
class Outcome:
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


async def best_effort(write: Awaitable, what: str) -> Outcome:
    """
    Await a persistence call whose failure must not affect the realtime path.
    The failure is logged here; callers inspect ``ok`` only when they need to.
    """
    try:
        return Outcome(True, await write)
    except Exception as e:
        logger.warning(f"Persistence failed ({what}): {e}")
        return Outcome(False, error=e)


# ============================================================
# STORE
# ============================================================

class RoomStore:
    """Async document store: users, rooms and collaboration sessions"""

    def __init__(self):
        self._users: Dict[str, dict] = {}
        self._rooms: Dict[str, dict] = {}  # storage id -> room
        self._by_room_id: Dict[str, str] = {}  # public room id -> storage id
        self._sessions: Dict[str, dict] = {}

    # ---------- users ----------

    async def create_user(self, username: str, avatar: Optional[str] = None,
                          user_id: Optional[str] = None) -> dict:
        user_id = user_id or generate_storage_id()
        self._users[user_id] = {
            "id": user_id,
            "username": username,
            "avatar": avatar,
            "status": "offline",
            "last_seen": utc_now(),
        }
        return copy.deepcopy(self._users[user_id])

    async def find_user(self, user_id: str) -> Optional[dict]:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def set_user_status(self, user_id: str, status: str) -> None:
        user = self._users.get(user_id)
        if user is None:
            raise PersistenceFailure(f"User {user_id} not found")
        user["status"] = status
        user["last_seen"] = utc_now()

    # ---------- rooms ----------

    async def create_room(self, name: str, owner_id: str, language: str = "javascript",
                          code: str = DEFAULT_CODE, settings: Optional[dict] = None,
                          files: Optional[List[dict]] = None) -> dict:
        storage_id = generate_storage_id()
        room = {
            "_id": storage_id,
            "room_id": generate_room_id(),
            "room_code": generate_room_code(),
            "name": name,
            "owner": owner_id,
            "participants": [{"user": owner_id, "role": "owner", "status": "approved"}],
            "code": code,
            "language": language,
            "settings": {**DEFAULT_SETTINGS, **normalize_settings(settings)},
            "whiteboard": {"data": None, "version": 1, "last_modified": utc_now()},
            "file_system": {"files": files or [], "version": 1, "last_sync": utc_now()},
            "activity": [],
            "stats": {"total_sessions": 0, "total_executions": 0},
            "last_modified": utc_now(),
        }
        self._rooms[storage_id] = room
        self._by_room_id[room["room_id"]] = storage_id
        return copy.deepcopy(room)

    def _lookup(self, ref: Any) -> Optional[dict]:
        parsed = parse_room_ref(ref)
        if parsed.kind is RefKind.EXTERNAL:
            storage_id = self._by_room_id.get(parsed.value)
            if storage_id:
                return self._rooms.get(storage_id)
        if parsed.kind in (RefKind.EXTERNAL, RefKind.STORAGE):
            return self._rooms.get(parsed.value)
        return None

    def _require(self, ref: Any) -> dict:
        room = self._lookup(ref)
        if room is None:
            raise PersistenceFailure(f"Room {ref} not found")
        return room

    async def find_room(self, ref: Any) -> Optional[dict]:
        """Resolve by public UUID first, then by storage id; first match wins"""
        room = self._lookup(ref)
        return copy.deepcopy(room) if room else None

    async def add_participant(self, ref: Any, user_id: str, role: str = "editor") -> None:
        room = self._require(ref)
        if not any(p["user"] == user_id for p in room["participants"]):
            room["participants"].append({"user": user_id, "role": role, "status": "approved"})

    async def update_room_code(self, ref: Any, code: str, language: Optional[str]) -> None:
        room = self._require(ref)
        room["code"] = code
        if language:
            room["language"] = language
        room["last_modified"] = utc_now()

    async def increment_executions(self, ref: Any) -> int:
        room = self._require(ref)
        room["stats"]["total_executions"] += 1
        return room["stats"]["total_executions"]

    async def save_whiteboard(self, ref: Any, data: Optional[str]) -> int:
        """Store the serialized board and bump its version; returns the new version"""
        board = self._require(ref)["whiteboard"]
        board["data"] = data
        board["version"] += 1
        board["last_modified"] = utc_now()
        return board["version"]

    async def append_activity(self, ref: Any, entry: dict, cap: int = ACTIVITY_LOG_CAP) -> int:
        room = self._require(ref)
        room["activity"].append(entry)
        if len(room["activity"]) > cap:
            del room["activity"][:-cap]
        return len(room["activity"])

    async def update_file_content(self, ref: Any, file_id: str, content: str, user_id: str) -> bool:
        """Write ``content`` into the file node with ``file_id`` anywhere in the room's tree"""
        file_system = self._require(ref)["file_system"]
        node = _find_node(file_system["files"], file_id)
        if node is None:
            return False
        node["content"] = content
        node["last_modified"] = utc_now()
        node["modified_by"] = user_id
        file_system["version"] += 1
        file_system["last_sync"] = utc_now()
        return True

    # ---------- sessions ----------

    async def create_session(self, ref: Any) -> dict:
        room = self._require(ref)
        session_id = generate_storage_id()
        self._sessions[session_id] = {
            "_id": session_id,
            "room": room["_id"],
            "participants": [],
            "chat": [],
            "status": "active",
            "started_at": utc_now(),
        }
        room["stats"]["total_sessions"] += 1
        return copy.deepcopy(self._sessions[session_id])

    def _active_session(self, room_storage_id: str) -> Optional[dict]:
        for session in self._sessions.values():
            if session["room"] == room_storage_id and session["status"] == "active":
                return session
        return None

    async def find_active_session(self, room_storage_id: str) -> Optional[dict]:
        session = self._active_session(room_storage_id)
        return copy.deepcopy(session) if session else None

    async def append_chat(self, session_id: str, entry: dict) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            raise PersistenceFailure(f"Session {session_id} not found")
        session["chat"].append(entry)

    async def mark_session_joined(self, room_storage_id: str, user_id: str) -> bool:
        session = self._active_session(room_storage_id)
        if session is None:
            return False
        for participant in session["participants"]:
            if participant["user"] == user_id:
                participant.update(is_active=True, joined_at=utc_now(), left_at=None)
                return True
        session["participants"].append(
            {"user": user_id, "joined_at": utc_now(), "left_at": None, "is_active": True}
        )
        return True

    async def mark_session_left(self, room_storage_id: str, user_id: str) -> bool:
        session = self._active_session(room_storage_id)
        if session is None:
            return False
        for participant in session["participants"]:
            if participant["user"] == user_id and participant["is_active"]:
                participant.update(is_active=False, left_at=utc_now())
                return True
        return False


def _find_node(nodes: List[dict], file_id: str) -> Optional[dict]:
    for node in nodes:
        if node.get("id") == file_id:
            return node
        found = _find_node(node.get("children") or [], file_id)
        if found is not None:
            return found
    return None
