"""
In-memory realtime state: live connections, active users and room presence
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set


@dataclass
class Connection:
    """One authenticated live socket"""

    sid: str
    user_id: str
    username: str
    avatar: Optional[str] = None
    # Public room id plus its storage id, set on join and cleared on leave
    current_room_id: Optional[str] = None
    current_room_storage_id: Optional[str] = None
    fs_unsubscribe: Optional[Callable[[], None]] = None
    executions: Set[str] = field(default_factory=set)

    def in_room(self, room_ref: Optional[str]) -> bool:
        return bool(room_ref) and room_ref in (self.current_room_id, self.current_room_storage_id)

    def identity(self) -> dict:
        return {"userId": self.user_id, "username": self.username, "avatar": self.avatar}


class ConnectionRegistry:
    """Connections by sid plus the active users map (user id -> newest sid)"""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._active_users: Dict[str, str] = {}

    def register(self, conn: Connection) -> None:
        self._connections[conn.sid] = conn
        # Last connect wins; the older socket stays open but is no longer addressable by user
        self._active_users[conn.user_id] = conn.sid

    def unregister(self, sid: str) -> Optional[Connection]:
        conn = self._connections.pop(sid, None)
        if conn and self._active_users.get(conn.user_id) == sid:
            del self._active_users[conn.user_id]
        return conn

    def get(self, sid: str) -> Optional[Connection]:
        return self._connections.get(sid)

    def sid_for_user(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        return self._active_users.get(user_id)

    def in_room(self, room_id: str, user_id: Optional[str] = None) -> List[Connection]:
        """Open connections whose current room is ``room_id``"""
        return [
            c for c in self._connections.values()
            if c.current_room_id == room_id and (user_id is None or c.user_id == user_id)
        ]

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def __len__(self) -> int:
        return len(self._connections)


class RoomMembership:
    """Room id -> set of user ids currently present (not persisted participants)"""

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}

    def add(self, room_id: str, user_id: str) -> None:
        self._rooms.setdefault(room_id, set()).add(user_id)

    def discard(self, room_id: str, user_id: str) -> bool:
        """Remove ``user_id``; drop the room entry once empty. Returns True if removed."""
        members = self._rooms.get(room_id)
        if members is None or user_id not in members:
            return False
        members.discard(user_id)
        if not members:
            del self._rooms[room_id]
        return True

    def members(self, room_id: str) -> Set[str]:
        return set(self._rooms.get(room_id, ()))

    def rooms(self) -> List[str]:
        return list(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms
