"""
WebSocket fan-out: sockets by sid and transport groups (one per room)
"""
import json
import logging
from typing import Any, Dict, Optional, Set

logger = logging.getLogger("codecollab")


def encode(event: str, data: Any = None) -> str:
    return json.dumps({"type": event, "data": data}, default=str)


class Hub:
    """Named-event emitter over aiohttp WebSocketResponse objects"""

    def __init__(self):
        self._sockets: Dict[str, Any] = {}
        self._groups: Dict[str, Set[str]] = {}

    def add(self, sid: str, ws) -> None:
        self._sockets[sid] = ws

    def remove(self, sid: str) -> None:
        self._sockets.pop(sid, None)
        for room in list(self._groups):
            self.leave(sid, room)

    def join(self, sid: str, room: str) -> None:
        self._groups.setdefault(room, set()).add(sid)

    def leave(self, sid: str, room: str) -> None:
        group = self._groups.get(room)
        if group is None:
            return
        group.discard(sid)
        if not group:
            del self._groups[room]

    def group(self, room: str) -> Set[str]:
        return set(self._groups.get(room, ()))

    def __contains__(self, sid: str) -> bool:
        return sid in self._sockets

    async def emit(self, sid: Optional[str], event: str, data: Any = None) -> bool:
        """Send to one socket. Returns False when the sid is unknown or the send failed."""
        if sid is None or sid not in self._sockets:
            return False
        return await self._send(sid, encode(event, data))

    async def emit_to_room(self, room: str, event: str, data: Any = None,
                           skip_sid: Optional[str] = None) -> int:
        """Broadcast to every socket in ``room`` except ``skip_sid``; returns deliveries"""
        message = encode(event, data)
        delivered = 0
        for sid in sorted(self.group(room)):
            if sid == skip_sid:
                continue
            if await self._send(sid, message):
                delivered += 1
        return delivered

    async def _send(self, sid: str, message: str) -> bool:
        ws = self._sockets.get(sid)
        if ws is None:
            return False
        try:
            await ws.send_str(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to socket {sid}: {e}")
            # Dead socket: its reader loop ends and triggers the disconnect teardown
            self.remove(sid)
            return False
