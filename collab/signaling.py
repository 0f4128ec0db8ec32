"""
Directed peer signaling (WebRTC offer/answer/ICE) between specific users
"""
import logging
from typing import Any, Optional

logger = logging.getLogger("codecollab")

# inbound event -> payload field carried to the target
SIGNALS = {
    "video-offer": "offer",
    "video-answer": "answer",
    "ice-candidate": "candidate",
}


class SignalingRelay:
    """Addresses users through the active users map; delivery is best-effort"""

    def __init__(self, registry, hub):
        self.registry = registry
        self.hub = hub

    async def send_to_user(self, user_id: Optional[str], event: str, data: Any) -> bool:
        sid = self.registry.sid_for_user(user_id)
        if sid is None:
            logger.debug(f"No live connection for {user_id}; dropping {event}")
            return False
        return await self.hub.emit(sid, event, data)

    async def relay(self, conn, event: str, data: dict) -> bool:
        field = SIGNALS[event]
        payload = {field: data.get(field), "from": conn.user_id, "username": conn.username}
        if data.get("roomId"):
            payload["roomId"] = data["roomId"]
        return await self.send_to_user(data.get("to"), event, payload)
