"""
HTTP and WebSocket handlers for the collaboration server
"""
import json
import logging

from aiohttp import web

from .auth import mint_token, token_from_request, verify_token
from .errors import AuthenticationFailed, FileNotFound, ProtocolMisuse
from .judge0 import LANGUAGE_IDS
from .utils import generate_username

logger = logging.getLogger("codecollab")


# ============================================================
# REALTIME SESSION SOCKET
# ============================================================

async def ws_session(request: web.Request) -> web.StreamResponse:
    """One socket per user: authenticate, then pump named events into the coordinator"""
    coordinator = request.app["coordinator"]
    ws = web.WebSocketResponse(heartbeat=25)
    if not ws.can_prepare(request).ok:
        return web.json_response({"ok": False, "error": "WebSocket upgrade required"}, status=400)

    try:
        conn = await coordinator.connect(ws, token_from_request(request))
    except AuthenticationFailed as e:
        logger.warning(f"🔒 Rejected socket from {request.remote}: {e}")
        return web.json_response({"ok": False, "error": str(e)}, status=401)

    try:
        await ws.prepare(request)
        await coordinator.hub.emit(conn.sid, "connected", {
            "userId": conn.user_id,
            "username": conn.username,
        })

        async for msg in ws:
            if msg.type == web.WSMsgType.TEXT:
                # Keepalive
                if msg.data == "ping":
                    await ws.send_str("pong")
                    continue
                try:
                    frame = json.loads(msg.data)
                except ValueError:
                    await coordinator.hub.emit(conn.sid, "error", {"message": "Malformed frame", "code": "bad_frame"})
                    continue
                if not isinstance(frame, dict) or not frame.get("type"):
                    await coordinator.hub.emit(conn.sid, "error", {"message": "Frame has no type", "code": "bad_frame"})
                    continue
                await coordinator.dispatch(conn.sid, frame["type"], frame.get("data"))
            elif msg.type == web.WSMsgType.ERROR:
                logger.debug(f"WebSocket error for {conn.sid}: {ws.exception()}")
    except Exception as e:
        logger.debug(f"WebSocket error: {e}")
    finally:
        await coordinator.disconnect(conn.sid)

    return ws


# ============================================================
# CONFIGURATION / HEALTH
# ============================================================

async def serve_config(request: web.Request) -> web.Response:
    """Return client configuration: socket URL and runnable languages"""
    scheme = "wss" if request.secure else "ws"
    return web.json_response({
        "ws_url": f"{scheme}://{request.host}/ws",
        "languages": sorted(LANGUAGE_IDS),
    })


async def api_health(request: web.Request) -> web.Response:
    coordinator = request.app["coordinator"]
    return web.json_response({
        "ok": True,
        "connections": len(coordinator.registry),
        "rooms": len(coordinator.membership.rooms()),
        "executions": len(coordinator.executions),
        "fileSystems": len(coordinator.vfs.active_rooms()),
    })


# ============================================================
# USER IDENTITY
# ============================================================

async def api_identify(request: web.Request) -> web.Response:
    """Create or reuse a user identity and hand out a socket token"""
    store = request.app["store"]
    try:
        data = await request.json()
    except ValueError:
        data = {}

    reuse_id = data.get("user_id")
    user = await store.find_user(reuse_id) if reuse_id else None
    if user:
        logger.info("♻️ Reusing user %s (%s)", reuse_id, user["username"])
    else:
        user = await store.create_user(data.get("name") or generate_username(), avatar=data.get("avatar"))
        logger.info("👤 New user: %s (%s)", user["username"], user["id"])

    return web.json_response({
        "ok": True,
        "user_id": user["id"],
        "name": user["username"],
        "token": mint_token(user["id"], user["username"]),
    })


# ============================================================
# ROOMS
# ============================================================

async def api_room_create(request: web.Request) -> web.Response:
    """Create a room owned by a known user and open its collaboration session"""
    store = request.app["store"]
    try:
        data = await request.json()
    except ValueError:
        data = {}

    user_id = data.get("user_id")
    if not user_id or await store.find_user(user_id) is None:
        return web.json_response({"ok": False, "error": "unknown user"}, status=400)

    room = await store.create_room(
        data.get("name") or "Untitled Room",
        user_id,
        language=data.get("language") or "javascript",
        settings=data.get("settings"),
    )
    await store.create_session(room["room_id"])
    logger.info("🏠 Room created: %s by %s (ID: %s)", room["name"], user_id, room["room_id"])

    return web.json_response({
        "ok": True,
        "room_id": room["room_id"],
        "room_code": room["room_code"],
    })


async def api_room_presence(request: web.Request) -> web.Response:
    """Live member ids of a room"""
    coordinator = request.app["coordinator"]
    room = await request.app["store"].find_room(request.match_info["room_id"])
    if room is None:
        return web.json_response({"ok": False, "error": "unknown room"}, status=404)

    return web.json_response({
        "ok": True,
        "room_id": room["room_id"],
        "members": sorted(coordinator.membership.members(room["room_id"])),
    })


# ============================================================
# VIRTUAL FILE SYSTEM
# ============================================================

async def _body(request: web.Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


async def _with_room_fs(request: web.Request, operation) -> web.Response:
    """
    Authenticate, resolve the room and run ``operation(fs)`` on its file system.
    Every mutation notifies the room's socket subscribers.
    """
    try:
        user_id = verify_token(token_from_request(request))
    except AuthenticationFailed as e:
        return web.json_response({"ok": False, "error": str(e)}, status=401)

    room = await request.app["store"].find_room(request.match_info["room_id"])
    if room is None:
        return web.json_response({"ok": False, "error": "unknown room"}, status=404)

    fs = request.app["coordinator"].vfs.get(room["room_id"])
    try:
        result = await operation(fs)
    except FileNotFound as e:
        return web.json_response({"ok": False, "error": e.message}, status=404)
    except ProtocolMisuse as e:
        return web.json_response({"ok": False, "error": e.message}, status=400)

    logger.debug(f"VFS {request.method} {request.path} by {user_id}")
    return web.json_response({"ok": True, "result": result})


def _missing(*names: str) -> web.Response:
    return web.json_response({"ok": False, "error": f"{' and '.join(names)} required"}, status=400)


async def api_vfs_tree(request: web.Request) -> web.Response:
    path = request.query.get("path", "/project")
    return await _with_room_fs(request, lambda fs: fs.get_file_tree(path))


async def api_vfs_read(request: web.Request) -> web.Response:
    path = request.query.get("path")
    if not path:
        return _missing("path")

    async def read(fs):
        return {"path": path, "content": await fs.read_file(path)}

    return await _with_room_fs(request, read)


async def api_vfs_write(request: web.Request) -> web.Response:
    data = await _body(request)
    path, content = data.get("path"), data.get("content")
    if not path or content is None:
        return _missing("path", "content")
    return await _with_room_fs(request, lambda fs: fs.write_file(path, content))


async def api_vfs_create(request: web.Request) -> web.Response:
    data = await _body(request)
    path = data.get("path")
    if not path:
        return _missing("path")
    return await _with_room_fs(
        request,
        lambda fs: fs.create_file(path, data.get("content") or "", bool(data.get("isDirectory"))),
    )


async def api_vfs_delete(request: web.Request) -> web.Response:
    data = await _body(request)
    path = data.get("path") or request.query.get("path")
    if not path:
        return _missing("path")
    recursive = request.query.get("recursive") == "true"
    return await _with_room_fs(request, lambda fs: fs.delete_file(path, recursive))


async def api_vfs_rename(request: web.Request) -> web.Response:
    data = await _body(request)
    old_path, new_path = data.get("oldPath"), data.get("newPath")
    if not old_path or not new_path:
        return _missing("oldPath", "newPath")
    return await _with_room_fs(request, lambda fs: fs.rename_file(old_path, new_path))
