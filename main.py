#!/usr/bin/env python3
"""
CodeCollab realtime server - entry point
WebSocket room sessions + rate limiting + Judge0 execution
"""
import logging
import time
from collections import defaultdict
from typing import Optional

from aiohttp import web

from collab import config
from collab.api import (
    api_health, api_identify, api_room_create, api_room_presence,
    api_vfs_create, api_vfs_delete, api_vfs_read, api_vfs_rename,
    api_vfs_tree, api_vfs_write, serve_config, ws_session,
)
from collab.coordinator import Coordinator
from collab.judge0 import Judge0Client
from collab.store import RoomStore

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("codecollab")


def rate_limit_middleware(limit: int = config.RATE_LIMIT_PER_MINUTE):
    """Simple rate limiting: ``limit`` requests per minute per IP"""
    hits = defaultdict(list)

    @web.middleware
    async def middleware(request, handler):
        # Long-lived sockets are not request traffic
        if request.path == "/ws":
            return await handler(request)

        ip = request.remote
        now = time.time()
        hits[ip] = [t for t in hits[ip] if now - t < 60]

        if len(hits[ip]) >= limit:
            logger.warning(f"Rate limit exceeded for {ip}")
            return web.json_response(
                {"ok": False, "error": "Rate limit exceeded"},
                status=429
            )

        hits[ip].append(now)
        return await handler(request)

    return middleware


async def close_executor(app: web.Application) -> None:
    await app["executor"].close()


def create_app(store: Optional[RoomStore] = None, executor=None,
               rate_limit: int = config.RATE_LIMIT_PER_MINUTE) -> web.Application:
    """Create and configure the aiohttp application"""
    app = web.Application(middlewares=[rate_limit_middleware(rate_limit)])

    app["store"] = store or RoomStore()
    app["executor"] = executor or Judge0Client()
    app["coordinator"] = Coordinator(app["store"], app["executor"])

    app.router.add_get("/health", api_health)
    app.router.add_get("/config", serve_config)
    app.router.add_post("/user/identify", api_identify)
    app.router.add_post("/room/create", api_room_create)
    app.router.add_get("/rooms/{room_id}/presence", api_room_presence)

    # Room virtual file system; mutations reach socket subscribers
    app.router.add_get("/rooms/{room_id}/virtual/tree", api_vfs_tree)
    app.router.add_get("/rooms/{room_id}/virtual/read", api_vfs_read)
    app.router.add_post("/rooms/{room_id}/virtual/write", api_vfs_write)
    app.router.add_post("/rooms/{room_id}/virtual/create", api_vfs_create)
    app.router.add_delete("/rooms/{room_id}/virtual/delete", api_vfs_delete)
    app.router.add_put("/rooms/{room_id}/virtual/rename", api_vfs_rename)

    # Realtime room sessions
    app.router.add_get("/ws", ws_session)

    if hasattr(app["executor"], "close"):
        app.on_cleanup.append(close_executor)

    logger.info("🧑‍💻 CodeCollab server ready • WebSocket rooms • Judge0 execution")
    return app


def main():
    app = create_app()
    logger.info(f"🚀 Starting server on {config.SERVER_HOST}:{config.PORT}")
    web.run_app(app, host=config.SERVER_HOST, port=config.PORT)


if __name__ == "__main__":
    main()
