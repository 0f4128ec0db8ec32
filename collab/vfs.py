"""
Per-room virtual file system

A path-keyed in-memory store with CRUD and subscribe/notify. Directories are
stored with a ``None`` value.
"""
import json
import logging
import posixpath
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .errors import FileNotFound, ProtocolMisuse

logger = logging.getLogger("codecollab")

Subscriber = Callable[[str, dict], Awaitable[None]]

ROOT = "/project"

DEFAULT_TREE = {
    ROOT: None,
    f"{ROOT}/main.js": '// Welcome to CodeCollab Studio!\nconsole.log("Hello, World!");\n',
    f"{ROOT}/README.md": (
        "# CodeCollab Project\n\n"
        "Welcome to your collaborative coding environment!\n\n"
        "1. Write your code in the editor\n"
        "2. Use the file explorer to create new files\n"
        "3. Run your code to see the output\n"
    ),
    f"{ROOT}/package.json": json.dumps({
        "name": "codecollab-project",
        "version": "1.0.0",
        "main": "main.js",
        "scripts": {"start": "node main.js"},
    }, indent=2),
}


def normalize_path(path: str) -> str:
    if not path:
        return ROOT
    path = posixpath.normpath("/" + path.lstrip("/"))
    return path


class RoomFileSystem:
    def __init__(self, room_id: str):
        self.room_id = room_id
        self._entries: Dict[str, Optional[str]] = dict(DEFAULT_TREE)
        self._subscribers: Set[Subscriber] = set()

    # ---------- subscribe / notify ----------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; the returned handle removes it again"""
        self._subscribers.add(callback)

        def unsubscribe() -> None:
            self._subscribers.discard(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def notify(self, event: str, data: dict) -> None:
        for callback in list(self._subscribers):
            try:
                await callback(event, data)
            except Exception as e:
                logger.debug(f"VFS subscriber failed for {self.room_id}: {e}")

    # ---------- CRUD ----------

    def _require_parent(self, path: str) -> None:
        parent = posixpath.dirname(path)
        if parent != "/" and parent not in self._entries:
            raise FileNotFound(f"Directory {parent} does not exist")

    async def create_file(self, path: str, content: str = "", is_directory: bool = False) -> dict:
        path = normalize_path(path)
        if path in self._entries:
            raise ProtocolMisuse(f"{path} already exists")
        self._require_parent(path)
        self._entries[path] = None if is_directory else content
        info = {"path": path, "type": "directory" if is_directory else "file"}
        await self.notify("file_created", info)
        return info

    async def read_file(self, path: str) -> str:
        path = normalize_path(path)
        content = self._entries.get(path)
        if content is None:
            raise FileNotFound(f"File {path} not found")
        return content

    async def write_file(self, path: str, content: str) -> dict:
        path = normalize_path(path)
        if self._entries.get(path, "") is None:
            raise ProtocolMisuse(f"{path} is a directory")
        if path not in self._entries:
            self._require_parent(path)
        self._entries[path] = content
        info = {"path": path, "size": len(content)}
        await self.notify("file_updated", info)
        return info

    async def delete_file(self, path: str, recursive: bool = False) -> dict:
        path = normalize_path(path)
        if path not in self._entries:
            raise FileNotFound(f"{path} not found")
        children = [p for p in self._entries if p.startswith(path + "/")]
        if children and not recursive:
            raise ProtocolMisuse(f"Directory {path} is not empty")
        for p in children + [path]:
            del self._entries[p]
        info = {"path": path}
        await self.notify("file_deleted", info)
        return info

    async def rename_file(self, old_path: str, new_path: str) -> dict:
        old_path, new_path = normalize_path(old_path), normalize_path(new_path)
        if old_path not in self._entries:
            raise FileNotFound(f"{old_path} not found")
        if new_path in self._entries:
            raise ProtocolMisuse(f"{new_path} already exists")
        self._require_parent(new_path)
        moved = {p: v for p, v in self._entries.items() if p == old_path or p.startswith(old_path + "/")}
        for p, v in moved.items():
            del self._entries[p]
            self._entries[new_path + p[len(old_path):]] = v
        info = {"oldPath": old_path, "newPath": new_path}
        await self.notify("file_renamed", info)
        return info

    async def list_directory(self, path: str = ROOT) -> List[dict]:
        path = normalize_path(path)
        if path not in self._entries or self._entries[path] is not None:
            raise FileNotFound(f"Directory {path} not found")
        items = []
        for p in sorted(self._entries):
            if posixpath.dirname(p) == path and p != path:
                value = self._entries[p]
                items.append({
                    "name": posixpath.basename(p),
                    "path": p,
                    "type": "directory" if value is None else "file",
                    "size": 0 if value is None else len(value),
                })
        return items

    async def get_file_tree(self, path: str = ROOT) -> dict:
        path = normalize_path(path)
        if path not in self._entries:
            raise FileNotFound(f"{path} not found")
        if self._entries[path] is not None:
            return {"name": posixpath.basename(path), "path": path, "type": "file"}
        children = [await self.get_file_tree(item["path"]) for item in await self.list_directory(path)]
        return {"name": posixpath.basename(path), "path": path, "type": "directory", "children": children}


class VirtualFileSystem:
    """Room id -> RoomFileSystem, created lazily"""

    def __init__(self):
        self._rooms: Dict[str, RoomFileSystem] = {}

    def get(self, room_id: str) -> RoomFileSystem:
        if room_id not in self._rooms:
            self._rooms[room_id] = RoomFileSystem(room_id)
        return self._rooms[room_id]

    def active_rooms(self) -> List[str]:
        return list(self._rooms)
