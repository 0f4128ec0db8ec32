import pytest

from collab.errors import FileNotFound, ProtocolMisuse
from collab.vfs import RoomFileSystem, VirtualFileSystem


@pytest.fixture
def fs() -> RoomFileSystem:
    return RoomFileSystem("room-1")


async def test_default_project_tree(fs: RoomFileSystem) -> None:
    tree = await fs.get_file_tree()

    assert tree["path"] == "/project"
    assert [child["name"] for child in tree["children"]] == ["README.md", "main.js", "package.json"]
    assert "Hello, World!" in await fs.read_file("project/main.js")


async def test_crud_notifies_subscribers(fs: RoomFileSystem) -> None:
    events = []

    async def listener(event, data):
        events.append((event, data))

    unsubscribe = fs.subscribe(listener)
    await fs.create_file("/project/src", is_directory=True)
    await fs.create_file("/project/src/app.py", "print(1)")
    await fs.write_file("/project/src/app.py", "print(2)")
    await fs.rename_file("/project/src", "/project/lib")
    await fs.delete_file("/project/lib", recursive=True)
    unsubscribe()
    await fs.write_file("/project/main.js", "")

    assert [e for e, _ in events] == [
        "file_created", "file_created", "file_updated", "file_renamed", "file_deleted",
    ]
    assert events[3][1] == {"oldPath": "/project/src", "newPath": "/project/lib"}
    assert fs.subscriber_count == 0


async def test_rename_moves_children(fs: RoomFileSystem) -> None:
    await fs.create_file("/project/src", is_directory=True)
    await fs.create_file("/project/src/app.py", "x")

    await fs.rename_file("/project/src", "/project/lib")

    assert await fs.read_file("/project/lib/app.py") == "x"
    with pytest.raises(FileNotFound):
        await fs.read_file("/project/src/app.py")


async def test_misuse_is_rejected(fs: RoomFileSystem) -> None:
    with pytest.raises(ProtocolMisuse):
        await fs.create_file("/project/main.js")
    with pytest.raises(FileNotFound):
        await fs.create_file("/missing/dir/file.txt")
    with pytest.raises(ProtocolMisuse):
        await fs.delete_file("/project")
    with pytest.raises(ProtocolMisuse):
        await fs.write_file("/project", "x")


async def test_failing_subscriber_does_not_break_others(fs: RoomFileSystem) -> None:
    seen = []

    async def broken(event, data):
        raise RuntimeError("socket gone")

    async def healthy(event, data):
        seen.append(event)

    fs.subscribe(broken)
    fs.subscribe(healthy)
    await fs.write_file("/project/main.js", "x")

    assert seen == ["file_updated"]


def test_registry_is_lazy_per_room() -> None:
    vfs = VirtualFileSystem()

    assert vfs.get("a") is vfs.get("a")
    assert vfs.get("a") is not vfs.get("b")
    assert vfs.active_rooms() == ["a", "b"]
