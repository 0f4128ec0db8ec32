from collab.state import Connection, ConnectionRegistry, RoomMembership


def test_last_connect_wins() -> None:
    registry = ConnectionRegistry()
    old = Connection(sid="s1", user_id="u1", username="alice")
    new = Connection(sid="s2", user_id="u1", username="alice")

    registry.register(old)
    registry.register(new)

    assert registry.sid_for_user("u1") == "s2"
    # the old socket is still registered, just no longer addressable by user
    assert registry.get("s1") is old


def test_unregister_stale_connection_keeps_newest() -> None:
    registry = ConnectionRegistry()
    registry.register(Connection(sid="s1", user_id="u1", username="alice"))
    registry.register(Connection(sid="s2", user_id="u1", username="alice"))

    registry.unregister("s1")
    assert registry.sid_for_user("u1") == "s2"

    registry.unregister("s2")
    assert registry.sid_for_user("u1") is None
    assert len(registry) == 0


def test_in_room_filters_by_room_and_user() -> None:
    registry = ConnectionRegistry()
    a = Connection(sid="s1", user_id="u1", username="alice", current_room_id="r1")
    b = Connection(sid="s2", user_id="u2", username="bob", current_room_id="r1")
    c = Connection(sid="s3", user_id="u3", username="carol", current_room_id="r2")
    for conn in (a, b, c):
        registry.register(conn)

    assert {conn.sid for conn in registry.in_room("r1")} == {"s1", "s2"}
    assert registry.in_room("r1", "u2") == [b]


def test_connection_matches_either_room_id() -> None:
    conn = Connection(sid="s1", user_id="u1", username="alice",
                      current_room_id="uuid", current_room_storage_id="oid")

    assert conn.in_room("uuid")
    assert conn.in_room("oid")
    assert not conn.in_room("other")
    assert not conn.in_room(None)


def test_membership_entry_lifecycle() -> None:
    membership = RoomMembership()
    assert "r1" not in membership

    membership.add("r1", "u1")
    membership.add("r1", "u2")
    assert membership.members("r1") == {"u1", "u2"}

    assert membership.discard("r1", "u1") is True
    assert membership.discard("r1", "u1") is False
    assert "r1" in membership

    membership.discard("r1", "u2")
    assert "r1" not in membership
    assert membership.rooms() == []


def test_members_returns_a_copy() -> None:
    membership = RoomMembership()
    membership.add("r1", "u1")

    membership.members("r1").add("intruder")

    assert membership.members("r1") == {"u1"}
