import asyncio

import pytest

from masonchat.websocket.manager import ConnectionManager


@pytest.mark.asyncio
async def test_connect_join_broadcast_and_disconnect(make_ws):
    mgr = ConnectionManager()
    ws1 = make_ws()
    ws2 = make_ws()

    c1 = await mgr.connect(ws1)
    c2 = await mgr.connect(ws2)
    assert ws1.accepted and ws2.accepted

    mgr.join_room(c1, "U1_U2")
    mgr.join_room(c2, "U1_U2")
    assert mgr.active_connections["U1_U2"] == {c1, c2}

    await mgr.broadcast("U1_U2", "receive_message", {"text": "hi"})
    assert ws1.sent[0] == {"event": "receive_message", "data": {"text": "hi"}}
    assert ws2.sent[0] == {"event": "receive_message", "data": {"text": "hi"}}

    await mgr.disconnect(c1)
    assert c1 not in mgr.active_connections.get("U1_U2", set())

    await mgr.disconnect(c2)
    assert "U1_U2" not in mgr.active_connections


@pytest.mark.asyncio
async def test_broadcast_excludes_sender_connection(make_ws):
    mgr = ConnectionManager()
    sender_ws, peer_ws = make_ws(), make_ws()
    sender = await mgr.connect(sender_ws)
    peer = await mgr.connect(peer_ws)
    mgr.join_room(sender, "U1_U2")
    mgr.join_room(peer, "U1_U2")

    await mgr.broadcast("U1_U2", "receive_message", {"text": "hi"}, exclude=sender)

    assert sender_ws.sent == []
    assert peer_ws.events("receive_message") == [{"event": "receive_message", "data": {"text": "hi"}}]


@pytest.mark.asyncio
async def test_broadcast_handles_send_errors(make_ws):
    mgr = ConnectionManager()
    good_ws = make_ws()
    bad_ws = make_ws(fail_send=True)

    good = await mgr.connect(good_ws)
    bad = await mgr.connect(bad_ws)
    mgr.join_room(good, "a_b")
    mgr.join_room(bad, "a_b")

    # broadcast should not raise despite one failing
    await mgr.broadcast("a_b", "receive_message", {"x": 1})

    assert good_ws.sent and good_ws.sent[0]["data"]["x"] == 1
    assert bad not in mgr.active_connections.get("a_b", set())


@pytest.mark.asyncio
async def test_presence_changes_reach_interested_connections_only(make_ws):
    mgr = ConnectionManager()
    u1_ws, u2_ws, outsider_ws = make_ws(), make_ws(), make_ws()
    u1 = await mgr.connect(u1_ws)
    u2 = await mgr.connect(u2_ws)
    outsider = await mgr.connect(outsider_ws)

    await mgr.announce_online(u1, "U1")
    mgr.join_room(u1, "U1_U2")
    await mgr.announce_online(outsider, "U9")
    mgr.join_room(outsider, "U8_U9")

    await mgr.announce_online(u2, "U2")

    assert u1_ws.events("status_update") == [
        {"event": "status_update", "data": {"userId": "U2", "status": "online"}}
    ]
    assert outsider_ws.events("status_update") == []
    # own status is never echoed back
    assert u2_ws.events("status_update") == []


@pytest.mark.asyncio
async def test_unclean_disconnect_is_implicit_offline(make_ws):
    mgr = ConnectionManager()
    u1_ws, u2_ws = make_ws(), make_ws()
    u1 = await mgr.connect(u1_ws)
    u2 = await mgr.connect(u2_ws)
    await mgr.announce_online(u1, "U1")
    mgr.join_room(u1, "U1_U2")
    await mgr.announce_online(u2, "U2")
    mgr.join_room(u2, "U1_U2")

    await mgr.disconnect(u2)

    assert mgr.presence.is_online("U2") is False
    assert u1_ws.events("status_update")[-1] == {
        "event": "status_update",
        "data": {"userId": "U2", "status": "offline"},
    }


@pytest.mark.asyncio
async def test_reconnect_keeps_user_online_when_stale_socket_drops(make_ws):
    mgr = ConnectionManager()
    watcher_ws = make_ws()
    watcher = await mgr.connect(watcher_ws)
    await mgr.announce_online(watcher, "U1")
    mgr.join_room(watcher, "U1_U2")

    old = await mgr.connect(make_ws())
    new = await mgr.connect(make_ws())
    await mgr.announce_online(old, "U2")
    await mgr.announce_online(new, "U2")
    await mgr.disconnect(old)

    assert mgr.presence.is_online("U2") is True
    statuses = [m["data"]["status"] for m in watcher_ws.events("status_update")]
    assert statuses == ["online"]


@pytest.mark.asyncio
async def test_leave_room_drops_interest(make_ws):
    mgr = ConnectionManager()
    ws = make_ws()
    conn = await mgr.connect(ws)
    mgr.join_room(conn, "U1_U2")
    mgr.leave_room(conn, "U1_U2")

    assert "U2" not in mgr.watchers
    assert conn.rooms == set()


@pytest.mark.asyncio
async def test_room_lock_serializes_senders_in_arrival_order():
    mgr = ConnectionManager()
    order = []

    async def send(tag):
        async with mgr.room_lock("a_b"):
            order.append(f"{tag}-start")
            await asyncio.sleep(0)
            order.append(f"{tag}-end")

    await asyncio.gather(send("first"), send("second"), send("third"))

    assert order == [
        "first-start", "first-end",
        "second-start", "second-end",
        "third-start", "third-end",
    ]


@pytest.mark.asyncio
async def test_room_lock_is_forgotten_for_rooms_nobody_joined():
    mgr = ConnectionManager()

    async with mgr.room_lock("a_b"):
        assert "a_b" in mgr._room_locks

    assert mgr._room_locks == {}
    assert mgr._lock_users == {}


@pytest.mark.asyncio
async def test_room_lock_kept_while_room_has_connections(make_ws):
    mgr = ConnectionManager()
    conn = await mgr.connect(make_ws())
    mgr.join_room(conn, "U1_U2")

    async with mgr.room_lock("U1_U2"):
        pass
    assert "U1_U2" in mgr._room_locks

    mgr.leave_room(conn, "U1_U2")
    assert mgr._room_locks == {}


@pytest.mark.asyncio
async def test_explicit_offline_from_one_device_keeps_user_online(make_ws):
    mgr = ConnectionManager()
    watcher_ws = make_ws()
    watcher = await mgr.connect(watcher_ws)
    await mgr.announce_online(watcher, "U2")
    mgr.join_room(watcher, "U1_U2")

    phone = await mgr.connect(make_ws())
    laptop = await mgr.connect(make_ws())
    await mgr.announce_online(phone, "U1")
    await mgr.announce_online(laptop, "U1")

    await mgr.announce_offline(phone, "U1")
    assert mgr.presence.is_online("U1") is True

    await mgr.announce_offline(laptop, "U1")
    assert mgr.presence.is_online("U1") is False

    statuses = [m["data"]["status"] for m in watcher_ws.events("status_update")]
    assert statuses == ["online", "offline"]
