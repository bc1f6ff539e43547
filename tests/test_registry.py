import pytest

from services.realtime_service.channels import MONITOR_CHANNEL, order_channel, seed_channels
from services.realtime_service.registry import ConnectionRegistry, ConnectionSession
from services.realtime_service.schemas import Handshake
from services.realtime_service.service import RealtimeHub
from shared.errors import AuthError


def test_seed_channels(alice, ann):
    assert seed_channels(alice) == {"role:requester", "owner:alice"}
    assert seed_channels(ann) == {"role:requester", "role:approver", MONITOR_CHANNEL}


async def test_connect_admits_with_seeded_channels(hub, connect):
    handle, link = await connect("alice")
    assert link.opened
    assert handle in hub.registry
    assert hub.session(handle).channels == {"role:requester", "owner:alice"}
    assert handle in hub.router.members("owner:alice")
    assert handle in hub.router.members("role:requester")


async def test_join_and_leave_are_idempotent(hub, connect):
    handle, _ = await connect("alice")
    channel = order_channel("o-1")

    assert hub.join_order_channel(handle, "o-1") is True
    assert hub.join_order_channel(handle, "o-1") is False
    assert hub.router.members(channel) == {handle}

    assert hub.leave_order_channel(handle, "o-1") is True
    assert hub.leave_order_channel(handle, "o-1") is False
    assert channel not in hub.router.channels()
    assert hub.leave_order_channel(handle, "never-joined") is False


async def test_join_for_unknown_connection_is_a_no_op(hub):
    assert hub.join_order_channel("ghost", "o-1") is False
    assert hub.router.channels() == []


async def test_disconnect_removes_connection_from_every_channel(hub, connect):
    handle, _ = await connect("ann")
    other, _ = await connect("ada")
    hub.join_order_channel(handle, "o-1")
    hub.join_order_channel(handle, "o-2")
    joined = set(hub.session(handle).channels)

    await hub.disconnect(handle)

    assert handle not in hub.registry
    for channel in joined | set(hub.router.channels()):
        assert handle not in hub.router.members(channel)
    assert order_channel("o-1") not in hub.router.channels()
    assert hub.router.members(MONITOR_CHANNEL) == {other}


async def test_disconnect_twice_is_harmless(hub, connect):
    handle, _ = await connect("bob")
    await hub.disconnect(handle)
    await hub.disconnect(handle)
    assert len(hub.registry) == 0


async def test_server_side_disconnect_closes_the_peer(hub, connect):
    handle, link = await connect("alice")
    await hub.disconnect(handle)
    assert link.closed_with == 1000
    assert hub.send(handle, {"type": "reply"}) is False


async def test_close_all_closes_every_peer(hub, connect):
    _, first = await connect("alice")
    _, second = await connect("ann")
    await hub.close_all()
    assert first.closed_with == 1000
    assert second.closed_with == 1000
    assert len(hub.registry) == 0


async def test_disconnect_tolerates_a_peer_that_is_already_gone(hub, connect):
    handle, link = await connect("bob")

    async def refuse(code=1000):
        raise ConnectionError("socket already closed")

    link.close = refuse
    await hub.disconnect(handle)
    assert handle not in hub.registry


async def test_failed_authentication_registers_nothing(hub, transport):
    link = transport()
    with pytest.raises(AuthError):
        await hub.connect(Handshake(token="forged"), link)
    assert not link.opened
    assert len(hub.registry) == 0
    assert hub.router.channels() == []


async def test_missing_token_is_refused(hub, transport):
    with pytest.raises(AuthError):
        await hub.connect(Handshake(), transport())
    assert len(hub.registry) == 0


async def test_slow_authentication_times_out(validator, transport):
    validator.delay = 0.5
    hub = RealtimeHub(validator, auth_timeout=0.05)
    link = transport()
    with pytest.raises(AuthError) as excinfo:
        await hub.connect(Handshake(token="alice"), link)
    assert "timed out" in excinfo.value.message
    assert not link.opened
    assert len(hub.registry) == 0


async def test_stats_count_by_role(hub, connect):
    await connect("alice")
    await connect("bob")
    await connect("ann")

    stats = hub.stats()
    assert stats["total"] == 3
    assert stats["requesters"] == 2
    assert stats["approvers"] == 1
    assert "connections" not in stats
    assert MONITOR_CHANNEL in stats["channels"]

    detailed = hub.stats(include_connections=True)
    assert {entry["identity_id"] for entry in detailed["connections"]} == {"alice", "bob", "ann"}


async def test_rebuild_recreates_the_channel_index(hub, connect):
    handle, _ = await connect("alice")
    hub.join_order_channel(handle, "o-9")
    before = {channel: hub.router.members(channel) for channel in hub.router.channels()}
    hub.router.rebuild()
    after = {channel: hub.router.members(channel) for channel in hub.router.channels()}
    assert before == after


def test_registry_rejects_duplicate_handles(alice):
    registry = ConnectionRegistry()
    session = ConnectionSession(handle="h1", actor=alice, writer=None)
    registry.add(session)
    with pytest.raises(ValueError):
        registry.add(session)
    assert len(registry) == 1
