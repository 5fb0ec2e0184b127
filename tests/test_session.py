"""Tests for the session coordinator."""

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest
from loguru import logger

from directchat.config.schema import ChatConfig, Config
from directchat.mesh.discovery import AdapterStateChanged, LinkInfo, LinkStateChanged, RawPeer
from directchat.mesh.errors import ConnectionFailure, InvalidArgument, NegotiationFailure
from directchat.mesh.events import Channel, Direction
from directchat.mesh.linklayer import StubLinkLayer, UDPLinkLayer
from directchat.mesh.registry import Peer
from directchat.mesh.session import Role, SessionCoordinator, SessionState
from directchat.mesh.transport import MessagingEndpoint


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _mock_sender() -> MagicMock:
    sender = MagicMock()
    sender.send = AsyncMock()
    sender.handshake = AsyncMock()
    return sender


def _coordinator(**config) -> tuple[SessionCoordinator, StubLinkLayer]:
    link = StubLinkLayer()
    cfg = ChatConfig(host="127.0.0.1", port=0, **config)
    return SessionCoordinator(link, cfg, sender=_mock_sender()), link


def _statuses(sub) -> list[str]:
    return [e.text for e in sub.drain(Channel.STATUS)]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_binds_endpoint_once(self):
        coord, link = _coordinator()
        await coord.start()
        server = coord.endpoint._server
        await coord.start()

        assert coord.is_running
        assert coord.endpoint.is_listening
        assert coord.endpoint._server is server
        assert link._listener is not None
        assert coord.session.role is Role.UNESTABLISHED
        assert coord.session.state is SessionState.IDLE
        await coord.stop()

    @pytest.mark.asyncio
    async def test_bind_failure_is_reported_as_status(self):
        blocker = MessagingEndpoint(host="127.0.0.1", port=0)
        await blocker.start()
        coord, _ = _coordinator()
        coord.endpoint.port = blocker.bound_port
        sub = coord.events.subscribe(Channel.STATUS)

        await coord.start()

        statuses = _statuses(sub)
        assert len(statuses) == 1
        assert statuses[0].startswith("bind failed:")
        assert coord.is_running
        assert not coord.endpoint.is_listening
        await coord.stop()
        await blocker.stop()

    @pytest.mark.asyncio
    async def test_stop_tears_everything_down(self):
        coord, link = _coordinator()
        await coord.start()
        link.announce_peers(RawPeer("A", "Phone1"))
        link.assign_host()
        _, writer = await asyncio.open_connection("127.0.0.1", coord.endpoint.bound_port)
        await _wait_until(lambda: coord.endpoint.connection_count == 1)

        await coord.stop()

        assert not coord.is_running
        assert coord.endpoint.connection_count == 0
        assert not coord.endpoint.is_listening
        assert coord.registry.all() == []
        assert coord.session.role is Role.UNESTABLISHED
        assert link.closed is True
        assert link._listener is None
        writer.close()

    @pytest.mark.asyncio
    async def test_stop_abandons_in_flight_sends(self):
        coord, _ = _coordinator()
        gate = asyncio.Event()

        async def _slow_send(address, text):
            await gate.wait()

        coord.sender.send = AsyncMock(side_effect=_slow_send)
        await coord.start()
        task = coord.send_message("10.0.0.1", "never")
        await asyncio.sleep(0)

        await coord.stop()

        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        coord, _ = _coordinator()
        async with coord as running:
            assert running.is_running
        assert not coord.is_running

    @pytest.mark.asyncio
    async def test_notify_threadsafe(self):
        coord, _ = _coordinator()
        await coord.start()
        thread = threading.Thread(
            target=coord.notify_threadsafe,
            args=(LinkStateChanged(connected=True, is_coordinator=True),),
        )
        thread.start()
        thread.join()
        await _wait_until(lambda: coord.session.role is Role.HOST)
        await coord.stop()

    def test_notify_threadsafe_requires_start(self):
        coord, _ = _coordinator()
        with pytest.raises(RuntimeError):
            coord.notify_threadsafe(AdapterStateChanged(enabled=True))

    def test_for_lan_builds_udp_link_layer(self):
        config = Config()
        config.chat.port = 9100
        config.link.node_id = "node-x"
        coord = SessionCoordinator.for_lan(config)
        assert isinstance(coord.link_layer, UDPLinkLayer)
        assert coord.link_layer.node_id == "node-x"
        assert coord.endpoint.port == 9100
        assert coord.sender.port == 9100


# ---------------------------------------------------------------------------
# Discovery and peers
# ---------------------------------------------------------------------------


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_start_discovery_success(self):
        coord, link = _coordinator()
        sub = coord.events.subscribe(Channel.STATUS)
        task = coord.start_discovery()
        assert coord.session.state is SessionState.DISCOVERING

        assert await task is True
        assert link.discovery_calls == 1
        assert _statuses(sub) == ["searching"]

    @pytest.mark.asyncio
    async def test_start_discovery_failure_is_not_retried(self):
        coord, link = _coordinator()
        link.discovery_error = 2
        sub = coord.events.subscribe(Channel.STATUS)

        assert await coord.start_discovery() is False

        assert link.discovery_calls == 1
        assert _statuses(sub) == ["discovery failed: 2"]
        assert coord.session.state is SessionState.FAILED

    @pytest.mark.asyncio
    async def test_peer_snapshots_replace_registry(self):
        coord, link = _coordinator()
        await coord.start()
        sub = coord.events.subscribe(Channel.PEERS)

        link.announce_peers(RawPeer("A", "Phone1"), RawPeer("B", "Phone2"))
        link.announce_peers(RawPeer("B", "Phone2"))
        link.announce_peers()

        events = sub.drain(Channel.PEERS)
        assert [[p.address for p in e.peers] for e in events] == [["A", "B"], ["B"], []]
        assert coord.peers == []
        await coord.stop()

    @pytest.mark.asyncio
    async def test_refresh_pulls_from_link_layer(self):
        coord, link = _coordinator()
        await coord.start()
        link.peers = [RawPeer("A", "Phone1")]
        link.link = LinkInfo(connected=True, is_coordinator=True)

        await coord.refresh_peers()
        await coord.refresh_link()

        assert [p.display_name for p in coord.peers] == ["Phone1"]
        assert coord.session.role is Role.HOST
        await coord.stop()

    @pytest.mark.asyncio
    async def test_adapter_status(self):
        coord, link = _coordinator()
        await coord.start()
        sub = coord.events.subscribe(Channel.STATUS)
        link.emit(AdapterStateChanged(enabled=False))
        link.emit(AdapterStateChanged(enabled=True))
        assert _statuses(sub) == ["adapter disabled", "adapter enabled"]
        await coord.stop()


# ---------------------------------------------------------------------------
# Role negotiation
# ---------------------------------------------------------------------------


class TestNegotiation:
    @pytest.mark.asyncio
    async def test_became_host(self):
        coord, link = _coordinator()
        await coord.start()
        sub = coord.events.subscribe(Channel.STATUS)

        link.assign_host()

        assert coord.session.role is Role.HOST
        assert coord.session.state is SessionState.ESTABLISHED
        assert coord.session.remote_address is None
        assert coord.endpoint.is_listening
        assert _statuses(sub) == ["you are the host"]
        coord.sender.handshake.assert_not_called()
        await coord.stop()

    @pytest.mark.asyncio
    async def test_became_client_dials_host(self):
        coord, link = _coordinator()
        await coord.start()

        link.assign_client("10.0.0.1")
        await coord._pool.join()

        assert coord.session.role is Role.CLIENT
        assert coord.session.remote_address == "10.0.0.1"
        assert coord.session.state is SessionState.ESTABLISHED
        coord.sender.handshake.assert_awaited_once_with("10.0.0.1")
        await coord.stop()

    @pytest.mark.asyncio
    async def test_duplicate_role_notification_is_ignored(self):
        coord, link = _coordinator()
        await coord.start()
        sub = coord.events.subscribe(Channel.STATUS)

        link.assign_client("10.0.0.1")
        link.assign_client("10.0.0.1")
        await coord._pool.join()

        assert coord.sender.handshake.await_count == 1
        assert _statuses(sub) == ["connected to host 10.0.0.1"]
        await coord.stop()

    @pytest.mark.asyncio
    async def test_handshake_failure_is_reported(self):
        coord, link = _coordinator()
        coord.sender.handshake = AsyncMock(side_effect=ConnectionFailure("refused"))
        await coord.start()
        sub = coord.events.subscribe(Channel.STATUS)

        link.assign_client("10.0.0.1")
        await coord._pool.join()

        assert _statuses(sub) == ["connected to host 10.0.0.1", "handshake failed: refused"]
        assert coord.session.established
        await coord.stop()

    @pytest.mark.asyncio
    async def test_connect_to_resolves_role(self):
        coord, link = _coordinator()
        await coord.start()
        sub = coord.events.subscribe(Channel.STATUS)

        task = coord.connect_to(Peer("A", "Phone1"))
        assert coord.session.state is SessionState.CONNECTING
        await asyncio.sleep(0)
        link.assign_host()

        assert await task is Role.HOST
        assert link.connect_calls == ["A"]
        assert _statuses(sub) == ["connecting to Phone1", "you are the host"]
        await coord.stop()

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        coord, link = _coordinator()
        link.connect_error = 2
        await coord.start()
        sub = coord.events.subscribe(Channel.STATUS)

        assert await coord.connect_to(Peer("A", "Phone1")) is None

        assert coord.session.state is SessionState.IDLE
        assert _statuses(sub) == ["connect failed: 2"]
        await coord.stop()

    @pytest.mark.asyncio
    async def test_negotiation_timeout(self):
        coord, link = _coordinator(negotiation_timeout=0.05)
        await coord.start()
        sub = coord.events.subscribe(Channel.STATUS)

        with pytest.raises(NegotiationFailure):
            await coord.connect_to(Peer("A", "Phone1"))

        assert coord.session.state is SessionState.IDLE
        assert coord.session.role is Role.UNESTABLISHED
        assert _statuses(sub) == ["connecting to Phone1", "negotiation timed out"]
        await coord.stop()

    @pytest.mark.asyncio
    async def test_negotiation_timeout_is_not_logged_as_error(self):
        records = []
        sink_id = logger.add(lambda m: records.append(m.record), level="WARNING", format="{message}")
        try:
            coord, _ = _coordinator(negotiation_timeout=0.05)
            await coord.start()
            with pytest.raises(NegotiationFailure):
                await coord.connect_to(Peer("A", "Phone1"))
            await asyncio.sleep(0)
            await coord.stop()
        finally:
            logger.remove(sink_id)

        assert records
        assert all(r["level"].name == "WARNING" for r in records)

    @pytest.mark.asyncio
    async def test_connect_after_timeout_can_still_establish(self):
        coord, link = _coordinator(negotiation_timeout=0.05)
        await coord.start()
        with pytest.raises(NegotiationFailure):
            await coord.connect_to(Peer("A", "Phone1"))

        task = coord.connect_to(Peer("A", "Phone1"))
        await asyncio.sleep(0)
        link.assign_host()

        assert await task is Role.HOST
        assert coord.session.state is SessionState.ESTABLISHED
        await coord.stop()

    @pytest.mark.asyncio
    async def test_link_down_during_negotiation_is_swallowed(self):
        coord, link = _coordinator()
        await coord.start()
        sub = coord.events.subscribe(Channel.STATUS)
        coord.connect_to(Peer("A"))

        link.drop_link()

        assert coord.session.state is SessionState.CONNECTING
        assert "disconnected" not in _statuses(sub)
        await coord.stop()

    @pytest.mark.asyncio
    async def test_link_lost_resets_session(self):
        coord, link = _coordinator()
        await coord.start()
        link.assign_client("10.0.0.1")
        sub = coord.events.subscribe(Channel.STATUS)

        link.drop_link()

        assert coord.session.role is Role.UNESTABLISHED
        assert coord.session.state is SessionState.IDLE
        assert coord.session.remote_address is None
        assert _statuses(sub) == ["disconnected"]
        await coord.stop()


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------


class TestMessaging:
    def test_empty_message_rejected_without_socket(self):
        coord, _ = _coordinator()
        with pytest.raises(InvalidArgument):
            coord.send_message("10.0.0.1", "")
        coord.sender.send.assert_not_called()
        assert len(coord._pool) == 0

    def test_invalid_argument_is_value_error(self):
        coord, _ = _coordinator()
        with pytest.raises(ValueError):
            coord.send_message("", "hi")

    @pytest.mark.asyncio
    async def test_send_success_emits_sent(self):
        coord, _ = _coordinator()
        sub = coord.events.subscribe(Channel.MESSAGE)

        assert await coord.send_message("10.0.0.1", "hi") is True

        msg = sub.drain(Channel.MESSAGE)[0]
        assert msg.text == "hi"
        assert msg.direction is Direction.SENT

    @pytest.mark.asyncio
    async def test_send_failure_emits_status(self):
        coord, _ = _coordinator()
        coord.sender.send = AsyncMock(side_effect=ConnectionFailure("Connection refused"))
        sub = coord.events.subscribe()

        assert await coord.send_message("10.0.0.1", "hi") is False

        assert _statuses(sub) == ["send failed: Connection refused"]
        assert sub.drain(Channel.MESSAGE) == []

    @pytest.mark.asyncio
    async def test_send_returns_before_io(self):
        coord, _ = _coordinator()
        task = coord.send_message("10.0.0.1", "hi")
        assert isinstance(task, asyncio.Task)
        assert not task.done()
        await task

    @pytest.mark.asyncio
    async def test_inbound_lines_reach_subscribers(self):
        coord, _ = _coordinator()
        await coord.start()
        sub = coord.events.subscribe(Channel.MESSAGE)

        _, writer = await asyncio.open_connection("127.0.0.1", coord.endpoint.bound_port)
        writer.write(b"hello\n")
        await writer.drain()
        writer.close()

        msg = await sub.get(Channel.MESSAGE, timeout=2.0)
        assert msg.text == "hello"
        assert msg.direction is Direction.RECEIVED
        await coord.stop()


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    @pytest.mark.asyncio
    async def test_discover_connect_as_client_and_send(self):
        coord, link = _coordinator()
        await coord.start()
        sub = coord.events.subscribe()

        link.announce_peers(RawPeer("A", "Phone1"))
        peers_event = sub.drain(Channel.PEERS)[0]
        assert [p.display_name for p in peers_event.peers] == ["Phone1"]

        connecting = coord.connect_to(coord.registry.first())
        await asyncio.sleep(0)
        link.assign_client("10.0.0.1")
        assert await connecting is Role.CLIENT

        s = coord.session
        assert (s.role, s.state, s.remote_address) == (
            Role.CLIENT, SessionState.ESTABLISHED, "10.0.0.1",
        )

        assert await coord.send_message("10.0.0.1", "hi") is True
        coord.sender.send.assert_awaited_once_with("10.0.0.1", "hi")
        sent = sub.drain(Channel.MESSAGE)
        assert [(m.text, m.direction) for m in sent] == [("hi", Direction.SENT)]
        await coord.stop()

    @pytest.mark.asyncio
    async def test_two_coordinators_exchange_a_line(self):
        host, host_link = _coordinator()
        client_link = StubLinkLayer()
        client = SessionCoordinator(client_link, ChatConfig(host="127.0.0.1", port=0))
        await host.start()
        await client.start()
        # Both sides use the same well-known port in production.
        client.sender.port = host.endpoint.bound_port
        inbox = host.events.subscribe(Channel.MESSAGE)

        host_link.assign_host()
        client_link.assign_client("127.0.0.1")
        await client._pool.join()

        assert await client.send_message("127.0.0.1", "hello") is True
        msg = await inbox.get(Channel.MESSAGE, timeout=2.0)
        assert msg.text == "hello"
        assert msg.direction is Direction.RECEIVED
        await asyncio.sleep(0.05)
        assert inbox.drain(Channel.MESSAGE) == []

        await client.stop()
        await host.stop()
