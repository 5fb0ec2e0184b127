"""Session coordinator -- the piece a UI binds to.

Ties together the link layer, the link state tracker, the peer registry,
the messaging endpoint and the outbound sender, and reports everything
through an ``EventBus``.

Flow
----
1. ``start()`` resets the session, subscribes to link-layer notifications
   and binds the messaging endpoint.
2. ``start_discovery()`` asks the link layer to scan; peer lists arrive as
   notifications and replace the registry contents.
3. ``connect_to(peer)`` asks for a link.  The link layer later assigns a
   role: as host we just wait for inbound connections; as client we dial
   the host's listening port once to confirm the socket path.
4. ``send_message()`` hands one line to the outbound sender.

Every public operation returns immediately; network work runs on the
coordinator's ``TaskPool``.  The session and the registry are only touched
from code running on the coordinator's event loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from loguru import logger

from directchat.config.schema import ChatConfig
from directchat.mesh.discovery import (
    AdapterChanged,
    BecameClient,
    BecameHost,
    LinkEvent,
    LinkLost,
    LinkStateChanged,
    LinkStateTracker,
    Notification,
    PeerListChanged,
    PeersUpdated,
)
from directchat.mesh.errors import (
    BindFailure,
    ConnectionFailure,
    DirectChatError,
    DiscoveryFailure,
    InvalidArgument,
    NegotiationFailure,
)
from directchat.mesh.events import EventBus
from directchat.mesh.linklayer import LinkLayer, UDPLinkLayer, default_node_id
from directchat.mesh.registry import Peer, PeerRegistry
from directchat.mesh.resilience import TaskPool
from directchat.mesh.transport import MessagingEndpoint, OutboundSender

if TYPE_CHECKING:
    from directchat.config.schema import Config


class Role(str, Enum):
    UNESTABLISHED = "unestablished"
    HOST = "host"
    CLIENT = "client"


class SessionState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    FAILED = "failed"


@dataclass
class Session:
    """The single link session of a running coordinator."""

    role: Role = Role.UNESTABLISHED
    remote_address: str | None = None
    state: SessionState = SessionState.IDLE

    @property
    def established(self) -> bool:
        return self.state is SessionState.ESTABLISHED

    def reset(self) -> None:
        self.role = Role.UNESTABLISHED
        self.remote_address = None
        self.state = SessionState.IDLE

    def establish(self, role: Role, remote_address: str | None = None) -> None:
        self.role = role
        self.remote_address = remote_address
        self.state = SessionState.ESTABLISHED


class SessionCoordinator:
    """Owns the session, the peer registry and the messaging sockets.

    Parameters
    ----------
    link_layer:
        Discovery/link collaborator (``UDPLinkLayer``, ``StubLinkLayer``, ...).
    config:
        Socket and timeout settings (defaults to ``ChatConfig()``).
    events:
        Bus to publish on; a fresh one is created when omitted.
    endpoint, sender:
        Overrides for the messaging endpoint and outbound sender.
    """

    def __init__(
        self,
        link_layer: LinkLayer,
        config: ChatConfig | None = None,
        *,
        events: EventBus | None = None,
        endpoint: MessagingEndpoint | None = None,
        sender: OutboundSender | None = None,
    ):
        self.config = config or ChatConfig()
        self.link_layer = link_layer
        self.events = events or EventBus()
        self.registry = PeerRegistry()
        self.session = Session()
        self.endpoint = endpoint or MessagingEndpoint(
            host=self.config.host,
            port=self.config.port,
            max_connections=self.config.max_connections,
        )
        self.sender = sender or OutboundSender(
            port=self.config.port,
            connect_timeout=self.config.connect_timeout,
        )
        self.tracker = LinkStateTracker(lambda: self.session.established)
        self.endpoint.on_message(self.events.message_received)

        self._pool = TaskPool("session", expected=(DirectChatError,))
        self._role_assigned = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False

    @classmethod
    def for_lan(cls, config: Config, *, events: EventBus | None = None) -> SessionCoordinator:
        """Build a coordinator backed by the UDP beacon link layer."""
        link = config.link
        link_layer = UDPLinkLayer(
            node_id=link.node_id or default_node_id(),
            display_name=link.display_name,
            udp_port=link.udp_port,
            broadcast_interval=link.broadcast_interval,
            peer_timeout=link.peer_timeout,
        )
        return cls(link_layer, config.chat, events=events)

    # -- lifecycle -----------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def peers(self) -> list[Peer]:
        return self.registry.all()

    async def start(self) -> None:
        """Reset the session, attach to the link layer and bind the endpoint.

        A bind failure is reported once as a status event; the coordinator
        keeps running without a listening socket.
        """
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self.session.reset()
        self._role_assigned.clear()
        self.link_layer.set_listener(self.handle_notification)
        self._running = True
        try:
            await self.endpoint.start()
        except BindFailure as exc:
            self.events.status(f"bind failed: {exc}")
        logger.info("[Chat/Session] started")

    async def stop(self) -> None:
        """Tear everything down: pending work, live connections, the link."""
        if not self._running:
            return
        self._running = False
        self.link_layer.set_listener(None)
        cancelled = await self._pool.cancel_all()
        await self.endpoint.stop()
        try:
            await self.link_layer.close()
        except Exception as exc:
            logger.error("[Chat/Session] link layer close error: {}", exc)
        self.registry.clear()
        self.session.reset()
        logger.info("[Chat/Session] stopped ({} pending task(s) abandoned)", cancelled)

    async def __aenter__(self) -> SessionCoordinator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # -- notifications -------------------------------------------------------

    def handle_notification(self, notification: Notification) -> LinkEvent | None:
        """Process one raw link-layer notification on the event loop."""
        event = self.tracker.translate(notification)
        if event is not None:
            self._apply(event)
        return event

    def notify_threadsafe(self, notification: Notification) -> None:
        """Hand over a notification produced on a foreign thread."""
        if self._loop is None:
            raise RuntimeError("coordinator is not started")
        self._loop.call_soon_threadsafe(self.handle_notification, notification)

    def _apply(self, event: LinkEvent) -> None:
        if isinstance(event, PeersUpdated):
            self.registry.replace_all(event.peers)
            self.events.peers_updated(self.registry.all())
        elif isinstance(event, BecameHost):
            self._on_became_host()
        elif isinstance(event, BecameClient):
            self._on_became_client(event.remote_address)
        elif isinstance(event, LinkLost):
            self.session.reset()
            self._role_assigned.clear()
            self.events.status("disconnected")
        elif isinstance(event, AdapterChanged):
            self.events.status("adapter enabled" if event.enabled else "adapter disabled")

    def _on_became_host(self) -> None:
        if self.session.established and self.session.role is Role.HOST:
            return
        self.session.establish(Role.HOST)
        self._role_assigned.set()
        logger.info("[Chat/Session] link established as host")
        self.events.status("you are the host")

    def _on_became_client(self, address: str) -> None:
        s = self.session
        if s.established and s.role is Role.CLIENT and s.remote_address == address:
            return
        s.establish(Role.CLIENT, address)
        self._role_assigned.set()
        logger.info("[Chat/Session] link established as client of {}", address)
        self.events.status(f"connected to host {address}")
        self._pool.spawn(self._handshake(address), label="handshake")

    async def refresh_peers(self) -> None:
        """Pull the current peer list from the link layer."""
        peers = await self.link_layer.request_peers()
        self.handle_notification(PeerListChanged(tuple(peers)))

    async def refresh_link(self) -> None:
        """Pull the current link state from the link layer."""
        info = await self.link_layer.request_link_info()
        self.handle_notification(LinkStateChanged.from_info(info))

    # -- discovery -----------------------------------------------------------

    def start_discovery(self) -> asyncio.Task:
        """Ask the link layer to scan.  Returns the background task."""
        if self.session.state in (SessionState.IDLE, SessionState.FAILED):
            self.session.state = SessionState.DISCOVERING
        return self._pool.spawn(self._discover(), label="discover")

    async def _discover(self) -> bool:
        try:
            await self.link_layer.start_discovery()
        except DiscoveryFailure as exc:
            logger.warning("[Chat/Session] discovery failed: {}", exc)
            if self.session.state is SessionState.DISCOVERING:
                self.session.state = SessionState.FAILED
            self.events.status(f"discovery failed: {exc.code}")
            return False
        self.events.status("searching")
        return True

    # -- connecting ----------------------------------------------------------

    def connect_to(self, peer: Peer) -> asyncio.Task:
        """Ask the link layer for a link to *peer*.

        The returned task resolves to the assigned ``Role`` and fails with
        ``NegotiationFailure`` if no role arrives within the configured
        negotiation timeout.
        """
        self.session.state = SessionState.CONNECTING
        self._role_assigned.clear()
        return self._pool.spawn(self._connect(peer), label=f"connect-{peer.address}")

    async def _connect(self, peer: Peer) -> Role | None:
        try:
            await self.link_layer.connect(peer.address)
        except DiscoveryFailure as exc:
            logger.warning("[Chat/Session] connect to {} failed: {}", peer.address, exc)
            if self.session.state is SessionState.CONNECTING:
                self.session.reset()
            self.events.status(f"connect failed: {exc.code}")
            return None
        if self.session.state is SessionState.CONNECTING:
            self.events.status(f"connecting to {peer.label}")

        timeout = self.config.negotiation_timeout
        try:
            await asyncio.wait_for(self._role_assigned.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[Chat/Session] no role from {} within {:g}s", peer.address, timeout,
            )
            if self.session.state is SessionState.CONNECTING:
                self.session.reset()
                self.events.status("negotiation timed out")
            raise NegotiationFailure(
                f"no role assigned by {peer.label} within {timeout:g}s"
            ) from None
        return self.session.role

    async def _handshake(self, address: str) -> None:
        try:
            await self.sender.handshake(address)
        except ConnectionFailure as exc:
            self.events.status(f"handshake failed: {exc}")

    # -- messaging -----------------------------------------------------------

    def send_message(self, target_address: str, text: str) -> asyncio.Task:
        """Send one line to *target_address* in the background.

        Raises ``InvalidArgument`` immediately for empty text.  The returned
        task resolves to ``True`` on success and ``False`` on failure.
        """
        if not isinstance(text, str) or not text:
            raise InvalidArgument("message text must be a non-empty string")
        if not target_address:
            raise InvalidArgument("target address is required")
        return self._pool.spawn(self._send(target_address, text), label="send")

    async def _send(self, address: str, text: str) -> bool:
        try:
            await self.sender.send(address, text)
        except ConnectionFailure as exc:
            self.events.status(f"send failed: {exc}")
            return False
        self.events.message_sent(text)
        return True
