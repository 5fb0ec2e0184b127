"""Link-layer collaborators.

The chat core never implements wireless discovery itself.  It talks to a
``LinkLayer`` that can start discovery, ask for a link to a peer, answer
queries about peers and link state, and push raw notifications (see
``directchat.mesh.discovery``) to a single listener.

Key classes
-----------
- ``LinkLayer``      -- Abstract interface the session coordinator uses.
- ``UDPLinkLayer``   -- LAN implementation using UDP broadcast beacons.
- ``StubLinkLayer``  -- Testing stub with scripted results and manual
  notification injection.

UDP beacon protocol
-------------------
Every node broadcasts a small JSON datagram on a shared UDP port::

    {"type": "beacon", "node_id": "...", "name": "..."}

``connect(address)`` sends ``{"type": "invite", ...}`` straight to the peer.
The invited side becomes the host (coordinator) and the inviting side becomes
its client.  ``{"type": "leave", ...}`` tears the link down on both ends.
"""

from __future__ import annotations

import abc
import asyncio
import json
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from directchat.mesh.discovery import (
    AdapterStateChanged,
    LinkInfo,
    LinkStateChanged,
    Notification,
    PeerListChanged,
    RawPeer,
)
from directchat.mesh.errors import DiscoveryFailure
from directchat.mesh.resilience import supervised_task

NotificationListener = Callable[[Notification], Any]


# ---------------------------------------------------------------------------
# Link layer -- abstract base
# ---------------------------------------------------------------------------

class LinkLayer(abc.ABC):
    """Abstract discovery/link collaborator."""

    def __init__(self) -> None:
        self._listener: NotificationListener | None = None

    def set_listener(self, listener: NotificationListener | None) -> None:
        """Route every raw notification to *listener* (``None`` detaches)."""
        self._listener = listener

    def _notify(self, notification: Notification) -> None:
        if self._listener is None:
            return
        try:
            self._listener(notification)
        except Exception as exc:
            logger.error("[Chat/LinkLayer] listener error: {}", exc)

    @abc.abstractmethod
    async def start_discovery(self) -> None:
        """Begin scanning for peers.  Raises ``DiscoveryFailure``."""

    @abc.abstractmethod
    async def connect(self, address: str) -> None:
        """Ask for a link to *address*.  Raises ``DiscoveryFailure``.

        Success only means the request was accepted; the resulting role
        arrives later as a ``LinkStateChanged`` notification.
        """

    @abc.abstractmethod
    async def request_peers(self) -> list[RawPeer]:
        """Return the peers currently visible."""

    @abc.abstractmethod
    async def request_link_info(self) -> LinkInfo:
        """Return the current link state."""

    async def close(self) -> None:
        """Release link-layer resources (best-effort)."""


# ---------------------------------------------------------------------------
# UDP beacon link layer (LAN)
# ---------------------------------------------------------------------------

@dataclass
class _BeaconPeer:
    raw: RawPeer
    ip: str
    last_seen: float = field(default_factory=time.time)


class UDPLinkLayer(LinkLayer):
    """Broadcast-based link layer over UDP.

    Parameters
    ----------
    node_id:
        This node's link-layer address.
    display_name:
        Name advertised to other nodes (defaults to *node_id*).
    udp_port:
        Shared UDP port for beacons and invites (default 8989).
    broadcast_interval:
        Seconds between beacon broadcasts (default 2).
    peer_timeout:
        Seconds after which a silent peer drops out of the list (default 10).
    """

    def __init__(
        self,
        node_id: str,
        display_name: str = "",
        udp_port: int = 8989,
        broadcast_interval: float = 2.0,
        peer_timeout: float = 10.0,
    ):
        super().__init__()
        self.node_id = node_id
        self.display_name = display_name or node_id
        self.udp_port = udp_port
        self.broadcast_interval = broadcast_interval
        self.peer_timeout = peer_timeout

        # node_id → _BeaconPeer
        self.peers: dict[str, _BeaconPeer] = {}
        self.link = LinkInfo()
        self._linked_ip: str | None = None
        self._running = False
        self._sock: socket.socket | None = None
        self._tasks: list[asyncio.Task] = []

    # -- lifecycle -----------------------------------------------------------

    async def start_discovery(self) -> None:
        if self._running:
            return
        try:
            self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            self._sock.bind(("", self.udp_port))
            self._sock.setblocking(False)
        except OSError as exc:
            if self._sock is not None:
                self._sock.close()
                self._sock = None
            raise DiscoveryFailure(exc.errno or "bind", str(exc)) from exc

        self._running = True
        loop = asyncio.get_running_loop()
        self._tasks = [
            supervised_task(self._broadcast_loop(loop), name="udp-broadcast"),
            supervised_task(self._listen_loop(loop), name="udp-listen"),
        ]
        self._notify(AdapterStateChanged(enabled=True))
        logger.info(
            "[Chat/LinkLayer] discovery started: node={} udp={}",
            self.node_id, self.udp_port,
        )

    async def close(self) -> None:
        if self._linked_ip is not None:
            self._send_datagram("leave", self._linked_ip)
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._sock:
            self._sock.close()
            self._sock = None
        logger.info("[Chat/LinkLayer] stopped")

    # -- link requests -------------------------------------------------------

    async def connect(self, address: str) -> None:
        peer = self.peers.get(address)
        if peer is None:
            raise DiscoveryFailure("unknown-peer", f"peer {address!r} not visible")
        if not self._send_datagram("invite", peer.ip):
            raise DiscoveryFailure("send", f"cannot invite {address!r}")
        # The invited side hosts; we are its client.
        self._set_link(LinkInfo(connected=True, is_coordinator=False, coordinator_address=peer.ip), peer.ip)

    async def request_peers(self) -> list[RawPeer]:
        return [p.raw for p in self._online()]

    async def request_link_info(self) -> LinkInfo:
        return self.link

    # -- datagrams -----------------------------------------------------------

    def _datagram(self, kind: str) -> bytes:
        return json.dumps({
            "type": kind,
            "node_id": self.node_id,
            "name": self.display_name,
        }).encode()

    def _send_datagram(self, kind: str, ip: str) -> bool:
        if self._sock is None:
            return False
        try:
            self._sock.sendto(self._datagram(kind), (ip, self.udp_port))
            return True
        except OSError as exc:
            logger.debug("[Chat/LinkLayer] {} to {} failed: {}", kind, ip, exc)
            return False

    async def _broadcast_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        beacon = self._datagram("beacon")
        while self._running:
            try:
                await loop.sock_sendto(
                    self._sock, beacon, ("255.255.255.255", self.udp_port)  # type: ignore[arg-type]
                )
            except OSError as exc:
                logger.debug("[Chat/LinkLayer] broadcast error: {}", exc)
            self.prune()
            await asyncio.sleep(self.broadcast_interval)

    async def _listen_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        while self._running:
            try:
                data, addr = await loop.sock_recvfrom(self._sock, 1024)  # type: ignore[arg-type]
                self._handle_datagram(data, addr[0])
            except OSError:
                if not self._running:
                    break
                await asyncio.sleep(0.1)

    def _handle_datagram(self, data: bytes, ip: str) -> None:
        try:
            info: dict[str, Any] = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return
        if not isinstance(info, dict):
            return

        nid = str(info.get("node_id", ""))
        if not nid or nid == self.node_id:
            return  # ignore own datagrams

        kind = info.get("type", "beacon")
        name = str(info.get("name", "") or nid)
        if kind == "beacon":
            self._seen(nid, name, ip)
        elif kind == "invite":
            self._seen(nid, name, ip)
            logger.info("[Chat/LinkLayer] invited by {} @ {}", nid, ip)
            self._set_link(LinkInfo(connected=True, is_coordinator=True), ip)
        elif kind == "leave":
            if self._linked_ip == ip:
                logger.info("[Chat/LinkLayer] {} left the link", nid)
                self._set_link(LinkInfo(), None)

    def _seen(self, nid: str, name: str, ip: str) -> None:
        previous = self.peers.get(nid)
        self.peers[nid] = _BeaconPeer(raw=RawPeer(address=nid, name=name), ip=ip)
        if previous is None or previous.raw != self.peers[nid].raw or previous.ip != ip:
            logger.info("[Chat/LinkLayer] peer {} ({}) @ {}", nid, name, ip)
            self._publish_peers()

    def _set_link(self, info: LinkInfo, ip: str | None) -> None:
        self.link = info
        self._linked_ip = ip
        self._notify(LinkStateChanged.from_info(info))

    def _online(self) -> list[_BeaconPeer]:
        now = time.time()
        return [p for p in self.peers.values() if (now - p.last_seen) < self.peer_timeout]

    def _publish_peers(self) -> None:
        self._notify(PeerListChanged(tuple(p.raw for p in self._online())))

    def prune(self) -> None:
        """Drop peers not heard from within the timeout and report the new list."""
        now = time.time()
        stale = [nid for nid, p in self.peers.items() if (now - p.last_seen) >= self.peer_timeout]
        for nid in stale:
            logger.debug("[Chat/LinkLayer] pruning stale peer: {}", nid)
            del self.peers[nid]
        if stale:
            self._publish_peers()


# ---------------------------------------------------------------------------
# Stub link layer (testing)
# ---------------------------------------------------------------------------

class StubLinkLayer(LinkLayer):
    """Link layer stub for testing.

    Set ``discovery_error`` / ``connect_error`` to a code to make the next
    requests fail, and call ``emit()`` (or the helpers) to inject
    notifications as the platform would.
    """

    def __init__(self) -> None:
        super().__init__()
        self.peers: list[RawPeer] = []
        self.link = LinkInfo()
        self.discovery_error: int | str | None = None
        self.connect_error: int | str | None = None
        self.discovery_calls = 0
        self.connect_calls: list[str] = []
        self.closed = False

    async def start_discovery(self) -> None:
        self.discovery_calls += 1
        if self.discovery_error is not None:
            raise DiscoveryFailure(self.discovery_error)

    async def connect(self, address: str) -> None:
        self.connect_calls.append(address)
        if self.connect_error is not None:
            raise DiscoveryFailure(self.connect_error)

    async def request_peers(self) -> list[RawPeer]:
        return list(self.peers)

    async def request_link_info(self) -> LinkInfo:
        return self.link

    async def close(self) -> None:
        self.closed = True

    def emit(self, notification: Notification) -> None:
        """Deliver *notification* to the listener, as the platform would."""
        self._notify(notification)

    def announce_peers(self, *peers: RawPeer) -> None:
        self.peers = list(peers)
        self.emit(PeerListChanged(tuple(peers)))

    def assign_host(self) -> None:
        self.link = LinkInfo(connected=True, is_coordinator=True)
        self.emit(LinkStateChanged.from_info(self.link))

    def assign_client(self, coordinator_address: str) -> None:
        self.link = LinkInfo(connected=True, is_coordinator=False, coordinator_address=coordinator_address)
        self.emit(LinkStateChanged.from_info(self.link))

    def drop_link(self) -> None:
        self.link = LinkInfo()
        self.emit(LinkStateChanged(connected=False))


def default_node_id() -> str:
    """Generate a stable default node ID from the machine's hostname."""
    return f"directchat-{socket.gethostname()}"
