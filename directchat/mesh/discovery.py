"""Link state tracking for discovered peers.

The link layer (Wi-Fi Direct, a LAN beacon service, a test stub, ...) reports
what it sees as raw notifications that can arrive at any time and in any
order:

- ``PeerListChanged``     -- the full list of visible peers
- ``LinkStateChanged``    -- the link went up or down, with role information
- ``AdapterStateChanged`` -- the radio/adapter was switched on or off

``LinkStateTracker`` turns these into the small set of events the session
coordinator understands: ``PeersUpdated``, ``BecameHost``,
``BecameClient``, ``LinkLost`` and ``AdapterChanged``.  It is a pure
translator: synchronous, no I/O, no retries.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Callable, Union

from loguru import logger

from directchat.mesh.registry import Peer


# ---------------------------------------------------------------------------
# Raw link-layer data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawPeer:
    """A peer exactly as the link layer reports it."""

    address: str
    name: str = ""


@dataclass(frozen=True)
class LinkInfo:
    """Snapshot of the current link as reported by the link layer."""

    connected: bool = False
    is_coordinator: bool = False
    coordinator_address: str | None = None


@dataclass(frozen=True)
class PeerListChanged:
    raw_peers: tuple[RawPeer, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class LinkStateChanged:
    connected: bool
    is_coordinator: bool = False
    coordinator_address: str | None = None

    @classmethod
    def from_info(cls, info: LinkInfo) -> LinkStateChanged:
        return cls(
            connected=info.connected,
            is_coordinator=info.is_coordinator,
            coordinator_address=info.coordinator_address,
        )


@dataclass(frozen=True)
class AdapterStateChanged:
    enabled: bool


Notification = Union[PeerListChanged, LinkStateChanged, AdapterStateChanged]


# ---------------------------------------------------------------------------
# Normalised events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PeersUpdated:
    peers: tuple[Peer, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class BecameHost:
    pass


@dataclass(frozen=True)
class BecameClient:
    remote_address: str


@dataclass(frozen=True)
class LinkLost:
    pass


@dataclass(frozen=True)
class AdapterChanged:
    enabled: bool


LinkEvent = Union[PeersUpdated, BecameHost, BecameClient, LinkLost, AdapterChanged]


class LinkStateTracker:
    """Translate raw link-layer notifications into ``LinkEvent`` values.

    Parameters
    ----------
    is_established:
        Returns whether the session is currently established.  A link-down
        notification is only reported while it returns ``True``; during
        negotiation the link layer flaps and those notifications are noise.
    """

    def __init__(self, is_established: Callable[[], bool]):
        self._is_established = is_established
        self._sequence = itertools.count(1)

    def translate(self, notification: Notification) -> LinkEvent | None:
        """Return the event for *notification*, or ``None`` to swallow it."""
        if isinstance(notification, PeerListChanged):
            return self._peers_updated(notification)
        if isinstance(notification, LinkStateChanged):
            return self._link_changed(notification)
        if isinstance(notification, AdapterStateChanged):
            return AdapterChanged(enabled=notification.enabled)
        logger.warning(
            "[Chat/Discovery] ignoring unknown notification {!r}", notification,
        )
        return None

    def _peers_updated(self, notification: PeerListChanged) -> PeersUpdated:
        seq = next(self._sequence)
        by_address: dict[str, Peer] = {}
        for raw in notification.raw_peers:
            if not raw.address:
                continue
            by_address[raw.address] = Peer(
                address=raw.address,
                display_name=raw.name,
                last_seen_sequence=seq,
            )
        return PeersUpdated(tuple(by_address.values()))

    def _link_changed(self, notification: LinkStateChanged) -> LinkEvent | None:
        if not notification.connected:
            if self._is_established():
                return LinkLost()
            logger.debug("[Chat/Discovery] link down before establishment, ignored")
            return None
        if notification.is_coordinator:
            return BecameHost()
        if notification.coordinator_address:
            return BecameClient(remote_address=notification.coordinator_address)
        # Connected as client but the host address is not known yet.
        logger.debug("[Chat/Discovery] link up without coordinator address, waiting")
        return None
