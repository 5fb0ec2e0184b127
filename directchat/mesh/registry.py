"""Known-peer registry.

Holds the peer snapshot most recently reported by the link layer.

Architecture
------------
- ``Peer`` is one discovered device, identified by its link-layer address.
- ``PeerRegistry`` stores the current snapshot.  The link layer always
  reports the full set of visible peers, never deltas, so the only mutator is
  ``replace_all()``, which swaps the whole set at once.

The registry does no I/O and no locking: the session coordinator is its only
writer and runs on a single event loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from loguru import logger


@dataclass(frozen=True)
class Peer:
    """One device visible on the local link."""

    address: str                 # Opaque link-layer id (MAC, node id, ...)
    display_name: str = ""
    last_seen_sequence: int = 0  # Ordinal of the peer-list notification that produced it

    @property
    def label(self) -> str:
        """Name to show to a human, falling back to the address."""
        return self.display_name or self.address

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "display_name": self.display_name,
            "last_seen_sequence": self.last_seen_sequence,
        }


class PeerRegistry:
    """Current set of known peers, keyed by address.

    Insertion order follows the order of the last snapshot, so ``first()``
    is the first peer the link layer listed.
    """

    def __init__(self) -> None:
        self._peers: dict[str, Peer] = {}

    def replace_all(self, peers: Iterable[Peer]) -> None:
        """Swap the whole peer set for *peers*.

        A later entry with the same address replaces an earlier one.
        """
        fresh: dict[str, Peer] = {}
        for peer in peers:
            fresh[peer.address] = peer
        added = fresh.keys() - self._peers.keys()
        removed = self._peers.keys() - fresh.keys()
        self._peers = fresh
        if added or removed:
            logger.debug(
                "[Chat/Registry] {} peers (+{} -{})",
                len(fresh), len(added), len(removed),
            )

    def all(self) -> list[Peer]:
        return list(self._peers.values())

    def first(self) -> Peer | None:
        return next(iter(self._peers.values()), None)

    def get(self, address: str) -> Peer | None:
        return self._peers.get(address)

    def clear(self) -> None:
        self._peers = {}

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, address: object) -> bool:
        return address in self._peers
