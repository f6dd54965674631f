"""Tracking of connected peers that header ranges can be requested from."""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .options import PeerIDStore
from .peer_stats import PeerStat

logger = logging.getLogger("headersync.p2p")

# Score given to newly connected peers.
DEFAULT_SCORE = 1.0
# The most peers the tracker keeps while connected peers outnumber disconnected ones.
MAX_PEER_TRACKER_SIZE = 100
# How long a disconnected peer may stay away before it is pruned.
MAX_AWAITING_TIME = timedelta(hours=1)


class PeerTracker:
    """Keeps statistics of connected and recently disconnected peers."""

    def __init__(
        self,
        local_id: str,
        pidstore: Optional[PeerIDStore] = None,
        max_awaiting_time: timedelta = MAX_AWAITING_TIME,
    ) -> None:
        self.local_id = local_id
        self.pidstore = pidstore
        self.max_awaiting_time = max_awaiting_time
        # Active peers that can be requested from.
        self.tracked_peers: Dict[str, PeerStat] = {}
        # Disconnected peers, kept until their prune deadline passes.
        self.disconnected_peers: Dict[str, PeerStat] = {}
        self._blocked: Dict[str, None] = {}
        self._lock = threading.RLock()

    def bootstrap(self, trusted: Iterable[str], connect: Callable[[str], None]) -> None:
        """Connect to the trusted peers and to peers remembered in the pidstore.

        `connect` is called with each peer ID and raises if the connection fails;
        peers connected successfully are tracked. Errors loading the pidstore
        propagate.
        """
        trusted = list(trusted)
        if trusted:
            with ThreadPoolExecutor(max_workers=len(trusted)) as pool:
                list(pool.map(lambda peer_id: self._connect_to_peer(peer_id, connect), trusted))

        if self.pidstore is None:
            return
        for peer_id in self.pidstore.load():
            self._connect_to_peer(peer_id, connect)

    def _connect_to_peer(self, peer_id: str, connect: Callable[[str], None]) -> None:
        try:
            connect(peer_id)
        except Exception as exc:  # a failed dial only means the peer is not tracked
            logger.debug("failed to connect to peer %s: %s", peer_id, exc)
            return
        logger.debug("connected to peer %s", peer_id)
        self.connected(peer_id, False)

    def connected(self, peer_id: str, transient: bool = False) -> None:
        """Start tracking a peer that connected, restoring its stats if it was seen before."""
        if peer_id == self.local_id or transient:
            return
        with self._lock:
            if peer_id in self._blocked:
                return
            total = len(self.tracked_peers) + len(self.disconnected_peers)
            if total > MAX_PEER_TRACKER_SIZE and len(self.tracked_peers) > len(self.disconnected_peers):
                return
            stats = self.disconnected_peers.pop(peer_id, None)
            if stats is None:
                stats = self.tracked_peers.get(peer_id) or PeerStat(peer_id=peer_id, peer_score=DEFAULT_SCORE)
            self.tracked_peers[peer_id] = stats

    def disconnected(self, peer_id: str) -> None:
        """Move a tracked peer to the disconnected peers, with a prune deadline."""
        with self._lock:
            stats = self.tracked_peers.pop(peer_id, None)
            if stats is None:
                return
            stats.prune_deadline = datetime.now(timezone.utc) + self.max_awaiting_time
            self.disconnected_peers[peer_id] = stats

    def get_peers(self, limit: int) -> List[str]:
        """Return up to `limit` IDs of tracked peers."""
        with self._lock:
            return list(itertools.islice(self.tracked_peers, limit))

    def peers(self) -> List[PeerStat]:
        """Return the stats of all tracked peers."""
        with self._lock:
            return list(self.tracked_peers.values())

    def collect_garbage(self, now: Optional[datetime] = None) -> None:
        """Prune expired disconnected peers and low-scoring tracked peers, then dump."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            for peer_id, stat in list(self.disconnected_peers.items()):
                if stat.prune_deadline is None or stat.prune_deadline < now:
                    del self.disconnected_peers[peer_id]
            for peer_id, stat in list(self.tracked_peers.items()):
                if stat.score() <= DEFAULT_SCORE:
                    del self.tracked_peers[peer_id]
        self.dump_peers()

    def dump_peers(self) -> None:
        """Store the tracked peers in the pidstore, if one is set."""
        if self.pidstore is None:
            return
        with self._lock:
            peers = list(self.tracked_peers)
        try:
            self.pidstore.put(peers)
        except Exception as exc:  # persisting peers is best effort
            logger.error("failed to dump tracked peers to PeerIDStore: %s", exc)
            return
        logger.debug("dumped %d peers to PeerIDStore", len(peers))

    def block_peer(self, peer_id: str, reason: BaseException) -> None:
        """Block a peer from being tracked again and forget it."""
        logger.warning("header/p2p: blocked peer %s: %s", peer_id, reason)
        with self._lock:
            self._blocked[peer_id] = None
            self.tracked_peers.pop(peer_id, None)
            self.disconnected_peers.pop(peer_id, None)

    def blocked_peers(self) -> List[str]:
        """Return the IDs of blocked peers, in the order they were blocked."""
        with self._lock:
            return list(self._blocked)

    def stop(self) -> None:
        """Dump the remaining tracked peers."""
        self.dump_peers()