"""Peer table used to find nodes to broadcast to."""

from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class Node:
    """A network peer."""

    node_id: str
    ip: str
    port: int


class DHT:
    """Thread-safe table of known peers keyed by node id."""

    def __init__(self) -> None:
        self._peers: dict[str, Node] = {}
        self._lock = threading.Lock()
        self.bootstrap_ip: str = ""
        self.bootstrap_port: int = 0

    def add_peer(self, node: Node) -> None:
        """Add a peer, replacing any earlier entry with the same id."""
        with self._lock:
            self._peers[node.node_id] = node

    def find_peers(self, node_id: str, max_peers: int) -> list[Node]:
        """Return up to ``max_peers`` peers other than ``node_id``."""
        with self._lock:
            others = [node for peer_id, node in self._peers.items() if peer_id != node_id]
        return others[:max_peers]

    def bootstrap(self, ip: str, port: int) -> None:
        """Record the bootstrap node and add it as a peer."""
        self.bootstrap_ip = ip
        self.bootstrap_port = port
        self.add_peer(Node("bootstrap", ip, port))