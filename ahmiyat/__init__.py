"""Sharded proof-of-work ledger node with staking, governance, peer gossip and an HTTP API."""

__version__ = "0.1.0"