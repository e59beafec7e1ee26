"""Raft-style consensus node: leader election, heartbeats and log replication over TCP."""

__version__ = "0.1.0"
__all__ = ["cli", "messages", "node", "state", "transport"]