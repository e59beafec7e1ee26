"""Core node state types: roles, log entries, configuration and errors."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class NodeState(enum.IntEnum):
    """The three roles a node can hold."""

    FOLLOWER = 0
    CANDIDATE = 1
    LEADER = 2

    def __str__(self) -> str:
        return self.name.capitalize()


@dataclass(frozen=True)
class LogEntry:
    """A command stored in the replicated log."""

    term: int
    index: int
    command: bytes = b""


@dataclass
class Config:
    """Node configuration. Zero timings mean "choose the default"."""

    id: str
    peers: list[str] = field(default_factory=list)
    election_timeout: float = 0.0
    heartbeat_interval: float = 0.0


@dataclass(frozen=True)
class CommandResult:
    """Outcome of submitting a command to the cluster."""

    success: bool = False
    term: int = 0
    index: int = 0
    leader_id: str = ""


class NodeError(Exception):
    """Base class for errors reported by a node."""

    default_message = "node error"

    def __init__(self, message: str | None = None, result: CommandResult | None = None):
        super().__init__(message or self.default_message)
        self.result = result


class NotLeaderError(NodeError):
    """The node is not the leader and cannot accept commands."""

    default_message = "not the leader"


class OperationTimeoutError(NodeError):
    """The operation did not finish in time."""

    default_message = "Operation timeout"


class NotCommittedError(NodeError):
    """The entry was not committed, for instance because the term changed."""

    default_message = "entry not commited"