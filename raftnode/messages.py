"""RPC messages exchanged between nodes and their line-based wire encoding."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from .state import LogEntry


@dataclass(frozen=True)
class VoteRequest:
    """A candidate asking for a vote."""

    term: int = 0
    candidate_id: str = ""
    last_log_index: int = 0
    last_log_term: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "term": self.term,
            "candidate_id": self.candidate_id,
            "last_log_index": self.last_log_index,
            "last_log_term": self.last_log_term,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> VoteRequest:
        return VoteRequest(
            term=int(data.get("term", 0)),
            candidate_id=str(data.get("candidate_id", "")),
            last_log_index=int(data.get("last_log_index", 0)),
            last_log_term=int(data.get("last_log_term", 0)),
        )


@dataclass(frozen=True)
class VoteResponse:
    """A peer's answer to a vote request."""

    term: int = 0
    vote_granted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"term": self.term, "vote_granted": self.vote_granted}

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> VoteResponse:
        return VoteResponse(term=int(data.get("term", 0)), vote_granted=bool(data.get("vote_granted", False)))


@dataclass(frozen=True)
class AppendEntriesRequest:
    """A leader replicating entries; an empty entry list is a heartbeat."""

    term: int = 0
    leader_id: str = ""
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "term": self.term,
            "leader_id": self.leader_id,
            "prev_log_index": self.prev_log_index,
            "prev_log_term": self.prev_log_term,
            "entries": [
                {"term": e.term, "index": e.index, "command": base64.b64encode(e.command).decode("ascii")}
                for e in self.entries
            ],
            "leader_commit": self.leader_commit,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> AppendEntriesRequest:
        entries = [
            LogEntry(
                term=int(e.get("term", 0)),
                index=int(e.get("index", 0)),
                command=base64.b64decode(e.get("command", ""), validate=True),
            )
            for e in data.get("entries") or []
        ]
        return AppendEntriesRequest(
            term=int(data.get("term", 0)),
            leader_id=str(data.get("leader_id", "")),
            prev_log_index=int(data.get("prev_log_index", 0)),
            prev_log_term=int(data.get("prev_log_term", 0)),
            entries=entries,
            leader_commit=int(data.get("leader_commit", 0)),
        )


@dataclass(frozen=True)
class AppendEntriesResponse:
    """A follower's answer to an append request."""

    term: int = 0
    success: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"term": self.term, "success": self.success}

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> AppendEntriesResponse:
        return AppendEntriesResponse(term=int(data.get("term", 0)), success=bool(data.get("success", False)))


Message = Union[VoteRequest, VoteResponse, AppendEntriesRequest, AppendEntriesResponse]

MESSAGE_TYPES: dict[str, type] = {
    cls.__name__: cls for cls in (VoteRequest, VoteResponse, AppendEntriesRequest, AppendEntriesResponse)
}


def encode_message(kind: str, message: Message) -> bytes:
    """Encode a message as one newline-terminated JSON line."""
    cls = MESSAGE_TYPES.get(kind)
    if cls is None or not isinstance(message, cls):
        raise ValueError(f"message {type(message).__name__} does not match kind {kind!r}")
    document = {"kind": kind, "body": message.to_dict()}
    return (json.dumps(document, separators=(",", ":")) + "\n").encode("utf-8")


def decode_message(line: bytes | str) -> tuple[str, Message]:
    """Decode one line produced by encode_message into (kind, message)."""
    document = json.loads(line)
    if not isinstance(document, dict):
        raise ValueError("message must be a JSON object")
    kind = document.get("kind")
    cls = MESSAGE_TYPES.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise ValueError(f"unknown message kind {kind!r}")
    body = document.get("body", {})
    if not isinstance(body, dict):
        raise ValueError("message body must be a JSON object")
    return kind, cls.from_dict(body)