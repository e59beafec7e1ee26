"""A consensus node: elections, heartbeats, log replication and RPC handling."""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from typing import Callable

from .messages import AppendEntriesRequest, AppendEntriesResponse, VoteRequest, VoteResponse
from .state import (
    CommandResult,
    Config,
    LogEntry,
    NodeState,
    NotCommittedError,
    NotLeaderError,
    OperationTimeoutError,
)
from .transport import ConsensusClient, RPCServer, new_consensus_client, port_for_id

logger = logging.getLogger(__name__)

_VOTE_TIMEOUT = 2.0
_HEARTBEAT_TIMEOUT = 2.0
_APPEND_TIMEOUT = 1.0
_COMMIT_POLL = 0.05
_DEFAULT_HEARTBEAT = 0.05

ClientFactory = Callable[[str], ConsensusClient]


class Node:
    """A single member of the cluster."""

    def __init__(self, config: Config, client_factory: ClientFactory = new_consensus_client):
        election_timeout = config.election_timeout or random.randrange(150, 300) / 1000
        heartbeat_interval = config.heartbeat_interval or _DEFAULT_HEARTBEAT

        self._id = config.id
        self._peers = list(config.peers)
        self._client_factory = client_factory
        self._peer_clients: dict[str, ConsensusClient] = {}

        self._current_term = 0
        self._voted_for = ""
        self._state = NodeState.FOLLOWER
        self._log: list[LogEntry] = []
        self._commit_index = 0
        self._last_applied = 0
        self._next_index: dict[str, int] = {}
        self._match_index: dict[str, int] = {}

        self._election_timeout = election_timeout
        self._heartbeat_interval = heartbeat_interval
        self._last_heartbeat = time.monotonic()

        self._lock = threading.RLock()
        self._shutdown = threading.Event()
        self._timer_reset = threading.Event()
        self._rpc_server: RPCServer | None = None
        self._thread: threading.Thread | None = None

        logger.info(
            "[Node %s] Initialized with election timeout: %.3fs, heartbeat interval: %.3fs",
            self._id, self._election_timeout, self._heartbeat_interval,
        )

    # ----- lifecycle -------------------------------------------------------

    def start(self) -> None:
        """Start the RPC server, connect to peers and run the timer loop."""
        logger.info("[Node %s] starting as %s.", self._id, self._state)
        server = RPCServer(self, f":{port_for_id(self._id)}")
        try:
            server.start()
        except OSError as exc:
            raise OSError(f"Failed to start RPC server: {exc}") from exc
        self._rpc_server = server

        try:
            self.connect_to_peers()
        except ConnectionError as exc:
            logger.warning("[Node %s] Warning: failed to connect to peers: %s", self._id, exc)

        self._thread = threading.Thread(target=self._run, name=f"node-{self._id}", daemon=True)
        self._thread.start()

    def shutdown(self) -> None:
        """Stop the timer loop, close peer clients and stop the RPC server."""
        logger.info("[Node %s] Initiating shutdown", self._id)
        self._shutdown.set()
        self._timer_reset.set()
        for client in self._peer_clients.values():
            client.close()
        if self._rpc_server is not None:
            self._rpc_server.stop()
            self._rpc_server = None

    def _run(self) -> None:
        now = time.monotonic()
        election_due = now + self._election_timeout
        heartbeat_due = now + self._heartbeat_interval
        while not self._shutdown.is_set():
            wait = max(0.0, min(election_due, heartbeat_due) - time.monotonic())
            if self._timer_reset.wait(wait):
                self._timer_reset.clear()
                if self._shutdown.is_set():
                    break
                election_due = time.monotonic() + self._election_timeout
                continue
            now = time.monotonic()
            if now >= election_due:
                self.handle_election_timeout()
                election_due = time.monotonic() + self._election_timeout
            if now >= heartbeat_due:
                self.send_heartbeats()
                heartbeat_due = time.monotonic() + self._heartbeat_interval
        logger.info("[Node %s] Received shutdown signal", self._id)

    # ----- state queries ---------------------------------------------------

    def get_state(self) -> tuple[NodeState, int, str]:
        """Return (state, current term, node id)."""
        with self._lock:
            return self._state, self._current_term, self._id

    def is_leader(self) -> bool:
        with self._lock:
            return self._state == NodeState.LEADER

    # ----- peers -----------------------------------------------------------

    def connect_to_peers(self) -> None:
        """Create a client for every peer; raise ConnectionError if none could be made."""
        for peer_addr in self._peers:
            try:
                client = self._client_factory(peer_addr)
            except (ValueError, OSError) as exc:
                logger.warning("[Node %s] Failed to connect to peer: %s: %s", self._id, peer_addr, exc)
                continue
            self._peer_clients[peer_addr] = client
            logger.info("[Node %s] Connected to peer at %s", self._id, peer_addr)
        if not self._peer_clients:
            raise ConnectionError("Failed to connect to any peers")

    # ----- elections -------------------------------------------------------

    def handle_election_timeout(self) -> None:
        """Start an election if no heartbeat arrived within the election timeout."""
        with self._lock:
            if self._state == NodeState.LEADER:
                return
            since = time.monotonic() - self._last_heartbeat
            if since < self._election_timeout:
                return
            logger.info(
                "[Node %s] Election timeout! Time since last heartbeat: %.3fs. Starting election...",
                self._id, since,
            )
        self.start_election()

    def start_election(self) -> bool:
        """Run one election round; return True if this node became leader."""
        with self._lock:
            self._current_term += 1
            self._state = NodeState.CANDIDATE
            self._voted_for = self._id
            term = self._current_term
            logger.info("[Node %s] Starting election %d", self._id, term)
        self._timer_reset.set()

        votes = 1
        votes_needed = (len(self._peers) + 1) // 2 + 1
        results: queue.Queue[bool] = queue.Queue()

        def ask(peer_addr: str) -> None:
            granted = False
            try:
                granted = self.request_vote(peer_addr, term)
            finally:
                results.put(granted)

        for peer_addr in self._peers:
            threading.Thread(target=ask, args=(peer_addr,), daemon=True).start()

        for _ in self._peers:
            if results.get():
                votes += 1
                logger.info("[Node %s] Received vote. Total votes: %d/%d", self._id, votes, votes_needed)
                if votes >= votes_needed:
                    return self.become_leader(term)

        logger.info("[Node %s] Election failed. Only received %d/%d votes", self._id, votes, votes_needed)
        return False

    def become_leader(self, term: int) -> bool:
        """Take leadership if still a candidate in the given term."""
        with self._lock:
            if self._state != NodeState.CANDIDATE or self._current_term != term:
                return False
            logger.info("[Node %s] WON ELECTION! Becoming leader for term %d", self._id, term)
            self._state = NodeState.LEADER
        threading.Thread(target=self.send_heartbeats, daemon=True).start()
        return True

    def step_down(self, new_term: int) -> None:
        """Become a follower if new_term is higher than the current term."""
        with self._lock:
            if new_term <= self._current_term:
                return
            logger.info(
                "[Node %s] Stepping down from %s to Follower (term %d -> %d)",
                self._id, self._state, self._current_term, new_term,
            )
            self._current_term = new_term
            self._state = NodeState.FOLLOWER
            self._voted_for = ""
            self._last_heartbeat = time.monotonic()
        self._timer_reset.set()

    def request_vote(self, peer_addr: str, term: int) -> bool:
        """Ask one peer for its vote in term; return whether it was granted."""
        client = self._peer_clients.get(peer_addr)
        if client is None:
            logger.info("[Node %s] No client for peer %s", self._id, peer_addr)
            return False

        with self._lock:
            last_log_index = len(self._log)
            last_log_term = self._log[-1].term if self._log else 0

        request = VoteRequest(
            term=term,
            candidate_id=self._id,
            last_log_index=last_log_index,
            last_log_term=last_log_term,
        )
        try:
            response = client.request_vote(request, timeout=_VOTE_TIMEOUT)
        except OSError as exc:
            logger.warning("[Node %s] RequestVote to %s failed %s", self._id, peer_addr, exc)
            return False

        if response.term > term:
            self.step_down(response.term)
            return False
        return response.vote_granted

    # ----- heartbeats and replication ---------------------------------------

    def send_heartbeats(self) -> list[threading.Thread]:
        """Send an empty AppendEntries to every peer; return the worker threads."""
        with self._lock:
            if self._state != NodeState.LEADER:
                return []
            term = self._current_term
            commit_index = self._commit_index

        logger.debug("[Node %s] Sending heartbeats to %d peers (term %d)", self._id, len(self._peers), term)

        def beat(peer_addr: str) -> None:
            client = self._peer_clients.get(peer_addr)
            if client is None:
                return
            request = AppendEntriesRequest(
                term=term,
                leader_id=self._id,
                prev_log_index=0,
                prev_log_term=0,
                entries=[],
                leader_commit=commit_index,
            )
            try:
                response = client.append_entries(request, timeout=_HEARTBEAT_TIMEOUT)
            except OSError as exc:
                logger.warning("[Node %s] Heartbeat to %s failed: %s", self._id, peer_addr, exc)
                return
            if response.term > term:
                logger.info("[Node %s] Received higher term %d from peer, stepping down", self._id, response.term)
                self.step_down(response.term)

        threads = [threading.Thread(target=beat, args=(p,), daemon=True) for p in self._peers]
        for thread in threads:
            thread.start()
        return threads

    def submit(self, command: bytes, timeout: float = 5.0) -> CommandResult:
        """Append a command on the leader and wait until it is committed."""
        with self._lock:
            if self._state != NodeState.LEADER:
                leader_id = self._voted_for
                logger.info("[Node %s] Rejecting command - not the leader", self._id)
                raise NotLeaderError(result=CommandResult(success=False, leader_id=leader_id))
            index = len(self._log) + 1
            term = self._current_term
            self._log.append(LogEntry(term=term, index=index, command=bytes(command)))
            logger.info("[Node %s] Appended entry at index %d: %r", self._id, index, command)

        self.replicate_log()

        pending = CommandResult(success=False, leader_id=self._id, term=term, index=index)
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining < _COMMIT_POLL:
                time.sleep(max(remaining, 0.0))
                raise OperationTimeoutError(result=pending)
            time.sleep(_COMMIT_POLL)
            with self._lock:
                committed = self._commit_index >= index
                current_term = self._current_term
                is_leader = self._state == NodeState.LEADER
            if not is_leader:
                raise NotLeaderError(result=pending)
            if current_term != term:
                raise NotCommittedError(result=pending)
            if committed:
                logger.info("[Node %s] Command at index %d committed!", self._id, index)
                return CommandResult(success=True, leader_id=self._id, term=term, index=index)

    def _entries_from(self, next_idx: int) -> tuple[int, int, list[LogEntry]]:
        prev_idx = next_idx - 1
        prev_term = self._log[prev_idx - 1].term if 0 < prev_idx <= len(self._log) else 0
        entries = list(self._log[next_idx - 1:]) if next_idx <= len(self._log) else []
        return prev_idx, prev_term, entries

    def replicate_log(self) -> list[threading.Thread]:
        """Send missing entries to every peer in parallel; return the worker threads."""
        with self._lock:
            if self._state != NodeState.LEADER:
                return []
            term = self._current_term
            leader_commit = self._commit_index
            plans = []
            for peer_addr in self._peers:
                next_idx = self._next_index.get(peer_addr, 0) or 1
                plans.append((peer_addr, *self._entries_from(next_idx)))

        threads = [
            threading.Thread(
                target=self._send_append_entries,
                args=(peer_addr, term, self._id, prev_idx, prev_term, entries, leader_commit),
                daemon=True,
            )
            for peer_addr, prev_idx, prev_term, entries in plans
        ]
        for thread in threads:
            thread.start()
        return threads

    def _send_append_entries(
        self,
        peer_addr: str,
        term: int,
        leader_id: str,
        prev_log_index: int,
        prev_log_term: int,
        entries: list[LogEntry],
        leader_commit: int,
    ) -> None:
        client = self._peer_clients.get(peer_addr)
        if client is None:
            return
        while True:
            request = AppendEntriesRequest(
                term=term,
                leader_id=leader_id,
                prev_log_index=prev_log_index,
                prev_log_term=prev_log_term,
                entries=entries,
                leader_commit=leader_commit,
            )
            if entries:
                logger.info(
                    "[Node %s] Sending %d entries to %s (prevLog: idx=%d, term=%d)",
                    self._id, len(entries), peer_addr, prev_log_index, prev_log_term,
                )
            try:
                response = client.append_entries(request, timeout=_APPEND_TIMEOUT)
            except OSError as exc:
                logger.warning("[Node %s] AppendEntries to %s failed: %s", self._id, peer_addr, exc)
                return

            with self._lock:
                if self._state != NodeState.LEADER or self._current_term != term:
                    return
                if response.term > term:
                    logger.info(
                        "[Node %s] Peer %s has higher term %d, stepping down",
                        self._id, peer_addr, response.term,
                    )
                    self._current_term = response.term
                    self._state = NodeState.FOLLOWER
                    self._voted_for = ""
                    return
                if response.success:
                    if entries:
                        last_index = entries[-1].index
                        self._next_index[peer_addr] = last_index + 1
                        self._match_index[peer_addr] = last_index
                        logger.info(
                            "[Node %s] Peer %s accepted entries up to index %d",
                            self._id, peer_addr, last_index,
                        )
                        self.update_commit_index()
                    return
                next_idx = max(self._next_index.get(peer_addr, 0) - 1, 1)
                self._next_index[peer_addr] = next_idx
                logger.info(
                    "[Node %s] Peer %s rejected entries, decrementing nextIndex to %d",
                    self._id, peer_addr, next_idx,
                )
                prev_log_index, prev_log_term, entries = self._entries_from(next_idx)

    def update_commit_index(self) -> None:
        """Advance the commit index over current-term entries held by a majority."""
        with self._lock:
            majority = (len(self._peers) + 1) // 2 + 1
            for idx in range(self._commit_index + 1, len(self._log) + 1):
                if self._log[idx - 1].term != self._current_term:
                    continue
                count = 1 + sum(1 for match in self._match_index.values() if match >= idx)
                if count >= majority:
                    self._commit_index = idx
                    logger.info(
                        "[Node %s] Committed entries up to index %d (replicated on %d/%d nodes)",
                        self._id, idx, count, len(self._peers) + 1,
                    )

    def get_committed_entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._log[: self._commit_index])

    def get_log_status(self) -> str:
        with self._lock:
            return (
                f"Log: {len(self._log)} entries, Committed: {self._commit_index}, "
                f"Applied: {self._last_applied}"
            )

    # ----- incoming RPCs ---------------------------------------------------

    def handle_request_vote(self, request: VoteRequest) -> VoteResponse:
        """Decide whether to grant a candidate's vote request."""
        with self._lock:
            logger.info(
                "[Node %s] Received RequestVote from %s for term %d (our term: %d)",
                self._id, request.candidate_id, request.term, self._current_term,
            )
            if request.term < self._current_term:
                logger.info(
                    "[Node %s] Rejecting vote - candidate term %d < our term %d",
                    self._id, request.term, self._current_term,
                )
                return VoteResponse(term=self._current_term, vote_granted=False)

            if request.term > self._current_term:
                logger.info(
                    "[Node %s] updating term from %d to %d and stepping down",
                    self._id, self._current_term, request.term,
                )
                self._current_term = request.term
                self._state = NodeState.FOLLOWER
                self._voted_for = ""
                self._last_heartbeat = time.monotonic()

            if self._voted_for not in ("", request.candidate_id):
                logger.info("[Node %s] Rejecting vote - already voted for %s", self._id, self._voted_for)
                return VoteResponse(term=self._current_term, vote_granted=False)

            last_log_index = len(self._log)
            last_log_term = self._log[-1].term if self._log else 0
            up_to_date = request.last_log_term > last_log_term or (
                request.last_log_term == last_log_term and request.last_log_index >= last_log_index
            )
            if not up_to_date:
                logger.info("[Node %s] Rejecting vote - candidate log not up-to-date", self._id)
                return VoteResponse(term=self._current_term, vote_granted=False)

            self._voted_for = request.candidate_id
            self._last_heartbeat = time.monotonic()
            logger.info("[Node %s] Granted vote to %s for term %d", self._id, request.candidate_id, request.term)
            response = VoteResponse(term=self._current_term, vote_granted=True)
        self._timer_reset.set()
        return response

    def handle_append_entries(self, request: AppendEntriesRequest) -> AppendEntriesResponse:
        """Accept a heartbeat or entries from a leader whose term is current."""
        with self._lock:
            if request.entries:
                logger.info(
                    "[Node %s] Received AppendEntries from %s with %d entries",
                    self._id, request.leader_id, len(request.entries),
                )
            else:
                logger.debug(
                    "[Node %s] Received heartbeat from leader %s (term %d)",
                    self._id, request.leader_id, request.term,
                )

            if request.term < self._current_term:
                logger.info(
                    "[Node %s] Rejecting AppendEntries - leader term %d < our term %d",
                    self._id, request.term, self._current_term,
                )
                return AppendEntriesResponse(term=self._current_term, success=False)

            if request.term > self._current_term:
                if self._state != NodeState.FOLLOWER:
                    logger.info(
                        "[Node %s] Converting to Follower due to AppendEntries from %s",
                        self._id, request.leader_id,
                    )
                self._current_term = request.term
                self._state = NodeState.FOLLOWER
                self._voted_for = ""

            self._last_heartbeat = time.monotonic()
            response = AppendEntriesResponse(term=self._current_term, success=True)
        self._timer_reset.set()
        return response