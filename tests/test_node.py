import threading
import time

import pytest

from raftnode.messages import AppendEntriesRequest, AppendEntriesResponse, VoteRequest, VoteResponse
from raftnode.node import Node
from raftnode.state import (
    Config,
    LogEntry,
    NodeState,
    NotLeaderError,
    OperationTimeoutError,
)
from raftnode.transport import ConsensusClient, RPCServer


class FakePeer(ConsensusClient):
    def __init__(self, on_vote=None, on_append=None):
        self.on_vote = on_vote or (lambda r: VoteResponse(term=r.term, vote_granted=True))
        self.on_append = on_append or (lambda r: AppendEntriesResponse(term=r.term, success=True))
        self.votes = []
        self.appends = []
        self.closed = False
        self._lock = threading.Lock()

    def request_vote(self, request, timeout=2.0):
        with self._lock:
            self.votes.append(request)
        return self.on_vote(request)

    def append_entries(self, request, timeout=2.0):
        with self._lock:
            self.appends.append(request)
        return self.on_append(request)

    def close(self):
        self.closed = True

    def entry_requests(self):
        with self._lock:
            return [r for r in self.appends if r.entries]


def make_node(peers=None, node_id="n1", election_timeout=10.0):
    peers = peers or {}
    config = Config(id=node_id, peers=list(peers), election_timeout=election_timeout, heartbeat_interval=0.05)
    node = Node(config, client_factory=peers.__getitem__)
    if peers:
        node.connect_to_peers()
    return node


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def leader_with(peers):
    node = make_node(peers)
    assert node.start_election() is True
    return node


def test_initial_state():
    node = make_node(node_id="alpha")
    assert node.get_state() == (NodeState.FOLLOWER, 0, "alpha")
    assert node.is_leader() is False
    assert node.get_log_status() == "Log: 0 entries, Committed: 0, Applied: 0"
    assert node.get_committed_entries() == []


def test_connect_to_peers_without_peers_raises():
    node = make_node()
    with pytest.raises(ConnectionError):
        node.connect_to_peers()


def test_connect_to_peers_skips_failing_factory():
    good = FakePeer()

    def factory(addr):
        if addr == "bad:1":
            raise ValueError("no route")
        return good

    node = Node(Config(id="n1", peers=["bad:1", "good:2"], election_timeout=10.0), client_factory=factory)
    node.connect_to_peers()
    assert node.request_vote("bad:1", 1) is False
    assert node.request_vote("good:2", 1) is True


def test_vote_granted_to_first_candidate_only():
    node = make_node()
    first = node.handle_request_vote(VoteRequest(term=2, candidate_id="a"))
    assert first == VoteResponse(term=2, vote_granted=True)
    assert node.get_state()[:2] == (NodeState.FOLLOWER, 2)
    second = node.handle_request_vote(VoteRequest(term=2, candidate_id="b"))
    assert second.vote_granted is False
    again = node.handle_request_vote(VoteRequest(term=2, candidate_id="a"))
    assert again.vote_granted is True


def test_vote_rejected_for_stale_term():
    node = make_node()
    node.handle_append_entries(AppendEntriesRequest(term=3, leader_id="lead"))
    response = node.handle_request_vote(VoteRequest(term=2, candidate_id="c"))
    assert response == VoteResponse(term=3, vote_granted=False)


def test_vote_rejected_when_candidate_log_behind():
    leader = leader_with({"p1": FakePeer(), "p2": FakePeer()})
    leader.submit(b"cmd", timeout=2.0)
    term = leader.get_state()[1]
    response = leader.handle_request_vote(
        VoteRequest(term=term + 1, candidate_id="c", last_log_index=0, last_log_term=0)
    )
    assert response.vote_granted is False
    assert leader.get_state()[:2] == (NodeState.FOLLOWER, term + 1)


def test_append_entries_stale_term_rejected():
    node = make_node()
    node.handle_append_entries(AppendEntriesRequest(term=4, leader_id="lead"))
    response = node.handle_append_entries(AppendEntriesRequest(term=1, leader_id="old"))
    assert response == AppendEntriesResponse(term=4, success=False)


def test_append_entries_converts_candidate_to_follower():
    node = make_node()
    node.start_election()
    state, term, _ = node.get_state()
    assert state == NodeState.CANDIDATE
    response = node.handle_append_entries(AppendEntriesRequest(term=term + 1, leader_id="lead"))
    assert response == AppendEntriesResponse(term=term + 1, success=True)
    assert node.get_state()[:2] == (NodeState.FOLLOWER, term + 1)


def test_election_won_with_granting_peers():
    peers = {"p1": FakePeer(), "p2": FakePeer()}
    node = make_node(peers)
    assert node.start_election() is True
    state, term, _ = node.get_state()
    assert state == NodeState.LEADER
    assert node.is_leader() is True
    request = peers["p1"].votes[0]
    assert request.candidate_id == "n1"
    assert request.term == term


def test_election_lost_with_refusing_peers():
    refuse = lambda r: VoteResponse(term=r.term, vote_granted=False)
    node = make_node({"p1": FakePeer(on_vote=refuse), "p2": FakePeer(on_vote=refuse)})
    assert node.start_election() is False
    assert node.get_state()[0] == NodeState.CANDIDATE


def test_election_without_peers_does_not_win():
    node = make_node()
    assert node.start_election() is False
    assert node.get_state()[0] == NodeState.CANDIDATE


def test_request_vote_higher_term_steps_down():
    peer = FakePeer(on_vote=lambda r: VoteResponse(term=r.term + 5, vote_granted=True))
    node = make_node({"p1": peer})
    assert node.request_vote("p1", 0) is False
    assert node.get_state()[:2] == (NodeState.FOLLOWER, 5)


def test_request_vote_failure_returns_false():
    def fail(request):
        raise ConnectionError("down")

    node = make_node({"p1": FakePeer(on_vote=fail)})
    assert node.request_vote("p1", 1) is False
    assert node.request_vote("unknown", 1) is False


def test_become_leader_requires_matching_term():
    node = make_node()
    node.start_election()
    term = node.get_state()[1]
    assert node.become_leader(term + 1) is False
    assert node.get_state()[0] == NodeState.CANDIDATE
    assert node.become_leader(term) is True
    assert node.is_leader() is True


def test_step_down_only_for_higher_term():
    node = make_node()
    node.start_election()
    term = node.get_state()[1]
    node.step_down(term)
    assert node.get_state()[:2] == (NodeState.CANDIDATE, term)
    node.step_down(term + 2)
    assert node.get_state()[:2] == (NodeState.FOLLOWER, term + 2)


def test_election_timeout_respects_recent_heartbeat():
    node = make_node(election_timeout=10.0)
    node.handle_election_timeout()
    assert node.get_state()[:2] == (NodeState.FOLLOWER, 0)


def test_election_timeout_starts_election_when_expired():
    node = make_node(election_timeout=0.01)
    time.sleep(0.05)
    node.handle_election_timeout()
    assert node.get_state()[:2] == (NodeState.CANDIDATE, 1)


def test_submit_on_follower_raises_not_leader():
    node = make_node()
    node.handle_request_vote(VoteRequest(term=1, candidate_id="other"))
    with pytest.raises(NotLeaderError) as info:
        node.submit(b"x")
    assert info.value.result.success is False
    assert info.value.result.leader_id == "other"


def test_submit_commits_on_majority():
    node = leader_with({"p1": FakePeer(), "p2": FakePeer()})
    term = node.get_state()[1]
    result = node.submit(b"set x", timeout=2.0)
    assert result.success is True
    assert (result.term, result.index, result.leader_id) == (term, 1, "n1")
    assert node.get_committed_entries() == [LogEntry(term=term, index=1, command=b"set x")]
    assert node.get_log_status() == "Log: 1 entries, Committed: 1, Applied: 0"


def test_submit_times_out_when_peers_unreachable():
    def fail(request):
        if request.entries:
            raise ConnectionError("down")
        return AppendEntriesResponse(term=request.term, success=True)

    node = leader_with({"p1": FakePeer(on_append=fail), "p2": FakePeer(on_append=fail)})
    with pytest.raises(OperationTimeoutError) as info:
        node.submit(b"lost", timeout=0.3)
    assert info.value.result.index == 1
    assert info.value.result.success is False
    assert node.get_committed_entries() == []


def test_submit_loses_leadership_on_higher_term_reply():
    def higher(request):
        if request.entries:
            return AppendEntriesResponse(term=request.term + 3, success=False)
        return AppendEntriesResponse(term=request.term, success=True)

    node = leader_with({"p1": FakePeer(on_append=higher)})
    term = node.get_state()[1]
    with pytest.raises(NotLeaderError):
        node.submit(b"cmd", timeout=2.0)
    assert node.get_state()[:2] == (NodeState.FOLLOWER, term + 3)


def test_rejected_entries_are_retried():
    calls = {"n": 0}

    def reject_once(request):
        if request.entries:
            calls["n"] += 1
            if calls["n"] == 1:
                return AppendEntriesResponse(term=request.term, success=False)
        return AppendEntriesResponse(term=request.term, success=True)

    peer = FakePeer(on_append=reject_once)
    node = leader_with({"p1": peer})
    result = node.submit(b"retry", timeout=2.0)
    assert result.success is True
    sent = peer.entry_requests()
    assert len(sent) >= 2
    assert all(r.prev_log_index == 0 for r in sent)


def test_send_heartbeats_only_when_leader():
    peer = FakePeer()
    node = make_node({"p1": peer})
    assert node.send_heartbeats() == []
    assert peer.appends == []


def test_send_heartbeats_sends_empty_requests():
    peer = FakePeer()
    node = leader_with({"p1": peer})
    term = node.get_state()[1]
    for thread in node.send_heartbeats():
        thread.join(timeout=2.0)
    assert peer.appends
    assert all(r.entries == [] and r.leader_id == "n1" and r.term == term for r in peer.appends)


def test_heartbeat_reply_with_higher_term_steps_down():
    peer = FakePeer(on_append=lambda r: AppendEntriesResponse(term=r.term + 4, success=True))
    node = leader_with({"p1": peer})
    assert wait_for(lambda: not node.is_leader())
    assert node.get_state()[:2] == (NodeState.FOLLOWER, 5)


def test_shutdown_closes_peer_clients():
    peer = FakePeer()
    node = make_node({"p1": peer})
    node.shutdown()
    assert peer.closed is True


def test_election_over_tcp():
    follower = make_node(node_id="b")
    server = RPCServer(follower, "127.0.0.1:0")
    server.start()
    try:
        host, port = server.bound_address
        candidate = Node(Config(id="a", peers=[f"127.0.0.1:{port}"], election_timeout=10.0))
        candidate.connect_to_peers()
        assert candidate.start_election() is True
        term = candidate.get_state()[1]
        assert follower.get_state()[:2] == (NodeState.FOLLOWER, term)
        rival = follower.handle_request_vote(VoteRequest(term=term, candidate_id="c"))
        assert rival.vote_granted is False
        candidate.shutdown()
    finally:
        server.stop()