# raftnode

A compact Raft-style consensus node.

Each node starts as a follower and runs a randomised election timeout. If the timeout passes without a heartbeat, the node asks its peers for votes. A node that wins a majority becomes leader and sends periodic heartbeats.

A leader accepts commands and appends them to its log. It sends missing entries to its peers and commits an entry of its current term once a majority holds it.

Nodes talk to each other over plain TCP. Each message is one newline-terminated JSON line of one of these kinds:

- `VoteRequest`
- `VoteResponse`
- `AppendEntriesRequest`
- `AppendEntriesResponse`

## Installation

```
pip install .
```

Python 3.10 or newer is required. There are no third-party dependencies. The tests use pytest:

```
pip install .[test]
pytest
```

## Running a cluster

A node listens on port `8000` plus the last digit of its id. `node1` uses port 8001 and `node2` uses port 8002. An id that does not end in a digit uses port 8000.

The node listens on all interfaces. Start three nodes in three terminals:

```
raftnode --id node1 --peers localhost:8002,localhost:8003
raftnode --id node2 --peers localhost:8001,localhost:8003
raftnode --id node3 --peers localhost:8001,localhost:8002
```

`python -m raftnode.cli` takes the same options.

Options (each can also be written with a single dash, e.g. `-id`):

- `--id`: the unique node identifier (default `node1`).
- `--port`: the port shown in the start-up banner (default `8001`). The listening port itself always comes from the id, as described above.
- `--peers`: comma-separated peer addresses in `host:port` form.

The command picks an election timeout between 150 and 300 ms and a heartbeat interval of 50 ms. Every five seconds it logs the node's state, term and whether it is the leader.

Ctrl+C or SIGTERM stops the node. If the listening port cannot be bound, the command logs the error and exits with status 1.

## Using the library

```python
from raftnode.node import Node
from raftnode.state import Config, NodeError

node = Node(Config(id="node1", peers=["localhost:8002", "localhost:8003"]))
node.start()

state, term, node_id = node.get_state()
print(state, term, node_id, node.is_leader())

try:
    result = node.submit(b"set x=1", 5.0)
    print(result.index, result.term, result.success)
except NodeError as exc:
    print(exc, exc.result)

print(node.get_log_status())
print(node.get_committed_entries())
node.shutdown()
```

### Modules

- `raftnode.state`
  - `NodeState`: `FOLLOWER`, `CANDIDATE`, `LEADER`.
  - `LogEntry`: an entry's term, index and command.
  - `Config`: a zero timing means "use the default". The default election timeout is random, between 150 and 300 ms; the default heartbeat interval is 50 ms.
  - `CommandResult`: the outcome of a submitted command.
  - The errors, all derived from `NodeError`, which carries a `result`:
    - `NotLeaderError`
    - `OperationTimeoutError`
    - `NotCommittedError`
- `raftnode.messages`
  - The four message dataclasses, each with `to_dict` and `from_dict`.
  - `encode_message(kind, message)` and `decode_message(line)` for the wire format.
- `raftnode.transport`
  - `ConsensusClient`: the abstract peer client.
  - `TcpConsensusClient`: opens one TCP connection per call.
  - `new_consensus_client(addr)`: builds a `TcpConsensusClient`.
  - `RPCServer`: a threaded TCP server that hands requests to `handle_request_vote` and `handle_append_entries`.
  - `port_for_id(node_id)`: the listening port for an id.
- `raftnode.node`
  - `Node`: election, heartbeat and replication logic, and the handlers for incoming RPCs.
- `raftnode.cli`
  - `main(argv=None)`: the `raftnode` command.
  - `parse_peers(text)` and `random_between(low, high)`: helpers for the command.

### Errors from `submit`

- On a node that is not leader, `submit` raises `NotLeaderError`. Its result's `leader_id` holds the id this node last voted for.
- If the entry is not committed within the timeout, it raises `OperationTimeoutError`.
- If the node loses leadership while waiting, it raises `NotLeaderError`.
- If the term changes while waiting, it raises `NotCommittedError`.

### Custom transport

`Node` takes a `client_factory` argument: a callable that turns a peer address into a `ConsensusClient`. You can plug in another transport or an in-memory one for tests. `Node.start()` always starts a TCP `RPCServer` on the port given by `port_for_id`.

## What it does not do

- Followers do not store replicated entries. `handle_append_entries` only checks the term, resets the election timer and replies with success.
- Entries are never applied to a state machine; the applied count stays at 0.
- Nothing is written to disk.
- A node with no peers never becomes leader, because votes are only counted as peers reply.
- The `raftnode` command only runs a node and reports its status. It offers no way to submit commands; that is done through `Node.submit` in the library.
- `TcpConsensusClient.close` only marks the client closed. There are no long-lived connections to release.