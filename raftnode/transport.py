"""TCP transport for consensus RPCs: a peer client and a request server."""

from __future__ import annotations

import abc
import logging
import socket
import socketserver
import threading

from .messages import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    Message,
    VoteRequest,
    VoteResponse,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)

BASE_PORT = 8000


def _split_address(addr: str) -> tuple[str, int]:
    host, sep, port_text = addr.rpartition(":")
    if not sep or not port_text.isdigit() or int(port_text) > 65535:
        raise ValueError(f"address {addr!r} has no valid port")
    return host.strip("[] "), int(port_text)


def port_for_id(node_id: str) -> int:
    """Listening port derived from the last character of a node id."""
    if node_id and "0" <= node_id[-1] <= "9":
        return BASE_PORT + int(node_id[-1])
    return BASE_PORT


class ConsensusClient(abc.ABC):
    """Sends consensus RPCs to one peer."""

    @abc.abstractmethod
    def request_vote(self, request: VoteRequest, timeout: float = 2.0) -> VoteResponse:
        """Ask the peer for its vote."""

    @abc.abstractmethod
    def append_entries(self, request: AppendEntriesRequest, timeout: float = 2.0) -> AppendEntriesResponse:
        """Send entries, or a heartbeat, to the peer."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the client's resources."""


class TcpConsensusClient(ConsensusClient):
    """Client that opens a TCP connection per call and exchanges one JSON line each way."""

    def __init__(self, addr: str):
        host, self._port = _split_address(addr)
        self.addr = addr
        self._host = host or "localhost"
        self._closed = False

    def _call(self, kind: str, request: Message, response_kind: str, timeout: float) -> Message:
        if self._closed:
            raise ConnectionError(f"{kind} to {self.addr} failed: client is closed")
        try:
            with socket.create_connection((self._host, self._port), timeout=timeout) as sock:
                sock.sendall(encode_message(kind, request))
                with sock.makefile("rb") as reader:
                    line = reader.readline()
            got_kind, response = decode_message(line)
        except (OSError, ValueError) as exc:
            raise ConnectionError(f"{kind} to {self.addr} failed: {exc}") from exc
        if got_kind != response_kind:
            raise ConnectionError(f"{kind} to {self.addr} failed: unexpected response {got_kind}")
        return response

    def request_vote(self, request: VoteRequest, timeout: float = 2.0) -> VoteResponse:
        return self._call("VoteRequest", request, "VoteResponse", timeout)

    def append_entries(self, request: AppendEntriesRequest, timeout: float = 2.0) -> AppendEntriesResponse:
        return self._call("AppendEntriesRequest", request, "AppendEntriesResponse", timeout)

    def close(self) -> None:
        self._closed = True


def new_consensus_client(addr: str) -> TcpConsensusClient:
    """Create a client for the peer at addr; raise ValueError for a bad address."""
    try:
        return TcpConsensusClient(addr)
    except ValueError as exc:
        raise ValueError(f"Failed to connect to {addr}: {exc}") from exc


class _ConnectionHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        for line in self.rfile:
            try:
                reply = self.server.dispatch(*decode_message(line))
            except Exception as exc:  # a bad request ends only this connection
                logger.warning("RPC request failed: %s", exc)
                return
            self.wfile.write(reply)
            self.wfile.flush()


class RPCServer:
    """Serves consensus RPCs to a handler such as a node."""

    def __init__(self, handler, address: str):
        self.handler = handler
        self.address = address
        self.bound_address: tuple[str, int] | None = None
        self._server: socketserver.ThreadingTCPServer | None = None
        self._thread: threading.Thread | None = None

    def _dispatch(self, kind: str, message: Message) -> bytes:
        if kind == "VoteRequest":
            return encode_message("VoteResponse", self.handler.handle_request_vote(message))
        if kind == "AppendEntriesRequest":
            return encode_message("AppendEntriesResponse", self.handler.handle_append_entries(message))
        raise ValueError(f"unsupported request kind {kind!r}")

    def start(self) -> None:
        """Bind the listening socket and serve in a background thread."""
        if self._server is not None:
            raise RuntimeError("RPC server already started")
        socketserver.ThreadingTCPServer.allow_reuse_address = True
        try:
            server = socketserver.ThreadingTCPServer(_split_address(self.address), _ConnectionHandler)
        except OSError as exc:
            raise OSError(f"Failed to listen on {self.address}: {exc}") from exc
        server.daemon_threads = True
        server.dispatch = self._dispatch
        self._server = server
        self.bound_address = server.server_address[:2]
        self._thread = threading.Thread(target=server.serve_forever, args=(0.05,), daemon=True)
        self._thread.start()
        logger.info("RPC server listening on %s", self.address)

    def stop(self) -> None:
        """Stop accepting requests and close the listening socket."""
        if self._server is None:
            return
        logger.info("[RPC Server] Stopping ...")
        self._server.shutdown()
        self._server.server_close()
        self._thread.join()
        self._server = None
        self._thread = None