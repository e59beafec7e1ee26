"""Command-line entry point that runs a single consensus node until interrupted."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
import time

from .node import Node
from .state import Config

logger = logging.getLogger(__name__)


def random_between(low: int, high: int) -> int:
    """Pick a value in [low, high] from the clock; return low when the range is empty."""
    if high <= low:
        return low
    return low + time.time_ns() % (high - low + 1)


def parse_peers(text: str) -> list[str]:
    """Split a comma-separated peer list; an empty string means no peers."""
    return text.split(",") if text else []


def _report_status(node: Node, stop: threading.Event) -> None:
    while not stop.wait(5.0):
        state, term, node_id = node.get_state()
        logger.info("[Node %s] State: %s | Term: %d |Leader: %s",
                    node_id, state, term, str(node.is_leader()).lower())


def main(argv: list[str] | None = None) -> int:
    """Start a node, report its status periodically and stop on SIGINT or SIGTERM."""
    parser = argparse.ArgumentParser(prog="raftnode", description="Run one node of the cluster.")
    parser.add_argument("-id", "--id", default="node1", help="Unique node identifier")
    parser.add_argument("-port", "--port", type=int, default=8001, help="Port for this node to listen on")
    parser.add_argument("-peers", "--peers", default="", help="Comma-separated list of peer addresses")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")

    peers = parse_peers(args.peers)
    node = Node(Config(
        id=args.id,
        peers=peers,
        election_timeout=(150 + random_between(0, 150)) / 1000,
        heartbeat_interval=0.05,
    ))
    try:
        node.start()
    except OSError as exc:
        logger.error("Failed to start node: %s", exc)
        return 1

    banner = "=" * 59
    logger.info(banner)
    logger.info("Node %s started successfully!", args.id)
    logger.info("Listening on port: %d", args.port)
    logger.info("Connected to %d peers: [%s]", len(peers), " ".join(peers))
    logger.info(banner)

    stop = threading.Event()
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, lambda *_: stop.set())
    threading.Thread(target=_report_status, args=(node, stop), daemon=True).start()

    try:
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Received shutdown signal...")
        stop.set()
        node.shutdown()

    logger.info("Node stopped gracefully")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())