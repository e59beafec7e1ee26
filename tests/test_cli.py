import socket

import pytest

from raftnode.cli import main, parse_peers, random_between


def test_parse_peers_empty_string_gives_no_peers():
    assert parse_peers("") == []


def test_parse_peers_splits_on_commas():
    assert parse_peers("localhost:8002,localhost:8003") == ["localhost:8002", "localhost:8003"]


def test_parse_peers_keeps_trailing_empty_item():
    assert parse_peers("localhost:8002,") == ["localhost:8002", ""]


def test_parse_peers_single_peer():
    assert parse_peers("localhost:8002") == ["localhost:8002"]


def test_parse_peers_round_trip_with_join():
    peers = ["a:1", "b:2", "c:3"]
    assert parse_peers(",".join(peers)) == peers


@pytest.mark.parametrize("low,high", [(0, 150), (5, 6), (10, 1000)])
def test_random_between_stays_in_range(low, high):
    for _ in range(50):
        value = random_between(low, high)
        assert low <= value <= high


@pytest.mark.parametrize("low,high", [(7, 7), (10, 3)])
def test_random_between_empty_range_returns_low(low, high):
    assert random_between(low, high) == low


def test_main_rejects_non_integer_port():
    with pytest.raises(SystemExit) as info:
        main(["-port", "abc"])
    assert info.value.code == 2


def test_main_help_exits_cleanly():
    with pytest.raises(SystemExit) as info:
        main(["--help"])
    assert info.value.code == 0


def test_main_returns_error_when_port_is_taken():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        try:
            blocker.bind(("", 8007))
            blocker.listen()
        except OSError:
            # Something else already holds the port; starting must fail either way.
            pass
        assert main(["-id", "node7", "-peers", "localhost:8008"]) == 1
    finally:
        blocker.close()