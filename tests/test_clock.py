import pytest

from devicemesh.sync.clock import HLCTimestamp, HybridLogicalClock, is_newer


def test_now_is_strictly_increasing_within_one_millisecond():
    clock = HybridLogicalClock("node-a", physical_ms=lambda: 1_000)
    stamps = [clock.now() for _ in range(5)]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == 5
    assert stamps[-1].counter == 4


def test_receive_moves_past_a_remote_clock_that_is_ahead():
    clock = HybridLogicalClock("node-a", physical_ms=lambda: 1_000)
    remote = HLCTimestamp(wall_ms=5_000, counter=3, node_id="node-b")
    clock.receive(remote)
    assert clock.now() > remote


def test_string_round_trip_and_node_tie_break():
    ts = HLCTimestamp(wall_ms=1_700_000_000_000, counter=7, node_id="abc")
    assert str(ts) == "1700000000000:0007:abc"
    assert HLCTimestamp.from_string(str(ts)) == ts
    assert HLCTimestamp(1, 0, "b") > HLCTimestamp(1, 0, "a")


def test_node_id_may_contain_colons():
    ts = HLCTimestamp.from_string("10:0001:host:1")
    assert ts.node_id == "host:1"


@pytest.mark.parametrize("value", ["", "abc", "1:x:node", "1:2"])
def test_malformed_timestamps_are_rejected(value):
    with pytest.raises(ValueError):
        HLCTimestamp.from_string(value)


def test_is_newer_is_strict():
    assert is_newer("10:0000:a", None)
    assert is_newer("10:0001:a", "10:0000:a")
    assert not is_newer("10:0000:a", "10:0000:a")
    assert not is_newer("9:0009:z", "10:0000:a")
