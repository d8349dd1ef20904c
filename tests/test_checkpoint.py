import pytest
from ingestion.checkpoint import BRIDGE, PRIMARY, Checkpoint, CheckpointError


def test_checkpoint_read_none(store):
    cp = Checkpoint(store, PRIMARY)
    assert cp.get_last() is None
    assert cp.next_block(0) == 0


def test_checkpoint_read_and_update(store):
    cp = Checkpoint(store, PRIMARY)
    store.set_cursor(PRIMARY, 123)
    assert cp.get_last() == 123
    assert cp.next_block(0) == 124
    # the other engine's cursor is independent
    assert Checkpoint(store, BRIDGE).get_last() is None


def test_checkpoint_floor_wins_when_ahead(store):
    cp = Checkpoint(store, BRIDGE)
    assert cp.next_block(20_000_000) == 20_000_000
    store.set_cursor(BRIDGE, 20_000_500)
    assert cp.next_block(20_000_000) == 20_000_501


def test_checkpoint_never_moves_backwards(store):
    store.set_cursor(PRIMARY, 50)
    store.set_cursor(PRIMARY, 10)
    assert Checkpoint(store, PRIMARY).get_last() == 50


def test_checkpoint_bad_value(store):
    store.set_state("last_indexed_block", "not a number")
    cp = Checkpoint(store, PRIMARY)
    with pytest.raises(CheckpointError):
        _ = cp.get_last()
