import json

import pytest
from eth_abi import encode

from common.exceptions import FatalSyncError, StoreUnavailable
from common.models import Contract
from etl.decoder import EventDecoder
from sync.primary import PrimarySyncEngine
from sync.status import SyncState

from conftest import block_hash, make_log, pad_topic, tx_hash

TOKEN = "0x" + "cc" * 20
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
TRANSFER_ABI = [{
    "type": "event",
    "name": "Transfer",
    "inputs": [
        {"name": "from", "type": "address", "indexed": True},
        {"name": "to", "type": "address", "indexed": True},
        {"name": "value", "type": "uint256", "indexed": False},
    ],
}]


def engine(store, chain, **kw):
    return PrimarySyncEngine(chain, store, EventDecoder(store), **kw)


def test_catch_up_from_cursor(store, chain):
    chain.add_blocks(100, 103, tx_count=2)
    store.set_cursor("primary", 100)
    eng = engine(store, chain)

    assert eng.tick() is True
    assert [n for m, n in chain.calls if m == "get_block"] == [101, 102, 103]
    assert store.get_cursor("primary") == 103
    assert [b["number"] for b in store.list_blocks()] == [103, 102, 101]
    assert store.count_rows("transactions") == 6
    assert eng.status.snapshot().state is SyncState.REALTIME
    assert store.get_state("sync_status") == "realtime"


def test_failure_mid_range_keeps_committed_blocks(store, chain):
    chain.add_blocks(0, 106, tx_count=1)
    store.set_cursor("primary", 103)
    chain.fail_at = {105}
    eng = engine(store, chain)

    assert eng.tick() is False
    assert store.get_cursor("primary") == 104
    assert store.get_block(105) is None
    assert store.get_block(104) is not None
    assert eng.status.snapshot().state is SyncState.SYNCING

    chain.fail_at = set()
    assert eng.tick() is True
    assert store.get_cursor("primary") == 106


def test_repoll_at_head_is_idempotent(store, chain):
    chain.add_blocks(0, 4, tx_count=1, logs_per_tx={0: [make_log(TOKEN, ["0x" + "01" * 32])]})
    eng = engine(store, chain)
    eng.tick()
    counts = {t: store.count_rows(t) for t in ("blocks", "transactions", "events")}
    assert counts == {"blocks": 5, "transactions": 5, "events": 5}

    chain.calls.clear()
    assert eng.tick() is True
    assert chain.calls == []
    assert {t: store.count_rows(t) for t in counts} == counts
    assert store.get_cursor("primary") == 4


def test_floor_skips_early_blocks(store, chain):
    chain.add_blocks(0, 12)
    eng = engine(store, chain, sync_from_block=10)
    eng.tick()
    assert [b["number"] for b in store.list_blocks()] == [12, 11, 10]


def test_reorg_halts_sync(store, chain):
    chain.add_blocks(0, 2)
    eng = engine(store, chain)
    eng.tick()
    # the node now reports a block 3 built on a different block 2
    chain.add_block(3, parent_hash=block_hash(2, fork="f"))

    assert eng.tick() is False
    assert store.get_block(3) is None
    assert store.get_cursor("primary") == 2
    # stays halted on every following tick
    assert eng.tick() is False
    assert store.get_cursor("primary") == 2


def test_events_decoded_during_sync(store, chain):
    store.upsert_contract(Contract(TOKEN, name="Token", abi=json.dumps(TRANSFER_ABI)))
    transfer = make_log(
        TOKEN,
        [TRANSFER_TOPIC, pad_topic("0x" + "a1" * 20), pad_topic("0x" + "b0" * 20)],
        data="0x" + encode(["uint256"], [2 ** 63 + 5]).hex(),
    )
    junk = make_log(TOKEN, [TRANSFER_TOPIC], data="0x", log_index=1)
    chain.add_block(0, tx_count=1, logs_per_tx={0: [transfer, junk]})
    eng = engine(store, chain)
    eng.tick()

    events = store.get_events_by_tx(tx_hash(0, 0))
    assert len(events) == 2
    assert events[0]["decoded"]["args"]["value"] == "9223372036854775813"
    # an undecodable log is still stored raw
    assert events[1]["decoded"] is None


def test_store_failures_escalate(store, chain, monkeypatch):
    chain.add_blocks(0, 3)

    def broken(*a, **kw):
        raise StoreUnavailable("disk I/O error")

    monkeypatch.setattr(store, "insert_block_with_txs_and_events", broken)
    eng = engine(store, chain, store_failure_threshold=3)
    assert eng.tick() is False
    assert eng.tick() is False
    with pytest.raises(FatalSyncError):
        eng.tick()


def test_store_failure_count_resets_after_success(store, chain, monkeypatch):
    chain.add_blocks(0, 1)
    real = store.insert_block_with_txs_and_events
    failing = {"on": True}

    def flaky(*a, **kw):
        if failing["on"]:
            raise StoreUnavailable("database is locked")
        return real(*a, **kw)

    monkeypatch.setattr(store, "insert_block_with_txs_and_events", flaky)
    eng = engine(store, chain, store_failure_threshold=2)
    assert eng.tick() is False
    failing["on"] = False
    assert eng.tick() is True
    failing["on"] = True
    chain.add_block(2)
    # a single failure after a good tick is not fatal
    assert eng.tick() is False


def test_bad_transaction_hash_aborts_tick(store, chain):
    chain.add_blocks(0, 1, tx_count=1)
    chain.blocks[1]["transactions"][0]["hash"] = "deadbeef"
    eng = engine(store, chain)

    assert eng.tick() is False
    assert store.get_cursor("primary") == 0
    assert store.get_block(1) is None


def test_bad_log_address_aborts_tick(store, chain):
    chain.add_block(0, tx_count=1, logs_per_tx={0: [make_log(123, ["0x" + "01" * 32])]})
    eng = engine(store, chain)

    assert eng.tick() is False
    assert store.get_block(0) is None
    assert store.get_cursor("primary") == -1


def test_unexpected_error_aborts_tick_without_raising(store, chain, monkeypatch, caplog):
    chain.add_blocks(0, 1)

    def broken(n):
        raise KeyError("parentHash")

    monkeypatch.setattr(store, "get_block_hash", broken)
    eng = engine(store, chain)

    with caplog.at_level("ERROR", logger="sync.loop"):
        assert eng.tick() is False
    assert "tick failed unexpectedly" in caplog.text
    monkeypatch.undo()
    assert eng.tick() is True
    assert store.get_cursor("primary") == 1


def test_abi_attached_while_block_in_flight_is_backfilled(store, chain, monkeypatch):
    transfer = make_log(
        TOKEN,
        [TRANSFER_TOPIC, pad_topic("0x" + "a1" * 20), pad_topic("0x" + "b0" * 20)],
        data="0x" + encode(["uint256"], [7]).hex(),
    )
    chain.add_block(0, tx_count=1, logs_per_tx={0: [transfer]})
    eng = engine(store, chain)
    real = store.insert_block_with_txs_and_events

    def insert_after_abi_lands(*a, **kw):
        # the ABI's own backfill runs first and finds nothing stored yet
        store.attach_abi(TOKEN, json.dumps(TRANSFER_ABI))
        return real(*a, **kw)

    monkeypatch.setattr(store, "insert_block_with_txs_and_events", insert_after_abi_lands)
    assert eng.tick() is True

    (event,) = store.get_events_by_tx(tx_hash(0, 0))
    assert event["decoded"]["event_name"] == "Transfer"
    assert event["decoded"]["args"]["value"] == "7"
