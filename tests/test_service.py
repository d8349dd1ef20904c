import asyncio
import json

import pytest

from common.exceptions import FatalSyncError, NoAbiRegistered, StoreUnavailable
from common.settings import Settings
from sync.service import IndexerService

from conftest import FakeBridgeChain, FakeChain

SEED = "0x0000000000000000000000000000000000009999"


def make_settings(tmp_path, **sync):
    return Settings.model_validate({
        "primary": {"poll_interval_ms": 10},
        "bridge": {"poll_interval_ms": 10, "sync_from_block": 0},
        "db": {"sqlite_path": str(tmp_path / "svc.db")},
        "sync": sync,
    })


def make_service(tmp_path, chain=None, bridge=None, **sync):
    chain = chain or FakeChain()
    return IndexerService(
        make_settings(tmp_path, **sync),
        primary_client=chain,
        bridge_client=bridge or FakeBridgeChain(height=0),
    )


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_status_before_any_sync(tmp_path):
    svc = make_service(tmp_path)
    assert svc.get_sync_status() == {"status": "idle", "lastIndexedBlock": -1}
    assert svc.get_bridge_sync_status() == {"isSyncing": False, "lastSyncedBlock": -1}
    svc.close()


@pytest.mark.asyncio
async def test_run_syncs_both_chains_and_stops(tmp_path):
    chain = FakeChain()
    chain.add_blocks(0, 3, tx_count=1)
    svc = make_service(tmp_path, chain=chain)
    stop = asyncio.Event()
    task = asyncio.create_task(svc.run(stop))

    await wait_for(lambda: svc.get_sync_status()["lastIndexedBlock"] == 3)
    await wait_for(lambda: svc.get_bridge_sync_status()["lastSyncedBlock"] == 0)
    await wait_for(lambda: svc.get_sync_status()["status"] == "realtime")

    chain.add_block(4)
    await wait_for(lambda: svc.get_sync_status()["lastIndexedBlock"] == 4)

    stop.set()
    await asyncio.wait_for(task, timeout=5)
    assert svc.primary.status.snapshot().state.value == "idle"
    # the store was closed; reads reopen it
    stats = svc.get_chain_stats()
    assert stats["totalBlocks"] == 5
    assert stats["totalTransactions"] == 4
    assert stats["totalContracts"] == 1
    assert svc.get_contract(SEED)["name"] == "DynamicMultiSigValidatorManager"
    svc.close()


@pytest.mark.asyncio
async def test_fatal_store_error_stops_run(tmp_path, monkeypatch):
    chain = FakeChain()
    chain.add_blocks(0, 1)
    svc = make_service(tmp_path, chain=chain, store_failure_threshold=2)

    def broken(*a, **kw):
        raise StoreUnavailable("disk full")

    monkeypatch.setattr(svc.storage, "insert_block_with_txs_and_events", broken)
    with pytest.raises(FatalSyncError):
        await asyncio.wait_for(svc.run(asyncio.Event()), timeout=5)


def test_register_contract_and_decode(tmp_path):
    svc = make_service(tmp_path)
    addr = "0x" + "Cc" * 20
    with pytest.raises(NoAbiRegistered):
        svc.decode_all_events_for_contract(addr)
    abi = [{"type": "event", "name": "Ping", "inputs": []}]
    assert svc.register_contract(addr, name="Pinger", abi=abi) == 0
    assert json.loads(svc.get_contract(addr)["abi"]) == abi
    assert svc.decode_all_events_for_contract(addr) == 0
    with pytest.raises(ValueError):
        svc.register_contract("0x1234")
    with pytest.raises(ValueError):
        svc.register_contract(addr, abi="{}")
    svc.close()
