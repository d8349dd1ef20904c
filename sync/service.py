# sync/service.py
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from common.exceptions import FatalSyncError
from common.models import Contract
from common.settings import Settings
from common.utils import is_valid_address
from etl.decoder import EventDecoder
from ingestion.checkpoint import BRIDGE, PRIMARY
from ingestion.fetcher import ChainClient
from storage.manager import get_storage
from sync.bridge import BridgeSyncEngine
from sync.primary import PrimarySyncEngine

logger = logging.getLogger(__name__)


def _client(cfg, name: str) -> ChainClient:
    return ChainClient(
        cfg.rpc_url,
        name=name,
        timeout=cfg.timeout,
        max_retries=cfg.max_retries,
        backoff_seconds=cfg.backoff_seconds,
    )


class IndexerService:
    """
    Wires the store, the decoder and both sync engines together and exposes the
    read side used by the serving layer.

    Clients and the store can be injected; otherwise they are built from
    ``settings``.
    """

    def __init__(self, settings: Settings, *, storage=None, primary_client=None, bridge_client=None):
        self.settings = settings
        self.storage = storage or get_storage(settings.db.driver, sqlite_path=settings.db.sqlite_path)
        self.storage.setup()
        self.decoder = EventDecoder(self.storage)
        threshold = settings.sync.store_failure_threshold
        self.primary = PrimarySyncEngine(
            primary_client or _client(settings.primary, "primary"),
            self.storage,
            self.decoder,
            sync_from_block=settings.primary.sync_from_block,
            poll_interval_ms=settings.primary.poll_interval_ms,
            store_failure_threshold=threshold,
        )
        self.bridge = BridgeSyncEngine(
            bridge_client or _client(settings.bridge, "bridge"),
            self.storage,
            settings.bridge.payment_receiver,
            log_chunk_size=settings.bridge.log_chunk_size,
            sync_from_block=settings.bridge.sync_from_block,
            poll_interval_ms=settings.bridge.poll_interval_ms,
            store_failure_threshold=threshold,
        )

    def seed_contracts(self) -> None:
        for c in self.settings.contracts:
            self.storage.upsert_contract(Contract(address=c.address, name=c.name))
        logger.info("Seeded %d known contracts", len(self.settings.contracts))

    async def run(self, stop: asyncio.Event) -> None:
        """
        Run both engines until ``stop`` is set.  A FatalSyncError from either
        engine stops the other one and is re-raised once both have finished.
        The store is closed on the way out.
        """
        self.seed_contracts()
        tasks = [
            asyncio.create_task(self.primary.run(stop), name="primary-sync"),
            asyncio.create_task(self.bridge.run(stop), name="bridge-sync"),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            stop.set()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for t in done:
                exc = t.exception()
                if exc is not None:
                    if isinstance(exc, FatalSyncError):
                        logger.error("Sync halted: %s", exc)
                    raise exc
        finally:
            self.close()

    def close(self) -> None:
        self.storage.close()

    # ------------------------------------------------------------ status

    def get_sync_status(self) -> Dict[str, Any]:
        snap = self.primary.status.snapshot()
        return {"status": snap.state.value, "lastIndexedBlock": self.storage.get_cursor(PRIMARY)}

    def get_bridge_sync_status(self) -> Dict[str, Any]:
        snap = self.bridge.status.snapshot()
        return {"isSyncing": snap.is_syncing, "lastSyncedBlock": self.storage.get_cursor(BRIDGE)}

    def get_chain_stats(self) -> Dict[str, Any]:
        status = self.get_sync_status()
        return {
            "totalBlocks": self.storage.count_rows("blocks"),
            "totalTransactions": self.storage.count_rows("transactions"),
            "totalEvents": self.storage.count_rows("events"),
            "totalContracts": self.storage.count_rows("contracts"),
            "totalBridgePayments": self.storage.count_rows("bridge_payments"),
            "syncStatus": status["status"],
            "lastIndexedBlock": status["lastIndexedBlock"],
        }

    def get_validator_stats(self) -> List[Dict[str, Any]]:
        return self.storage.get_validator_stats()

    # --------------------------------------------------------- contracts

    def register_contract(
        self,
        address: str,
        name: Optional[str] = None,
        abi: Any = None,
        is_proxy: bool = False,
        implementation: Optional[str] = None,
    ) -> int:
        """Upsert a contract; returns how many stored events its ABI decoded."""
        if not is_valid_address(address):
            raise ValueError(f"Invalid contract address: {address!r}")
        if implementation is not None and not is_valid_address(implementation):
            raise ValueError(f"Invalid implementation address: {implementation!r}")
        if abi is not None and not isinstance(abi, str):
            abi = json.dumps(abi)
        return self.storage.upsert_contract(
            Contract(address=address, name=name, abi=abi, is_proxy=is_proxy, implementation=implementation)
        )

    def decode_all_events_for_contract(self, address: str) -> int:
        return self.decoder.decode_all_events_for_contract(address)

    # -------------------------------------------------------------- reads

    def list_blocks(self, limit: int = 50, offset: int = 0):
        return self.storage.list_blocks(limit, offset)

    def list_transactions(self, limit: int = 50, offset: int = 0):
        return self.storage.list_transactions(limit, offset)

    def list_events(self, limit: int = 50, offset: int = 0):
        return self.storage.list_events(limit, offset)

    def list_bridge_payments(self, limit: int = 100, offset: int = 0):
        return self.storage.list_bridge_payments(limit, offset)

    def get_block(self, number: int):
        return self.storage.get_block(number)

    def get_transaction(self, tx_hash: str):
        return self.storage.get_transaction(tx_hash)

    def get_transactions_by_block(self, number: int):
        return self.storage.get_transactions_by_block(number)

    def get_address_transactions(self, address: str, limit: int = 50, offset: int = 0, direction: str = "all"):
        return self.storage.get_address_transactions(address, limit, offset, direction)

    def get_events_by_tx(self, tx_hash: str):
        return self.storage.get_events_by_tx(tx_hash)

    def get_events_by_address(self, address: str, limit: int = 50, offset: int = 0):
        return self.storage.get_events_by_address(address, limit, offset)

    def get_events_by_topic(self, topic0: str, limit: int = 50, offset: int = 0):
        return self.storage.get_events_by_topic(topic0, limit, offset)

    def get_contract(self, address: str):
        return self.storage.get_contract(address)

    def list_contracts(self):
        return self.storage.list_contracts()

    def get_bridge_payment_by_order(self, besu_proxy: str, order_id: str):
        return self.storage.get_bridge_payment_by_order(besu_proxy, order_id)
