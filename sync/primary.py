# sync/primary.py
from __future__ import annotations

import logging
from typing import List

from common.exceptions import MalformedPayload, ReorgDetected, StoreUnavailable
from common.models import Block, Event, Transaction
from common.utils import is_valid_hash
from etl.decoder import EventDecoder
from ingestion.checkpoint import PRIMARY
from ingestion.parser import parse_block, parse_receipt_logs, parse_transaction
from sync.loop import RangedPollLoop
from sync.status import SyncState

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 100


class PrimarySyncEngine(RangedPollLoop):
    """
    Walks the primary chain one block at a time.  Each block is fetched with
    its receipts, normalized, decoded where an ABI is known and then stored
    together with the cursor in one transaction.
    """

    def __init__(self, client, storage, decoder: EventDecoder, **kwargs):
        super().__init__(PRIMARY, client, storage, **kwargs)
        self.decoder = decoder

    def _set_state(self, state: SyncState) -> None:
        changed = self.status.snapshot().state is not state
        super()._set_state(state)
        if not changed:
            return
        try:
            self.storage.set_state("sync_status", state.value)
        except StoreUnavailable as e:
            logger.warning("could not persist sync_status=%s: %s", state.value, e)

    def fetch_block(self, n: int):
        raw = self.client.get_block(n, full_transactions=True)
        block = parse_block(raw)
        if block.number != n:
            raise MalformedPayload(f"asked for block {n}, node returned {block.number}")

        txs: List[Transaction] = []
        events: List[Event] = []
        for tx_json in raw["transactions"]:
            if not isinstance(tx_json, dict):
                raise MalformedPayload(f"block {n} transactions are not full objects")
            if not is_valid_hash(tx_json.get("hash")):
                raise MalformedPayload(f"block {n} has a transaction with bad hash {tx_json.get('hash')!r}")
            receipt = self.client.get_receipt(tx_json["hash"])
            tx = parse_transaction(tx_json, receipt, block)
            txs.append(tx)
            events.extend(parse_receipt_logs(receipt, tx.hash, block.number))
        return block, txs, events

    def check_parent(self, block: Block) -> None:
        if block.number == 0:
            return
        prev_hash = self.storage.get_block_hash(block.number - 1)
        if prev_hash is not None and prev_hash != block.parent_hash:
            raise ReorgDetected(block.number, prev_hash, block.parent_hash)

    def sync_block(self, n: int) -> None:
        block, txs, events = self.fetch_block(n)
        self.check_parent(block)
        addresses = {ev.address for ev in events}
        abis = self.storage.get_abis(addresses) if addresses else {}
        decodings = self.decoder.decode_events(events, abis)
        self.storage.insert_block_with_txs_and_events(block, txs, events, decodings, checkpoint=PRIMARY)
        self._advanced(n)
        if addresses:
            self._backfill_late_abis(addresses, abis)

    def _backfill_late_abis(self, addresses, decoded_with) -> None:
        # an ABI attached while this block was in flight ran its backfill before
        # the block's events were stored
        current = self.storage.get_abis(addresses)
        for address in sorted(current):
            if current[address] != decoded_with.get(address):
                logger.info("ABI for %s changed during block sync, backfilling", address)
                self.decoder.backfill(address)

    def sync_range(self, start: int, end: int) -> None:
        total = end - start + 1
        for i, n in enumerate(range(start, end + 1), start=1):
            self.sync_block(n)
            if i % PROGRESS_EVERY == 0 or n == end:
                logger.info("Sync progress: %d/%d (%.1f%%) at block %d", i, total, 100.0 * i / total, n)
