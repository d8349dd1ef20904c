# sync/bridge.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from common.models import BridgePayment
from common.utils import chunked, hex_to_int
from etl.bridge import PAYMENT_RECORDED_TOPIC0, decode_payment_log
from ingestion.checkpoint import BRIDGE
from sync.loop import RangedPollLoop

logger = logging.getLogger(__name__)

CHUNK_SIZE = 10_000


class BridgeSyncEngine(RangedPollLoop):
    """
    Follows PaymentRecorded events of the payment receiver on the bridge chain
    with ranged log queries.  Each chunk is stored together with the cursor,
    so a failed chunk leaves every earlier chunk committed.
    """

    def __init__(self, client, storage, payment_receiver: str, log_chunk_size: int = CHUNK_SIZE, **kwargs):
        super().__init__(BRIDGE, client, storage, **kwargs)
        self.payment_receiver = payment_receiver.lower()
        self.chunk_size = log_chunk_size

    def _timestamps(self, logs) -> Dict[int, Optional[int]]:
        numbers = set()
        for lg in logs:
            try:
                numbers.add(hex_to_int(lg["blockNumber"]))
            except (KeyError, TypeError, ValueError):
                # decode_payment_log reports the bad log
                continue
        return {n: self.client.get_block_timestamp(n) for n in sorted(numbers)}

    def _wanted(self, lg) -> bool:
        if not isinstance(lg, dict):
            # decode_payment_log reports the bad log
            return True
        if lg.get("removed"):
            logger.warning("bridge: skipping removed log %s", lg.get("transactionHash"))
            return False
        if str(lg.get("address", "")).lower() != self.payment_receiver:
            logger.warning("bridge: skipping log from unexpected address %s in %s",
                           lg.get("address"), lg.get("transactionHash"))
            return False
        return True

    def sync_chunk(self, start: int, end: int) -> int:
        logs = self.client.get_logs(start, end, address=self.payment_receiver, topic0=PAYMENT_RECORDED_TOPIC0)
        logs = [lg for lg in logs if self._wanted(lg)]
        timestamps = self._timestamps(logs)
        payments: List[BridgePayment] = [decode_payment_log(lg, timestamps) for lg in logs]
        inserted = self.storage.insert_bridge_payments(payments, checkpoint=BRIDGE, upto=end)
        self._advanced(end)
        if logs:
            logger.info("bridge: blocks %d..%d: %d payment logs, %d new", start, end, len(logs), inserted)
        return inserted

    def sync_range(self, start: int, end: int) -> None:
        for chunk_start, chunk_end in chunked(start, end, self.chunk_size):
            self.sync_chunk(chunk_start, chunk_end)
