# sync/loop.py
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from common.exceptions import FatalSyncError, IndexerError, ReorgDetected, StoreUnavailable
from ingestion.checkpoint import Checkpoint
from sync.status import StatusCell, StatusSnapshot, SyncState

logger = logging.getLogger(__name__)


class RangedPollLoop:
    """
    Shared control flow of both engines.

    A tick reads the chain height, works out the next block from the persisted
    cursor and the configured floor, and hands the pending range to
    ``sync_range``.  Failures abort the tick and are retried on the next one,
    except that a store which keeps failing eventually stops the loop with
    FatalSyncError.
    """

    def __init__(
        self,
        name: str,
        client,
        storage,
        *,
        sync_from_block: int = 0,
        poll_interval_ms: int = 5000,
        store_failure_threshold: int = 5,
        status: Optional[StatusCell] = None,
    ):
        self.name = name
        self.client = client
        self.storage = storage
        self.floor = sync_from_block
        self.poll_interval = poll_interval_ms / 1000.0
        self.store_failure_threshold = store_failure_threshold
        self.checkpoint = Checkpoint(storage, name)
        self.status = status or StatusCell(name)
        self._writer = self.status.claim_writer()
        self._store_failures = 0
        self.on_state_change: Optional[Callable[[StatusSnapshot], None]] = None

        last = storage.get_cursor(name)
        if last >= 0:
            self._writer.set_block(last)

    # subclasses fill this in
    def sync_range(self, start: int, end: int) -> None:
        raise NotImplementedError

    def _set_state(self, state: SyncState) -> None:
        before = self.status.snapshot().state
        snap = self._writer.set_state(state)
        if before is not state and self.on_state_change is not None:
            self.on_state_change(snap)

    def _advanced(self, block_number: int) -> None:
        self._writer.set_block(block_number)

    def _tick(self) -> None:
        height = self.client.current_height()
        start = self.checkpoint.next_block(self.floor)
        if start > height:
            self._set_state(SyncState.REALTIME)
            return
        self._set_state(SyncState.SYNCING)
        logger.info("%s: syncing blocks %d..%d", self.name, start, height)
        self.sync_range(start, height)
        self._set_state(SyncState.REALTIME)

    def tick(self) -> bool:
        """Run one tick; True when it completed without error."""
        try:
            self._tick()
        except StoreUnavailable as e:
            self._store_failures += 1
            logger.warning("%s: store unavailable (%d/%d): %s",
                           self.name, self._store_failures, self.store_failure_threshold, e)
            if self._store_failures >= self.store_failure_threshold:
                logger.error("%s: store failed %d ticks in a row, giving up", self.name, self._store_failures)
                raise FatalSyncError(f"{self.name}: store unavailable for {self._store_failures} ticks") from e
            return False
        except ReorgDetected as e:
            logger.error("%s: %s; refusing to advance until resolved", self.name, e)
            return False
        except IndexerError as e:
            logger.warning("%s: tick aborted: %s", self.name, e)
            return False
        except Exception:
            logger.exception("%s: tick failed unexpectedly", self.name)
            return False
        self._store_failures = 0
        return True

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("%s: starting from block %d", self.name, self.checkpoint.next_block(self.floor))
        try:
            while not stop.is_set():
                await asyncio.to_thread(self.tick)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._set_state(SyncState.IDLE)
            logger.info("%s: stopped at block %d", self.name, self.status.snapshot().last_block)
