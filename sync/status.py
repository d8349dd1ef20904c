# sync/status.py
from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, replace
from typing import Optional


class SyncState(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    REALTIME = "realtime"


@dataclass(frozen=True)
class StatusSnapshot:
    state: SyncState = SyncState.IDLE
    last_block: int = -1

    @property
    def is_syncing(self) -> bool:
        return self.state is SyncState.SYNCING


class StatusCell:
    """
    Progress of one engine.  Any number of readers may take snapshots; only the
    holder of the single writer handle may change it.
    """

    def __init__(self, name: str, last_block: int = -1):
        self.name = name
        self._lock = threading.Lock()
        self._snap = StatusSnapshot(last_block=last_block)
        self._writer: Optional[StatusWriter] = None

    def snapshot(self) -> StatusSnapshot:
        with self._lock:
            return self._snap

    def claim_writer(self) -> "StatusWriter":
        with self._lock:
            if self._writer is not None:
                raise RuntimeError(f"status writer for {self.name!r} already claimed")
            self._writer = StatusWriter(self)
            return self._writer

    def _update(self, **changes) -> StatusSnapshot:
        with self._lock:
            self._snap = replace(self._snap, **changes)
            return self._snap


class StatusWriter:
    def __init__(self, cell: StatusCell):
        self._cell = cell

    @property
    def cell(self) -> StatusCell:
        return self._cell

    def set_state(self, state: SyncState) -> StatusSnapshot:
        return self._cell._update(state=SyncState(state))

    def set_block(self, block_number: int) -> StatusSnapshot:
        # never moves backwards
        current = self._cell.snapshot().last_block
        return self._cell._update(last_block=max(current, int(block_number)))
