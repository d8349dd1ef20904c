from typing import Optional

from common.exceptions import CheckpointError

PRIMARY = "primary"
BRIDGE = "bridge"


class Checkpoint:
    """
    Handle on one engine's persisted watermark.

    The value lives in the store's state table and is only ever written inside
    the same transaction as the rows it covers, so this class has no update
    method of its own.
    """

    def __init__(self, storage, name: str):
        self.storage = storage
        self.name = name

    def get_last(self) -> Optional[int]:
        """Return the last fully indexed block number, or None if none."""
        raw = self.storage.get_cursor_raw(self.name)
        if raw is None:
            return None
        try:
            value = int(raw)
        except ValueError as e:
            raise CheckpointError(f"Failed to read checkpoint {self.name!r}: {e}")
        return value if value >= 0 else None

    def next_block(self, floor: int) -> int:
        last = self.get_last()
        start = 0 if last is None else last + 1
        return max(start, floor)
