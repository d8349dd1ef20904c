"""
common.exceptions

Error taxonomy shared by the chain clients, the store and the sync loops.
"""


class IndexerError(Exception):
    """Base class for every error raised by the indexer."""


class RpcError(IndexerError):
    """Raised when the node answers a JSON-RPC call with an error object."""


class RpcUnavailable(RpcError):
    """

    Raised when the RPC endpoint cannot be reached, times out, or keeps returning
    retryable HTTP statuses (429 / 5xx) after all retries are spent.

    """


class NotFound(RpcError):
    """Raised when the node returns null for a block or receipt that was asked for"""


class MalformedPayload(IndexerError):
    """Raised when a chain payload is missing fields or has an unexpected shape"""


class ReorgDetected(MalformedPayload):
    """

    Raised when a fetched block's parent hash does not match the hash of the block
    already stored one height below.  The sync loop refuses to advance past it.

    """

    def __init__(self, block_number: int, expected_parent: str, actual_parent: str):
        self.block_number = block_number
        self.expected_parent = expected_parent
        self.actual_parent = actual_parent
        super().__init__(
            f"parent hash mismatch at block {block_number}: "
            f"stored {expected_parent}, chain reports {actual_parent}"
        )


class NoAbiRegistered(IndexerError):
    """Raised when an on-demand decode is requested for a contract without an ABI"""


class StoreUnavailable(IndexerError):
    """Raised when the database connection fails or an operation cannot be committed"""


class CheckpointError(StoreUnavailable):
    """Raised when a persisted cursor value cannot be read back"""


class FatalSyncError(IndexerError):
    """

    Raised out of a poll loop when the store keeps failing for too many consecutive
    ticks.  No forward progress is possible without durable state, so the process
    should exit.

    """
