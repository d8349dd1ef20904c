import copy

import pytest

from common.exceptions import NotFound, RpcUnavailable
from storage.sqlite_backend import SQLiteStorage

MINER_A = "0x" + "a1" * 20
MINER_B = "0x" + "b2" * 20
SENDER = "0x" + "5e" * 20
RECEIVER = "0x" + "7e" * 20
ZERO_HASH = "0x" + "00" * 32


def block_hash(n, fork=""):
    return "0x" + f"{fork}b{n:x}".rjust(64, "0")


def tx_hash(n, i):
    return "0x" + f"7{n:x}{i:04x}".rjust(64, "0")


def pad_topic(addr):
    return "0x" + addr[2:].lower().rjust(64, "0")


def make_log(address, topics, data="0x", log_index=0):
    return {"address": address, "topics": list(topics), "data": data, "logIndex": hex(log_index)}


class FakeChain:
    """In-memory stand in for ChainClient on the primary chain."""

    def __init__(self):
        self.height = -1
        self.blocks = {}
        self.receipts = {}
        self.fail_at = set()
        self.calls = []

    def add_block(self, n, tx_count=0, logs_per_tx=None, parent_hash=None, miner=MINER_A):
        txs = []
        for i in range(tx_count):
            h = tx_hash(n, i)
            txs.append({
                "hash": h,
                "transactionIndex": hex(i),
                "from": SENDER,
                "to": RECEIVER,
                "value": hex(10 ** 18 + i),
                "input": "0x",
                "nonce": hex(i),
            })
            logs = (logs_per_tx or {}).get(i, [])
            self.receipts[h] = {"status": "0x1", "contractAddress": None, "logs": logs}
        self.blocks[n] = {
            "number": hex(n),
            "hash": block_hash(n),
            "parentHash": parent_hash or (block_hash(n - 1) if n > 0 else ZERO_HASH),
            "timestamp": hex(1_700_000_000 + n),
            "miner": miner,
            "size": hex(512),
            "transactions": txs,
        }
        self.height = max(self.height, n)
        return self.blocks[n]

    def add_blocks(self, start, end, **kw):
        for n in range(start, end + 1):
            self.add_block(n, **kw)

    def current_height(self):
        return self.height

    def get_block(self, n, full_transactions=True):
        self.calls.append(("get_block", n))
        if n in self.fail_at:
            raise RpcUnavailable(f"simulated outage at block {n}")
        if n not in self.blocks:
            raise NotFound(f"block {n} not found")
        return copy.deepcopy(self.blocks[n])

    def get_receipt(self, h):
        if h not in self.receipts:
            raise NotFound(f"receipt {h} not found")
        return copy.deepcopy(self.receipts[h])

    def get_block_timestamp(self, n):
        blk = self.blocks.get(n)
        return int(blk["timestamp"], 16) if blk else None


class FakeBridgeChain:
    """In-memory stand in for ChainClient on the bridge chain."""

    def __init__(self, height=0):
        self.height = height
        self.logs = []
        self.log_calls = []
        self.fail_ranges = set()
        self.timestamps = {}

    def current_height(self):
        return self.height

    def get_logs(self, from_block, to_block, address=None, topic0=None):
        self.log_calls.append((from_block, to_block, address, topic0))
        if (from_block, to_block) in self.fail_ranges:
            raise RpcUnavailable(f"simulated outage for {from_block}..{to_block}")
        return [
            copy.deepcopy(lg) for lg in self.logs
            if from_block <= int(lg["blockNumber"], 16) <= to_block
            and (address is None or lg["address"].lower() == address)
            and (topic0 is None or lg["topics"][0] == topic0)
        ]

    def get_block_timestamp(self, n):
        return self.timestamps.get(n)


@pytest.fixture
def store(tmp_path):
    s = SQLiteStorage(str(tmp_path / "indexer.db"))
    s.setup()
    yield s
    s.close()


@pytest.fixture
def chain():
    return FakeChain()
