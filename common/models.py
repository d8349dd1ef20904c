# common/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class Block:
    number: int
    hash: str
    parent_hash: str
    timestamp: int
    miner: str
    transaction_count: int
    size: int


@dataclass(frozen=True)
class Transaction:
    hash: str
    block_number: int
    block_hash: str
    tx_index: int
    from_address: str
    to_address: Optional[str]
    value: str  # base 10 text, never a float
    input: str
    nonce: int
    status: str  # "success" | "reverted"
    contract_created: Optional[str] = None


@dataclass(frozen=True)
class Event:
    tx_hash: str
    log_index: int
    block_number: int
    address: str
    topics: Tuple[str, ...]
    data: str
    id: Optional[int] = None

    @property
    def topic0(self) -> Optional[str]:
        return self.topics[0] if self.topics else None

    def topic(self, i: int) -> Optional[str]:
        return self.topics[i] if i < len(self.topics) else None

    @property
    def key(self) -> Tuple[str, int]:
        return (self.tx_hash, self.log_index)


@dataclass(frozen=True)
class Decoding:
    """Successful result of matching a log against an ABI."""
    event_name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Contract:
    address: str
    name: Optional[str] = None
    abi: Optional[str] = None  # JSON array text
    is_proxy: bool = False
    implementation: Optional[str] = None


@dataclass(frozen=True)
class BridgePayment:
    besu_proxy: str
    order_id: str
    amount: str
    recipient: str
    tx_hash: str
    block_number: int
    block_timestamp: Optional[int] = None
    id: Optional[int] = None
