# ingestion/parser.py
"""
ingestion.parser
Module to parse raw JSON-RPC payloads into the normalized row types.

Quantities arrive as 0x hex strings.  Block numbers, indexes and nonces become
ints; amounts become base 10 strings so nothing is ever routed through a float.
Any missing or unparsable field raises MalformedPayload.
"""
from typing import Any, Dict, List, Optional

from common.exceptions import MalformedPayload
from common.models import Block, Event, Transaction
from common.utils import as_decstr, hex_to_int, is_valid_address, is_valid_hash


def _field(obj: Dict[str, Any], key: str, what: str) -> Any:
    if key not in obj or obj[key] is None:
        raise MalformedPayload(f"{what} is missing {key!r}")
    return obj[key]


def _int(obj: Dict[str, Any], key: str, what: str) -> int:
    v = _field(obj, key, what)
    try:
        return hex_to_int(v)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"{what} has bad {key!r}: {v!r}") from e


def _hash(obj: Dict[str, Any], key: str, what: str) -> str:
    v = _field(obj, key, what)
    if not is_valid_hash(v):
        raise MalformedPayload(f"{what} has bad {key!r}: {v!r}")
    return v.lower()


def _addr(obj: Dict[str, Any], key: str, what: str, required: bool = False) -> Optional[str]:
    v = _field(obj, key, what) if required else obj.get(key)
    if v is None:
        return None
    if not is_valid_address(v):
        raise MalformedPayload(f"{what} has bad {key!r}: {v!r}")
    return v.lower()


def parse_block(raw: Dict[str, Any]) -> Block:
    if not isinstance(raw, dict):
        raise MalformedPayload("block payload is not an object")
    txs = raw.get("transactions")
    if not isinstance(txs, list):
        raise MalformedPayload("block payload has no transaction list")
    return Block(
        number=_int(raw, "number", "block"),
        hash=_hash(raw, "hash", "block"),
        parent_hash=_hash(raw, "parentHash", "block"),
        timestamp=_int(raw, "timestamp", "block"),
        miner=_addr(raw, "miner", "block") or "",
        transaction_count=len(txs),
        size=_int(raw, "size", "block") if raw.get("size") is not None else 0,
    )


def parse_transaction(tx_json: Dict[str, Any], receipt: Dict[str, Any], block: Block) -> Transaction:
    if not isinstance(tx_json, dict) or "hash" not in tx_json:
        raise MalformedPayload("Invalid transaction JSON")
    what = f"transaction {tx_json['hash']}"
    try:
        value = as_decstr(tx_json.get("value", "0x0"))
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"{what} has bad value") from e
    # pre byzantium receipts have no status field; treat as success
    succeeded = receipt.get("status") is None or _int(receipt, "status", f"receipt for {what}") == 1
    return Transaction(
        hash=_hash(tx_json, "hash", "transaction"),
        block_number=block.number,
        block_hash=block.hash,
        tx_index=_int(tx_json, "transactionIndex", what) if tx_json.get("transactionIndex") is not None else 0,
        from_address=_addr(tx_json, "from", what, required=True),
        to_address=_addr(tx_json, "to", what),
        value=value,
        input=tx_json.get("input") or "0x",
        nonce=_int(tx_json, "nonce", what),
        status="success" if succeeded else "reverted",
        contract_created=_addr(receipt, "contractAddress", f"receipt for {what}"),
    )


def parse_log(log_json: Dict[str, Any], tx_hash: str, block_number: int) -> Event:
    if not isinstance(log_json, dict) or "topics" not in log_json:
        raise MalformedPayload("Invalid log JSON")
    topics = log_json.get("topics") or []
    if not isinstance(topics, list) or len(topics) > 4 or not all(is_valid_hash(t) for t in topics):
        raise MalformedPayload(f"log in {tx_hash} has invalid topics")
    data = log_json.get("data") or "0x"
    if not isinstance(data, str):
        raise MalformedPayload(f"log in {tx_hash} has non hex data")
    return Event(
        tx_hash=tx_hash,
        log_index=_int(log_json, "logIndex", f"log in {tx_hash}"),
        block_number=block_number,
        address=_addr(log_json, "address", f"log in {tx_hash}", required=True),
        topics=tuple(t.lower() for t in topics),
        data=data,
    )


def parse_receipt_logs(receipt: Dict[str, Any], tx_hash: str, block_number: int) -> List[Event]:
    logs = receipt.get("logs")
    if logs is None:
        return []
    if not isinstance(logs, list):
        raise MalformedPayload(f"receipt for {tx_hash} has invalid logs")
    return [parse_log(lg, tx_hash, block_number) for lg in logs]
