# etl/bridge.py
from typing import Any, Dict, Mapping, Optional

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError as AbiDecodingError

from common.exceptions import MalformedPayload
from common.models import BridgePayment
from common.utils import hex_to_int
from etl.decoder import event_topic0

PAYMENT_RECORDED_SIGNATURE = "PaymentRecorded(address,uint256,uint256,address)"
# keccak256 of the signature above
PAYMENT_RECORDED_TOPIC0 = event_topic0(PAYMENT_RECORDED_SIGNATURE)


def _strip_0x(s: str) -> str:
    return s[2:] if isinstance(s, str) and s.startswith("0x") else s


def _topic_to_addr(topic: str) -> str:
    # topic is 32-byte hex; last 20 bytes are the address
    t = _strip_0x(topic) or ""
    if len(t) != 64:
        raise MalformedPayload(f"topic is not 32 bytes: {topic!r}")
    return "0x" + t[-40:].lower()


def is_payment_recorded(log: Mapping[str, Any]) -> bool:
    topics = log.get("topics") or []
    if not topics or not isinstance(topics, list):
        return False
    return str(topics[0]).lower() == PAYMENT_RECORDED_TOPIC0


def decode_payment_log(log: Mapping[str, Any], timestamps: Optional[Dict[int, Optional[int]]] = None) -> BridgePayment:
    """
    Decode a PaymentRecorded log:
      topic1 = besuProxy (address, indexed)
      topic2 = orderId (uint256, indexed)
      data   = amount (uint256), recipient (address)

    ``timestamps`` maps block number to block time; missing entries give a
    payment with no timestamp.  Raises MalformedPayload on any other shape.
    """
    if not isinstance(log, Mapping) or not is_payment_recorded(log):
        raise MalformedPayload("log is not a PaymentRecorded event")
    topics = log["topics"]
    if len(topics) != 3:
        raise MalformedPayload(f"PaymentRecorded log has {len(topics)} topics, expected 3")

    tx_hash = log.get("transactionHash")
    if not tx_hash:
        raise MalformedPayload("PaymentRecorded log has no transactionHash")
    try:
        block_number = hex_to_int(log["blockNumber"])
        order_id = int(_strip_0x(topics[2]), 16)
        amount, recipient = abi_decode(["uint256", "address"], bytes.fromhex(_strip_0x(log.get("data") or "0x")))
    except (KeyError, TypeError, ValueError, AbiDecodingError) as e:
        raise MalformedPayload(f"cannot decode PaymentRecorded in {tx_hash}: {e}") from e

    return BridgePayment(
        besu_proxy=_topic_to_addr(topics[1]),
        order_id=str(order_id),
        amount=str(amount),
        recipient=recipient.lower(),
        tx_hash=tx_hash,
        block_number=block_number,
        block_timestamp=(timestamps or {}).get(block_number),
    )
