"""
etl.decoder

ABI driven decoding of raw event logs.

An ABI is compiled once into a table of event specs keyed by topic0.  A log is
decoded by looking up its topic0, checking the topic count against the number
of indexed inputs, and running eth_abi over the topics and the data.  Anything
that does not fit yields None rather than an exception: a single bad log is
never fatal to the caller.

Decoded values are made JSON safe:
  - integers of declared width <= 48 bits stay ints, wider ones become base 10 strings
  - addresses are EIP-55 checksummed
  - bytes become 0x hex
  - tuples become dicts keyed by component name, arrays become lists
  - indexed strings, bytes, arrays and tuples keep the raw topic hash
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError as AbiDecodingError
from eth_abi.exceptions import ParseError as AbiParseError
from eth_utils import keccak, to_checksum_address

from common.exceptions import NoAbiRegistered
from common.models import Decoding, Event

logger = logging.getLogger(__name__)

BACKFILL_PAGE_SIZE = 100
# viem hands back plain numbers up to 48 bits, bigints above
MAX_NUMBER_BITS = 48

AbiLike = Union[str, Sequence[Mapping[str, Any]]]


@dataclass(frozen=True)
class EventSpec:
    name: str
    signature: str
    topic0: str
    indexed: Tuple[Mapping[str, Any], ...]
    unindexed: Tuple[Mapping[str, Any], ...]

    @property
    def data_types(self) -> List[str]:
        return [canonical_type(p) for p in self.unindexed]


def canonical_type(param: Mapping[str, Any]) -> str:
    """Collapse tuple params into the (t1,t2,...) form used in signatures."""
    typ = param["type"]
    if not isinstance(typ, str):
        raise TypeError(f"ABI type must be a string, got {typ!r}")
    if not typ.startswith("tuple"):
        return typ
    inner = ",".join(canonical_type(c) for c in param.get("components", []))
    return f"({inner}){typ[5:]}"


def event_signature(event_abi: Mapping[str, Any]) -> str:
    types = [canonical_type(p) for p in event_abi.get("inputs", [])]
    return f"{event_abi['name']}({','.join(types)})"


def event_topic0(signature: str) -> str:
    return "0x" + keccak(text=signature).hex()


def _abi_text(abi: AbiLike) -> str:
    if isinstance(abi, str):
        return abi
    return json.dumps(list(abi), separators=(",", ":"))


@lru_cache(maxsize=256)
def compile_abi(abi_text: str) -> Dict[str, Tuple[EventSpec, ...]]:
    """
    Build the topic0 -> event specs table for an ABI.

    Several specs can share a topic0 (ERC-20 and ERC-721 Transfer differ only in
    which inputs are indexed), so each key maps to a tuple.  Anonymous events
    have no topic0 and are skipped.  Malformed entries are skipped too.
    """
    try:
        entries = json.loads(abi_text)
    except ValueError:
        logger.warning("ABI is not valid JSON; nothing to decode with")
        return {}
    if not isinstance(entries, list):
        return {}

    table: Dict[str, List[EventSpec]] = {}
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("type") != "event" or entry.get("anonymous"):
            continue
        try:
            inputs = list(entry.get("inputs", []))
            sig = event_signature(entry)
        except (KeyError, TypeError) as e:
            logger.debug("skipping malformed ABI event %r: %s", entry.get("name"), e)
            continue
        spec = EventSpec(
            name=entry["name"],
            signature=sig,
            topic0=event_topic0(sig),
            indexed=tuple(p for p in inputs if p.get("indexed")),
            unindexed=tuple(p for p in inputs if not p.get("indexed")),
        )
        table.setdefault(spec.topic0, []).append(spec)
    return {k: tuple(v) for k, v in table.items()}


def _is_hashed_in_topic(typ: str) -> bool:
    return typ in ("string", "bytes") or typ.startswith("tuple") or "[" in typ


def _int_bits(typ: str) -> int:
    digits = typ[4:] if typ.startswith("uint") else typ[3:]
    return int(digits) if digits else 256


def normalize_value(param: Mapping[str, Any], value: Any) -> Any:
    typ = param["type"]
    if typ.endswith("]"):
        item = dict(param, type=typ[: typ.rindex("[")])
        return [normalize_value(item, v) for v in value]
    if typ == "tuple":
        out = {}
        for i, (comp, v) in enumerate(zip(param.get("components", []), value)):
            out[comp.get("name") or str(i)] = normalize_value(comp, v)
        return out
    if typ == "address":
        return to_checksum_address(value)
    if typ.startswith("uint") or typ.startswith("int"):
        return int(value) if _int_bits(typ) <= MAX_NUMBER_BITS else str(value)
    if typ.startswith("bytes"):
        return "0x" + bytes(value).hex()
    if typ.startswith("fixed") or typ.startswith("ufixed"):
        return str(value)
    return value


def _decode_with(spec: EventSpec, event: Event) -> Decoding:
    args: Dict[str, Any] = {}
    for i, (param, topic) in enumerate(zip(spec.indexed, event.topics[1:])):
        name = param.get("name") or str(i)
        if _is_hashed_in_topic(param["type"]):
            args[name] = topic
            continue
        (value,) = abi_decode([canonical_type(param)], bytes.fromhex(topic[2:]))
        args[name] = normalize_value(param, value)

    data = event.data[2:] if event.data.startswith("0x") else event.data
    values = abi_decode(spec.data_types, bytes.fromhex(data))
    offset = len(spec.indexed)
    for i, (param, value) in enumerate(zip(spec.unindexed, values)):
        args[param.get("name") or str(offset + i)] = normalize_value(param, value)
    return Decoding(event_name=spec.name, args=args)


def decode_one(event: Event, abi: AbiLike) -> Optional[Decoding]:
    """Decode ``event`` against ``abi``; None when no event in the ABI fits."""
    topic0 = event.topic0
    if topic0 is None:
        return None
    specs = compile_abi(_abi_text(abi)).get(topic0.lower())
    if not specs:
        return None
    for spec in specs:
        if len(event.topics) != 1 + len(spec.indexed):
            continue
        try:
            return _decode_with(spec, event)
        except (AbiDecodingError, AbiParseError, ValueError, TypeError, OverflowError) as e:
            logger.debug("cannot decode %s at %s/%d as %s: %s",
                         event.address, event.tx_hash, event.log_index, spec.signature, e)
    return None


class EventDecoder:
    """
    Decodes events for contracts with a registered ABI, both inline during sync
    and retroactively once an ABI is attached to an address that already has
    stored events.
    """

    def __init__(self, storage, page_size: int = BACKFILL_PAGE_SIZE):
        self.storage = storage
        self.page_size = page_size
        storage.add_abi_listener(self.backfill)

    def decode_one(self, event: Event, abi: AbiLike) -> Optional[Decoding]:
        return decode_one(event, abi)

    def decode_events(
        self, events: Iterable[Event], abis: Optional[Dict[str, str]] = None
    ) -> Dict[Tuple[str, int], Decoding]:
        events = list(events)
        if abis is None:
            abis = self.storage.get_abis(ev.address for ev in events)
        out: Dict[Tuple[str, int], Decoding] = {}
        for ev in events:
            abi = abis.get(ev.address)
            if abi is None:
                continue
            decoding = self.decode_one(ev, abi)
            if decoding is not None:
                out[ev.key] = decoding
        return out

    def backfill(self, address: str) -> int:
        """
        Decode every stored event at ``address`` that has no decoding yet.
        Returns how many decodings were newly inserted; running it again
        returns 0.
        """
        address = address.lower()
        abi = self.storage.get_abis([address]).get(address)
        if abi is None:
            return 0

        inserted = 0
        after_id = 0
        while True:
            page = self.storage.events_missing_decoding(address, after_id, self.page_size)
            if not page:
                break
            pairs = []
            for ev in page:
                decoding = self.decode_one(ev, abi)
                if decoding is not None:
                    pairs.append((ev.id, decoding))
            if pairs:
                inserted += self.storage.insert_decoded_events(pairs)
            after_id = page[-1].id
            if len(page) < self.page_size:
                break

        if inserted:
            logger.info("Backfilled %d decoded events for %s", inserted, address)
        return inserted

    def decode_all_events_for_contract(self, address: str) -> int:
        contract = self.storage.get_contract(address)
        if contract is None or not contract.get("abi"):
            raise NoAbiRegistered(f"No ABI registered for contract {address.lower()}")
        return self.backfill(address)
