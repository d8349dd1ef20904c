"""
common.utils

Utility helper functions.
"""
import re
from typing import Any, Iterator, Tuple

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

MAX_PAGE_SIZE = 1000


def chunked(start: int, end: int, size: int) -> Iterator[Tuple[int, int]]:
    """
    Yield (start, end) subranges of given size.
    """
    cur = start
    while cur <= end:
        sub_end = min(cur + size - 1, end)
        yield (cur, sub_end)
        cur = sub_end + 1


def hex_to_int(v: Any) -> int:
    if isinstance(v, str) and v.startswith("0x"):
        return int(v, 16)
    return int(v)


def as_decstr(v: Any) -> str:
    """Return a base 10 string for any int like or hex string value."""
    if v is None:
        return "0"
    if isinstance(v, str) and v.startswith("0x"):
        return str(int(v, 16))
    return str(int(v))


def is_valid_address(addr: Any) -> bool:
    return isinstance(addr, str) and bool(_ADDRESS_RE.match(addr))


def is_valid_hash(h: Any) -> bool:
    return isinstance(h, str) and bool(_HASH_RE.match(h))


def sanitize_limit(limit: Any, default: int = 50, maximum: int = MAX_PAGE_SIZE) -> int:
    try:
        n = int(limit)
    except (TypeError, ValueError):
        return default
    return min(max(n, 1), maximum)


def sanitize_offset(offset: Any) -> int:
    try:
        n = int(offset)
    except (TypeError, ValueError):
        return 0
    return max(n, 0)


def sanitize_direction(direction: Any) -> str:
    if direction in ("in", "out"):
        return direction
    return "all"


def check_page(limit: int, offset: int) -> None:
    if not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValueError(f"limit must be an integer in [1, {MAX_PAGE_SIZE}]")
    if not isinstance(offset, int) or offset < 0:
        raise ValueError("offset must be a non negative integer")
