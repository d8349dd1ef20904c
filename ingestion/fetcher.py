# ingestion/fetcher.py
from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, List, Optional

import requests

from common.exceptions import MalformedPayload, NotFound, RpcError, RpcUnavailable
from common.utils import hex_to_int

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)
# json-rpc codes some providers use for throttling
THROTTLE_CODES = (429, -32005)


class ChainClient:
    """
    JSON-RPC access to one chain.

    Every call is bounded by ``timeout`` seconds.  Transport failures, timeouts
    and throttling are retried ``max_retries`` times with jittered exponential
    backoff, then surface as RpcUnavailable.
    """

    def __init__(
        self,
        url: str,
        *,
        name: str = "chain",
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self.url = url
        self.name = name
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.backoff_seconds = backoff_seconds
        self._next_id = 0

    def _rpc_post(self, method: str, params: List[Any]) -> Any:
        """
        Return the JSON RPC result field directly.
        """
        attempt = 0
        while True:
            self._next_id += 1
            payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}
            try:
                resp = requests.post(self.url, json=payload, timeout=self.timeout)
                if resp.status_code in RETRYABLE_STATUS:
                    raise requests.HTTPError(f"{resp.status_code} server retryable")
                resp.raise_for_status()
                try:
                    data = resp.json()
                except ValueError as e:
                    raise MalformedPayload(f"{self.name}: non JSON response for {method}") from e
                if not isinstance(data, dict):
                    raise MalformedPayload(f"{self.name}: unexpected response shape for {method}")
                if "error" in data:
                    err = data["error"] or {}
                    code = err.get("code") if isinstance(err, dict) else None
                    if code in THROTTLE_CODES or "rate" in str(err).lower():
                        raise requests.HTTPError(f"throttled: {err}")
                    raise RpcError(f"{self.name}: RPC error for {method}: {err}")
                if "result" not in data:
                    raise MalformedPayload(f"{self.name}: response for {method} has no result")
                return data["result"]
            except (requests.Timeout, requests.ConnectionError, requests.HTTPError) as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise RpcUnavailable(
                        f"{self.name}: {method} failed after {attempt} attempts url={self.url}"
                    ) from e
                sleep_s = min(self.backoff_seconds * (2 ** (attempt - 1)), 12.0)
                sleep_s = sleep_s * (0.8 + 0.4 * random.random())
                logger.debug("%s: %s failed (%s), retry %d in %.2fs", self.name, method, e, attempt, sleep_s)
                time.sleep(sleep_s)
            except requests.RequestException as e:
                raise RpcUnavailable(f"{self.name}: RPC transport failed for {method} url={self.url}") from e

    def current_height(self) -> int:
        result = self._rpc_post("eth_blockNumber", [])
        try:
            return hex_to_int(result)
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"{self.name}: bad block number {result!r}") from e

    def get_block(self, block_number: int, full_transactions: bool = True) -> Dict[str, Any]:
        if not isinstance(block_number, int) or block_number < 0:
            raise ValueError("block_number must be a non negative integer")
        block = self._rpc_post("eth_getBlockByNumber", [hex(block_number), full_transactions])
        if block is None:
            raise NotFound(f"{self.name}: block {block_number} not found")
        if not isinstance(block, dict):
            raise MalformedPayload(f"{self.name}: block {block_number} is not an object")
        return block

    def get_receipt(self, tx_hash: str) -> Dict[str, Any]:
        if not isinstance(tx_hash, str) or not tx_hash.startswith("0x"):
            raise ValueError("tx_hash must be a 0x prefixed hex string")
        receipt = self._rpc_post("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            raise NotFound(f"{self.name}: receipt for {tx_hash} not found")
        if not isinstance(receipt, dict):
            raise MalformedPayload(f"{self.name}: receipt for {tx_hash} is not an object")
        return receipt

    def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topic0: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if not isinstance(from_block, int) or not isinstance(to_block, int):
            raise ValueError("from_block and to_block must be integers")
        if from_block < 0 or to_block < from_block:
            raise ValueError("invalid block range")
        if address is not None and (not isinstance(address, str) or not address.startswith("0x")):
            raise ValueError("address must be a 0x prefixed hex string")
        params: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            params["address"] = address
        if topic0:
            # filter by topic0 so providers can optimize
            params["topics"] = [topic0]
        result = self._rpc_post("eth_getLogs", [params])
        if not isinstance(result, list):
            raise MalformedPayload(f"{self.name}: eth_getLogs did not return a list")
        return result

    def get_block_timestamp(self, block_number: int) -> Optional[int]:
        """Best effort header lookup; None when the node cannot answer."""
        try:
            header = self.get_block(block_number, full_transactions=False)
            return hex_to_int(header["timestamp"])
        except (RpcError, MalformedPayload, KeyError, TypeError, ValueError) as e:
            logger.debug("%s: no timestamp for block %d: %s", self.name, block_number, e)
            return None


__all__ = ["ChainClient"]
