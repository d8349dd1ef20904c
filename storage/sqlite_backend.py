from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from common.exceptions import MalformedPayload, StoreUnavailable
from common.models import Block, BridgePayment, Contract, Decoding, Event, Transaction
from common.utils import check_page, sanitize_direction
from storage.schema import ALL_TABLES, CURSOR_KEYS, PRAGMAS, TABLE_NAMES

logger = logging.getLogger(__name__)

AbiListener = Callable[[str], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _cursor_key(name: str) -> str:
    return CURSOR_KEYS.get(name, f"cursor:{name}")


def _normalize_abi(abi: Any) -> str:
    """Return the ABI as compact JSON text, rejecting anything but a JSON array."""
    parsed = abi
    if isinstance(abi, (str, bytes)):
        try:
            parsed = json.loads(abi)
        except ValueError as e:
            raise ValueError("Invalid ABI format - must be valid JSON array") from e
    if not isinstance(parsed, list):
        raise ValueError("Invalid ABI format - must be valid JSON array")
    return json.dumps(parsed, separators=(",", ":"))


def _event_from_row(row: Mapping[str, Any]) -> Event:
    topics = tuple(t for t in (row["topic0"], row["topic1"], row["topic2"], row["topic3"]) if t is not None)
    return Event(
        tx_hash=row["tx_hash"],
        log_index=row["log_index"],
        block_number=row["block_number"],
        address=row["address"],
        topics=topics,
        data=row["data"],
        id=row["id"],
    )


def _event_dict(row: Mapping[str, Any]) -> Dict[str, Any]:
    out = {k: row[k] for k in (
        "id", "tx_hash", "log_index", "block_number", "address",
        "topic0", "topic1", "topic2", "topic3", "data", "indexed_at",
    )}
    keys = row.keys()
    if "event_name" in keys:
        out["decoded"] = None
        if row["event_name"] is not None:
            out["decoded"] = {
                "event_id": row["id"],
                "event_name": row["event_name"],
                "args": json.loads(row["args"]),
                "decoded_at": row["decoded_at"],
            }
    return out


def _contract_dict(row: Mapping[str, Any]) -> Dict[str, Any]:
    d = dict(row)
    d["is_proxy"] = bool(d["is_proxy"])
    return d


class SQLiteStorage:
    """
    Single connection store for both engines.

    Every statement runs under one re-entrant lock, and every multi row write is
    one explicit transaction, so a reader never observes a block without its
    transactions or a transaction without its events.
    """

    def __init__(self, path: str):
        self.path = path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._abi_listeners: List[AbiListener] = []

    # ------------------------------------------------------------------ setup

    def setup(self) -> None:
        with self._lock:
            if self.conn is not None:
                return
            if self.path != ":memory:":
                parent = os.path.dirname(os.path.abspath(self.path))
                os.makedirs(parent, exist_ok=True)
            try:
                # autocommit mode; transactions are opened explicitly below
                con = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
                con.row_factory = sqlite3.Row
                con.executescript(PRAGMAS)
                for ddl in ALL_TABLES:
                    con.executescript(ddl)
                init = "INSERT OR IGNORE INTO indexer_state(key, value) VALUES(?, ?)"
                for key in CURSOR_KEYS.values():
                    con.execute(init, (key, "-1"))
                con.execute(init, ("sync_status", "idle"))
                con.execute(init, ("started_at", str(_now_ms())))
            except sqlite3.Error as e:
                raise StoreUnavailable(f"cannot open database at {self.path}: {e}") from e
            self.conn = con
            logger.info("Database initialized at %s", self.path)

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
                logger.info("Database closed")

    def _ensure(self) -> sqlite3.Connection:
        if self.conn is None:
            self.setup()
        return self.conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            con = self._ensure()
            try:
                con.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreUnavailable(f"cannot begin transaction: {e}") from e
            try:
                yield con
                con.execute("COMMIT")
            except BaseException as e:
                if con.in_transaction:
                    con.execute("ROLLBACK")
                if isinstance(e, sqlite3.IntegrityError):
                    raise MalformedPayload(f"constraint violated: {e}") from e
                if isinstance(e, sqlite3.Error):
                    raise StoreUnavailable(f"write failed: {e}") from e
                raise

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            con = self._ensure()
            try:
                return con.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"read failed: {e}") from e

    def _query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    # ------------------------------------------------------------ state/cursor

    def get_state(self, key: str) -> Optional[str]:
        row = self._query_one("SELECT value FROM indexer_state WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self._transaction() as con:
            con.execute("INSERT OR REPLACE INTO indexer_state(key, value) VALUES(?, ?)", (key, str(value)))

    def get_cursor_raw(self, name: str) -> Optional[str]:
        return self.get_state(_cursor_key(name))

    def get_cursor(self, name: str) -> int:
        """Last fully indexed block for an engine, -1 when nothing is indexed yet."""
        raw = self.get_cursor_raw(name)
        return int(raw) if raw is not None else -1

    def set_cursor(self, name: str, block_number: int) -> None:
        with self._transaction() as con:
            self._advance_cursor(con, name, block_number)

    @staticmethod
    def _advance_cursor(con: sqlite3.Connection, name: str, block_number: int) -> None:
        # only moves forward
        con.execute(
            """
            INSERT INTO indexer_state(key, value) VALUES(?, ?)
            ON CONFLICT(key) DO UPDATE SET
              value = CASE WHEN CAST(excluded.value AS INTEGER) > CAST(indexer_state.value AS INTEGER)
                           THEN excluded.value ELSE indexer_state.value END
            """,
            (_cursor_key(name), str(int(block_number))),
        )

    # ------------------------------------------------------------------ blocks

    def insert_block_with_txs_and_events(
        self,
        block: Block,
        transactions: Iterable[Transaction],
        events: Iterable[Event],
        decodings: Optional[Mapping[Tuple[str, int], Decoding]] = None,
        checkpoint: Optional[str] = None,
    ) -> bool:
        """
        Persist one block with everything it contains in a single transaction.

        If the block number is already stored nothing is written except the
        cursor, which still only moves forward.  Returns True when the block
        was new.
        """
        decodings = decodings or {}
        now = _now_ms()
        with self._transaction() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO blocks
                (number, hash, parent_hash, timestamp, miner, transaction_count, size, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (block.number, block.hash, block.parent_hash, block.timestamp, block.miner,
                 block.transaction_count, block.size, now),
            )
            is_new = cur.rowcount == 1
            if is_new:
                con.executemany(
                    """
                    INSERT OR IGNORE INTO transactions
                    (hash, block_number, block_hash, tx_index, from_address, to_address, value,
                     input, nonce, status, contract_created, indexed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (tx.hash, tx.block_number, tx.block_hash, tx.tx_index, tx.from_address,
                         tx.to_address, tx.value, tx.input, tx.nonce, tx.status,
                         tx.contract_created, now)
                        for tx in transactions
                    ],
                )
                for ev in events:
                    cur = con.execute(
                        """
                        INSERT OR IGNORE INTO events
                        (tx_hash, log_index, block_number, address, topic0, topic1, topic2, topic3, data, indexed_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (ev.tx_hash, ev.log_index, ev.block_number, ev.address,
                         ev.topic(0), ev.topic(1), ev.topic(2), ev.topic(3), ev.data, now),
                    )
                    decoding = decodings.get(ev.key)
                    if cur.rowcount == 1 and decoding is not None:
                        self._insert_decoded(con, cur.lastrowid, decoding, now)
            if checkpoint:
                self._advance_cursor(con, checkpoint, block.number)
        return is_new

    def get_block(self, number: int) -> Optional[Dict[str, Any]]:
        row = self._query_one("SELECT * FROM blocks WHERE number = ?", (int(number),))
        return dict(row) if row else None

    def get_block_hash(self, number: int) -> Optional[str]:
        row = self._query_one("SELECT hash FROM blocks WHERE number = ?", (int(number),))
        return row["hash"] if row else None

    def list_blocks(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        check_page(limit, offset)
        rows = self._query("SELECT * FROM blocks ORDER BY number DESC LIMIT ? OFFSET ?", (limit, offset))
        return [dict(r) for r in rows]

    # ------------------------------------------------------------ transactions

    def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        row = self._query_one("SELECT * FROM transactions WHERE hash = ?", (tx_hash,))
        return dict(row) if row else None

    def list_transactions(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        check_page(limit, offset)
        rows = self._query(
            "SELECT * FROM transactions ORDER BY block_number DESC, tx_index DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [dict(r) for r in rows]

    def get_transactions_by_block(self, block_number: int) -> List[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM transactions WHERE block_number = ? ORDER BY tx_index", (int(block_number),)
        )
        return [dict(r) for r in rows]

    def get_address_transactions(
        self, address: str, limit: int = 50, offset: int = 0, direction: str = "all"
    ) -> List[Dict[str, Any]]:
        check_page(limit, offset)
        addr = address.lower()
        direction = sanitize_direction(direction)
        if direction == "in":
            where, params = "to_address = ?", [addr]
        elif direction == "out":
            where, params = "from_address = ?", [addr]
        else:
            where, params = "from_address = ? OR to_address = ?", [addr, addr]
        rows = self._query(
            f"SELECT * FROM transactions WHERE {where} ORDER BY block_number DESC, tx_index DESC LIMIT ? OFFSET ?",
            params + [limit, offset],
        )
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------ events

    _EVENTS_WITH_DECODED = """
        SELECT e.*, d.event_name, d.args, d.decoded_at
          FROM events e
          LEFT JOIN decoded_events d ON d.event_id = e.id
    """

    def list_events(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        check_page(limit, offset)
        rows = self._query(
            self._EVENTS_WITH_DECODED + " ORDER BY e.block_number DESC, e.log_index DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_event_dict(r) for r in rows]

    def get_events_by_tx(self, tx_hash: str) -> List[Dict[str, Any]]:
        rows = self._query(self._EVENTS_WITH_DECODED + " WHERE e.tx_hash = ? ORDER BY e.log_index", (tx_hash,))
        return [_event_dict(r) for r in rows]

    def get_events_by_address(self, address: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        check_page(limit, offset)
        rows = self._query(
            self._EVENTS_WITH_DECODED
            + " WHERE e.address = ? ORDER BY e.block_number DESC, e.log_index DESC LIMIT ? OFFSET ?",
            (address.lower(), limit, offset),
        )
        return [_event_dict(r) for r in rows]

    def get_events_by_topic(self, topic0: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        check_page(limit, offset)
        rows = self._query(
            self._EVENTS_WITH_DECODED + " WHERE e.topic0 = ? ORDER BY e.block_number DESC LIMIT ? OFFSET ?",
            (topic0.lower(), limit, offset),
        )
        return [_event_dict(r) for r in rows]

    def events_missing_decoding(self, address: str, after_id: int = 0, limit: int = 100) -> List[Event]:
        """
        Next page, in insertion order, of events at ``address`` that have no
        decoded row yet.  Keyed on the event id so rows inserted while a caller
        pages through are picked up rather than skipped.
        """
        rows = self._query(
            """
            SELECT e.* FROM events e
              LEFT JOIN decoded_events d ON d.event_id = e.id
             WHERE e.address = ? AND e.id > ? AND d.event_id IS NULL
             ORDER BY e.id
             LIMIT ?
            """,
            (address.lower(), int(after_id), int(limit)),
        )
        return [_event_from_row(r) for r in rows]

    # ---------------------------------------------------------- decoded events

    @staticmethod
    def _insert_decoded(con: sqlite3.Connection, event_id: int, decoding: Decoding, now: int) -> bool:
        cur = con.execute(
            "INSERT OR IGNORE INTO decoded_events(event_id, event_name, args, decoded_at) VALUES(?, ?, ?, ?)",
            (event_id, decoding.event_name, json.dumps(decoding.args), now),
        )
        return cur.rowcount == 1

    def insert_decoded_events(self, pairs: Iterable[Tuple[int, Decoding]]) -> int:
        """Insert if absent; returns how many rows were actually new."""
        now = _now_ms()
        inserted = 0
        with self._transaction() as con:
            for event_id, decoding in pairs:
                if self._insert_decoded(con, event_id, decoding, now):
                    inserted += 1
        return inserted

    # --------------------------------------------------------------- contracts

    def add_abi_listener(self, listener: AbiListener) -> None:
        """Register a callable run with the address after an ABI is stored."""
        self._abi_listeners.append(listener)

    def _notify_abi(self, address: str) -> int:
        return sum(listener(address) for listener in self._abi_listeners)

    def upsert_contract(self, contract: Contract) -> int:
        """
        Insert or update a contract.  Fields left as None keep their stored
        value, so re-seeding a known address never wipes a registered ABI.
        Returns the number of events decoded as a result of an attached ABI.
        """
        address = contract.address.lower()
        abi = _normalize_abi(contract.abi) if contract.abi is not None else None
        with self._transaction() as con:
            con.execute(
                """
                INSERT INTO contracts(address, name, abi, is_proxy, implementation, added_at)
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET
                  name = COALESCE(excluded.name, contracts.name),
                  abi = COALESCE(excluded.abi, contracts.abi),
                  is_proxy = excluded.is_proxy,
                  implementation = COALESCE(excluded.implementation, contracts.implementation)
                """,
                (address, contract.name, abi, int(bool(contract.is_proxy)),
                 contract.implementation.lower() if contract.implementation else None, _now_ms()),
            )
        if abi is None:
            return 0
        return self._notify_abi(address)

    def attach_abi(self, address: str, abi: Any) -> int:
        address = address.lower()
        abi_text = _normalize_abi(abi)
        with self._transaction() as con:
            cur = con.execute("UPDATE contracts SET abi = ? WHERE address = ?", (abi_text, address))
            if cur.rowcount == 0:
                con.execute(
                    "INSERT INTO contracts(address, abi, is_proxy, added_at) VALUES(?, ?, 0, ?)",
                    (address, abi_text, _now_ms()),
                )
        return self._notify_abi(address)

    def get_contract(self, address: str) -> Optional[Dict[str, Any]]:
        row = self._query_one("SELECT * FROM contracts WHERE address = ?", (address.lower(),))
        return _contract_dict(row) if row else None

    def list_contracts(self) -> List[Dict[str, Any]]:
        return [_contract_dict(r) for r in self._query("SELECT * FROM contracts ORDER BY added_at DESC")]

    def get_abis(self, addresses: Iterable[str]) -> Dict[str, str]:
        addrs = sorted({a.lower() for a in addresses})
        if not addrs:
            return {}
        marks = ",".join("?" for _ in addrs)
        rows = self._query(
            f"SELECT address, abi FROM contracts WHERE abi IS NOT NULL AND address IN ({marks})", addrs
        )
        return {r["address"]: r["abi"] for r in rows}

    # --------------------------------------------------------- bridge payments

    @staticmethod
    def _insert_payment(con: sqlite3.Connection, p: BridgePayment, now: int) -> bool:
        cur = con.execute(
            """
            INSERT OR IGNORE INTO bridge_payments
            (besu_proxy, order_id, amount, recipient, tx_hash, block_number, block_timestamp, indexed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (p.besu_proxy.lower(), p.order_id, p.amount, p.recipient.lower(), p.tx_hash,
             p.block_number, p.block_timestamp, now),
        )
        return cur.rowcount == 1

    def insert_bridge_payment(self, payment: BridgePayment) -> bool:
        """Returns False when a payment with the same tx hash already exists."""
        with self._transaction() as con:
            return self._insert_payment(con, payment, _now_ms())

    def insert_bridge_payments(
        self,
        payments: Iterable[BridgePayment],
        checkpoint: Optional[str] = None,
        upto: Optional[int] = None,
    ) -> int:
        now = _now_ms()
        inserted = 0
        with self._transaction() as con:
            for p in payments:
                if self._insert_payment(con, p, now):
                    inserted += 1
            if checkpoint and upto is not None:
                self._advance_cursor(con, checkpoint, upto)
        return inserted

    def list_bridge_payments(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        check_page(limit, offset)
        rows = self._query(
            "SELECT * FROM bridge_payments ORDER BY block_number DESC, id DESC LIMIT ? OFFSET ?", (limit, offset)
        )
        return [dict(r) for r in rows]

    def get_bridge_payment_by_order(self, besu_proxy: str, order_id: str) -> Optional[Dict[str, Any]]:
        row = self._query_one(
            "SELECT * FROM bridge_payments WHERE besu_proxy = ? AND order_id = ? ORDER BY block_number DESC",
            (besu_proxy.lower(), str(order_id)),
        )
        return dict(row) if row else None

    # ------------------------------------------------------------------- stats

    def count_rows(self, table: str) -> int:
        if table not in TABLE_NAMES:
            raise ValueError(f"unknown table {table!r}")
        row = self._query_one(f"SELECT COUNT(*) AS n FROM {table}")
        return int(row["n"])

    def get_validator_stats(self) -> List[Dict[str, Any]]:
        rows = self._query("SELECT miner, COUNT(*) AS block_count FROM blocks GROUP BY miner ORDER BY block_count DESC")
        total = sum(r["block_count"] for r in rows)
        return [
            {
                "miner": r["miner"],
                "block_count": r["block_count"],
                "percentage": (r["block_count"] / total) * 100 if total else 0.0,
            }
            for r in rows
        ]
