# storage/schema.py
PRAGMAS = """
PRAGMA journal_mode = WAL;
PRAGMA synchronous = NORMAL;
PRAGMA foreign_keys = ON;
"""

CREATE_TABLE_BLOCKS = """
CREATE TABLE IF NOT EXISTS blocks (
    number            INTEGER PRIMARY KEY,
    hash              TEXT NOT NULL UNIQUE,
    parent_hash       TEXT NOT NULL,
    timestamp         INTEGER NOT NULL,
    miner             TEXT NOT NULL,
    transaction_count INTEGER NOT NULL,
    size              INTEGER NOT NULL,
    indexed_at        INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_blocks_timestamp ON blocks(timestamp);
CREATE INDEX IF NOT EXISTS idx_blocks_miner ON blocks(miner);
"""

# value is base 10 text to avoid 64 bit overflow
CREATE_TABLE_TXS = """
CREATE TABLE IF NOT EXISTS transactions (
    hash             TEXT PRIMARY KEY,
    block_number     INTEGER NOT NULL REFERENCES blocks(number),
    block_hash       TEXT NOT NULL,
    tx_index         INTEGER NOT NULL,
    from_address     TEXT NOT NULL,
    to_address       TEXT,
    value            TEXT NOT NULL,
    input            TEXT NOT NULL,
    nonce            INTEGER NOT NULL,
    status           TEXT NOT NULL,
    contract_created TEXT,
    indexed_at       INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tx_block ON transactions(block_number);
CREATE INDEX IF NOT EXISTS idx_tx_from_block ON transactions(from_address, block_number DESC);
CREATE INDEX IF NOT EXISTS idx_tx_to_block ON transactions(to_address, block_number DESC);
CREATE INDEX IF NOT EXISTS idx_tx_contract ON transactions(contract_created);
"""

CREATE_TABLE_EVENTS = """
CREATE TABLE IF NOT EXISTS events (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    tx_hash      TEXT NOT NULL REFERENCES transactions(hash),
    log_index    INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    address      TEXT NOT NULL,
    topic0       TEXT,
    topic1       TEXT,
    topic2       TEXT,
    topic3       TEXT,
    data         TEXT NOT NULL,
    indexed_at   INTEGER NOT NULL,
    UNIQUE (tx_hash, log_index)
);
CREATE INDEX IF NOT EXISTS idx_events_block ON events(block_number);
CREATE INDEX IF NOT EXISTS idx_events_address_id ON events(address, id);
CREATE INDEX IF NOT EXISTS idx_events_topic0 ON events(topic0);
"""

CREATE_TABLE_CONTRACTS = """
CREATE TABLE IF NOT EXISTS contracts (
    address        TEXT PRIMARY KEY,
    name           TEXT,
    abi            TEXT,
    is_proxy       INTEGER NOT NULL DEFAULT 0,
    implementation TEXT,
    added_at       INTEGER NOT NULL
);
"""

CREATE_TABLE_DECODED_EVENTS = """
CREATE TABLE IF NOT EXISTS decoded_events (
    event_id   INTEGER PRIMARY KEY REFERENCES events(id),
    event_name TEXT NOT NULL,
    args       TEXT NOT NULL,
    decoded_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_decoded_name ON decoded_events(event_name);
"""

CREATE_TABLE_STATE = """
CREATE TABLE IF NOT EXISTS indexer_state (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# order_id is deliberately not unique, only tx_hash is
CREATE_TABLE_BRIDGE_PAYMENTS = """
CREATE TABLE IF NOT EXISTS bridge_payments (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    besu_proxy      TEXT NOT NULL,
    order_id        TEXT NOT NULL,
    amount          TEXT NOT NULL,
    recipient       TEXT NOT NULL,
    tx_hash         TEXT NOT NULL UNIQUE,
    block_number    INTEGER NOT NULL,
    block_timestamp INTEGER,
    indexed_at      INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bridge_payments_proxy_order ON bridge_payments(besu_proxy, order_id);
CREATE INDEX IF NOT EXISTS idx_bridge_payments_block ON bridge_payments(block_number DESC);
"""

ALL_TABLES = (
    CREATE_TABLE_BLOCKS,
    CREATE_TABLE_TXS,
    CREATE_TABLE_EVENTS,
    CREATE_TABLE_CONTRACTS,
    CREATE_TABLE_DECODED_EVENTS,
    CREATE_TABLE_STATE,
    CREATE_TABLE_BRIDGE_PAYMENTS,
)

TABLE_NAMES = (
    "blocks",
    "transactions",
    "events",
    "contracts",
    "decoded_events",
    "bridge_payments",
)

# state keys for the per engine watermarks
CURSOR_KEYS = {
    "primary": "last_indexed_block",
    "bridge": "last_bridge_sync_block",
}
