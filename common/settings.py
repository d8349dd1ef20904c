import os
import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, field_validator, ValidationError

PLACEHOLDER_RE = re.compile(r"^\$\{[^}]*\}$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _drop_placeholders(node: Any) -> Any:
    """Remove unresolved ${VAR} values so the model defaults apply."""
    if isinstance(node, dict):
        return {
            k: _drop_placeholders(v)
            for k, v in node.items()
            if not (isinstance(v, str) and PLACEHOLDER_RE.match(v.strip()))
        }
    if isinstance(node, list):
        return [_drop_placeholders(v) for v in node]
    return node


class ChainRPC(BaseModel):
    rpc_url: str
    timeout: float = 30.0
    max_retries: int = 3
    backoff_seconds: float = 0.5
    poll_interval_ms: int = 5000
    sync_from_block: int = 0

    @field_validator("rpc_url")
    @classmethod
    def must_be_http(cls, v: str) -> str:
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("RPC URL must be http(s)")
        return v

    @field_validator("sync_from_block", "max_retries")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non negative")
        return v

    @field_validator("poll_interval_ms")
    @classmethod
    def positive_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("poll interval must be positive")
        return v


class Primary(ChainRPC):
    rpc_url: str = "http://127.0.0.1:8545"


class Bridge(ChainRPC):
    rpc_url: str = "https://sepolia.base.org"
    payment_receiver: str = "0x5443266088527cdd602d2db405dc5596aa40278b"
    sync_from_block: int = 20_000_000
    poll_interval_ms: int = 30_000
    log_chunk_size: int = 10_000

    @field_validator("payment_receiver")
    @classmethod
    def must_be_address(cls, v: str) -> str:
        if not ADDRESS_RE.match(v):
            raise ValueError("payment receiver must be a 20 byte hex address")
        return v.lower()

    @field_validator("log_chunk_size")
    @classmethod
    def positive_chunk(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("log chunk size must be positive")
        return v


class DB(BaseModel):
    driver: str = "sqlite"
    sqlite_path: str = "./data/indexer.db"


class SyncCfg(BaseModel):
    store_failure_threshold: int = 5


class SeedContract(BaseModel):
    address: str
    name: Optional[str] = None

    @field_validator("address")
    @classmethod
    def must_be_address(cls, v: str) -> str:
        if not ADDRESS_RE.match(v):
            raise ValueError(f"invalid contract address {v!r}")
        return v.lower()


class Settings(BaseModel):
    network: str = "besu"
    log_level: str = "INFO"
    primary: Primary = Primary()
    bridge: Bridge = Bridge()
    db: DB = DB()
    sync: SyncCfg = SyncCfg()
    contracts: List[SeedContract] = [
        SeedContract(
            address="0x0000000000000000000000000000000000009999",
            name="DynamicMultiSigValidatorManager",
        )
    ]


# env var -> path inside the config mapping
ENV_OVERRIDES: Dict[str, Tuple[str, ...]] = {
    "RPC_URL": ("primary", "rpc_url"),
    "POLL_INTERVAL_MS": ("primary", "poll_interval_ms"),
    "SYNC_FROM_BLOCK": ("primary", "sync_from_block"),
    "BASE_SEPOLIA_RPC_URL": ("bridge", "rpc_url"),
    "BRIDGE_RPC_URL": ("bridge", "rpc_url"),
    "BRIDGE_PAYMENT_RECEIVER": ("bridge", "payment_receiver"),
    "BRIDGE_SYNC_FROM_BLOCK": ("bridge", "sync_from_block"),
    "BRIDGE_POLL_INTERVAL_MS": ("bridge", "poll_interval_ms"),
    "DB_PATH": ("db", "sqlite_path"),
    "LOG_LEVEL": ("log_level",),
}


def _apply_env(cfg: Dict[str, Any], environ) -> Dict[str, Any]:
    # later keys in ENV_OVERRIDES win, so BRIDGE_RPC_URL beats BASE_SEPOLIA_RPC_URL
    for env_key, path in ENV_OVERRIDES.items():
        val = environ.get(env_key)
        if val is None or val.strip() == "":
            continue
        node = cfg
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = val.strip()

    timeout = environ.get("RPC_TIMEOUT")
    if timeout:
        cfg.setdefault("primary", {})["timeout"] = timeout
        cfg.setdefault("bridge", {})["timeout"] = timeout
    return cfg


def load_settings(path: str = "config.yaml", environ=None) -> Settings:
    import yaml

    environ = os.environ if environ is None else environ
    cfg: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r") as f:
            cfg = yaml.safe_load(f) or {}

    cfg = _apply_env(_drop_placeholders(cfg), environ)

    try:
        return Settings.model_validate(cfg)
    except ValidationError as e:
        raise RuntimeError(f"Configuration error in {path}: {e}") from e
