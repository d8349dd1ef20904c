import pathlib

import pytest

from common.settings import load_settings

ROOT = pathlib.Path(__file__).resolve().parents[1]


def test_defaults_without_file(tmp_path):
    s = load_settings(str(tmp_path / "missing.yaml"), environ={})
    assert s.primary.rpc_url.startswith("http")
    assert s.primary.poll_interval_ms == 5000
    assert s.bridge.sync_from_block == 20_000_000
    assert s.bridge.poll_interval_ms == 30_000
    assert s.bridge.log_chunk_size == 10_000
    assert s.bridge.payment_receiver == "0x5443266088527cdd602d2db405dc5596aa40278b"
    assert s.db.sqlite_path == "./data/indexer.db"
    assert [c.name for c in s.contracts] == ["DynamicMultiSigValidatorManager"]


def test_repo_config_placeholders_fall_back_to_defaults():
    s = load_settings(str(ROOT / "config.yaml"), environ={})
    assert s.primary.rpc_url == "http://127.0.0.1:8545"
    assert s.bridge.rpc_url == "https://sepolia.base.org"
    assert s.sync.store_failure_threshold == 5


def test_env_overrides(tmp_path):
    env = {
        "RPC_URL": "http://10.0.0.5:8545",
        "POLL_INTERVAL_MS": "250",
        "SYNC_FROM_BLOCK": "42",
        "BASE_SEPOLIA_RPC_URL": "https://base.example",
        "BRIDGE_PAYMENT_RECEIVER": "0x" + "AB" * 20,
        "BRIDGE_SYNC_FROM_BLOCK": "7",
        "DB_PATH": str(tmp_path / "x.db"),
        "RPC_TIMEOUT": "5",
        "LOG_LEVEL": "DEBUG",
    }
    s = load_settings(str(ROOT / "config.yaml"), environ=env)
    assert s.primary.rpc_url == "http://10.0.0.5:8545"
    assert s.primary.poll_interval_ms == 250
    assert s.primary.sync_from_block == 42
    assert s.bridge.rpc_url == "https://base.example"
    assert s.bridge.payment_receiver == "0x" + "ab" * 20
    assert s.bridge.sync_from_block == 7
    assert s.db.sqlite_path == str(tmp_path / "x.db")
    assert s.primary.timeout == 5.0
    assert s.bridge.timeout == 5.0
    assert s.log_level == "DEBUG"


def test_bridge_rpc_url_alias_wins(tmp_path):
    s = load_settings(str(tmp_path / "none.yaml"), environ={
        "BASE_SEPOLIA_RPC_URL": "https://one.example",
        "BRIDGE_RPC_URL": "https://two.example",
    })
    assert s.bridge.rpc_url == "https://two.example"


def test_yaml_values_are_read(tmp_path):
    cfg = tmp_path / "c.yaml"
    cfg.write_text(
        "primary:\n  rpc_url: http://node:8545\n  max_retries: 1\n"
        "contracts:\n  - address: '0x00000000000000000000000000000000000000AA'\n    name: Thing\n"
    )
    s = load_settings(str(cfg), environ={})
    assert s.primary.rpc_url == "http://node:8545"
    assert s.primary.max_retries == 1
    assert s.contracts[0].address == "0x00000000000000000000000000000000000000aa"


@pytest.mark.parametrize("env", [
    {"RPC_URL": "ws://node:8546"},
    {"BRIDGE_PAYMENT_RECEIVER": "0x1234"},
    {"POLL_INTERVAL_MS": "0"},
    {"SYNC_FROM_BLOCK": "-1"},
])
def test_invalid_values_raise(tmp_path, env):
    with pytest.raises(RuntimeError):
        load_settings(str(tmp_path / "none.yaml"), environ=env)
