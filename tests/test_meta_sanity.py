import importlib

def test_core_modules_and_symbols_exist():
    mods = [
        ("common.settings", ["load_settings"]),
        ("ingestion.fetcher", ["ChainClient"]),
        ("ingestion.parser", ["parse_block", "parse_transaction", "parse_receipt_logs"]),
        ("storage.sqlite_backend", ["SQLiteStorage"]),
        ("etl.decoder", ["EventDecoder", "decode_one"]),
        ("etl.bridge", ["decode_payment_log"]),
        ("sync.primary", ["PrimarySyncEngine"]),
        ("sync.bridge", ["BridgeSyncEngine"]),
        ("sync.service", ["IndexerService"]),
        ("sync.cli", ["main"]),
    ]
    for mod_name, symbols in mods:
        mod = importlib.import_module(mod_name)
        for sym in symbols:
            assert hasattr(mod, sym), f"{mod_name} missing {sym}"
