import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

from common.exceptions import FatalSyncError, NoAbiRegistered
from common.logging_setup import setup_logging
from common.settings import load_settings
from sync.service import IndexerService


async def _run_until_signalled(service: IndexerService) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await service.run(stop)


def cmd_run(service: IndexerService, args) -> int:
    try:
        asyncio.run(_run_until_signalled(service))
    except FatalSyncError as e:
        print(f"ERROR {e}", file=sys.stderr)
        return 1
    return 0


def cmd_status(service: IndexerService, args) -> int:
    out = {
        "primary": service.get_sync_status(),
        "bridge": service.get_bridge_sync_status(),
        "stats": service.get_chain_stats(),
    }
    print(json.dumps(out, indent=2))
    service.close()
    return 0


def cmd_register(service: IndexerService, args) -> int:
    abi = Path(args.abi_file).read_text(encoding="utf-8") if args.abi_file else None
    try:
        decoded = service.register_contract(
            args.address,
            name=args.name,
            abi=abi,
            is_proxy=args.proxy,
            implementation=args.implementation,
        )
    except ValueError as e:
        print(f"ERROR {e}", file=sys.stderr)
        return 2
    finally:
        service.close()
    print(f"Registered {args.address.lower()}, decoded {decoded} stored events")
    return 0


def cmd_decode(service: IndexerService, args) -> int:
    try:
        decoded = service.decode_all_events_for_contract(args.address)
    except NoAbiRegistered as e:
        print(f"ERROR {e}", file=sys.stderr)
        return 2
    finally:
        service.close()
    print(f"Decoded {decoded} events for {args.address.lower()}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chain-indexer", description="Index a primary chain and bridge payments")
    p.add_argument("--config", default="config.yaml", help="Path to the YAML config file")
    p.add_argument("--log-level", dest="log_level", default=None,
                   help="Override the configured log level (DEBUG, INFO, ...)")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run both sync engines until interrupted").set_defaults(func=cmd_run)
    sub.add_parser("status", help="Print sync watermarks and row totals").set_defaults(func=cmd_status)

    reg = sub.add_parser("register-contract", help="Register a contract and optionally its ABI")
    reg.add_argument("address")
    reg.add_argument("--name", default=None)
    reg.add_argument("--abi-file", dest="abi_file", default=None, help="JSON file holding the ABI array")
    reg.add_argument("--proxy", action="store_true", help="Mark the contract as a proxy")
    reg.add_argument("--implementation", default=None, help="Implementation address behind the proxy")
    reg.set_defaults(func=cmd_register)

    dec = sub.add_parser("decode", help="Decode every stored event of a registered contract")
    dec.add_argument("address")
    dec.set_defaults(func=cmd_decode)
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    setup_logging(args.log_level or settings.log_level)
    service = IndexerService(settings)
    return args.func(service, args)


if __name__ == "__main__":
    sys.exit(main())
