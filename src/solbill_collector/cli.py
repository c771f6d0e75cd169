"""
SolBill Collector CLI

Commands:
  run       - Run the collector loop until interrupted
  tick      - Run a single collector cycle and print its report
  scan      - List subscriptions due now (no submission)
  derive    - Derive service / plan / subscription / token account addresses
  check     - Ask the subscription gate for a decision
  keygen    - Generate a collector keypair file
  serve     - Run the HTTP server
"""

import argparse
import asyncio
import json
import os
import signal
import sys

from .collector.config import CollectorConfig, ConfigError
from .collector.scanner import Scanner
from .collector.scheduler import Collector, system_clock
from .core.addresses import AddressDerivationError, AddressDeriver
from .crypto.keys import IdentityError, load_identity, write_keypair_file
from .crypto.signer import Ed25519Signer
from .enforcement.gate import SubscriptionGate
from .ledger.client import LedgerError
from .ledger.rpc import JsonRpcLedgerClient
from .log import configure_logging


def load_config(args, require_identity: bool = True) -> CollectorConfig:
    """Environment configuration with CLI flag overrides."""
    overrides = {
        "rpc_url": getattr(args, "rpc_url", None),
        "program_id": getattr(args, "program_id", None),
        "keypair_path": getattr(args, "keypair", None),
        "poll_interval": getattr(args, "interval", None),
        "max_concurrency": getattr(args, "concurrency", None),
        "confirm_timeout": getattr(args, "confirm_timeout", None),
    }
    config = CollectorConfig.from_env().with_overrides(overrides)
    return config.validate(require_identity=require_identity)


def make_deriver(config: CollectorConfig) -> AddressDeriver:
    return AddressDeriver(
        program_id=config.program_id,
        token_program_id=config.token_program_id,
        associated_token_program_id=config.associated_token_program_id,
    )


def make_ledger(config: CollectorConfig) -> JsonRpcLedgerClient:
    return JsonRpcLedgerClient(
        config.rpc_url,
        commitment=config.commitment,
        timeout=config.rpc_timeout,
    )


def make_collector(config: CollectorConfig) -> Collector:
    # Identity failures are fatal before any ledger access
    signer = load_identity(
        keypair_path=config.keypair_path,
        secret=config.keypair_secret,
        keystore_path=config.keystore_path,
        keystore_passphrase=config.keystore_passphrase,
    )
    return Collector.from_config(config, make_ledger(config), signer)


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run(collector: Collector, max_ticks) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, collector.stop)
        except NotImplementedError:
            # Platforms without loop signal handlers fall back to KeyboardInterrupt
            pass
    try:
        return await collector.run(max_ticks=max_ticks)
    finally:
        await collector.ledger.close()


def cmd_run(args):
    """Run the collector loop."""
    config = load_config(args)
    collector = make_collector(config)

    print(f"Collector {collector.signer.address} polling {config.rpc_url} every {config.poll_interval}s")
    ticks = asyncio.run(_run(collector, args.max_ticks))
    print(f"Stopped after {ticks} tick(s)")


def cmd_tick(args):
    """Run a single collector cycle."""
    config = load_config(args)
    collector = make_collector(config)

    async def once():
        try:
            return await collector.tick()
        finally:
            await collector.ledger.close()

    report = asyncio.run(once())
    print_json(report.to_dict())
    if report.aborted:
        sys.exit(1)


def cmd_scan(args):
    """List due subscriptions without submitting anything."""
    config = load_config(args, require_identity=False)
    ledger = make_ledger(config)
    now = args.now if args.now is not None else system_clock()

    async def scan():
        try:
            return await Scanner(ledger, config.program_id).scan(now)
        finally:
            await ledger.close()

    result = asyncio.run(scan())
    print_json({
        "now": now,
        "scanned": result.scanned,
        "decode_failures": [f.address for f in result.failures],
        "past_due": [s.address for s in result.past_due],
        "due": [
            {
                "subscription": s.address,
                "subscriber": s.subscriber,
                "plan": s.plan,
                "amount": s.amount,
                "crank_reward": s.crank_reward,
                "next_billing_timestamp": s.next_billing_timestamp,
                "cycles_billed": s.cycles_billed,
            }
            for s in result.due
        ],
    })


def cmd_derive(args):
    """Derive a program address."""
    config = load_config(args, require_identity=False)
    deriver = make_deriver(config)

    if args.kind == "service":
        derived = deriver.service_address(args.first)
    elif args.kind == "plan":
        if args.second is None:
            raise ConfigError("derive plan requires <service> <plan_index>")
        derived = deriver.plan_address(args.first, int(args.second))
    elif args.kind == "subscription":
        if args.second is None:
            raise ConfigError("derive subscription requires <subscriber> <plan>")
        derived = deriver.subscription_address(args.first, args.second)
    else:
        if args.second is None:
            raise ConfigError("derive ata requires <wallet> <mint>")
        derived = deriver.associated_token_address(args.first, args.second)

    print_json({"kind": args.kind, "address": derived.base58, "bump": derived.bump})


def cmd_check(args):
    """Ask the gate whether a subscriber may bypass pay-per-use."""
    config = load_config(args, require_identity=False)
    ledger = make_ledger(config)
    gate = SubscriptionGate(ledger, make_deriver(config))

    async def check():
        try:
            return await gate.check(args.subscriber, args.plan)
        finally:
            await ledger.close()

    result = asyncio.run(check())
    print_json(result.to_dict())


def cmd_keygen(args):
    """Generate a collector keypair file."""
    signer = Ed25519Signer()
    path = write_keypair_file(args.path, signer, overwrite=args.force)
    print(f"Address: {signer.address}")
    print(f"Keypair: {path}")


def cmd_serve(args):
    """Run the HTTP server."""
    from .api.server import run

    if args.with_collector:
        os.environ["SOLBILL_SERVE_COLLECTOR"] = "true"

    print(f"Starting SolBill Collector API on {args.host}:{args.port}")
    run(host=args.host, port=args.port)


def _add_ledger_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--rpc-url", help="Ledger JSON-RPC endpoint (SOLBILL_RPC_URL)")
    parser.add_argument("--program-id", help="Billing program address (SOLBILL_PROGRAM_ID)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="solbill-collector",
        description="SolBill Collector - permissionless recurring billing settlement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--log-format", choices=["console", "json"])

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run / tick
    for name, help_text in (("run", "Run the collector loop"), ("tick", "Run one collector cycle")):
        sub = subparsers.add_parser(name, help=help_text)
        _add_ledger_flags(sub)
        sub.add_argument("--keypair", help="Keypair file (SOLBILL_KEYPAIR_PATH)")
        sub.add_argument("--concurrency", type=int, help="Parallel settlements per tick")
        sub.add_argument("--confirm-timeout", type=float, help="Seconds to wait for confirmation")
        if name == "run":
            sub.add_argument("--interval", type=float, help="Seconds between ticks")
            sub.add_argument("--max-ticks", type=int, default=None, help="Stop after N ticks")

    # scan
    scan_parser = subparsers.add_parser("scan", help="List due subscriptions")
    _add_ledger_flags(scan_parser)
    scan_parser.add_argument("--now", type=int, help="Unix timestamp to evaluate against")

    # derive
    derive_parser = subparsers.add_parser("derive", help="Derive an address")
    derive_parser.add_argument("kind", choices=["service", "plan", "subscription", "ata"])
    derive_parser.add_argument("first", help="authority | service | subscriber | wallet")
    derive_parser.add_argument("second", nargs="?", help="plan_index | plan | mint")
    derive_parser.add_argument("--program-id", help="Billing program address")

    # check
    check_parser = subparsers.add_parser("check", help="Gate decision for subscriber and plan")
    _add_ledger_flags(check_parser)
    check_parser.add_argument("subscriber")
    check_parser.add_argument("plan")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Generate a keypair file")
    keygen_parser.add_argument("path")
    keygen_parser.add_argument("--force", action="store_true")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--with-collector", action="store_true", help="Also run the collector loop")

    return parser


COMMANDS = {
    "run": cmd_run,
    "tick": cmd_tick,
    "scan": cmd_scan,
    "derive": cmd_derive,
    "check": cmd_check,
    "keygen": cmd_keygen,
    "serve": cmd_serve,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
        command(args)
    except (ConfigError, IdentityError, AddressDerivationError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except LedgerError as e:
        print(f"Ledger error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
