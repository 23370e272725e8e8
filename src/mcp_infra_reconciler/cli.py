#!/usr/bin/env python3
"""Stackcraft command line interface.

Usage:
    stackcraft plan -f stack.yaml [--var KEY=VALUE ...]
    stackcraft apply -f stack.yaml [--concurrency N] [--lock-timeout S]
    stackcraft destroy [-f stack.yaml]
    stackcraft state list | show ADDRESS | history
    stackcraft force-unlock LOCK_ID

Exit codes:
    0  success (including "no changes")
    1  at least one change failed or was skipped
    2  fatal error (parse, validation, graph, lock, corrupt state)

Environment variables:
    STACKCRAFT_HOME         Base directory for state, logs and audit
    STACKCRAFT_PROVIDERS    Path to providers.yaml
    STACKCRAFT_VAR_<NAME>   Value for ${var.NAME}
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import EngineSettings, ProviderInventory
from .engine import ApplyResult, ReconcileEngine, summarize_plan
from .state_store import StateCorruptionError, StateLockError
from .utils.audit_log import setup_audit_logging
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FATAL = 2


def parse_vars(pairs: Optional[list[str]]) -> dict[str, str]:
    """Parse repeated ``--var KEY=VALUE`` options."""
    variables = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"--var expects KEY=VALUE, got {pair!r}")
        variables[key] = value
    return variables


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackcraft",
        description="Reconcile declared infrastructure with recorded state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Preview changes
    stackcraft plan -f stack.yaml --var project=valheim

    # Apply with at most two provider calls in flight
    stackcraft apply -f stack.yaml --concurrency 2

    # Remove a lock left behind by a crashed run
    stackcraft force-unlock 6f1c0d9e-...
""",
    )
    parser.add_argument("--home", type=Path, help="Base directory (default: ~/.stackcraft)")
    parser.add_argument("--providers", type=str, help="Path to providers.yaml")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    def add_run_options(p: argparse.ArgumentParser, file_required: bool) -> None:
        p.add_argument("-f", "--file", type=Path, required=file_required, help="Declaration file")
        p.add_argument("--var", action="append", metavar="KEY=VALUE", help="Set a variable")
        p.add_argument("--lock-timeout", type=float, help="Seconds to wait for the state lock")

    plan_p = sub.add_parser("plan", help="Show the changes an apply would make")
    add_run_options(plan_p, file_required=False)
    plan_p.add_argument("--destroy", action="store_true", help="Plan a full destroy")

    apply_p = sub.add_parser("apply", help="Apply the declaration")
    add_run_options(apply_p, file_required=True)
    apply_p.add_argument("--concurrency", type=int, help="Max provider calls in flight")

    destroy_p = sub.add_parser("destroy", help="Destroy every recorded resource")
    add_run_options(destroy_p, file_required=False)
    destroy_p.add_argument("--concurrency", type=int, help="Max provider calls in flight")

    state_p = sub.add_parser("state", help="Inspect recorded state")
    state_sub = state_p.add_subparsers(dest="state_command", required=True)
    state_sub.add_parser("list", help="List recorded addresses")
    show_p = state_sub.add_parser("show", help="Show one record")
    show_p.add_argument("address")
    history_p = state_sub.add_parser("history", help="List state snapshot versions")
    history_p.add_argument("--limit", type=int, default=20)
    for p in state_sub.choices.values():
        p.add_argument("--lock-timeout", type=float, help="Seconds to wait for the state lock")

    unlock_p = sub.add_parser("force-unlock", help="Remove a stale state lock")
    unlock_p.add_argument("lock_id")

    return parser


def print_result(result: ApplyResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return

    if result.error:
        print(f"Error ({result.error_type}): {result.error}", file=sys.stderr)
    if result.plan is not None:
        print(summarize_plan(result.plan))
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)

    summary = result.summary
    if summary is None:
        return
    print("")
    print(
        f"Apply {'complete' if summary.success else 'incomplete'}: "
        f"{len(summary.applied)} applied, {len(summary.failed)} failed, "
        f"{len(summary.skipped)} skipped"
    )
    for outcome in summary.outcomes.values():
        if outcome.error:
            print(f"  [!] {outcome.key}: {outcome.error}")
        elif outcome.reason:
            print(f"  [ ] {outcome.key}: skipped ({outcome.reason})")


async def run_command(args: argparse.Namespace, engine: ReconcileEngine) -> int:
    variables = parse_vars(getattr(args, "var", None))

    if args.command == "plan":
        if args.destroy:
            result = await engine.destroy(args.file, variables, dry_run=True, lock_timeout=args.lock_timeout)
        else:
            if args.file is None:
                print("plan requires -f/--file unless --destroy is given", file=sys.stderr)
                return EXIT_FATAL
            result = await engine.plan(args.file, variables, lock_timeout=args.lock_timeout)
        print_result(result, args.json)
        return result.exit_code

    if args.command == "apply":
        result = await engine.apply(
            args.file, variables,
            concurrency=args.concurrency, lock_timeout=args.lock_timeout,
        )
        print_result(result, args.json)
        return result.exit_code

    if args.command == "destroy":
        result = await engine.destroy(
            args.file, variables,
            concurrency=args.concurrency, lock_timeout=args.lock_timeout,
        )
        print_result(result, args.json)
        return result.exit_code

    if args.command == "state":
        return await run_state_command(args, engine)

    if args.command == "force-unlock":
        removed = engine.store.force_unlock(args.lock_id)
        print(f"Lock {args.lock_id} removed" if removed else "State is not locked")
        return EXIT_OK

    return EXIT_FATAL


async def run_state_command(args: argparse.Namespace, engine: ReconcileEngine) -> int:
    if args.state_command == "history":
        history = engine.store.history(limit=args.limit) if hasattr(engine.store, "history") else []
        if args.json:
            print(json.dumps(history, indent=2))
            return EXIT_OK
        if not history:
            print("No state history (git versioning disabled or no snapshots yet)")
        for commit in history:
            print(f"{commit['short_hash']}  {commit['date']}  {commit['message']}")
        return EXIT_OK

    records = await engine.read_state(lock_timeout=args.lock_timeout)

    if args.state_command == "list":
        if args.json:
            print(json.dumps(sorted(records), indent=2))
        else:
            for address in sorted(records):
                print(f"{address}  ({records[address].resource_id})")
        return EXIT_OK

    record = records.get(args.address)
    if record is None:
        print(f"No state recorded for {args.address}", file=sys.stderr)
        return EXIT_FAILED
    print(json.dumps(record.to_dict(), indent=2, default=str))
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the stackcraft CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = EngineSettings.from_env()
    if args.home:
        settings.home = args.home

    setup_logging(console=True)
    if args.verbose:
        for handler in logging.getLogger("mcp_infra_reconciler").handlers:
            handler.setLevel(logging.DEBUG)
    setup_audit_logging(str(settings.home))

    try:
        if args.command in ("plan", "apply", "destroy"):
            inventory = ProviderInventory(args.providers)
        else:
            inventory = ProviderInventory.from_dict({})
        engine = ReconcileEngine.from_settings(settings, inventory)
        return asyncio.run(_run_and_close(args, engine, inventory))
    except KeyboardInterrupt:
        logger.warning("Interrupted; in-flight provider calls were allowed to finish")
        return 130
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except (FileNotFoundError, ValueError, StateLockError, StateCorruptionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL
    return EXIT_FATAL


async def _run_and_close(
    args: argparse.Namespace,
    engine: ReconcileEngine,
    inventory: ProviderInventory,
) -> int:
    try:
        return await run_command(args, engine)
    finally:
        await inventory.close_all()


if __name__ == "__main__":
    sys.exit(main())
