"""
Command-line entry point for Portfolio Ledger

The batch side of the system: run it from cron or by hand.

USAGE:
    python -m app.main valuations [--user ID] [--dry-run] [--prices FILE]
    python -m app.main backfill --days-ago N [--user ID] [--prices FILE]
    python -m app.main integrity [--repair]
    python -m app.main transfers --account ID [--commit]

Every command prints a plain summary; structured audit events go to the
log. Exit code is non-zero when a run was aborted or any account failed.
"""

import argparse
import asyncio
import sys
from typing import Optional
from uuid import UUID

from portfolio_ledger.audit import configure_logging, create_correlation_id
from portfolio_ledger.config import get_settings, validate_all_settings
from portfolio_ledger.money import format_minor_units
from portfolio_ledger.orchestrator import AppComponents, create_app_components
from portfolio_ledger.services.pricing import (
    CachedPriceResolver,
    PriceResolverConfigurationError,
    StaticPriceResolver,
)
from portfolio_ledger.services.storage import SQLDatabase, create_database_engine


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="portfolio-ledger",
        description="Investment ledger valuation and reconciliation",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="SQLAlchemy URL (default: LEDGER_DB_URL)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Logging level (default: LOG_LEVEL)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    valuations = subparsers.add_parser(
        "valuations",
        help="Value every investment account and reconcile the ledger",
    )
    valuations.add_argument("--user", type=str, metavar="ID", help="Only this user's accounts")
    valuations.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute and report without writing anything",
    )
    valuations.add_argument("--prices", type=str, metavar="FILE", help="JSON price table")

    backfill = subparsers.add_parser(
        "backfill",
        help="Record per-symbol history for a past day",
    )
    backfill.add_argument("--days-ago", type=int, required=True, metavar="N")
    backfill.add_argument("--user", type=str, metavar="ID", help="Only this user's accounts")
    backfill.add_argument("--prices", type=str, metavar="FILE", help="JSON price table")

    integrity = subparsers.add_parser(
        "integrity",
        help="Check snapshot / plug entry pairing",
    )
    integrity.add_argument(
        "--repair",
        action="store_true",
        help="Delete orphaned snapshots, orphaned plugs and duplicate plugs",
    )

    transfers = subparsers.add_parser(
        "transfers",
        help="Suggest transfer matches for an account's entries",
    )
    transfers.add_argument("--account", type=UUID, required=True, metavar="ID")
    transfers.add_argument(
        "--commit",
        action="store_true",
        help="Tag the best candidate for each entry",
    )

    return parser


def build_components(
    database_url: Optional[str],
    price_file: Optional[str],
) -> AppComponents:
    """
    Wire the app for one command.

    Raises:
        PriceResolverConfigurationError: If --prices points at a bad file
    """
    database = SQLDatabase(create_database_engine(database_url))
    price_resolver = None
    if price_file:
        price_resolver = CachedPriceResolver(StaticPriceResolver.from_file(price_file))
    return create_app_components(database=database, price_resolver=price_resolver)


async def run_valuations(components: AppComponents, args: argparse.Namespace) -> int:
    result = await components.batch_runner.run(user_id=args.user, dry_run=args.dry_run)

    mode = "DRY RUN" if result.dry_run else "COMMITTED"
    print(f"Valuation run {result.run_id} ({mode})")
    for account in result.accounts:
        if account.errors:
            print(f"  FAILED  {account.account_name}: {'; '.join(account.errors)}")
            continue
        print(
            f"  {account.account_name}: "
            f"{format_minor_units(account.previous_value)} -> "
            f"{format_minor_units(account.new_value or 0)} "
            f"({account.change_percent:+.2f}%, plug {format_minor_units(account.plug_amount or 0)})"
        )
        for warning in account.warnings:
            print(f"    warning: {warning}")

    print(f"Processed {result.accounts_processed}, updated {result.accounts_updated}")
    if result.aborted:
        print(f"ABORTED: {result.fatal_error}")
        return 1
    return 1 if result.accounts_with_errors else 0


async def run_backfill(components: AppComponents, args: argparse.Namespace) -> int:
    result = await components.backfill.run(days_ago=args.days_ago, user_id=args.user)

    print(f"Backfill for {result.as_of.date().isoformat()}")
    print(f"  Accounts: {result.accounts_processed}, positions: {result.positions_recorded}")
    if result.missing_prices:
        print(f"  No price: {', '.join(sorted(set(result.missing_prices)))}")
    for error in result.errors:
        print(f"  FAILED  {error}")

    if result.aborted:
        print(f"ABORTED: {result.fatal_error}")
        return 1
    return 1 if result.errors else 0


async def run_integrity(components: AppComponents, args: argparse.Namespace) -> int:
    correlation_id = create_correlation_id()
    if args.repair:
        report = await components.integrity_flow.repair(correlation_id=correlation_id)
        verb = "Removed"
    else:
        report = await components.integrity_flow.check(correlation_id=correlation_id)
        verb = "Found"

    print(f"{verb} {len(report.snapshots_without_entry)} snapshot(s) without a plug entry")
    print(f"{verb} {len(report.entries_without_snapshot)} plug entr(ies) without a snapshot")
    print(f"{verb} {len(report.duplicate_entries)} duplicate plug entr(ies)")
    return 0 if args.repair or report.is_consistent else 1


async def run_transfers(components: AppComponents, args: argparse.Namespace) -> int:
    if args.commit:
        matches = await components.transfer_flow.auto_match_account(args.account)
        for match in matches:
            print(
                f"  {match.key.encode()}: "
                f"{match.entry_a.description} <-> {match.entry_b.description}"
            )
        print(f"Tagged {len(matches)} transfer(s)")
        return 0

    entries = await components.store.list_entries(args.account)
    for entry in entries:
        if entry.has_automated_key:
            continue
        candidates = await components.transfer_flow.matcher.find_candidates(entry)
        if not candidates:
            continue
        print(f"{entry.date.date()} {format_minor_units(entry.amount)} {entry.description}")
        for candidate in candidates:
            print(
                f"    [{candidate.confidence}] {candidate.account.name}: "
                f"{candidate.entry.date.date()} {format_minor_units(candidate.entry.amount)} "
                f"{candidate.entry.description}"
            )
    return 0


COMMANDS = {
    "valuations": run_valuations,
    "backfill": run_backfill,
    "integrity": run_integrity,
    "transfers": run_transfers,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    status = validate_all_settings()
    invalid = [name for name, ok in status.items() if ok is False]
    if invalid:
        for name in invalid:
            print(f"Error: invalid {name} settings: {status[f'{name}_error']}", file=sys.stderr)
        return 2

    configure_logging(args.log_level or get_settings().app.log_level)

    try:
        components = build_components(args.database_url, getattr(args, "prices", None))
    except PriceResolverConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(COMMANDS[args.command](components, args))
    finally:
        components.store.database.dispose()


if __name__ == "__main__":
    sys.exit(main())
