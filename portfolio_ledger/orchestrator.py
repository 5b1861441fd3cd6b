"""
Main Orchestrator for Portfolio Ledger

This module ties together all the components and defines the
end-to-end flows for:
1. Valuation batch (users -> investment accounts -> snapshot + plug)
2. Trade recording and ledger edits (with cascades)
3. Transfer matching (suggest, commit, auto-match an account)
4. Snapshot pairing integrity (check and repair)
5. Per-symbol history backfill

DESIGN DECISION: The orchestrator is the ONLY layer that decides
whether an error is per-account or run-fatal:
- Malformed trades, persistence failures and any other unexpected
  error are recorded against one account; the batch moves on
- Price request timeouts and pricing errors only leave prices missing
- A price resolver configuration failure aborts the whole run
- Every step is audited

The batch result always says what succeeded and what didn't.
"""

import asyncio
from datetime import datetime, timedelta
from typing import NamedTuple, Optional
from uuid import UUID

import structlog

from portfolio_ledger.audit import AuditLogger, create_correlation_id
from portfolio_ledger.models.ledger import Account, AccountKind, LedgerEntry
from portfolio_ledger.models.trade import PRICED_ASSET_TYPES, Trade
from portfolio_ledger.models.transfer import TransferCandidate, TransferMatch
from portfolio_ledger.models.valuation import (
    AccountRunResult,
    AssetValuationSnapshot,
    BackfillResult,
    BatchRunResult,
    PairingReport,
)
from portfolio_ledger.money import market_value, percent_change
from portfolio_ledger.projection import HoldingsProjector, InvalidTradeError, validate_trade
from portfolio_ledger.services.pricing import (
    CachedPriceResolver,
    PriceResolverConfigurationError,
    PriceResolverInterface,
    PricingError,
    StaticPriceResolver,
)
from portfolio_ledger.services.storage import (
    AuditStorageInterface,
    LedgerStoreInterface,
    NotFoundError,
    SQLAuditStorage,
    SQLDatabase,
    SQLLedgerStore,
    StorageError,
)
from portfolio_ledger.transfers import TransferMatcher
from portfolio_ledger.valuation import ValuationEngine, to_naive_utc


logger = structlog.get_logger("portfolio_ledger.orchestrator")


class ValuationBatchRunner:
    """
    Runs valuations for every investment account (optionally one user's).

    Flow per account:
    1. Previous value = latest snapshot value, else opening balance
    2. Project trades up to as_of
    3. Resolve current prices
    4. Preview (dry run) or reconcile (commit snapshot + plug)
    5. Record change, percent change, warnings and errors
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        price_resolver: Optional[PriceResolverInterface] = None,
        audit_logger: Optional[AuditLogger] = None,
        engine: Optional[ValuationEngine] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger or AuditLogger()
        self._engine = engine or ValuationEngine(
            store=store,
            price_resolver=price_resolver,
            audit_logger=self._audit_logger,
        )

    async def run(
        self,
        user_id: Optional[str] = None,
        dry_run: bool = False,
        as_of: Optional[datetime] = None,
    ) -> BatchRunResult:
        """
        Value every active investment account.

        Args:
            user_id: Only this user's accounts
            dry_run: Compute and report without writing anything
            as_of: Valuation timestamp (defaults to now, UTC)
        """
        result = BatchRunResult(
            as_of=to_naive_utc(as_of) if as_of is not None else datetime.utcnow(),
            dry_run=dry_run,
            user_filter=user_id,
        )
        await self._audit_logger.log_batch_started(
            run_id=result.run_id,
            dry_run=dry_run,
            user_filter=user_id,
        )

        try:
            accounts = await self._store.list_accounts(
                user_id=user_id,
                kind=AccountKind.INVESTMENT,
            )
        except StorageError as e:
            return await self._abort(result, f"Could not list accounts: {e}")

        for account in accounts:
            try:
                account_result = await self._run_account(account, result, dry_run)
            except PriceResolverConfigurationError as e:
                return await self._abort(result, str(e))

            result.accounts.append(account_result)
            result.accounts_processed += 1
            if account_result.updated:
                result.accounts_updated += 1

        result.finished_at = datetime.utcnow()
        await self._audit_logger.log_batch_completed(
            run_id=result.run_id,
            accounts_processed=result.accounts_processed,
            accounts_updated=result.accounts_updated,
            accounts_failed=len(result.accounts_with_errors),
        )
        return result

    async def _abort(self, result: BatchRunResult, reason: str) -> BatchRunResult:
        result.aborted = True
        result.fatal_error = reason
        result.finished_at = datetime.utcnow()
        await self._audit_logger.log_batch_aborted(run_id=result.run_id, reason=reason)
        return result

    async def _run_account(
        self,
        account: Account,
        batch: BatchRunResult,
        dry_run: bool,
    ) -> AccountRunResult:
        """
        Value one account.

        Raises:
            PriceResolverConfigurationError: Always propagated (run-fatal)
        """
        account_result = AccountRunResult(
            account_id=account.id,
            account_name=account.name,
            user_id=account.user_id,
        )

        try:
            latest = await self._store.get_latest_valuation(account.id)
            account_result.previous_value = (
                latest.value if latest is not None else account.opening_balance
            )

            projection = await self._engine.project_account(account, batch.as_of)
            prices = await self._engine.resolve_prices(projection)

            if dry_run:
                preview = await self._engine.preview(
                    account, batch.as_of, projection, prices, correlation_id=batch.run_id
                )
                breakdown = preview.breakdown
                account_result.plug_amount = preview.delta
            else:
                snapshot = await self._engine.reconcile(
                    account, batch.as_of, projection, prices, correlation_id=batch.run_id
                )
                breakdown = snapshot.breakdown
                account_result.plug_amount = snapshot.delta
                account_result.updated = True

        except InvalidTradeError as e:
            account_result.errors.append(str(e))
            await self._audit_logger.log_trade_rejected(
                account_id=account.id,
                issues=[issue.model_dump(mode="json") for issue in e.issues],
                correlation_id=batch.run_id,
            )
            return account_result
        except StorageError as e:
            account_result.errors.append(f"{type(e).__name__}: {e}")
            await self._audit_logger.log_account_failed(
                account_id=account.id,
                error_type=type(e).__name__,
                error_message=str(e),
                correlation_id=batch.run_id,
            )
            return account_result
        except PriceResolverConfigurationError:
            raise
        except Exception as e:
            logger.exception("account_valuation_failed", account_id=str(account.id))
            account_result.errors.append(f"{type(e).__name__}: {e}")
            await self._audit_logger.log_account_failed(
                account_id=account.id,
                error_type=type(e).__name__,
                error_message=str(e),
                correlation_id=batch.run_id,
            )
            return account_result

        account_result.new_value = breakdown.total_value
        account_result.change = breakdown.total_value - account_result.previous_value
        account_result.change_percent = percent_change(
            account_result.previous_value, breakdown.total_value
        )
        account_result.warnings = [w.message for w in breakdown.warnings]
        return account_result


class LedgerFlow:
    """
    Trade recording and ledger edits.

    Every write that has a paired row (trade + entry, snapshot + plug)
    goes through the store's paired methods, so cascades can't be skipped.
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger or AuditLogger()

    async def record_trade(
        self,
        trade: Trade,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Trade, LedgerEntry]:
        """
        Validate and record a trade with its ledger entry.

        Raises:
            InvalidTradeError: If the trade can't enter the fold
        """
        correlation_id = correlation_id or create_correlation_id()

        issues = validate_trade(trade)
        if issues:
            await self._audit_logger.log_trade_rejected(
                account_id=trade.account_id,
                issues=[issue.model_dump(mode="json") for issue in issues],
                correlation_id=correlation_id,
            )
            raise InvalidTradeError(issues)

        recorded, entry = await self._store.record_trade(trade)
        await self._audit_logger.log_trade_recorded(
            trade_id=recorded.id,
            account_id=recorded.account_id,
            trade_type=recorded.type.value,
            symbol=recorded.symbol,
            amount=recorded.amount,
            correlation_id=correlation_id,
        )
        return recorded, entry

    async def delete_trade(
        self,
        trade_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        deleted = await self._store.delete_trade(trade_id)
        if deleted:
            await self._audit_logger.log_trade_deleted(
                trade_id=trade_id,
                correlation_id=correlation_id,
            )
        return deleted

    async def update_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Edit description, memo, amount, date or status of an entry.

        Raises:
            NotFoundError: If the entry doesn't exist
            ImmutableCorrelationKeyError: If an automated key would change
        """
        return await self._store.update_entry(entry)

    async def delete_entry(
        self,
        entry_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """Delete an entry; a plug or trade entry takes its snapshot or trade along."""
        entry = await self._store.get_entry(entry_id)
        if entry is None:
            return False

        deleted = await self._store.delete_entry(entry_id)
        if deleted:
            await self._audit_logger.log_entry_deleted(
                entry_id=entry_id,
                reference=entry.reference,
                correlation_id=correlation_id,
            )
        return deleted


class TransferMatchingFlow:
    """
    Suggests and commits transfer matches.

    Matching is user-driven by default (suggest, then commit); the
    auto-match scan commits the best candidate for each entry.
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        matcher: Optional[TransferMatcher] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger or AuditLogger()
        self._matcher = matcher or TransferMatcher(store, audit_logger=self._audit_logger)

    @property
    def matcher(self) -> TransferMatcher:
        return self._matcher

    async def suggest(self, entry_id: UUID) -> list[TransferCandidate]:
        """
        Ranked candidates for one entry.

        Raises:
            NotFoundError: If the entry doesn't exist
        """
        entry = await self._store.get_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Entry not found: {entry_id}")
        return await self._matcher.find_candidates(entry)

    async def commit(
        self,
        entry_id: UUID,
        counterpart_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> TransferMatch:
        entry = await self._store.get_entry(entry_id)
        counterpart = await self._store.get_entry(counterpart_id)
        if entry is None or counterpart is None:
            raise NotFoundError(f"Entry not found: {entry_id if entry is None else counterpart_id}")
        return await self._matcher.commit_match(entry, counterpart, correlation_id=correlation_id)

    async def auto_match_account(
        self,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> list[TransferMatch]:
        """
        Commit the best candidate for every untagged entry of an account.

        Entries already tagged (before or during this scan) are skipped.
        """
        correlation_id = correlation_id or create_correlation_id()
        entries = await self._store.list_entries(account_id)

        matches = []
        tagged: set[UUID] = set()
        for entry in entries:
            if entry.has_automated_key or entry.id in tagged:
                continue
            best = await self._matcher.find_best_candidate(entry)
            if best is None or best.entry.id in tagged:
                continue

            match = await self._matcher.commit_match(
                entry, best.entry, correlation_id=correlation_id
            )
            tagged.update({match.entry_a.id, match.entry_b.id})
            matches.append(match)

        return matches


class IntegrityCheckFlow:
    """Checks and repairs snapshot / plug-entry pairing."""

    def __init__(
        self,
        store: LedgerStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger or AuditLogger()

    async def check(self, correlation_id: Optional[UUID] = None) -> PairingReport:
        report = await self._store.find_pairing_orphans()
        await self._audit_logger.log_pairing_checked(
            snapshots_without_entry=len(report.snapshots_without_entry),
            entries_without_snapshot=len(report.entries_without_snapshot),
            duplicate_entries=len(report.duplicate_entries),
            correlation_id=correlation_id,
        )
        return report

    async def repair(self, correlation_id: Optional[UUID] = None) -> PairingReport:
        """
        Remove orphaned snapshots, orphaned plug entries and duplicate plugs.

        Returns the report of what was removed.
        """
        correlation_id = correlation_id or create_correlation_id()
        report = await self._store.repair_pairing_orphans()

        for snapshot_id in report.snapshots_without_entry:
            await self._audit_logger.log_orphan_repaired(
                entity_type="snapshot",
                entity_id=snapshot_id,
                correlation_id=correlation_id,
            )
        for entry_id in report.entries_without_snapshot + report.duplicate_entries:
            await self._audit_logger.log_orphan_repaired(
                entity_type="entry",
                entity_id=entry_id,
                correlation_id=correlation_id,
            )
        return report


class AssetHistoryBackfill:
    """
    Records per-symbol valuations for a past date from historical prices.

    Only the asset history is written; snapshots and plug entries are
    left alone because the ledger already reflects that day.
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        price_resolver: PriceResolverInterface,
        audit_logger: Optional[AuditLogger] = None,
        projector: Optional[HoldingsProjector] = None,
    ):
        self._store = store
        self._resolver = price_resolver
        self._audit_logger = audit_logger or AuditLogger()
        self._projector = projector or HoldingsProjector()

    async def run(
        self,
        days_ago: int,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BackfillResult:
        """
        Backfill every investment account for the day `days_ago` days back.

        The valuation timestamp is midnight UTC of that day.
        """
        if days_ago < 0:
            raise ValueError("days_ago must not be negative")

        now = now or datetime.utcnow()
        day = (now - timedelta(days=days_ago)).replace(hour=0, minute=0, second=0, microsecond=0)
        result = BackfillResult(days_ago=days_ago, as_of=day)
        correlation_id = create_correlation_id()

        accounts = await self._store.list_accounts(user_id=user_id, kind=AccountKind.INVESTMENT)
        for account in accounts:
            result.accounts_processed += 1
            try:
                trades = [
                    t for t in await self._store.list_trades(account.id)
                    if t.occurred_at < day + timedelta(days=1)
                ]
                projection = self._projector.project(account.opening_balance, trades)

                valuations = []
                for holding in projection.holdings:
                    if holding.asset_type not in PRICED_ASSET_TYPES:
                        continue
                    try:
                        price = await self._resolver.get_historical_price(
                            holding.symbol, holding.asset_type, days_ago
                        )
                    except PriceResolverConfigurationError:
                        raise
                    except (asyncio.TimeoutError, PricingError) as e:
                        logger.warning(
                            "historical_price_failed",
                            symbol=holding.symbol,
                            error_type=type(e).__name__,
                        )
                        price = None
                    if price is None:
                        result.missing_prices.append(holding.symbol)
                        continue
                    valuations.append(AssetValuationSnapshot(
                        account_id=account.id,
                        symbol=holding.symbol,
                        asset_type=holding.asset_type,
                        as_of=day,
                        quantity=holding.quantity,
                        value=market_value(holding.quantity, price),
                    ))

                if valuations:
                    await self._store.record_asset_valuations(valuations)
                result.positions_recorded += len(valuations)
                await self._audit_logger.log_asset_history_backfilled(
                    account_id=account.id,
                    positions=len(valuations),
                    days_ago=days_ago,
                    correlation_id=correlation_id,
                )
            except PriceResolverConfigurationError as e:
                result.aborted = True
                result.fatal_error = str(e)
                break
            except (InvalidTradeError, StorageError) as e:
                result.errors.append(f"{account.name}: {e}")
                await self._audit_logger.log_account_failed(
                    account_id=account.id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            except Exception as e:
                logger.exception("asset_history_backfill_failed", account_id=str(account.id))
                result.errors.append(f"{account.name}: {type(e).__name__}: {e}")
                await self._audit_logger.log_account_failed(
                    account_id=account.id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )

        return result


class AppComponents(NamedTuple):
    batch_runner: ValuationBatchRunner
    ledger_flow: LedgerFlow
    transfer_flow: TransferMatchingFlow
    integrity_flow: IntegrityCheckFlow
    backfill: AssetHistoryBackfill
    store: SQLLedgerStore


def create_app_components(
    database: Optional[SQLDatabase] = None,
    price_resolver: Optional[PriceResolverInterface] = None,
    persist_audit: bool = True,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        database: Database to use (defaults to LEDGER_DB_URL)
        price_resolver: Price source; defaults to the static table from
                    PRICES_PRICE_FILE, wrapped in a cache
        persist_audit: Also write audit events to the audit table

    Returns:
        AppComponents with every flow wired to the same store
    """
    database = database or SQLDatabase()
    database.create_schema()
    store = SQLLedgerStore(database)

    audit_storage: Optional[AuditStorageInterface] = (
        SQLAuditStorage(database) if persist_audit else None
    )
    audit_logger = AuditLogger(audit_storage)

    if price_resolver is None:
        try:
            price_resolver = CachedPriceResolver(StaticPriceResolver.from_settings())
        except PriceResolverConfigurationError as e:
            # Unconfigured resolver: valuation runs abort, other flows still work
            print(f"Warning: Price source not configured: {e}")
            price_resolver = StaticPriceResolver()

    return AppComponents(
        batch_runner=ValuationBatchRunner(
            store=store,
            price_resolver=price_resolver,
            audit_logger=audit_logger,
        ),
        ledger_flow=LedgerFlow(store=store, audit_logger=audit_logger),
        transfer_flow=TransferMatchingFlow(store=store, audit_logger=audit_logger),
        integrity_flow=IntegrityCheckFlow(store=store, audit_logger=audit_logger),
        backfill=AssetHistoryBackfill(
            store=store,
            price_resolver=price_resolver,
            audit_logger=audit_logger,
        ),
        store=store,
    )
