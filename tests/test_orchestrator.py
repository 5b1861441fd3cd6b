"""
Tests for the batch runner and the end-to-end flows.

Failures are injected with a store subclass so the per-account vs.
run-fatal boundary can be checked without a broken database.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio

from conftest import make_trade, worked_scenario_trades
from portfolio_ledger.audit import AuditLogger
from portfolio_ledger.models.audit import AuditEventType
from portfolio_ledger.models.ledger import (
    Account,
    AccountKind,
    AccountType,
    EntryStatus,
    LedgerEntry,
)
from portfolio_ledger.models.trade import AssetType, Trade, TradeType
from portfolio_ledger.orchestrator import (
    AssetHistoryBackfill,
    IntegrityCheckFlow,
    LedgerFlow,
    TransferMatchingFlow,
    ValuationBatchRunner,
    create_app_components,
)
from portfolio_ledger.projection import InvalidTradeError
from portfolio_ledger.services.pricing import (
    PriceResolverInterface,
    PriceUnavailableError,
    StaticPriceResolver,
)
from portfolio_ledger.services.storage import (
    NotFoundError,
    PersistenceError,
    SQLLedgerStore,
)
from portfolio_ledger.services.storage.schema import LedgerEntryRow


AS_OF = datetime(2024, 3, 10)


class FailingStore(SQLLedgerStore):
    """Store whose valuation writes fail for chosen accounts."""

    def __init__(self, database, failing_accounts):
        super().__init__(database)
        self.failing_accounts = set(failing_accounts)

    async def apply_valuation(self, account_id, *args, **kwargs):
        if account_id in self.failing_accounts:
            raise PersistenceError("Failed to apply valuation: disk full")
        return await super().apply_valuation(account_id, *args, **kwargs)


class SplitResolver(PriceResolverInterface):
    """Serves equity prices and raises for every other asset type."""

    def __init__(self, error, equities=None):
        self.error = error
        self.equities = equities or {"NVDA": Decimal("45000"), "GME": Decimal("8500")}

    async def get_current_prices(self, symbols, asset_type):
        if asset_type != AssetType.EQUITY:
            raise self.error
        return {s: self.equities[s] for s in symbols if s in self.equities}

    async def get_historical_price(self, symbol, asset_type, days_ago):
        if asset_type != AssetType.EQUITY:
            raise self.error
        return self.equities.get(symbol)


async def hold_bitcoin(store, name) -> Account:
    account = await investment_account(store, name)
    await store.record_trade(make_trade(account.id, TradeType.DEPOSIT, 1_000, day=1))
    await store.record_trade(make_trade(
        account.id, TradeType.BUY, 500, day=2, symbol="BTC", asset_type=AssetType.CRYPTO,
        quantity=Decimal("1"),
    ))
    return account


async def investment_account(store, name, user_id="user-1") -> Account:
    return await store.create_account(Account(
        user_id=user_id,
        name=name,
        account_type=AccountType.INVESTMENT,
        kind=AccountKind.INVESTMENT,
    ))


@pytest_asyncio.fixture
async def funded_brokerage(store, brokerage):
    for trade in worked_scenario_trades(brokerage.id):
        await store.record_trade(trade)
    return brokerage


class TestValuationBatchRunner:
    """Tests for the batch valuation run."""

    @pytest.mark.asyncio
    async def test_run_values_every_investment_account(
        self, store, funded_brokerage, checking, price_resolver
    ):
        """Test investment accounts are valued and plain ones skipped."""
        runner = ValuationBatchRunner(store, price_resolver)

        result = await runner.run(as_of=AS_OF)

        assert result.accounts_processed == 1
        assert result.accounts_updated == 1
        account = result.accounts[0]
        assert account.account_id == funded_brokerage.id
        assert account.previous_value == 0
        assert account.new_value == 5_573_500
        assert account.change == 5_573_500
        assert account.change_percent == 0.0
        assert account.errors == []
        assert result.finished_at is not None
        assert not result.aborted

    @pytest.mark.asyncio
    async def test_previous_value_comes_from_latest_snapshot(self, store, funded_brokerage):
        """Test change is measured against the last snapshot."""
        first = StaticPriceResolver(prices={
            AssetType.EQUITY: {"NVDA": Decimal("45000"), "GME": Decimal("8500")},
        })
        await ValuationBatchRunner(store, first).run(as_of=datetime(2024, 3, 9))

        second = StaticPriceResolver(prices={
            AssetType.EQUITY: {"NVDA": Decimal("50000"), "GME": Decimal("8500")},
        })
        result = await ValuationBatchRunner(store, second).run(as_of=AS_OF)

        account = result.accounts[0]
        assert account.previous_value == 5_573_500
        assert account.new_value == 6_073_500
        assert account.change == 500_000
        assert account.plug_amount == 500_000
        assert account.change_percent == pytest.approx(500_000 / 5_573_500 * 100)

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, store, funded_brokerage, price_resolver):
        """Test the batch is idempotent for a fixed as_of."""
        runner = ValuationBatchRunner(store, price_resolver)
        await runner.run(as_of=AS_OF)
        entries_before = await store.list_entries(funded_brokerage.id)

        result = await runner.run(as_of=AS_OF)

        assert result.accounts[0].plug_amount == 0
        assert await store.list_entries(funded_brokerage.id) == entries_before

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, store, funded_brokerage, price_resolver):
        """Test a dry run reports the delta without committing."""
        result = await ValuationBatchRunner(store, price_resolver).run(dry_run=True, as_of=AS_OF)

        account = result.accounts[0]
        assert account.new_value == 5_573_500
        assert account.plug_amount is not None
        assert account.updated is False
        assert result.accounts_updated == 0
        assert await store.list_valuations(funded_brokerage.id) == []

    @pytest.mark.asyncio
    async def test_user_filter(self, store, funded_brokerage, price_resolver):
        """Test only the requested user's accounts are valued."""
        await investment_account(store, "Other Brokerage", user_id="user-2")

        result = await ValuationBatchRunner(store, price_resolver).run(user_id="user-2", as_of=AS_OF)

        assert [a.account_name for a in result.accounts] == ["Other Brokerage"]
        assert result.user_filter == "user-2"

    @pytest.mark.asyncio
    async def test_missing_price_is_a_warning(self, store, funded_brokerage):
        """Test a missing price still updates the account with a warning."""
        partial = StaticPriceResolver(prices={AssetType.EQUITY: {"NVDA": Decimal("45000")}})

        result = await ValuationBatchRunner(store, partial).run(as_of=AS_OF)

        account = result.accounts[0]
        assert account.updated is True
        assert len(account.warnings) == 1
        assert "GME" in account.warnings[0]

    @pytest.mark.asyncio
    async def test_persistence_failure_is_per_account(self, database, price_resolver):
        """Test one failing account doesn't stop the others."""
        store = FailingStore(database, failing_accounts=[])
        broken = await investment_account(store, "A Broken")
        healthy = await investment_account(store, "B Healthy")
        await store.record_trade(make_trade(broken.id, TradeType.DEPOSIT, 100))
        await store.record_trade(make_trade(healthy.id, TradeType.DEPOSIT, 200))
        store.failing_accounts.add(broken.id)

        result = await ValuationBatchRunner(store, price_resolver).run(as_of=AS_OF)

        by_name = {a.account_name: a for a in result.accounts}
        assert by_name["A Broken"].errors
        assert "PersistenceError" in by_name["A Broken"].errors[0]
        assert by_name["B Healthy"].updated is True
        assert result.accounts_processed == 2
        assert result.accounts_updated == 1
        assert not result.aborted
        assert await store.list_valuations(broken.id) == []

    @pytest.mark.asyncio
    async def test_invalid_trades_are_per_account(self, store, price_resolver):
        """Test malformed history is reported against its account only."""
        bad = await investment_account(store, "A Bad History")
        good = await investment_account(store, "B Good History")
        await store.record_trade(make_trade(good.id, TradeType.DEPOSIT, 100))
        # a BUY with no symbol can only arrive through an import
        await store.record_trade(Trade(
            account_id=bad.id, occurred_at=datetime(2024, 3, 1), type=TradeType.BUY, amount=100,
        ))

        result = await ValuationBatchRunner(store, price_resolver).run(as_of=AS_OF)

        by_name = {a.account_name: a for a in result.accounts}
        assert "invalid trade" in by_name["A Bad History"].errors[0]
        assert by_name["B Good History"].updated is True

    @pytest.mark.asyncio
    async def test_configuration_failure_aborts_run(self, store, funded_brokerage):
        """Test an unconfigured price source aborts the whole run."""
        second = await investment_account(store, "Z Second")
        await store.record_trade(make_trade(
            second.id, TradeType.BUY, 100, symbol="BTC", asset_type=AssetType.CRYPTO,
            quantity=Decimal("1"),
        ))

        result = await ValuationBatchRunner(store, StaticPriceResolver()).run(as_of=AS_OF)

        assert result.aborted is True
        assert "price source" in result.fatal_error.lower()
        assert result.accounts == []
        assert await store.list_valuations(funded_brokerage.id) == []

    @pytest.mark.asyncio
    async def test_cash_only_accounts_need_no_prices(self, store):
        """Test cash-only accounts are valued without a price source."""
        account = await investment_account(store, "Cash Only")
        await store.record_trade(make_trade(account.id, TradeType.DEPOSIT, 7_500))

        result = await ValuationBatchRunner(store, StaticPriceResolver()).run(as_of=AS_OF)

        assert not result.aborted
        assert result.accounts[0].new_value == 7_500

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        asyncio.TimeoutError(),
        PriceUnavailableError("BTC", AssetType.CRYPTO, "quote service down"),
    ])
    async def test_failed_price_request_is_a_warning(self, store, funded_brokerage, error):
        """Test a timed-out or failed quote only leaves its symbols unpriced."""
        crypto = await hold_bitcoin(store, "Z Crypto")

        result = await ValuationBatchRunner(store, SplitResolver(error)).run(as_of=AS_OF)

        by_name = {a.account_name: a for a in result.accounts}
        assert not result.aborted
        assert result.accounts_updated == 2
        assert by_name["Z Crypto"].errors == []
        assert by_name["Z Crypto"].new_value == 500
        assert "BTC" in by_name["Z Crypto"].warnings[0]
        assert by_name[funded_brokerage.name].new_value == 5_573_500
        assert len(await store.list_valuations(crypto.id)) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_per_account(self, store, funded_brokerage):
        """Test any other failure is recorded against its account and the run goes on."""
        await hold_bitcoin(store, "A Crypto")

        result = await ValuationBatchRunner(
            store, SplitResolver(ValueError("bad quote payload"))
        ).run(as_of=AS_OF)

        by_name = {a.account_name: a for a in result.accounts}
        assert not result.aborted
        assert result.accounts_processed == 2
        assert by_name["A Crypto"].errors == ["ValueError: bad quote payload"]
        assert by_name["A Crypto"].updated is False
        assert by_name[funded_brokerage.name].updated is True
        assert result.finished_at is not None

    @pytest.mark.asyncio
    async def test_aware_as_of_is_stored_as_naive_utc(self, store, funded_brokerage, price_resolver):
        """Test a timezone-aware as_of is converted before trades are filtered."""
        as_of = datetime(2024, 3, 10, 5, 0, tzinfo=timezone(timedelta(hours=5)))

        result = await ValuationBatchRunner(store, price_resolver).run(as_of=as_of)

        assert result.as_of == AS_OF
        assert result.accounts[0].errors == []
        assert result.accounts[0].new_value == 5_573_500
        snapshots = await store.list_valuations(funded_brokerage.id)
        assert [s.as_of for s in snapshots] == [AS_OF]

    @pytest.mark.asyncio
    async def test_batch_events_are_audited(self, store, audit_storage, funded_brokerage, price_resolver):
        """Test the run is traceable by its run id."""
        runner = ValuationBatchRunner(store, price_resolver, AuditLogger(audit_storage))

        result = await runner.run(as_of=AS_OF)

        events = await audit_storage.get_events_by_correlation_id(result.run_id)
        types = {e.event_type for e in events}
        assert AuditEventType.VALUATION_RECONCILED in types


class TestLedgerFlow:
    """Tests for trade recording and ledger edits."""

    @pytest.mark.asyncio
    async def test_record_valid_trade(self, store, brokerage):
        """Test a valid trade is stored with its entry."""
        flow = LedgerFlow(store)
        trade, entry = await flow.record_trade(make_trade(
            brokerage.id, TradeType.BUY, 45_000,
            symbol="NVDA", asset_type=AssetType.EQUITY, quantity=Decimal("1"),
        ))

        assert entry.reference == f"investment_trade_{trade.id}"
        assert len(await store.list_trades(brokerage.id)) == 1

    @pytest.mark.asyncio
    async def test_invalid_trade_rejected_before_storage(self, store, brokerage):
        """Test malformed trades never reach the store."""
        flow = LedgerFlow(store)

        with pytest.raises(InvalidTradeError):
            await flow.record_trade(make_trade(brokerage.id, TradeType.SELL, 100, symbol="NVDA"))
        assert await store.list_trades(brokerage.id) == []

    @pytest.mark.asyncio
    async def test_delete_trade_entry_cascades(self, store, brokerage):
        """Test deleting the entry of a trade deletes the trade."""
        flow = LedgerFlow(store)
        _, entry = await flow.record_trade(make_trade(brokerage.id, TradeType.DEPOSIT, 100))

        assert await flow.delete_entry(entry.id) is True
        assert await store.list_trades(brokerage.id) == []
        assert await flow.delete_entry(entry.id) is False

    @pytest.mark.asyncio
    async def test_delete_trade(self, store, brokerage):
        """Test deleting a trade removes both rows."""
        flow = LedgerFlow(store)
        trade, entry = await flow.record_trade(make_trade(brokerage.id, TradeType.DEPOSIT, 100))

        assert await flow.delete_trade(trade.id) is True
        assert await store.get_entry(entry.id) is None

    @pytest.mark.asyncio
    async def test_update_entry(self, store, checking):
        """Test editable fields go through."""
        flow = LedgerFlow(store)
        entry = await store.add_entry(LedgerEntry(account_id=checking.id, date=AS_OF, amount=-5))

        updated = await flow.update_entry(entry.model_copy(update={"description": "Snacks"}))
        assert updated.description == "Snacks"


class TestTransferMatchingFlow:
    """Tests for suggesting and auto-matching transfers."""

    @pytest.mark.asyncio
    async def test_suggest_unknown_entry(self, store):
        """Test suggestions need an existing entry."""
        with pytest.raises(NotFoundError):
            await TransferMatchingFlow(store).suggest(uuid4())

    @pytest.mark.asyncio
    async def test_auto_match_account(self, store, checking):
        """Test each entry is paired at most once."""
        card = await store.create_account(Account(
            user_id="user-1", name="Visa", account_type=AccountType.CREDIT_CARD,
        ))
        payment = await store.add_entry(LedgerEntry(
            account_id=checking.id, date=datetime(2024, 5, 10), amount=-20_000,
            description="Card payment",
        ))
        received = await store.add_entry(LedgerEntry(
            account_id=card.id, date=datetime(2024, 5, 11), amount=20_000,
            description="Payment received",
        ))
        await store.add_entry(LedgerEntry(
            account_id=checking.id, date=datetime(2024, 5, 10), amount=-4_000,
            description="Groceries",
        ))
        flow = TransferMatchingFlow(store)

        matches = await flow.auto_match_account(checking.id)

        assert len(matches) == 1
        assert {matches[0].entry_a.id, matches[0].entry_b.id} == {payment.id, received.id}
        assert await flow.auto_match_account(checking.id) == []

    @pytest.mark.asyncio
    async def test_commit(self, store, checking):
        """Test committing a suggested candidate."""
        savings = await store.create_account(Account(
            user_id="user-1", name="Savings", account_type=AccountType.SAVINGS,
        ))
        source = await store.add_entry(LedgerEntry(account_id=checking.id, date=AS_OF, amount=-300))
        await store.add_entry(LedgerEntry(account_id=savings.id, date=AS_OF, amount=300))
        flow = TransferMatchingFlow(store)

        candidates = await flow.suggest(source.id)
        match = await flow.commit(source.id, candidates[0].entry.id)

        assert match.entry_a.is_transfer and match.entry_b.is_transfer


class TestIntegrityCheckFlow:
    """Tests for pairing check and repair."""

    @pytest.mark.asyncio
    async def test_check_and_repair(self, store, database, brokerage):
        """Test an orphaned plug is found, then removed."""
        def orphan_plug(session):
            session.add(LedgerEntryRow(
                id=uuid4(), account_id=brokerage.id, date=AS_OF, amount=5,
                description="Adj", pending=False, status=EntryStatus.CLEARED,
                reference=f"investment_valuation_{uuid4()}", created_at=datetime.utcnow(),
                splits=[],
            ))
        database.run(orphan_plug)

        flow = IntegrityCheckFlow(store)
        report = await flow.check()
        assert len(report.entries_without_snapshot) == 1

        repaired = await flow.repair()
        assert len(repaired.entries_without_snapshot) == 1
        assert (await flow.check()).is_consistent
        assert await store.get_ledger_balance(brokerage.id) == 0


class TestAssetHistoryBackfill:
    """Tests for historical per-symbol valuations."""

    @pytest.mark.asyncio
    async def test_backfill_records_history(self, store, funded_brokerage):
        """Test holdings are valued at the historical price for that day."""
        resolver = StaticPriceResolver(
            prices={AssetType.EQUITY: {"NVDA": Decimal("45000")}},
            history={AssetType.EQUITY: {"NVDA": {2: Decimal("44000")}}},
        )
        backfill = AssetHistoryBackfill(store, resolver)

        result = await backfill.run(days_ago=2, now=datetime(2024, 3, 12, 15, 30))

        assert result.as_of == datetime(2024, 3, 10)
        assert result.positions_recorded == 1
        assert result.missing_prices == ["GME"]
        rows = await store.list_asset_valuations(funded_brokerage.id)
        assert [(r.symbol, r.value) for r in rows] == [("NVDA", 4_400_000)]
        # snapshots and plugs are untouched
        assert await store.list_valuations(funded_brokerage.id) == []

    @pytest.mark.asyncio
    async def test_backfill_only_counts_trades_up_to_that_day(self, store, funded_brokerage):
        """Test holdings are projected as of the backfilled day."""
        resolver = StaticPriceResolver(
            prices={},
            history={AssetType.EQUITY: {
                "NVDA": {10: Decimal("40000")},
                "GME": {10: Decimal("8000")},
            }},
        )

        result = await AssetHistoryBackfill(store, resolver).run(
            days_ago=10, now=datetime(2024, 3, 12),
        )

        # 2024-03-02: NVDA bought, GME not yet
        assert result.as_of == datetime(2024, 3, 2)
        rows = await store.list_asset_valuations(funded_brokerage.id)
        assert [r.symbol for r in rows] == ["NVDA"]

    @pytest.mark.asyncio
    async def test_backfill_aborts_without_price_source(self, store, funded_brokerage):
        """Test an unconfigured price source aborts the backfill."""
        result = await AssetHistoryBackfill(store, StaticPriceResolver()).run(
            days_ago=1, now=datetime(2024, 3, 12),
        )
        assert result.aborted is True
        assert result.fatal_error

    @pytest.mark.asyncio
    async def test_backfill_failed_price_is_missing(self, store, funded_brokerage):
        """Test a timed-out historical quote is reported as a missing price."""
        await hold_bitcoin(store, "Z Crypto")

        result = await AssetHistoryBackfill(store, SplitResolver(asyncio.TimeoutError())).run(
            days_ago=1, now=datetime(2024, 3, 12),
        )

        assert not result.aborted
        assert result.errors == []
        assert result.missing_prices == ["BTC"]
        assert result.positions_recorded == 2

    @pytest.mark.asyncio
    async def test_backfill_unexpected_error_is_per_account(self, store, funded_brokerage):
        """Test other failures are recorded against the account."""
        await hold_bitcoin(store, "Z Crypto")

        result = await AssetHistoryBackfill(store, SplitResolver(ValueError("bad payload"))).run(
            days_ago=1, now=datetime(2024, 3, 12),
        )

        assert not result.aborted
        assert result.errors == ["Z Crypto: ValueError: bad payload"]
        assert result.positions_recorded == 2

    @pytest.mark.asyncio
    async def test_negative_days_rejected(self, store):
        """Test days_ago can't be negative."""
        with pytest.raises(ValueError):
            await AssetHistoryBackfill(store, StaticPriceResolver(prices={})).run(days_ago=-1)


class TestCreateAppComponents:
    """Tests for the factory."""

    @pytest.mark.asyncio
    async def test_components_share_one_store(self, database, price_resolver):
        """Test every flow is wired to the same database."""
        components = create_app_components(database=database, price_resolver=price_resolver)
        account = await components.store.create_account(Account(
            user_id="user-1", name="Brokerage", kind=AccountKind.INVESTMENT,
            account_type=AccountType.INVESTMENT,
        ))
        await components.ledger_flow.record_trade(make_trade(account.id, TradeType.DEPOSIT, 1_000))

        result = await components.batch_runner.run(as_of=AS_OF)
        assert result.accounts[0].new_value == 1_000

    @pytest.mark.asyncio
    async def test_without_price_file_valuations_abort(self, database, monkeypatch):
        """Test a missing price configuration surfaces as an aborted run."""
        monkeypatch.delenv("PRICES_PRICE_FILE", raising=False)
        components = create_app_components(database=database)
        account = await components.store.create_account(Account(
            user_id="user-1", name="Brokerage", kind=AccountKind.INVESTMENT,
            account_type=AccountType.INVESTMENT,
        ))
        await components.ledger_flow.record_trade(make_trade(
            account.id, TradeType.BUY, 100, symbol="BTC", asset_type=AssetType.CRYPTO,
            quantity=Decimal("1"),
        ))

        result = await components.batch_runner.run(as_of=AS_OF)
        assert result.aborted is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
