"""
Tests for the transfer-matching heuristic.
"""

from datetime import datetime
from uuid import uuid4

import pytest
import pytest_asyncio

from conftest import make_trade
from portfolio_ledger.models.ledger import (
    Account,
    AccountKind,
    AccountType,
    CategorySplit,
    EntryStatus,
    ExternalReference,
    LedgerEntry,
    TransferKey,
    parse_correlation_key,
)
from portfolio_ledger.models.trade import TradeType
from portfolio_ledger.services.storage import NotFoundError
from portfolio_ledger.transfers import (
    TransferMatcher,
    TransferMatchError,
    account_type_preference,
    day_distance,
    has_transfer_keyword,
    score_candidate,
)


def entry(account, amount, day, description="", **kwargs) -> LedgerEntry:
    return LedgerEntry(
        account_id=account.id,
        date=datetime(2024, 5, day, 9, 30),
        amount=amount,
        description=description,
        **kwargs,
    )


@pytest_asyncio.fixture
async def savings(store):
    return await store.create_account(Account(
        user_id="user-1",
        name="Savings",
        account_type=AccountType.SAVINGS,
    ))


@pytest_asyncio.fixture
async def credit_card(store):
    return await store.create_account(Account(
        user_id="user-1",
        name="Visa",
        account_type=AccountType.CREDIT_CARD,
    ))


@pytest.fixture
def matcher(store):
    return TransferMatcher(
        store,
        window_days=3,
        amount_tolerance=100,
        min_confidence=2,
        candidate_limit=5,
        keywords=["payment", "transfer"],
    )


class TestScoring:
    """Pure scoring helpers."""

    def test_account_type_preference(self):
        """Test credit cards rank above checking and savings."""
        assert account_type_preference(AccountType.CREDIT_CARD) == 2
        assert account_type_preference(AccountType.CHECKING) == 1
        assert account_type_preference(AccountType.SAVINGS) == 1
        assert account_type_preference(AccountType.INVESTMENT) == 0

    def test_keyword_match_is_case_insensitive(self):
        """Test keyword lookup ignores case."""
        assert has_transfer_keyword("ONLINE PAYMENT THANK YOU", ["payment"])
        assert not has_transfer_keyword("Groceries", ["payment"])
        assert not has_transfer_keyword(None, ["payment"])

    def test_day_distance_uses_calendar_days(self):
        """Test late-evening and early-morning entries are one day apart."""
        assert day_distance(datetime(2024, 5, 1, 23, 59), datetime(2024, 5, 2, 0, 1)) == 1
        assert day_distance(datetime(2024, 5, 3), datetime(2024, 5, 1)) == 2

    def test_score_same_day_checking_without_keyword(self):
        """Test same-day checking counterpart scores 3."""
        account = Account(user_id="u", name="Checking 2", account_type=AccountType.CHECKING)
        source = LedgerEntry(account_id=uuid4(), date=datetime(2024, 5, 1), amount=-500)
        candidate = LedgerEntry(account_id=account.id, date=datetime(2024, 5, 1, 18), amount=500)

        assert score_candidate(source, candidate, account, ["payment"]) == 3


class TestFindCandidates:
    """Tests for ranked candidate search."""

    @pytest.mark.asyncio
    async def test_same_day_checking_pair_matches_without_keyword(self, store, matcher, checking):
        """Test same-day opposite entries between checking accounts pass the threshold."""
        other = await store.create_account(Account(
            user_id="user-1", name="Joint Checking", account_type=AccountType.CHECKING,
        ))
        source = await store.add_entry(entry(checking, -25_000, 10))
        target = await store.add_entry(entry(other, 25_000, 10))

        candidates = await matcher.find_candidates(source)

        assert [c.entry.id for c in candidates] == [target.id]
        assert candidates[0].confidence == 3
        assert candidates[0].day_distance == 0

    @pytest.mark.asyncio
    async def test_six_days_apart_never_matches(self, store, matcher, checking, credit_card):
        """Test entries outside the window are excluded regardless of signal."""
        source = await store.add_entry(entry(checking, -25_000, 1, "Card payment"))
        await store.add_entry(entry(credit_card, 25_000, 7, "Payment received"))

        assert await matcher.find_candidates(source) == []

    @pytest.mark.asyncio
    async def test_window_edge_is_inclusive(self, store, matcher, checking, credit_card):
        """Test an entry exactly window_days away is still a candidate."""
        source = await store.add_entry(entry(checking, -25_000, 1))
        target = await store.add_entry(entry(credit_card, 25_000, 4))

        candidates = await matcher.find_candidates(source)
        assert [c.entry.id for c in candidates] == [target.id]

    @pytest.mark.asyncio
    async def test_amount_tolerance(self, store, matcher, checking, savings):
        """Test amounts must agree within the tolerance."""
        source = await store.add_entry(entry(checking, -10_000, 5))
        close = await store.add_entry(entry(savings, 10_100, 5))
        await store.add_entry(entry(savings, 10_101, 5))

        candidates = await matcher.find_candidates(source)
        assert [c.entry.id for c in candidates] == [close.id]

    @pytest.mark.asyncio
    async def test_same_sign_excluded(self, store, matcher, checking, savings):
        """Test both sides must move in opposite directions."""
        source = await store.add_entry(entry(checking, -10_000, 5))
        await store.add_entry(entry(savings, -10_000, 5))

        assert await matcher.find_candidates(source) == []

    @pytest.mark.asyncio
    async def test_currency_must_match(self, store, matcher, checking):
        """Test candidates in another currency are ignored."""
        euro = await store.create_account(Account(
            user_id="user-1", name="Euro", currency="EUR", account_type=AccountType.CHECKING,
        ))
        source = await store.add_entry(entry(checking, -10_000, 5))
        await store.add_entry(entry(euro, 10_000, 5))

        assert await matcher.find_candidates(source) == []

    @pytest.mark.asyncio
    async def test_pending_candidates_excluded(self, store, matcher, checking, savings):
        """Test pending entries aren't offered."""
        source = await store.add_entry(entry(checking, -10_000, 5))
        await store.add_entry(entry(savings, 10_000, 5, pending=True, status=EntryStatus.PENDING))

        assert await matcher.find_candidates(source) == []

    @pytest.mark.asyncio
    async def test_below_threshold_excluded(self, store, checking):
        """Test low-scoring candidates are filtered out."""
        other = await store.create_account(Account(
            user_id="user-1", name="Other", account_type=AccountType.OTHER,
        ))
        source = await store.add_entry(entry(checking, -10_000, 5))
        await store.add_entry(entry(other, 10_000, 6))

        matcher = TransferMatcher(store, min_confidence=1, keywords=["payment"])
        assert await matcher.find_candidates(source) == []

    @pytest.mark.asyncio
    async def test_ranking_prefers_confidence_then_proximity(
        self, store, matcher, checking, savings, credit_card
    ):
        """Test credit card beats savings, then closer dates win."""
        source = await store.add_entry(entry(checking, -10_000, 10))
        savings_same_day = await store.add_entry(entry(savings, 10_000, 10))
        card_far = await store.add_entry(entry(credit_card, 10_000, 12))
        card_near = await store.add_entry(entry(credit_card, 10_000, 11))

        candidates = await matcher.find_candidates(source)

        # card: 2*2 = 4; savings same day: 2*1 + 1 = 3
        assert [c.entry.id for c in candidates] == [card_near.id, card_far.id, savings_same_day.id]

    @pytest.mark.asyncio
    async def test_candidate_limit(self, store, checking, credit_card):
        """Test only the top candidates are returned."""
        source = await store.add_entry(entry(checking, -10_000, 10))
        for day in (8, 9, 10, 11, 12):
            await store.add_entry(entry(credit_card, 10_000, day))

        matcher = TransferMatcher(store, candidate_limit=2)
        candidates = await matcher.find_candidates(source)
        assert [c.day_distance for c in candidates] == [0, 1]

    @pytest.mark.asyncio
    async def test_zero_amount_source_has_no_candidates(self, store, matcher, checking, savings):
        """Test a zero entry is never a transfer."""
        source = await store.add_entry(entry(checking, 0, 5))
        await store.add_entry(entry(savings, 0, 5))

        assert await matcher.find_candidates(source) == []

    @pytest.mark.asyncio
    async def test_cash_account_source_has_no_candidates(self, store, matcher, savings):
        """Test cash accounts don't take part in matching."""
        wallet = await store.create_account(Account(
            user_id="user-1", name="Wallet", account_type=AccountType.CASH,
        ))
        source = await store.add_entry(entry(wallet, -5_000, 5))
        await store.add_entry(entry(savings, 5_000, 5))

        assert await matcher.find_candidates(source) == []

    @pytest.mark.asyncio
    async def test_trade_entries_are_not_candidates(self, store, matcher, checking, brokerage):
        """Test entries carrying a trade key are never offered."""
        _, trade_entry = await store.record_trade(
            make_trade(brokerage.id, TradeType.DEPOSIT, 10_000, day=5)
        )
        source = await store.add_entry(LedgerEntry(
            account_id=checking.id, date=trade_entry.date, amount=-10_000,
        ))

        assert await matcher.find_candidates(source) == []

    @pytest.mark.asyncio
    async def test_missing_account_raises(self, store, matcher):
        """Test an entry for an unknown account is an error."""
        orphan = LedgerEntry(account_id=uuid4(), date=datetime(2024, 5, 1), amount=-1)
        with pytest.raises(NotFoundError):
            await matcher.find_candidates(orphan)


class TestCommitMatch:
    """Tests for tagging a pair."""

    @pytest.mark.asyncio
    async def test_commit_tags_both_entries(self, store, matcher, checking, credit_card):
        """Test both entries share one transfer key and are cleared."""
        source = await store.add_entry(entry(
            checking, -25_000, 10, "", status=EntryStatus.PENDING,
        ))
        target = await store.add_entry(entry(credit_card, 25_000, 10, "Payment"))

        match = await matcher.commit_match(source, target)

        tagged_source = await store.get_entry(source.id)
        tagged_target = await store.get_entry(target.id)
        assert tagged_source.correlation_key == match.key
        assert tagged_target.correlation_key == match.key
        assert tagged_source.status == EntryStatus.CLEARED
        assert tagged_source.description == "Transfer to Visa"
        assert tagged_target.description == "Payment"
        assert isinstance(parse_correlation_key(match.key.encode()), TransferKey)

    @pytest.mark.asyncio
    async def test_commit_clears_category_splits(self, store, matcher, checking, savings):
        """Test transfer entries lose their expense categories."""
        source = await store.add_entry(entry(
            checking, -8_000, 3, "Move",
            category_splits=[CategorySplit(category_id="misc", amount=-8_000)],
        ))
        target = await store.add_entry(entry(savings, 8_000, 3, "Move"))

        await matcher.commit_match(source, target)
        assert (await store.get_entry(source.id)).category_splits == []

    @pytest.mark.asyncio
    async def test_second_commit_rejected(self, store, matcher, checking, savings):
        """Test an already tagged entry can't be matched again."""
        source = await store.add_entry(entry(checking, -8_000, 3))
        target = await store.add_entry(entry(savings, 8_000, 3))
        match = await matcher.commit_match(source, target)

        with pytest.raises(TransferMatchError):
            await matcher.commit_match(match.entry_a, match.entry_b)

    @pytest.mark.asyncio
    async def test_stale_copy_rejected(self, store, matcher, checking, savings):
        """Test the store refuses to retag even with an outdated in-memory entry."""
        source = await store.add_entry(entry(checking, -8_000, 3))
        target = await store.add_entry(entry(savings, 8_000, 3))
        other = await store.add_entry(entry(savings, 8_000, 4))
        await matcher.commit_match(source, target)

        with pytest.raises(TransferMatchError):
            await matcher.commit_match(source, other)
        assert (await store.get_entry(other.id)).correlation_key is None

    @pytest.mark.asyncio
    async def test_tagged_entries_drop_out_of_candidates(self, store, matcher, checking, savings):
        """Test matching is idempotent: tagged entries are never offered again."""
        source = await store.add_entry(entry(checking, -8_000, 3))
        target = await store.add_entry(entry(savings, 8_000, 3))
        await matcher.commit_match(source, target)

        assert await matcher.find_candidates(await store.get_entry(source.id)) == []

    @pytest.mark.asyncio
    async def test_same_account_rejected(self, store, matcher, checking):
        """Test both sides must be in different accounts."""
        a = await store.add_entry(entry(checking, -100, 3))
        b = await store.add_entry(entry(checking, 100, 3))

        with pytest.raises(TransferMatchError):
            await matcher.commit_match(a, b)

    @pytest.mark.asyncio
    async def test_external_reference_is_replaced(self, store, matcher, checking, savings):
        """Test an import reference doesn't block matching."""
        source = await store.add_entry(entry(
            checking, -100, 3, correlation_key=ExternalReference(value="bank-123"),
        ))
        target = await store.add_entry(entry(savings, 100, 3))

        match = await matcher.commit_match(source, target)
        assert (await store.get_entry(source.id)).correlation_key == match.key


class TestRecordTransfer:
    """Tests for recording a new two-sided transfer."""

    @pytest.mark.asyncio
    async def test_plain_accounts(self, store, matcher, checking, savings):
        """Test a transfer writes a debit and a credit with one key."""
        record = await matcher.record_transfer(checking, savings, datetime(2024, 5, 2), 30_000)

        assert record.debit.amount == -30_000
        assert record.credit.amount == 30_000
        assert record.debit.correlation_key == record.credit.correlation_key == record.key
        assert record.debit.description == "Transfer to Savings"
        assert record.withdraw_trade is None and record.deposit_trade is None
        assert await store.get_ledger_balance(checking.id) == 970_000

    @pytest.mark.asyncio
    async def test_investment_side_gets_trade(self, store, matcher, checking, brokerage):
        """Test funding a brokerage account records a DEPOSIT trade."""
        record = await matcher.record_transfer(checking, brokerage, datetime(2024, 5, 2), 30_000)

        trades = await store.list_trades(brokerage.id)
        assert [(t.type, t.amount) for t in trades] == [(TradeType.DEPOSIT, 30_000)]
        assert record.deposit_trade.id == trades[0].id
        # the transfer entry carries the cash; no separate trade entry
        assert len(await store.list_entries(brokerage.id)) == 1

    @pytest.mark.asyncio
    async def test_withdraw_from_investment(self, store, matcher, checking, brokerage):
        """Test moving cash out of a brokerage records a WITHDRAW trade."""
        record = await matcher.record_transfer(brokerage, checking, datetime(2024, 5, 2), 5_000)
        assert record.withdraw_trade.amount == -5_000
        assert record.withdraw_trade.type == TradeType.WITHDRAW

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, matcher, checking, savings):
        """Test the amount must be positive."""
        with pytest.raises(TransferMatchError):
            await matcher.record_transfer(checking, savings, datetime(2024, 5, 2), 0)

    @pytest.mark.asyncio
    async def test_currency_mismatch_rejected(self, store, matcher, checking):
        """Test both accounts must share a currency."""
        euro = await store.create_account(Account(
            user_id="user-1", name="Euro", currency="EUR", kind=AccountKind.PLAIN,
        ))
        with pytest.raises(TransferMatchError):
            await matcher.record_transfer(checking, euro, datetime(2024, 5, 2), 100)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
