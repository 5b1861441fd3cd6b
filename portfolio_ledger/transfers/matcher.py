"""
Transfer-Matching Heuristic

Finds the other side of a transfer between two of a user's accounts
(a checking debit and the credit card payment it settled, say) and
tags both entries with one shared transfer key.

Eligibility (all must hold):
- Different account, same currency
- Candidate dated within +/- window_days calendar days
- Opposite sign, absolute amounts within amount_tolerance minor units
- Neither entry carries an automated correlation key
- Candidate not pending; source amount non-zero; source account not CASH

Score (deterministic):
- 2 x account type preference (credit card 2, checking/savings 1, else 0)
- +1 if the candidate description contains a transfer keyword
- +1 if both entries fall on the same calendar day

DESIGN DECISION: Entries carrying ANY automated key (valuation plug,
trade entry, existing transfer) are never candidates. Committing a
match overwrites the key, and those keys are what keep snapshots and
trades paired with their entries.
"""

from datetime import datetime, time, timedelta
from typing import Optional
from uuid import UUID

from portfolio_ledger.audit import AuditLogger
from portfolio_ledger.config import get_settings
from portfolio_ledger.models.ledger import (
    Account,
    AccountType,
    EntryStatus,
    LedgerEntry,
    TransferKey,
)
from portfolio_ledger.models.trade import Trade, TradeType
from portfolio_ledger.models.transfer import (
    TransferCandidate,
    TransferMatch,
    TransferRecord,
)
from portfolio_ledger.money import amounts_are_close, is_opposite_sign
from portfolio_ledger.services.storage import (
    ImmutableCorrelationKeyError,
    LedgerStoreInterface,
    NotFoundError,
)


# Higher means more likely to be the other side of a transfer
ACCOUNT_TYPE_PREFERENCE = {
    AccountType.CREDIT_CARD: 2,
    AccountType.CHECKING: 1,
    AccountType.SAVINGS: 1,
}


class TransferMatchError(Exception):
    """Two entries can't be tagged as one transfer."""
    pass


def account_type_preference(account_type: AccountType) -> int:
    return ACCOUNT_TYPE_PREFERENCE.get(account_type, 0)


def has_transfer_keyword(description: Optional[str], keywords: list[str]) -> bool:
    if not description:
        return False
    text = description.lower()
    return any(keyword in text for keyword in keywords)


def day_distance(a: datetime, b: datetime) -> int:
    """Whole calendar days between two timestamps."""
    return abs((a.date() - b.date()).days)


def is_eligible_pair(
    source: LedgerEntry,
    source_account: Account,
    candidate: LedgerEntry,
    candidate_account: Account,
    window_days: int,
    amount_tolerance: int,
) -> bool:
    """Apply every eligibility filter to one (source, candidate) pair."""
    if source.amount == 0 or source_account.account_type == AccountType.CASH:
        return False
    if candidate.account_id == source.account_id:
        return False
    if candidate_account.currency != source_account.currency:
        return False
    if source.has_automated_key or candidate.has_automated_key:
        return False
    if candidate.pending or candidate.status == EntryStatus.PENDING:
        return False
    if day_distance(source.date, candidate.date) > window_days:
        return False
    if candidate.amount == 0 or not is_opposite_sign(source.amount, candidate.amount):
        return False
    return amounts_are_close(abs(source.amount), abs(candidate.amount), amount_tolerance)


def score_candidate(
    source: LedgerEntry,
    candidate: LedgerEntry,
    candidate_account: Account,
    keywords: list[str],
) -> int:
    score = 2 * account_type_preference(candidate_account.account_type)
    if has_transfer_keyword(candidate.description, keywords):
        score += 1
    if source.date.date() == candidate.date.date():
        score += 1
    return score


def _transfer_description(direction: str, account_name: str) -> str:
    return f"Transfer {direction} {account_name}"


class TransferMatcher:
    """
    Ranks transfer candidates and commits matches.

    Tunables default to TransferMatchingSettings and can be overridden
    per instance.
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        window_days: Optional[int] = None,
        amount_tolerance: Optional[int] = None,
        min_confidence: Optional[int] = None,
        candidate_limit: Optional[int] = None,
        keywords: Optional[list[str]] = None,
    ):
        settings = get_settings().transfers
        self._store = store
        self._audit = audit_logger or AuditLogger()
        self.window_days = settings.window_days if window_days is None else window_days
        self.amount_tolerance = (
            settings.amount_tolerance if amount_tolerance is None else amount_tolerance
        )
        self.min_confidence = settings.min_confidence if min_confidence is None else min_confidence
        self.candidate_limit = (
            settings.candidate_limit if candidate_limit is None else candidate_limit
        )
        self.keywords = (
            [kw.lower() for kw in keywords] if keywords is not None else settings.keywords_list
        )

    async def find_candidates(self, entry: LedgerEntry) -> list[TransferCandidate]:
        """
        Ranked candidates for the other side of `entry`.

        Ordering: confidence (desc), then date proximity, then creation order.

        Raises:
            NotFoundError: If the entry's account doesn't exist
        """
        account = await self._store.get_account(entry.account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {entry.account_id}")

        if entry.amount == 0 or entry.has_automated_key or account.account_type == AccountType.CASH:
            return []

        day = entry.date.date()
        rows = await self._store.list_transfer_candidates(
            exclude_account_id=entry.account_id,
            currency=account.currency,
            date_from=datetime.combine(day - timedelta(days=self.window_days), time.min),
            date_to=datetime.combine(day + timedelta(days=self.window_days), time.max),
        )

        candidates = []
        for candidate, candidate_account in rows:
            if not is_eligible_pair(
                entry, account, candidate, candidate_account,
                self.window_days, self.amount_tolerance,
            ):
                continue
            confidence = score_candidate(entry, candidate, candidate_account, self.keywords)
            if confidence < self.min_confidence:
                continue
            candidates.append(TransferCandidate(
                entry=candidate,
                account=candidate_account,
                confidence=confidence,
                day_distance=day_distance(entry.date, candidate.date),
            ))

        candidates.sort(key=lambda c: (
            -c.confidence,
            c.day_distance,
            c.entry.created_at,
            str(c.entry.id),
        ))
        return candidates[:self.candidate_limit]

    async def find_best_candidate(self, entry: LedgerEntry) -> Optional[TransferCandidate]:
        candidates = await self.find_candidates(entry)
        return candidates[0] if candidates else None

    async def commit_match(
        self,
        entry_a: LedgerEntry,
        entry_b: LedgerEntry,
        correlation_id: Optional[UUID] = None,
    ) -> TransferMatch:
        """
        Tag two entries as one transfer, atomically.

        Raises:
            TransferMatchError: If the entries share an account or
                either one already carries an automated key
        """
        if entry_a.id == entry_b.id or entry_a.account_id == entry_b.account_id:
            raise TransferMatchError("A transfer needs entries in two different accounts")
        for entry in (entry_a, entry_b):
            if entry.has_automated_key:
                raise TransferMatchError(f"Entry {entry.id} is already tagged with {entry.reference}")

        key = TransferKey.generate()
        try:
            tagged_a, tagged_b = await self._store.apply_transfer_match(key, entry_a, entry_b)
        except ImmutableCorrelationKeyError as e:
            raise TransferMatchError(str(e)) from e

        await self._audit.log_transfer_matched(
            entry_a_id=tagged_a.id,
            entry_b_id=tagged_b.id,
            reference=key.encode(),
            correlation_id=correlation_id,
        )
        return TransferMatch(key=key, entry_a=tagged_a, entry_b=tagged_b)

    async def record_transfer(
        self,
        from_account: Account,
        to_account: Account,
        date: datetime,
        amount: int,
        description: Optional[str] = None,
        memo: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> TransferRecord:
        """
        Record a brand new transfer: debit, credit and any trades.

        Investment-linked accounts also get the matching WITHDRAW or
        DEPOSIT trade so their projected cash moves too.

        Raises:
            TransferMatchError: For a non-positive amount, the same
                account twice, or mismatched currencies
        """
        if amount <= 0:
            raise TransferMatchError("Transfer amount must be positive")
        if from_account.id == to_account.id:
            raise TransferMatchError("Can't transfer to the same account")
        if from_account.currency != to_account.currency:
            raise TransferMatchError(
                f"Currency mismatch: {from_account.currency} vs {to_account.currency}"
            )

        key = TransferKey.generate()
        debit = LedgerEntry(
            account_id=from_account.id,
            date=date,
            amount=-amount,
            description=description or _transfer_description("to", to_account.name),
            memo=memo,
            status=EntryStatus.CLEARED,
        )
        credit = LedgerEntry(
            account_id=to_account.id,
            date=date,
            amount=amount,
            description=description or _transfer_description("from", from_account.name),
            memo=memo,
            status=EntryStatus.CLEARED,
        )

        withdraw_trade = None
        deposit_trade = None
        if from_account.is_investment:
            withdraw_trade = Trade(
                account_id=from_account.id,
                occurred_at=date,
                type=TradeType.WITHDRAW,
                amount=-amount,
                notes=_transfer_description("to", to_account.name),
            )
        if to_account.is_investment:
            deposit_trade = Trade(
                account_id=to_account.id,
                occurred_at=date,
                type=TradeType.DEPOSIT,
                amount=amount,
                notes=_transfer_description("from", from_account.name),
            )

        trades = [t for t in (withdraw_trade, deposit_trade) if t is not None]
        debit, credit = await self._store.create_transfer(key, debit, credit, trades)

        await self._audit.log_transfer_recorded(
            debit_id=debit.id,
            credit_id=credit.id,
            amount=amount,
            reference=key.encode(),
            correlation_id=correlation_id,
        )
        return TransferRecord(
            key=key,
            debit=debit,
            credit=credit,
            withdraw_trade=withdraw_trade,
            deposit_trade=deposit_trade,
        )
