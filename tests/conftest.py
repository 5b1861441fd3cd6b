"""
Shared fixtures for Portfolio Ledger tests.

Every test gets its own in-memory SQLite database; nothing touches the
network (prices come from StaticPriceResolver or in-test fakes).
"""

from datetime import datetime
from decimal import Decimal

import pytest
import pytest_asyncio

from portfolio_ledger.models.ledger import Account, AccountKind, AccountType
from portfolio_ledger.models.trade import AssetType, Trade, TradeType
from portfolio_ledger.services.pricing import StaticPriceResolver
from portfolio_ledger.services.storage import (
    SQLAuditStorage,
    SQLDatabase,
    SQLLedgerStore,
    create_database_engine,
)


@pytest.fixture
def database():
    db = SQLDatabase(create_database_engine("sqlite://"))
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def store(database):
    return SQLLedgerStore(database)


@pytest.fixture
def audit_storage(database):
    return SQLAuditStorage(database)


@pytest.fixture
def price_resolver():
    return StaticPriceResolver(prices={
        AssetType.EQUITY: {"NVDA": Decimal("45000"), "GME": Decimal("8500")},
        AssetType.CRYPTO: {"BTC": Decimal("6500000")},
    })


@pytest_asyncio.fixture
async def brokerage(store):
    """Investment-linked account with no history."""
    return await store.create_account(Account(
        user_id="user-1",
        name="Brokerage",
        account_type=AccountType.INVESTMENT,
        kind=AccountKind.INVESTMENT,
    ))


@pytest_asyncio.fixture
async def checking(store):
    return await store.create_account(Account(
        user_id="user-1",
        name="Checking",
        account_type=AccountType.CHECKING,
        opening_balance=1_000_000,
    ))


def make_trade(account_id, trade_type, amount, day=1, **kwargs) -> Trade:
    """Trade on 2024-03-<day> at noon."""
    return Trade(
        account_id=account_id,
        occurred_at=datetime(2024, 3, day, 12, 0),
        type=trade_type,
        amount=amount,
        **kwargs,
    )


def worked_scenario_trades(account_id) -> list[Trade]:
    """DEPOSIT, BUY NVDA, BUY GME, DIVIDEND."""
    return [
        make_trade(account_id, TradeType.DEPOSIT, 5_000_000, day=1),
        make_trade(
            account_id, TradeType.BUY, 4_000_000, day=2,
            symbol="NVDA", asset_type=AssetType.EQUITY,
            quantity=Decimal("100"), fees=1_000,
        ),
        make_trade(
            account_id, TradeType.BUY, 400_000, day=3,
            symbol="GME", asset_type=AssetType.EQUITY,
            quantity=Decimal("50"), fees=500,
        ),
        make_trade(account_id, TradeType.DIVIDEND, 50_000, day=4, symbol="NVDA"),
    ]
