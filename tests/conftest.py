"""Shared pytest fixtures and fakes for ledger-sync tests.

Provides:
- FakeLedgerServer / FakeLedgerEngine: an in-memory ledger implementing the
  ``LedgerEngine`` protocol.  State lives on the server object so several
  executions (each with its own engine) see the same budget.
- FakeProvider: an in-memory ``ProviderClient``.
- Builders for profiles, provider accounts/transactions and worker requests.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from ledger_sync.errors import RemoteLedgerNotFound
from ledger_sync.models import (
    CanonicalTransaction,
    CategoryGroup,
    Command,
    ImportResult,
    LedgerAccount,
    LedgerCategoryGroup,
    ProviderAccount,
    ProviderTransaction,
    SyncProfile,
    Trigger,
    WorkerRequest,
)

TODAY = date(2024, 3, 10)


# ---------------------------------------------------------------------------
# Fake ledger
# ---------------------------------------------------------------------------


class FakeLedgerServer:
    """Budget state shared by every engine pointed at it."""

    def __init__(
        self,
        budgets: tuple[str, ...] = ("budget-1",),
        accounts: list[LedgerAccount] | None = None,
        groups: list[LedgerCategoryGroup] | None = None,
    ) -> None:
        self.budgets = set(budgets)
        self.accounts: list[LedgerAccount] = list(accounts or [])
        self.groups: list[LedgerCategoryGroup] = list(groups or [])
        self.transactions: dict[str, dict[str, CanonicalTransaction]] = {}
        self.pushes = 0
        self.writes = 0
        self._next_id = 1

    def new_id(self, prefix: str) -> str:
        value = f"{prefix}-{self._next_id}"
        self._next_id += 1
        return value


class FakeLedgerEngine:
    """In-memory :class:`~ledger_sync.ledger.LedgerEngine`.

    Args:
        server: Shared budget state.
        attach_errors: Exceptions raised by successive ``attach`` calls;
            once exhausted, attach succeeds.
        failures: Method name -> exception to raise from that method.
    """

    def __init__(
        self,
        server: FakeLedgerServer,
        attach_errors: list[Exception] | None = None,
        failures: dict[str, Exception] | None = None,
    ) -> None:
        self.server = server
        self.attach_errors = list(attach_errors or [])
        self.failures = dict(failures or {})
        self.attach_calls: list[tuple[str, str | None, str | None]] = []
        self.shutdown_calls = 0
        self.attached = False

    def _maybe_fail(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]

    def attach(self, budget_id, password, encryption_password):
        self.attach_calls.append((budget_id, password, encryption_password))
        if self.attach_errors:
            raise self.attach_errors.pop(0)
        if budget_id not in self.server.budgets:
            raise RemoteLedgerNotFound(budget_id)
        self.attached = True

    def list_accounts(self):
        self._maybe_fail("list_accounts")
        return list(self.server.accounts)

    def create_account(self, name, account_type):
        self._maybe_fail("create_account")
        account = LedgerAccount(id=self.server.new_id("acct"), name=name, type=account_type)
        self.server.accounts.append(account)
        self.server.writes += 1
        return account

    def list_category_groups(self):
        self._maybe_fail("list_category_groups")
        return [
            LedgerCategoryGroup(id=g.id, name=g.name, categories=list(g.categories))
            for g in self.server.groups
        ]

    def create_category_group(self, name):
        self._maybe_fail("create_category_group")
        group = LedgerCategoryGroup(id=self.server.new_id("group"), name=name)
        self.server.groups.append(group)
        self.server.writes += 1
        return LedgerCategoryGroup(id=group.id, name=group.name)

    def create_category(self, group, name):
        self._maybe_fail("create_category")
        for stored in self.server.groups:
            if stored.id == group.id:
                stored.categories.append(name)
                self.server.writes += 1
                return
        raise KeyError(group.id)

    def import_transactions(self, account_id, transactions):
        self._maybe_fail("import_transactions")
        book = self.server.transactions.setdefault(account_id, {})
        result = ImportResult()
        for txn in transactions:
            existing = book.get(txn.imported_id)
            if existing is None:
                book[txn.imported_id] = txn
                result.added += 1
            elif existing.amount != txn.amount:
                book[txn.imported_id] = txn
                result.updated += 1
            else:
                result.skipped += 1
        return result

    def push(self):
        self._maybe_fail("push")
        self.server.pushes += 1

    def shutdown(self):
        self.shutdown_calls += 1
        self.attached = False


class EngineRecorder:
    """Engine factory that remembers every engine it built."""

    def __init__(self, server: FakeLedgerServer, **engine_kwargs) -> None:
        self.server = server
        self.engine_kwargs = engine_kwargs
        self.engines: list[FakeLedgerEngine] = []
        self.calls: list[tuple[str, Path]] = []

    def __call__(self, server_url: str, data_dir: Path) -> FakeLedgerEngine:
        self.calls.append((server_url, data_dir))
        engine = FakeLedgerEngine(self.server, **self.engine_kwargs)
        self.engines.append(engine)
        return engine


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-memory :class:`~ledger_sync.provider.ProviderClient`."""

    def __init__(
        self,
        accounts: list[ProviderAccount] | None = None,
        transactions: dict[str, list[ProviderTransaction]] | None = None,
        fetch_errors: dict[str, Exception] | None = None,
        auth_error: Exception | None = None,
        list_error: Exception | None = None,
    ) -> None:
        self.accounts = list(accounts or [])
        self.transactions = dict(transactions or {})
        self.fetch_errors = dict(fetch_errors or {})
        self.auth_error = auth_error
        self.list_error = list_error
        self.authenticated = False
        self.fetches: list[tuple[str, date, date]] = []

    def authenticate(self):
        if self.auth_error is not None:
            raise self.auth_error
        self.authenticated = True

    def list_accounts(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.accounts)

    def list_transactions(self, account_id, from_date, to_date):
        self.fetches.append((account_id, from_date, to_date))
        if account_id in self.fetch_errors:
            raise self.fetch_errors[account_id]
        return list(self.transactions.get(account_id, []))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_profile(**overrides) -> SyncProfile:
    """Build a complete, valid profile."""
    values = dict(
        id="personal",
        name="Personal",
        enabled=True,
        client_id="client-123",
        secret_id="secret-456",
        api_key="key-789",
        server_url="http://actual.local:5006",
        budget_id="budget-1",
        password="",
        schedule="0 0 * * *",
    )
    values.update(overrides)
    return SyncProfile(**values)


def make_provider_account(**overrides) -> ProviderAccount:
    values = dict(
        account_id="ACC1",
        account_number="10012345678",
        account_name="Mr S Gordon",
        reference_name="Sean's Cheque",
        product_name="Private Bank Account",
    )
    values.update(overrides)
    return ProviderAccount(**values)


def make_provider_txn(**overrides) -> ProviderTransaction:
    values = dict(
        account_id="ACC1",
        type="DEBIT",
        transaction_type="CardPurchases",
        status="POSTED",
        description="WOOLWORTHS SANDTON",
        card_number="402167xxxxxx1234",
        posted_order=7,
        posting_date="2024-03-01",
        value_date="2024-03-01",
        action_date="2024-03-01",
        transaction_date="2024-02-29",
        amount=Decimal("150.00"),
        running_balance=Decimal("1000.00"),
    )
    values.update(overrides)
    return ProviderTransaction(**values)


def make_request(
    work_dir: Path,
    profile: SyncProfile | None = None,
    taxonomy: list[CategoryGroup] | None = None,
    command: Command = Command.SYNC,
    **overrides,
) -> WorkerRequest:
    values = dict(
        profile=profile or make_profile(),
        taxonomy=taxonomy if taxonomy is not None else [CategoryGroup("Food", ["Groceries"])],
        command=command,
        trigger=Trigger.MANUAL,
        work_dir=work_dir,
    )
    values.update(overrides)
    return WorkerRequest(**values)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger_server() -> FakeLedgerServer:
    """An empty fake budget named ``budget-1``."""
    return FakeLedgerServer()


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    return tmp_path / "data" / "work" / "personal"


@pytest.fixture
def events() -> list:
    """Collects log events emitted by an executor."""
    return []
