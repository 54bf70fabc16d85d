"""Core data models for ledger-sync.

This module defines all dataclasses and enums shared by the reconcilers, the
ledger session, the executor and the orchestrator. It has zero internal
imports -- everything depends on it, but it depends on nothing within the
package.

Every model here must stay picklable: worker requests, log events and
results cross a process boundary when executions run in process isolation.
"""

from __future__ import annotations

import copy
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path


def mask_secret(value: str, visible: int = 4) -> str:
    """Mask all but the last *visible* characters of a credential.

    Args:
        value: The secret to mask.
        visible: Number of trailing characters left readable.

    Returns:
        ``"(not set)"`` for empty values, otherwise ``"****"`` followed by
        the trailing characters.  Secrets no longer than *visible* are
        fully masked.
    """
    if not value:
        return "(not set)"
    if len(value) <= visible:
        return "****"
    return "****" + value[-visible:]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LogLevel(str, enum.Enum):
    """Severity tag of an execution log event."""

    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


class Command(str, enum.Enum):
    """The three operations the core exposes to its callers."""

    SYNC = "sync"
    TEST_PROVIDER = "test_provider"
    TEST_LEDGER = "test_ledger"


class Trigger(str, enum.Enum):
    """What caused an execution to start."""

    SCHEDULE = "schedule"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


PROVIDER_FIELDS = ("client_id", "secret_id", "api_key")
LEDGER_FIELDS = ("server_url", "budget_id")


@dataclass
class CategoryGroup:
    """One node of the category taxonomy.

    Attributes:
        name: Group name as it should appear in the ledger.
        categories: Ordered category names inside the group.
    """

    name: str
    categories: list[str] = field(default_factory=list)


@dataclass
class SyncProfile:
    """A named, independently schedulable provider-to-ledger configuration.

    Attributes:
        id: Stable identifier. Also names the profile's work directory.
        name: Display name.
        enabled: Disabled profiles are never scheduled, but may still be
            run manually.
        client_id: Provider OAuth2 client id.
        secret_id: Provider OAuth2 client secret.
        api_key: Provider API key (sent as ``x-api-key``).
        server_url: Base URL of the Actual Budget server.
        budget_id: Sync id (or file name) of the budget on the server.
        password: Optional password. Used both as the server password and
            as the end-to-end encryption passphrase; only the server's
            response tells which one it really is.
        schedule: Cron expression, or empty for manual-only profiles.
        categories: Per-profile taxonomy override. ``None`` means "use the
            process-wide default taxonomy".
    """

    id: str
    name: str
    enabled: bool = True
    client_id: str = ""
    secret_id: str = ""
    api_key: str = ""
    server_url: str = ""
    budget_id: str = ""
    password: str = ""
    schedule: str = ""
    categories: list[CategoryGroup] | None = None

    def snapshot(self) -> SyncProfile:
        """Return a deep copy, detached from any later config edits."""
        return copy.deepcopy(self)

    def missing_fields(self, names: tuple[str, ...] | None = None) -> list[str]:
        """Names of required fields that are empty.

        Args:
            names: Fields to check. Defaults to every field a full sync
                needs.
        """
        if names is None:
            names = PROVIDER_FIELDS + LEDGER_FIELDS
        return [name for name in names if not getattr(self, name).strip()]


@dataclass
class AppConfig:
    """Top-level application configuration loaded from config.toml.

    Attributes:
        profiles: Configured sync profiles, in file order.
        data_dir: Directory holding per-profile work directories.
        max_log_entries: Size of the orchestrator's in-memory log buffer.
        purge_work_dir: Delete a profile's work directory after each run.
        isolation: ``"process"`` or ``"thread"``.
        provider_base_url: Base URL of the banking provider API.
        batch_size: Transactions per ledger import call.
        lookback_days: Length of the transaction fetch window.
    """

    profiles: list[SyncProfile] = field(default_factory=list)
    data_dir: str = "data"
    max_log_entries: int = 100
    purge_work_dir: bool = False
    isolation: str = "process"
    provider_base_url: str = "https://openapi.investec.com"
    batch_size: int = 200
    lookback_days: int = 365

    def get_profile(self, profile_id: str) -> SyncProfile | None:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None


# ---------------------------------------------------------------------------
# Provider side
# ---------------------------------------------------------------------------


@dataclass
class ProviderAccount:
    """A bank account as reported by the provider.

    Attributes:
        account_id: Provider account id.
        account_number: Full (or masked) account number.
        account_name: Raw account holder name, e.g. "Mr S Gordon".
        reference_name: Human-assigned nickname, may be empty.
        product_name: Product name, e.g. "Private Bank Account".
    """

    account_id: str
    account_number: str = ""
    account_name: str = ""
    reference_name: str = ""
    product_name: str = ""


@dataclass
class ProviderTransaction:
    """A transaction as reported by the provider.

    ``amount`` is an unsigned magnitude; ``type`` says whether it is a
    ``"DEBIT"`` or ``"CREDIT"``.  Date fields are ISO strings, possibly with
    a time component, and any of them may be missing.
    """

    account_id: str
    type: str = ""
    transaction_type: str = ""
    status: str = ""
    description: str = ""
    card_number: str = ""
    posted_order: int | None = None
    posting_date: str = ""
    value_date: str = ""
    action_date: str = ""
    transaction_date: str = ""
    amount: Decimal = Decimal("0")
    running_balance: Decimal | None = None


# ---------------------------------------------------------------------------
# Ledger side
# ---------------------------------------------------------------------------


@dataclass
class LedgerAccount:
    """An account in the target ledger.

    Attributes:
        id: Ledger account id.
        name: Display name.
        type: ``"checking"`` or ``"credit"`` (may be empty for accounts
            created outside this tool).
        off_budget: True if the account is excluded from the budget.
    """

    id: str
    name: str
    type: str = ""
    off_budget: bool = False


@dataclass
class LedgerCategoryGroup:
    """A category group in the ledger with the names of its categories."""

    id: str
    name: str
    categories: list[str] = field(default_factory=list)


@dataclass
class AccountBinding:
    """A 1:1 match between a provider account and a ledger account.

    Derived for one execution only; never persisted.
    """

    provider_account: ProviderAccount
    ledger_account: LedgerAccount
    created: bool = False


@dataclass
class CanonicalTransaction:
    """A provider transaction expressed in ledger vocabulary.

    Attributes:
        date: Posting date as ``YYYY-MM-DD``.
        amount: Signed amount in minor units (cents). Negative for debits.
        payee_name: Payee text.
        imported_payee: Raw payee text as received.
        notes: Free-form notes, may be empty.
        imported_id: Deterministic deduplication key.
        cleared: Provider transactions are always posted, hence cleared.
    """

    date: str
    amount: int
    payee_name: str
    imported_payee: str
    notes: str
    imported_id: str
    cleared: bool = True


@dataclass
class ImportResult:
    """Outcome of one ledger import call."""

    added: int = 0
    updated: int = 0
    skipped: int = 0

    def __add__(self, other: ImportResult) -> ImportResult:
        return ImportResult(
            added=self.added + other.added,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
        )


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


@dataclass
class TransformResult:
    """Return type of :func:`ledger_sync.transform.transform_batch`.

    Attributes:
        transactions: Canonical transactions, unique by ``imported_id``.
        skipped: Human-readable reasons for rows that were dropped.
    """

    transactions: list[CanonicalTransaction] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class AccountReconcileResult:
    """Return type of the account reconciler.

    Attributes:
        bindings: One binding per provider account that could be matched
            or created, in provider order.
        created: Number of ledger accounts created in this run.
        warnings: Non-fatal issues, e.g. two provider accounts competing
            for the same ledger account.
        errors: Per-account failures, e.g. a ledger account that could not
            be created.
    """

    bindings: list[AccountBinding] = field(default_factory=list)
    created: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class CategoryReconcileResult:
    """Return type of the category reconciler."""

    groups_created: int = 0
    categories_created: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return self.groups_created + self.categories_created


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass
class LogEvent:
    """One entry of an execution's log stream.

    Attributes:
        timestamp: Epoch milliseconds.
        message: Human-readable text.
        level: Severity tag.
        profile_id: Profile the event belongs to, or empty for
            orchestrator-level events.
    """

    timestamp: int
    message: str
    level: LogLevel = LogLevel.INFO
    profile_id: str = ""

    @classmethod
    def now(cls, message: str, level: LogLevel = LogLevel.INFO, profile_id: str = "") -> LogEvent:
        return cls(
            timestamp=int(time.time() * 1000),
            message=message,
            level=level,
            profile_id=profile_id,
        )

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "type": self.level.value,
            "profile_id": self.profile_id,
        }


@dataclass
class WorkerRequest:
    """Everything a WorkerExecution needs, captured at trigger time.

    Attributes:
        profile: Snapshot of the profile.
        taxonomy: Effective category taxonomy (override or default).
        command: Which operation to run.
        trigger: What started the execution.
        work_dir: Exclusive local working directory for this profile.
        provider_base_url: Base URL of the provider API.
        batch_size: Transactions per import call.
        lookback_days: Transaction fetch window length.
        purge_work_dir: Remove *work_dir* when the session closes.
        log_level: Root logging level to apply inside a worker process.
    """

    profile: SyncProfile
    taxonomy: list[CategoryGroup]
    command: Command
    trigger: Trigger
    work_dir: Path
    provider_base_url: str = "https://openapi.investec.com"
    batch_size: int = 200
    lookback_days: int = 365
    purge_work_dir: bool = False
    log_level: int = logging.WARNING


@dataclass
class ExecutionResult:
    """Terminal result of a WorkerExecution."""

    success: bool
    message: str
    new_transactions: int = 0


@dataclass
class ExecutionRecord:
    """What the orchestrator remembers about a finished execution."""

    profile_id: str
    command: Command
    trigger: Trigger
    started_at: datetime
    finished_at: datetime
    result: ExecutionResult
