"""The per-profile sync procedure.

A :class:`SyncExecutor` runs exactly one command for one profile snapshot
and reports through an ``emit`` callback that receives
:class:`~ledger_sync.models.LogEvent` objects.  It never raises: every
outcome ends as an :class:`~ledger_sync.models.ExecutionResult`, and the
ledger session is closed on every exit path.

Sync steps, in order::

    IDLE -> CONNECTIVITY_CHECK -> SESSION_OPEN -> CATEGORY_SYNC
         -> ACCOUNT_DISCOVERY -> PER_ACCOUNT_IMPORT -> PUSH -> DONE

Any step may end in ``FAILED``.  Connectivity, authentication and
missing-budget errors abort the run; failures inside one account or one
category are logged and the run carries on.
"""

from __future__ import annotations

import enum
import logging
from datetime import date, timedelta
from typing import Callable

from ledger_sync.accounts import preferred_name, reconcile_accounts
from ledger_sync.categories import reconcile_categories
from ledger_sync.errors import ConfigurationMissing, PartialAccountFailure, SyncError
from ledger_sync.ledger import ActualEngine, EngineFactory, LedgerSession, check_server_reachable
from ledger_sync.models import (
    LEDGER_FIELDS,
    PROVIDER_FIELDS,
    AccountBinding,
    Command,
    ExecutionResult,
    ImportResult,
    LogEvent,
    LogLevel,
    WorkerRequest,
)
from ledger_sync.provider import InvestecClient, ProviderClient
from ledger_sync.transform import transform_batch

logger = logging.getLogger(__name__)

Emit = Callable[[LogEvent], None]

MAX_BATCH_SIZE = 500


class ExecutorState(str, enum.Enum):
    IDLE = "idle"
    CONNECTIVITY_CHECK = "connectivity_check"
    SESSION_OPEN = "session_open"
    CATEGORY_SYNC = "category_sync"
    ACCOUNT_DISCOVERY = "account_discovery"
    PER_ACCOUNT_IMPORT = "per_account_import"
    PUSH = "push"
    DONE = "done"
    FAILED = "failed"


class SyncExecutor:
    """Runs one command for one profile snapshot.

    Args:
        request: The worker request (profile snapshot, taxonomy, paths).
        emit: Receives every log event, in order.
        provider: Banking provider client.
        engine_factory: Builds the ledger engine for the session.
        check_server: Reachability check for the ledger server.
        today: Returns the current date; the fetch window ends here.
    """

    def __init__(
        self,
        request: WorkerRequest,
        emit: Emit,
        provider: ProviderClient,
        engine_factory: EngineFactory = ActualEngine,
        check_server: Callable[[str], None] = check_server_reachable,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.request = request
        self.profile = request.profile
        self.emit = emit
        self.provider = provider
        self.engine_factory = engine_factory
        self.check_server = check_server
        self.today = today
        self.state = ExecutorState.IDLE
        self.session: LedgerSession | None = None

    # -- public commands -------------------------------------------------

    def run(self) -> ExecutionResult:
        """Run a full sync."""
        return self._guarded(self._sync, "Sync")

    def test_provider(self) -> ExecutionResult:
        """Authenticate with the provider and list its accounts."""
        return self._guarded(self._test_provider, "Provider test")

    def test_ledger(self) -> ExecutionResult:
        """Check the ledger server and open the budget, then close it."""
        return self._guarded(self._test_ledger, "Ledger test")

    # -- logging ---------------------------------------------------------

    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        if level == LogLevel.ERROR:
            logger.error("[%s] %s", self.profile.id, message)
        else:
            logger.info("[%s] %s", self.profile.id, message)
        self.emit(LogEvent.now(message, level, self.profile.id))

    # -- internals -------------------------------------------------------

    def _guarded(self, body: Callable[[], ExecutionResult], label: str) -> ExecutionResult:
        try:
            return body()
        except SyncError as exc:
            self.state = ExecutorState.FAILED
            self.log(f"{label} failed: {exc}", LogLevel.ERROR)
            return ExecutionResult(success=False, message=str(exc))
        except Exception as exc:
            self.state = ExecutorState.FAILED
            logger.exception("Unexpected error in profile %s", self.profile.id)
            self.log(f"{label} failed: unexpected error: {exc}", LogLevel.ERROR)
            return ExecutionResult(success=False, message=f"Unexpected error: {exc}")
        finally:
            if self.session is not None:
                self.session.close()

    def _enter(self, state: ExecutorState) -> None:
        logger.debug("[%s] %s -> %s", self.profile.id, self.state.value, state.value)
        self.state = state

    def _require(self, fields: tuple[str, ...]) -> None:
        missing = self.profile.missing_fields(fields)
        if missing:
            raise ConfigurationMissing(missing)

    def _open_session(self) -> LedgerSession:
        self._enter(ExecutorState.CONNECTIVITY_CHECK)
        self.log(f"Checking Actual server at {self.profile.server_url}...")
        self.check_server(self.profile.server_url)

        self._enter(ExecutorState.SESSION_OPEN)
        self.session = LedgerSession(
            server_url=self.profile.server_url,
            work_dir=self.request.work_dir,
            engine_factory=self.engine_factory,
            purge_on_close=self.request.purge_work_dir,
            notify=self.log,
        )
        self.log("Initializing ledger engine...")
        self.session.initialize()
        self.log(f"Downloading budget {self.profile.budget_id}...")
        self.session.attach(self.profile.budget_id, self.profile.password or None)
        self.log("Budget downloaded and connected.", LogLevel.SUCCESS)
        return self.session

    def _sync(self) -> ExecutionResult:
        self._require(PROVIDER_FIELDS + LEDGER_FIELDS)
        self.log(f"Starting sync for profile {self.profile.name!r} ({self.request.trigger.value})...")

        session = self._open_session()

        self._enter(ExecutorState.CATEGORY_SYNC)
        categories = reconcile_categories(self.request.taxonomy, session)
        for error in categories.errors:
            self.log(error, LogLevel.ERROR)
        if categories.writes:
            self.log(
                f"Created {categories.groups_created} category group(s) and "
                f"{categories.categories_created} category(ies)."
            )

        self._enter(ExecutorState.ACCOUNT_DISCOVERY)
        self.log("Authenticating with Investec...")
        self.provider.authenticate()
        provider_accounts = self.provider.list_accounts()
        self.log(f"Found {len(provider_accounts)} Investec accounts.")

        accounts = reconcile_accounts(provider_accounts, session)
        for warning in accounts.warnings:
            self.log(warning, LogLevel.ERROR)
        for error in accounts.errors:
            self.log(error, LogLevel.ERROR)
        for binding in accounts.bindings:
            if binding.created:
                self.log(f"Created ledger account {binding.ledger_account.name!r}.")

        self._enter(ExecutorState.PER_ACCOUNT_IMPORT)
        to_date = self.today()
        from_date = to_date - timedelta(days=self.request.lookback_days)
        totals = ImportResult()
        processed = 0

        for binding in accounts.bindings:
            try:
                imported = self._import_account(binding, from_date, to_date)
            except PartialAccountFailure as failure:
                logger.debug("Account import failed", exc_info=True)
                self.log(str(failure), LogLevel.ERROR)
                if failure.imported is not None:
                    totals = totals + failure.imported
                    processed += 1
                continue
            except Exception as exc:
                failure = PartialAccountFailure(binding.ledger_account.name, str(exc))
                logger.debug("Account import failed", exc_info=True)
                self.log(str(failure), LogLevel.ERROR)
                continue
            if imported is None:
                continue
            totals = totals + imported
            processed += 1

        structural_writes = categories.writes + accounts.created
        if processed == 0 and structural_writes == 0:
            self._enter(ExecutorState.DONE)
            self.log("Sync complete. No accounts processed.")
            return ExecutionResult(success=True, message="No accounts processed.")

        self._enter(ExecutorState.PUSH)
        self.log("Pushing changes to Actual server...")
        session.sync()

        self._enter(ExecutorState.DONE)
        message = f"Sync complete. {totals.added} new transactions imported."
        self.log(message, LogLevel.SUCCESS)
        return ExecutionResult(success=True, message=message, new_transactions=totals.added)

    def _import_account(
        self, binding: AccountBinding, from_date: date, to_date: date
    ) -> ImportResult | None:
        """Fetch, transform and import one account.

        Returns ``None`` when the account had nothing to import.
        """
        provider_account = binding.provider_account
        ledger_account = binding.ledger_account

        raw = self.provider.list_transactions(provider_account.account_id, from_date, to_date)
        if not raw:
            return None

        transformed = transform_batch(raw, provider_account.account_id)
        for reason in transformed.skipped:
            logger.warning("[%s] Skipped transaction: %s", self.profile.id, reason)
        if transformed.skipped:
            self.log(
                f"Skipped {len(transformed.skipped)} transaction(s) for {ledger_account.name!r}."
            )
        if not transformed.transactions:
            return None

        batch_size = max(1, min(self.request.batch_size, MAX_BATCH_SIZE))
        result = ImportResult()
        txns = transformed.transactions
        for start in range(0, len(txns), batch_size):
            batch = txns[start : start + batch_size]
            try:
                result = result + self.session.import_transactions(ledger_account.id, batch)
            except Exception as exc:
                if not (result.added or result.updated):
                    raise
                self.log(
                    f"Imported {result.added + result.updated} txs into "
                    f"{ledger_account.name!r} before a batch failed"
                )
                raise PartialAccountFailure(ledger_account.name, str(exc), result) from exc

        if result.added or result.updated:
            self.log(
                f"Imported {result.added + result.updated} txs into {ledger_account.name!r}"
            )
        return result

    def _test_provider(self) -> ExecutionResult:
        self._require(PROVIDER_FIELDS)
        self.log("Authenticating with Investec...")
        self.provider.authenticate()
        provider_accounts = self.provider.list_accounts()
        for account in provider_accounts:
            self.log(f"  {preferred_name(account)} ({account.account_id})")
        message = f"Provider connection OK: {len(provider_accounts)} account(s)."
        self.log(message, LogLevel.SUCCESS)
        return ExecutionResult(success=True, message=message)

    def _test_ledger(self) -> ExecutionResult:
        self._require(LEDGER_FIELDS)
        session = self._open_session()
        ledger_accounts = session.list_accounts()
        message = f"Ledger connection OK: {len(ledger_accounts)} account(s) in budget."
        self.log(message, LogLevel.SUCCESS)
        return ExecutionResult(success=True, message=message)


def build_provider(request: WorkerRequest) -> ProviderClient:
    profile = request.profile
    return InvestecClient(
        client_id=profile.client_id,
        secret_id=profile.secret_id,
        api_key=profile.api_key,
        base_url=request.provider_base_url,
    )


def run_request(
    request: WorkerRequest,
    emit: Emit,
    provider_factory: Callable[[WorkerRequest], ProviderClient] = build_provider,
    engine_factory: EngineFactory = ActualEngine,
) -> ExecutionResult:
    """Execute *request* and return its terminal result.

    This is the entry point a worker runs, in a thread or in a separate
    process.  It must stay a module-level function so it can be pickled.
    """
    executor = SyncExecutor(
        request,
        emit,
        provider=provider_factory(request),
        engine_factory=engine_factory,
    )
    if request.command == Command.TEST_PROVIDER:
        return executor.test_provider()
    if request.command == Command.TEST_LEDGER:
        return executor.test_ledger()
    return executor.run()
