"""Ledger session lifecycle and the Actual Budget engine.

Defines the :class:`LedgerEngine` protocol (the boundary to the remote
ledger library), :class:`ActualEngine` (its implementation on top of
``actualpy``), and :class:`LedgerSession`, which owns the lifecycle of one
engine inside one execution::

    UNINITIALIZED -> INITIALIZED -> ATTACHED -> CLOSED

with any state able to fall through to ``CLOSED``.  ``close()`` is safe to
call from every state and from ``finally`` blocks; a session that is never
closed leaves the engine's local database open and blocks the next run for
the same profile.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import shutil
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Protocol

import httpx
from actual import Actual
from actual.database import Accounts
from actual.exceptions import (
    ActualDecryptionError,
    ActualError,
    AuthorizationError,
    UnknownFileId,
)
from actual.queries import (
    create_account,
    create_category,
    create_category_group,
    create_transaction,
    get_accounts,
    get_category_groups,
    get_transactions,
)

from ledger_sync.errors import (
    AuthenticationFailed,
    LedgerDecryptionFailed,
    LedgerStateError,
    NetworkUnreachable,
    RemoteLedgerNotFound,
    SyncError,
)
from ledger_sync.models import (
    CanonicalTransaction,
    ImportResult,
    LedgerAccount,
    LedgerCategoryGroup,
    LogLevel,
)

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    ATTACHED = "attached"
    CLOSED = "closed"


class LedgerEngine(Protocol):
    """What a ledger library must provide to be driven by a session."""

    def attach(self, budget_id: str, password: str | None, encryption_password: str | None) -> None:
        """Download and open *budget_id* from the server.

        Raises:
            RemoteLedgerNotFound: The budget is not on the server.
            LedgerDecryptionFailed: The encryption passphrase is wrong or
                the file is not encrypted the way the passphrase implies.
            AuthenticationFailed: The server password was rejected.
            NetworkUnreachable: The server could not be reached.
        """
        ...

    def list_accounts(self) -> list[LedgerAccount]: ...

    def create_account(self, name: str, account_type: str) -> LedgerAccount: ...

    def list_category_groups(self) -> list[LedgerCategoryGroup]: ...

    def create_category_group(self, name: str) -> LedgerCategoryGroup: ...

    def create_category(self, group: LedgerCategoryGroup, name: str) -> None: ...

    def import_transactions(
        self, account_id: str, transactions: list[CanonicalTransaction]
    ) -> ImportResult: ...

    def push(self) -> None:
        """Send staged local changes to the server."""
        ...

    def shutdown(self) -> None:
        """Release the local database and any lock it holds."""
        ...


EngineFactory = Callable[[str, Path], LedgerEngine]


# ---------------------------------------------------------------------------
# Reachability check
# ---------------------------------------------------------------------------


def check_server_reachable(server_url: str, timeout: float = 10.0) -> None:
    """Check that the ledger server answers HTTP at all.

    Any HTTP response, including an error status, counts as reachable;
    only transport failures do not.

    Raises:
        NetworkUnreachable: The server could not be contacted.
    """
    url = f"{server_url.rstrip('/')}/info"
    try:
        response = httpx.get(url, timeout=timeout)
    except httpx.InvalidURL as exc:
        raise NetworkUnreachable(f"Invalid server address {server_url!r}: {exc}") from exc
    except httpx.HTTPError as exc:
        raise NetworkUnreachable(f"Actual server unreachable at {server_url}: {exc}") from exc
    logger.debug("Reachability check of %s answered HTTP %d", url, response.status_code)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class LedgerSession:
    """Lifecycle manager for one ledger engine inside one execution.

    Args:
        server_url: Ledger server base URL.
        work_dir: The execution's exclusive local cache directory.  It is
            deleted and recreated by :meth:`initialize`.
        engine_factory: Builds an engine for ``(server_url, work_dir)``.
        purge_on_close: Remove *work_dir* when the session closes.
        notify: Optional callback receiving user-facing progress messages.
    """

    def __init__(
        self,
        server_url: str,
        work_dir: Path,
        engine_factory: EngineFactory,
        purge_on_close: bool = False,
        notify: Callable[[str, LogLevel], None] | None = None,
    ) -> None:
        self.server_url = server_url
        self.work_dir = Path(work_dir)
        self.engine_factory = engine_factory
        self.purge_on_close = purge_on_close
        self.notify = notify
        self.state = SessionState.UNINITIALIZED
        self.budget_id: str | None = None
        self._engine: LedgerEngine | None = None

    def __enter__(self) -> LedgerSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- transitions -----------------------------------------------------

    def initialize(self) -> None:
        """Reset the work directory and create the engine."""
        self._require(SessionState.UNINITIALIZED)
        if self.work_dir.exists():
            shutil.rmtree(self.work_dir)
        self.work_dir.mkdir(parents=True)
        self._engine = self.engine_factory(self.server_url, self.work_dir)
        self.state = SessionState.INITIALIZED
        logger.debug("Ledger session initialized in %s", self.work_dir)

    def attach(self, budget_id: str, password: str | None = None) -> None:
        """Download and open *budget_id*.

        The password is first offered both as server password and as
        encryption passphrase.  If the file then fails to decrypt, the
        attach is retried exactly once without the passphrase.

        Raises:
            RemoteLedgerNotFound: Never retried.
            AuthenticationFailed: Including a decryption failure that
                survived the retry.
            NetworkUnreachable: The server went away mid-attach.
        """
        self._require(SessionState.INITIALIZED)
        password = password or None

        try:
            self._engine.attach(budget_id, password, password)
        except LedgerDecryptionFailed as exc:
            if password is None:
                raise
            logger.info("Decryption failed for %s, retrying without passphrase: %s", budget_id, exc)
            self._notify(
                "Budget could not be decrypted with the password; retrying without it...",
                LogLevel.INFO,
            )
            self._engine.attach(budget_id, password, None)

        self.budget_id = budget_id
        self.state = SessionState.ATTACHED

    def sync(self) -> None:
        """Push staged writes to the server."""
        self._require(SessionState.ATTACHED)
        self._engine.push()

    def close(self) -> None:
        """Shut the engine down and move to ``CLOSED``.  Idempotent."""
        if self.state == SessionState.CLOSED:
            return
        try:
            if self._engine is not None:
                self._engine.shutdown()
        except Exception:
            logger.exception("Ledger engine shutdown failed")
        finally:
            self._engine = None
            self.state = SessionState.CLOSED
            if self.purge_on_close and self.work_dir.exists():
                shutil.rmtree(self.work_dir, ignore_errors=True)
            logger.debug("Ledger session closed")

    # -- operations (ATTACHED only) -------------------------------------

    def list_accounts(self) -> list[LedgerAccount]:
        return self._attached().list_accounts()

    def create_account(self, name: str, account_type: str) -> LedgerAccount:
        return self._attached().create_account(name, account_type)

    def list_category_groups(self) -> list[LedgerCategoryGroup]:
        return self._attached().list_category_groups()

    def create_category_group(self, name: str) -> LedgerCategoryGroup:
        return self._attached().create_category_group(name)

    def create_category(self, group: LedgerCategoryGroup, name: str) -> None:
        self._attached().create_category(group, name)

    def import_transactions(
        self, account_id: str, transactions: list[CanonicalTransaction]
    ) -> ImportResult:
        return self._attached().import_transactions(account_id, transactions)

    # -- internals -------------------------------------------------------

    def _require(self, expected: SessionState) -> None:
        if self.state != expected:
            raise LedgerStateError(
                f"Ledger session is {self.state.value}, expected {expected.value}"
            )

    def _attached(self) -> LedgerEngine:
        self._require(SessionState.ATTACHED)
        return self._engine

    def _notify(self, message: str, level: LogLevel) -> None:
        if self.notify is not None:
            self.notify(message, level)


# ---------------------------------------------------------------------------
# Actual Budget engine
# ---------------------------------------------------------------------------


def _transport_error(server_url: str, exc: httpx.HTTPError) -> SyncError:
    """Translate an httpx failure raised inside actualpy.

    Transport errors and 5xx responses mean the server is not usable right
    now; any other status is reported as a plain sync error.
    """
    if isinstance(exc, httpx.TransportError):
        return NetworkUnreachable(f"Actual server unreachable at {server_url}: {exc}")
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500:
        return NetworkUnreachable(
            f"Actual server at {server_url} failed ({exc.response.status_code}): {exc}"
        )
    return SyncError(f"Actual server request failed: {exc}")


class ActualEngine:
    """:class:`LedgerEngine` backed by an Actual Budget server via actualpy.

    Args:
        server_url: Actual server base URL.
        data_dir: Directory the budget file is downloaded into.
    """

    def __init__(self, server_url: str, data_dir: Path) -> None:
        self.server_url = server_url
        self.data_dir = Path(data_dir)
        self._stack = contextlib.ExitStack()
        self._actual: Actual | None = None

    def attach(self, budget_id: str, password: str | None, encryption_password: str | None) -> None:
        self.shutdown()
        try:
            self._actual = self._stack.enter_context(
                Actual(
                    base_url=self.server_url,
                    password=password,
                    file=budget_id,
                    encryption_password=encryption_password,
                    data_dir=self.data_dir,
                )
            )
        except UnknownFileId as exc:
            raise RemoteLedgerNotFound(budget_id) from exc
        except ActualDecryptionError as exc:
            raise LedgerDecryptionFailed(f"Could not decrypt budget {budget_id!r}: {exc}") from exc
        except AuthorizationError as exc:
            raise AuthenticationFailed(f"Actual server rejected the password: {exc}") from exc
        except httpx.HTTPError as exc:
            raise _transport_error(self.server_url, exc) from exc
        except ActualError as exc:
            raise SyncError(f"Could not open budget {budget_id!r}: {exc}") from exc

    @property
    def _session(self):
        if self._actual is None:
            raise LedgerStateError("No budget attached")
        return self._actual.session

    def list_accounts(self) -> list[LedgerAccount]:
        return [
            LedgerAccount(
                id=a.id,
                name=a.name or "",
                type=a.type or "",
                off_budget=bool(a.offbudget),
            )
            for a in get_accounts(self._session)
        ]

    def create_account(self, name: str, account_type: str) -> LedgerAccount:
        account = create_account(self._session, name, off_budget=False)
        account.type = account_type
        return LedgerAccount(id=account.id, name=account.name, type=account_type, off_budget=False)

    def list_category_groups(self) -> list[LedgerCategoryGroup]:
        return [
            LedgerCategoryGroup(
                id=g.id,
                name=g.name or "",
                categories=[c.name for c in g.categories if not c.tombstone],
            )
            for g in get_category_groups(self._session)
        ]

    def create_category_group(self, name: str) -> LedgerCategoryGroup:
        group = create_category_group(self._session, name)
        return LedgerCategoryGroup(id=group.id, name=group.name, categories=[])

    def create_category(self, group: LedgerCategoryGroup, name: str) -> None:
        create_category(self._session, name, group.name)

    def import_transactions(
        self, account_id: str, transactions: list[CanonicalTransaction]
    ) -> ImportResult:
        """Create transactions whose ``imported_id`` is new to the account.

        Existing transactions with the same import id are updated when the
        amount changed and skipped otherwise.
        """
        session = self._session
        account = session.get(Accounts, account_id)
        if account is None:
            raise SyncError(f"Ledger account {account_id} does not exist")

        existing = {
            t.financial_id: t
            for t in get_transactions(session, account=account)
            if t.financial_id
        }

        result = ImportResult()
        for txn in transactions:
            amount = Decimal(txn.amount) / 100
            match = existing.get(txn.imported_id)
            if match is not None:
                if match.get_amount() != amount:
                    match.set_amount(amount)
                    result.updated += 1
                else:
                    result.skipped += 1
                continue

            created = create_transaction(
                session,
                date=date.fromisoformat(txn.date),
                account=account,
                payee=txn.payee_name,
                notes=txn.notes,
                amount=amount,
                imported_id=txn.imported_id,
                cleared=txn.cleared,
                imported_payee=txn.imported_payee,
            )
            existing[txn.imported_id] = created
            result.added += 1

        return result

    def push(self) -> None:
        if self._actual is None:
            raise LedgerStateError("No budget attached")
        try:
            self._actual.commit()
        except httpx.HTTPError as exc:
            raise _transport_error(self.server_url, exc) from exc

    def shutdown(self) -> None:
        self._actual = None
        self._stack.close()
        self._stack = contextlib.ExitStack()
