"""Matching provider accounts to ledger accounts.

Each provider account gets a preferred name: its human reference name when
it has one that differs from the raw holder name, otherwise
``"{product name} {last 4 digits}"``.  Ledger accounts are matched on that
name, first exactly and then by substring containment (both
case-insensitive), so accounts renamed by hand in the ledger are still
found.  Unmatched provider accounts get a new ledger account.

Substring matching can bind the wrong account when several ledger accounts
share a prefix ("Savings" and "Savings 2").  To keep that contained, a
ledger account is bound at most once per run: the first provider account
wins and later contenders are reported as warnings and skipped.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from ledger_sync.models import (
    AccountBinding,
    AccountReconcileResult,
    LedgerAccount,
    ProviderAccount,
)

logger = logging.getLogger(__name__)


class AccountLedger(Protocol):
    def list_accounts(self) -> list[LedgerAccount]: ...

    def create_account(self, name: str, account_type: str) -> LedgerAccount: ...


def synthesized_name(account: ProviderAccount) -> str:
    """``"{product name} {last 4 digits of the account number}"``."""
    digits = re.sub(r"\D", "", account.account_number)
    return f"{account.product_name} {digits[-4:]}".strip()


def preferred_name(account: ProviderAccount) -> str:
    """The name used to match and, if needed, create the ledger account."""
    reference = account.reference_name.strip()
    if reference and reference.lower() != account.account_name.strip().lower():
        return reference
    return synthesized_name(account)


def infer_account_type(product_name: str) -> str:
    return "credit" if "credit" in product_name.lower() else "checking"


def find_match(name: str, ledger_accounts: list[LedgerAccount]) -> LedgerAccount | None:
    """Find the ledger account for *name*.

    Exact case-insensitive matches win over substring containment.  Within
    each tier the first account in ledger order is returned.
    """
    wanted = name.strip().lower()
    if not wanted:
        return None

    for account in ledger_accounts:
        if account.name.strip().lower() == wanted:
            return account
    for account in ledger_accounts:
        if wanted in account.name.lower():
            return account
    return None


def reconcile_accounts(
    provider_accounts: list[ProviderAccount],
    ledger: AccountLedger,
) -> AccountReconcileResult:
    """Bind every provider account to a ledger account, creating as needed.

    Args:
        provider_accounts: Accounts reported by the provider.
        ledger: Anything that can list and create ledger accounts.

    Returns:
        An :class:`AccountReconcileResult`.  Provider accounts that could
        not be bound appear in ``warnings`` or ``errors`` instead of
        ``bindings``.
    """
    result = AccountReconcileResult()
    ledger_accounts = list(ledger.list_accounts())
    bound: dict[str, ProviderAccount] = {}

    for provider_account in provider_accounts:
        name = preferred_name(provider_account)
        match = find_match(name, ledger_accounts)

        if match is not None:
            owner = bound.get(match.id)
            if owner is not None:
                message = (
                    f"Warning: provider account {name!r} also matches ledger account "
                    f"{match.name!r}, already bound to {preferred_name(owner)!r}. Skipping."
                )
                logger.warning(message)
                result.warnings.append(message)
                continue
            bound[match.id] = provider_account
            result.bindings.append(AccountBinding(provider_account, match, created=False))
            logger.debug("Matched provider account %r to ledger account %r", name, match.name)
            continue

        account_type = infer_account_type(provider_account.product_name)
        try:
            created = ledger.create_account(name, account_type)
        except Exception as exc:
            message = f"Failed to create ledger account {name!r}: {exc}"
            logger.error(message)
            result.errors.append(message)
            continue

        ledger_accounts.append(created)
        bound[created.id] = provider_account
        result.created += 1
        result.bindings.append(AccountBinding(provider_account, created, created=True))
        logger.info("Created %s ledger account %r", account_type, name)

    return result
