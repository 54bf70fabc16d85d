"""Provider transaction to ledger transaction transformation.

Pure functions, no I/O.  The deduplication key produced here becomes the
ledger's ``imported_id``, so it must only depend on fields that do not
change between API calls for the same transaction: the account, the
provider's per-day posting ordinal (or the amount when there is none), the
date and the description.  Running balance and status are not
part of it.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from ledger_sync.errors import MalformedTransaction
from ledger_sync.models import CanonicalTransaction, ProviderTransaction, TransformResult

# Date fields in order of preference.
DATE_FIELDS = ("posting_date", "action_date", "value_date", "transaction_date")

NOTES_SEPARATOR = " | "
DESCRIPTION_KEY_LENGTH = 50
UNKNOWN_PAYEE = "Unknown Payee"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9 ]")


def to_minor_units(amount: Decimal, tx_type: str) -> int:
    """Convert an unsigned provider amount to signed cents.

    Debits become negative and everything else positive.  Fractions of a
    cent round half-up.
    """
    cents = (abs(Decimal(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if tx_type.strip().upper() == "DEBIT":
        return -int(cents)
    return int(cents)


def resolve_date(txn: ProviderTransaction) -> str:
    """Return the first usable date of *txn* as ``YYYY-MM-DD``.

    Raises:
        MalformedTransaction: If none of the date fields hold a date.
    """
    for name in DATE_FIELDS:
        value = (getattr(txn, name) or "").strip()
        if not value:
            continue
        # Drop any time-of-day component.
        candidate = value[:10]
        try:
            return date.fromisoformat(candidate).isoformat()
        except ValueError:
            continue
    raise MalformedTransaction(
        f"Transaction {txn.description!r} on account {txn.account_id} has no usable date"
    )


def build_notes(txn: ProviderTransaction) -> str:
    parts: list[str] = []
    if txn.transaction_type:
        parts.append(f"Type: {txn.transaction_type}")
    if txn.card_number:
        parts.append(f"Ref: {txn.card_number}")
    return NOTES_SEPARATOR.join(parts)


def sanitize_description(description: str) -> str:
    """Keep letters, digits and spaces of *description*, max 50 chars."""
    return _UNSAFE_CHARS.sub("", description or "Unknown")[:DESCRIPTION_KEY_LENGTH]


def dedup_key(account_id: str, posted_order: int | None, amount: int, txn_date: str, description: str) -> str:
    """Build the deterministic import id of a transaction.

    Format: ``{account}:{ordinal}:{date}:{description}``.  The ordinal is the
    provider's posting order when supplied, otherwise the absolute amount
    in minor units.
    """
    ordinal = posted_order if posted_order is not None else abs(amount)
    return f"{account_id}:{ordinal}:{txn_date}:{sanitize_description(description)}"


def transform_transaction(txn: ProviderTransaction, account_id: str) -> CanonicalTransaction:
    """Transform one provider transaction into a :class:`CanonicalTransaction`.

    Args:
        txn: The provider transaction.
        account_id: Provider id of the owning account.

    Returns:
        The canonical transaction.

    Raises:
        MalformedTransaction: If the transaction has no usable date.
    """
    txn_date = resolve_date(txn)
    amount = to_minor_units(txn.amount, txn.type)
    payee = txn.description or UNKNOWN_PAYEE

    return CanonicalTransaction(
        date=txn_date,
        amount=amount,
        payee_name=payee,
        imported_payee=payee,
        notes=build_notes(txn),
        imported_id=dedup_key(account_id, txn.posted_order, amount, txn_date, txn.description),
        cleared=True,
    )


def transform_batch(transactions: list[ProviderTransaction], account_id: str) -> TransformResult:
    """Transform every transaction of one account.

    Malformed transactions are skipped individually.  When two provider
    rows produce the same import id only the first one is kept.
    """
    result = TransformResult()
    seen: set[str] = set()

    for txn in transactions:
        try:
            canonical = transform_transaction(txn, account_id)
        except MalformedTransaction as exc:
            result.skipped.append(str(exc))
            continue
        if canonical.imported_id in seen:
            result.skipped.append(f"Duplicate import id {canonical.imported_id}")
            continue
        seen.add(canonical.imported_id)
        result.transactions.append(canonical)

    return result
