"""Additive reconciliation of the category taxonomy into the ledger.

Missing groups and missing categories are created; nothing is ever renamed
or removed.  Names compare trimmed and case-insensitive, so a second run
with the same taxonomy writes nothing.
"""

from __future__ import annotations

import logging
from typing import Protocol

from ledger_sync.models import CategoryGroup, CategoryReconcileResult, LedgerCategoryGroup

logger = logging.getLogger(__name__)


class CategoryLedger(Protocol):
    def list_category_groups(self) -> list[LedgerCategoryGroup]: ...

    def create_category_group(self, name: str) -> LedgerCategoryGroup: ...

    def create_category(self, group: LedgerCategoryGroup, name: str) -> None: ...


def _key(name: str) -> str:
    return name.strip().lower()


def reconcile_categories(
    taxonomy: list[CategoryGroup],
    ledger: CategoryLedger,
) -> CategoryReconcileResult:
    """Create every group and category of *taxonomy* missing from *ledger*.

    A group that cannot be created is skipped together with its
    categories; a category that cannot be created is skipped on its own.
    Neither aborts the rest of the taxonomy.
    """
    result = CategoryReconcileResult()
    existing = {_key(g.name): g for g in ledger.list_category_groups()}

    for group in taxonomy:
        if not group.name.strip():
            continue

        ledger_group = existing.get(_key(group.name))
        if ledger_group is None:
            try:
                ledger_group = ledger.create_category_group(group.name.strip())
            except Exception as exc:
                message = f"Failed to create category group {group.name!r}: {exc}"
                logger.error(message)
                result.errors.append(message)
                continue
            existing[_key(group.name)] = ledger_group
            result.groups_created += 1
            logger.info("Created category group %r", group.name)

        present = {_key(c) for c in ledger_group.categories}
        for category in group.categories:
            if not category.strip() or _key(category) in present:
                continue
            try:
                ledger.create_category(ledger_group, category.strip())
            except Exception as exc:
                message = f"Failed to create category {group.name}:{category}: {exc}"
                logger.error(message)
                result.errors.append(message)
                continue
            present.add(_key(category))
            ledger_group.categories.append(category.strip())
            result.categories_created += 1
            logger.info("Created category %r in group %r", category, group.name)

    return result
