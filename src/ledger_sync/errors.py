"""Error taxonomy for sync executions.

Whole-run failures (configuration, connectivity, authentication, missing
remote ledger) propagate up to the executor, which turns them into a failed
result.  Per-account and per-category failures are contained by the
reconcilers and the import loop and never reach the executor as exceptions.
"""


class SyncError(Exception):
    """Base class for all errors raised by ledger-sync."""


class ConfigurationMissing(SyncError):
    """Required profile credentials or target fields are empty."""

    def __init__(self, fields: list[str]) -> None:
        self.fields = fields
        super().__init__(
            f"Configuration missing: {', '.join(fields)}. Please check the profile settings."
        )


class NetworkUnreachable(SyncError):
    """The ledger server or the provider API could not be reached."""


class AuthenticationFailed(SyncError):
    """Provider credentials or the ledger password were rejected."""


class LedgerDecryptionFailed(AuthenticationFailed):
    """The ledger file could not be decrypted with the given passphrase."""


class RemoteLedgerNotFound(SyncError):
    """The requested budget does not exist as a file on the ledger server."""

    def __init__(self, budget_id: str) -> None:
        self.budget_id = budget_id
        super().__init__(
            f"Budget {budget_id!r} was not found on the server. "
            "Open the budget in the Actual web app, make sure it is synced to this "
            "server (Settings > Show advanced settings > Sync ID), and copy its "
            "Sync ID into the profile."
        )


class ProviderError(SyncError):
    """The provider API returned an unexpected response."""


class PartialAccountFailure(SyncError):
    """Creating or importing into a single account failed."""

    def __init__(self, account_name: str, reason: str, imported=None) -> None:
        self.account_name = account_name
        # ImportResult of the batches committed before the failure, if any.
        self.imported = imported
        super().__init__(f"Error processing account {account_name}: {reason}")


class MalformedTransaction(SyncError):
    """A provider transaction has no usable date."""


class LedgerStateError(SyncError):
    """A ledger operation was attempted in the wrong session state."""
