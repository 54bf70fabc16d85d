"""Banking provider client (Investec Programmable Banking API) via httpx.

Three calls are needed by the executor:

- OAuth2 client-credentials token exchange
- list accounts
- list transactions for one account in an inclusive date range

Transport failures are raised as :class:`NetworkUnreachable`, credential
rejections as :class:`AuthenticationFailed` and any other non-2xx response
as :class:`ProviderError`.  This module depends only on ``models``,
``errors`` and httpx.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx

from ledger_sync.errors import AuthenticationFailed, NetworkUnreachable, ProviderError
from ledger_sync.models import ProviderAccount, ProviderTransaction

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openapi.investec.com"
TOKEN_PATH = "/identity/v2/oauth2/token"
ACCOUNTS_PATH = "/za/pb/v1/accounts"


class ProviderClient(Protocol):
    """What the executor needs from a banking provider."""

    def authenticate(self) -> None:
        """Exchange credentials for an access token."""
        ...

    def list_accounts(self) -> list[ProviderAccount]:
        """Return every account visible to the credentials."""
        ...

    def list_transactions(
        self, account_id: str, from_date: date, to_date: date
    ) -> list[ProviderTransaction]:
        """Return the account's transactions between the two dates, inclusive."""
        ...


class InvestecClient:
    """Provider client for the Investec Programmable Banking API.

    The access token is fetched lazily on first use and kept for the
    lifetime of the instance, which is one execution.

    Args:
        client_id: OAuth2 client id.
        secret_id: OAuth2 client secret.
        api_key: API key sent as ``x-api-key`` on the token request.
        base_url: API base URL. Default: the production endpoint.
        timeout: HTTP request timeout in seconds. Default: 30.
    """

    def __init__(
        self,
        client_id: str,
        secret_id: str,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.secret_id = secret_id
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token: str | None = None

    def authenticate(self) -> None:
        """Fetch an access token using the client-credentials grant.

        Raises:
            NetworkUnreachable: The token endpoint could not be reached.
            AuthenticationFailed: The credentials were rejected.
            ProviderError: The response was not a usable token response.
        """
        try:
            response = httpx.post(
                f"{self.base_url}{TOKEN_PATH}",
                auth=(self.client_id, self.secret_id),
                headers={
                    "x-api-key": self.api_key,
                    "Accept": "application/json",
                },
                data={"grant_type": "client_credentials"},
                timeout=self.timeout,
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise NetworkUnreachable(f"Provider API unreachable: {exc}") from exc
        except httpx.HTTPError as exc:
            raise NetworkUnreachable(f"Provider request failed: {exc}") from exc

        if response.status_code in (400, 401, 403):
            raise AuthenticationFailed(
                f"Auth failed ({response.status_code}): {response.text[:200]}"
            )
        if response.is_error:
            raise ProviderError(
                f"Token request failed ({response.status_code}): {response.text[:200]}"
            )

        try:
            token = response.json()["access_token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError("Token response did not contain an access token") from exc

        self._token = token
        logger.debug("Obtained provider access token")

    def list_accounts(self) -> list[ProviderAccount]:
        """Return all accounts for the authenticated client.

        Raises:
            ProviderError: If the payload has no ``data.accounts`` list.
        """
        body = self._get(ACCOUNTS_PATH, context="Get Accounts")
        accounts = (body.get("data") or {}).get("accounts")
        if not isinstance(accounts, list):
            raise ProviderError("Invalid account data received from provider")

        return [
            ProviderAccount(
                account_id=str(a.get("accountId", "")),
                account_number=str(a.get("accountNumber") or ""),
                account_name=str(a.get("accountName") or ""),
                reference_name=str(a.get("referenceName") or ""),
                product_name=str(a.get("productName") or ""),
            )
            for a in accounts
            if a.get("accountId")
        ]

    def list_transactions(
        self, account_id: str, from_date: date, to_date: date
    ) -> list[ProviderTransaction]:
        """Return transactions for *account_id* between the two dates, inclusive."""
        body = self._get(
            f"{ACCOUNTS_PATH}/{account_id}/transactions",
            context=f"Get Transactions ({account_id})",
            params={"fromDate": from_date.isoformat(), "toDate": to_date.isoformat()},
        )
        raw = (body.get("data") or {}).get("transactions") or []
        return [_parse_transaction(t, account_id) for t in raw if isinstance(t, dict)]

    # -- internals -------------------------------------------------------

    def _get(self, path: str, context: str, params: dict | None = None) -> dict:
        if self._token is None:
            self.authenticate()

        try:
            response = httpx.get(
                f"{self.base_url}{path}",
                params=params,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise NetworkUnreachable(f"Provider API unreachable: {exc}") from exc
        except httpx.HTTPError as exc:
            raise NetworkUnreachable(f"{context} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthenticationFailed(
                f"{context} rejected ({response.status_code}): {response.text[:200]}"
            )
        if response.is_error:
            raise ProviderError(f"{context} failed ({response.status_code}): {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(f"{context} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise ProviderError(f"{context} returned an unexpected payload")
        return body


def _parse_transaction(raw: dict, account_id: str) -> ProviderTransaction:
    """Convert one raw transaction dict into a :class:`ProviderTransaction`."""
    posted_order = raw.get("postedOrder")
    try:
        posted_order = int(posted_order) if posted_order is not None else None
    except (TypeError, ValueError):
        posted_order = None

    return ProviderTransaction(
        account_id=account_id,
        type=str(raw.get("type") or ""),
        transaction_type=str(raw.get("transactionType") or ""),
        status=str(raw.get("status") or ""),
        description=str(raw.get("description") or ""),
        card_number=str(raw.get("cardNumber") or ""),
        posted_order=posted_order,
        posting_date=str(raw.get("postingDate") or ""),
        value_date=str(raw.get("valueDate") or ""),
        action_date=str(raw.get("actionDate") or ""),
        transaction_date=str(raw.get("transactionDate") or ""),
        amount=_to_decimal(raw.get("amount")) or Decimal("0"),
        running_balance=_to_decimal(raw.get("runningBalance")),
    )


def _to_decimal(value) -> Decimal | None:
    """Convert a JSON number to Decimal via its string form."""
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
