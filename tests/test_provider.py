"""Tests for ledger_sync.provider -- Investec client and payload parsing.

All tests use mocked HTTP responses. No real API calls are made.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from ledger_sync.errors import AuthenticationFailed, NetworkUnreachable, ProviderError
from ledger_sync.provider import InvestecClient, _parse_transaction

BASE = "https://openapi.investec.com"

# ---------------------------------------------------------------------------
# Shared test data
# ---------------------------------------------------------------------------

SAMPLE_ACCOUNTS = {
    "data": {
        "accounts": [
            {
                "accountId": "ACC1",
                "accountNumber": "10012345678",
                "accountName": "Mr S Gordon",
                "referenceName": "Sean's Cheque",
                "productName": "Private Bank Account",
            },
            {"accountNumber": "no id, ignored"},
        ]
    }
}

SAMPLE_TRANSACTION = {
    "accountId": "ACC1",
    "type": "DEBIT",
    "transactionType": "CardPurchases",
    "status": "POSTED",
    "description": "WOOLWORTHS SANDTON",
    "cardNumber": "402167xxxxxx1234",
    "postedOrder": 7,
    "postingDate": "2024-03-01",
    "valueDate": "2024-03-01",
    "actionDate": "2024-03-01",
    "transactionDate": "2024-02-29",
    "amount": 150.1,
    "runningBalance": 1000,
}


def _response(method: str, path: str, status: int = 200, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request(method, f"{BASE}{path}"), **kwargs)


def _token_response(status: int = 200, body=None) -> httpx.Response:
    if body is None:
        body = {"access_token": "tok-1", "expires_in": 1799}
    return _response("POST", "/identity/v2/oauth2/token", status, json=body)


def _client() -> InvestecClient:
    return InvestecClient("client-123", "secret-456", "key-789", base_url=BASE + "/")


# ---------------------------------------------------------------------------
# authenticate
# ---------------------------------------------------------------------------


class TestAuthenticate:
    def test_client_credentials_request(self):
        with patch("ledger_sync.provider.httpx.post", return_value=_token_response()) as mock_post:
            _client().authenticate()

        args, kwargs = mock_post.call_args
        assert args[0] == f"{BASE}/identity/v2/oauth2/token"
        assert kwargs["auth"] == ("client-123", "secret-456")
        assert kwargs["headers"]["x-api-key"] == "key-789"
        assert kwargs["data"] == {"grant_type": "client_credentials"}

    @pytest.mark.parametrize("status", [400, 401, 403])
    def test_rejected_credentials(self, status):
        response = _token_response(status, {"error": "invalid_client"})
        with patch("ledger_sync.provider.httpx.post", return_value=response):
            with pytest.raises(AuthenticationFailed) as exc_info:
                _client().authenticate()
        assert str(status) in str(exc_info.value)

    def test_server_error(self):
        with patch("ledger_sync.provider.httpx.post", return_value=_token_response(502, {})):
            with pytest.raises(ProviderError):
                _client().authenticate()

    def test_missing_token(self):
        with patch("ledger_sync.provider.httpx.post", return_value=_token_response(200, {"x": 1})):
            with pytest.raises(ProviderError):
                _client().authenticate()

    def test_connect_error(self):
        with patch(
            "ledger_sync.provider.httpx.post",
            side_effect=httpx.ConnectError("Connection refused"),
        ):
            with pytest.raises(NetworkUnreachable):
                _client().authenticate()

    def test_timeout(self):
        with patch(
            "ledger_sync.provider.httpx.post",
            side_effect=httpx.TimeoutException("Connection timed out"),
        ):
            with pytest.raises(NetworkUnreachable):
                _client().authenticate()


# ---------------------------------------------------------------------------
# list_accounts / list_transactions
# ---------------------------------------------------------------------------


class TestListAccounts:
    def test_parses_accounts_and_authenticates_lazily(self):
        accounts_response = _response("GET", "/za/pb/v1/accounts", json=SAMPLE_ACCOUNTS)
        with (
            patch("ledger_sync.provider.httpx.post", return_value=_token_response()) as mock_post,
            patch("ledger_sync.provider.httpx.get", return_value=accounts_response) as mock_get,
        ):
            accounts = _client().list_accounts()

        assert mock_post.call_count == 1
        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer tok-1"
        assert len(accounts) == 1
        assert accounts[0].account_id == "ACC1"
        assert accounts[0].reference_name == "Sean's Cheque"
        assert accounts[0].product_name == "Private Bank Account"

    def test_invalid_payload(self):
        response = _response("GET", "/za/pb/v1/accounts", json={"data": {}})
        with (
            patch("ledger_sync.provider.httpx.post", return_value=_token_response()),
            patch("ledger_sync.provider.httpx.get", return_value=response),
        ):
            with pytest.raises(ProviderError) as exc_info:
                _client().list_accounts()
        assert "Invalid account data" in str(exc_info.value)

    def test_expired_token(self):
        response = _response("GET", "/za/pb/v1/accounts", 401, text="expired")
        with (
            patch("ledger_sync.provider.httpx.post", return_value=_token_response()),
            patch("ledger_sync.provider.httpx.get", return_value=response),
        ):
            with pytest.raises(AuthenticationFailed):
                _client().list_accounts()


class TestListTransactions:
    def test_date_range_params(self):
        path = "/za/pb/v1/accounts/ACC1/transactions"
        response = _response("GET", path, json={"data": {"transactions": [SAMPLE_TRANSACTION]}})
        with (
            patch("ledger_sync.provider.httpx.post", return_value=_token_response()),
            patch("ledger_sync.provider.httpx.get", return_value=response) as mock_get,
        ):
            txns = _client().list_transactions("ACC1", date(2023, 3, 11), date(2024, 3, 10))

        args, kwargs = mock_get.call_args
        assert args[0] == f"{BASE}{path}"
        assert kwargs["params"] == {"fromDate": "2023-03-11", "toDate": "2024-03-10"}
        assert len(txns) == 1
        assert txns[0].description == "WOOLWORTHS SANDTON"

    def test_empty_list(self):
        path = "/za/pb/v1/accounts/ACC1/transactions"
        response = _response("GET", path, json={"data": {"transactions": []}})
        with (
            patch("ledger_sync.provider.httpx.post", return_value=_token_response()),
            patch("ledger_sync.provider.httpx.get", return_value=response),
        ):
            assert _client().list_transactions("ACC1", date(2024, 1, 1), date(2024, 1, 2)) == []

    def test_server_error(self):
        path = "/za/pb/v1/accounts/ACC1/transactions"
        response = _response("GET", path, 500, text="boom")
        with (
            patch("ledger_sync.provider.httpx.post", return_value=_token_response()),
            patch("ledger_sync.provider.httpx.get", return_value=response),
        ):
            with pytest.raises(ProviderError) as exc_info:
                _client().list_transactions("ACC1", date(2024, 1, 1), date(2024, 1, 2))
        assert "500" in str(exc_info.value)

    def test_network_drop(self):
        with (
            patch("ledger_sync.provider.httpx.post", return_value=_token_response()),
            patch(
                "ledger_sync.provider.httpx.get",
                side_effect=httpx.ReadTimeout("read timed out"),
            ),
        ):
            with pytest.raises(NetworkUnreachable):
                _client().list_transactions("ACC1", date(2024, 1, 1), date(2024, 1, 2))


class TestParseTransaction:
    def test_amount_is_exact_decimal(self):
        txn = _parse_transaction(SAMPLE_TRANSACTION, "ACC1")
        assert txn.amount == Decimal("150.1")
        assert txn.running_balance == Decimal("1000")
        assert txn.posted_order == 7

    def test_missing_fields(self):
        txn = _parse_transaction({"amount": "not-a-number", "postedOrder": "x"}, "ACC1")
        assert txn.amount == Decimal("0")
        assert txn.posted_order is None
        assert txn.posting_date == ""
        assert txn.account_id == "ACC1"
