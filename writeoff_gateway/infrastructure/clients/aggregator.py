"""Aggregator API HTTP client for linked accounts and incremental transaction sync"""

from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from writeoff_gateway.config import Settings
from writeoff_gateway.domain.exceptions import AggregatorError
from writeoff_gateway.domain.models import AggregatorAccount, RawTransaction, SyncPage
from writeoff_gateway.infrastructure.clients.retry import post_with_retry
from writeoff_gateway.infrastructure.observability.metrics import aggregator_latency_histogram


def parse_raw_transaction(txn: Dict[str, Any]) -> RawTransaction:
    """Map one aggregator transaction payload to a RawTransaction"""
    finance_category = txn.get("personal_finance_category") or {}
    legacy_categories = txn.get("category") or []
    return RawTransaction(
        transaction_id=txn["transaction_id"],
        account_id=txn["account_id"],
        date=date.fromisoformat(txn["date"]),
        amount=float(txn["amount"]),
        name=txn.get("name"),
        merchant_name=txn.get("merchant_name"),
        detailed_category=finance_category.get("detailed"),
        coarse_category=(legacy_categories[0] if legacy_categories else None) or finance_category.get("primary"),
    )


def _removed_id(item: Any) -> str:
    return item if isinstance(item, str) else item["transaction_id"]


class AggregatorClient:
    """Client for the external account-aggregation API"""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        secret: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.secret = secret
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "AggregatorClient":
        return cls(
            base_url=settings.aggregator_base_url,
            client_id=settings.aggregator_client_id,
            secret=settings.aggregator_secret,
            timeout=settings.http_timeout_seconds,
            max_retries=settings.http_max_retries,
            backoff_base=settings.http_backoff_base,
            transport=transport,
        )

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = {"client_id": self.client_id, "secret": self.secret, **payload}
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await post_with_retry(
                    client,
                    path,
                    body,
                    max_retries=self.max_retries,
                    backoff_base=self.backoff_base,
                    latency=aggregator_latency_histogram,
                )
                return response.json()

            except httpx.TimeoutException as e:
                raise AggregatorError(f"Aggregator timeout after {self.timeout}s on {path}") from e
            except httpx.HTTPStatusError as e:
                raise AggregatorError(f"Aggregator error on {path}: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise AggregatorError(f"Aggregator unreachable on {path}: {e}") from e
            except ValueError as e:
                raise AggregatorError(f"Aggregator returned non-JSON body on {path}") from e

    async def get_accounts(self, access_token: str) -> List[AggregatorAccount]:
        """
        Fetch the accounts linked under an access token.

        Raises:
            AggregatorError: On timeout, HTTP errors, or invalid response
        """
        data = await self._post("/accounts/get", {"access_token": access_token})
        try:
            return [
                AggregatorAccount(
                    account_id=acct["account_id"],
                    name=acct.get("name"),
                    mask=acct.get("mask"),
                    type=acct.get("type"),
                    subtype=acct.get("subtype"),
                    institution_id=(data.get("item") or {}).get("institution_id"),
                )
                for acct in data.get("accounts", [])
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise AggregatorError(f"Invalid account data from aggregator: {e}") from e

    async def sync_page(self, access_token: str, cursor: Optional[str]) -> SyncPage:
        """
        Fetch one page of changes after `cursor` (None starts from the beginning).

        Re-requesting the same cursor returns the same page, so transient failures
        are retried.

        Raises:
            AggregatorError: On timeout, HTTP errors, or invalid response
        """
        payload: Dict[str, Any] = {"access_token": access_token}
        if cursor:
            payload["cursor"] = cursor

        data = await self._post("/transactions/sync", payload)
        try:
            return SyncPage(
                added=[parse_raw_transaction(txn) for txn in data.get("added", [])],
                modified=[parse_raw_transaction(txn) for txn in data.get("modified", [])],
                removed=[_removed_id(item) for item in data.get("removed", [])],
                next_cursor=data["next_cursor"],
                has_more=bool(data.get("has_more", False)),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise AggregatorError(f"Invalid transaction data from aggregator: {e}") from e
