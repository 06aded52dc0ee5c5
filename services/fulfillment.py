"""Client for the remote SMM panel (``/api/v2`` style) that executes orders.

Every call is a JSON POST of ``{"key": <api key>, "action": ..., ...}``.
Anything other than a JSON object without an ``error`` field is reported as
``FulfillmentUnavailable``.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests

from services.errors import FulfillmentUnavailable
from services.retry import read_retry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://shweboost.com/api/v2"


@dataclass(frozen=True)
class RemoteStatus:
    order_id: str
    status: str
    charge: Decimal


@dataclass(frozen=True)
class RemoteBalance:
    balance: Decimal
    currency: str


def _decimal(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise FulfillmentUnavailable(f"Malformed '{field}' in response: {value!r}") from None


class FulfillmentClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_seconds = float(timeout_seconds)
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._session.post(
            self.base_url,
            json={"key": self.api_key, **payload},
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        return response.json()

    @read_retry
    def _post_idempotent(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._post(payload)

    def call(self, action: str, *, retry: bool = False, **params: Any) -> Dict[str, Any]:
        payload = {"action": action, **params}
        try:
            data = self._post_idempotent(payload) if retry else self._post(payload)
        except ValueError as exc:
            logger.warning("Fulfillment %s returned non-JSON: %s", action, exc)
            raise FulfillmentUnavailable(f"Fulfillment API returned an invalid response ({action}).") from exc
        except requests.RequestException as exc:
            logger.warning("Fulfillment %s failed: %s", action, exc)
            raise FulfillmentUnavailable(f"Fulfillment API unreachable ({action}).") from exc

        if not isinstance(data, dict):
            raise FulfillmentUnavailable(f"Fulfillment API returned an invalid response ({action}).")
        if data.get("error"):
            logger.warning("Fulfillment %s rejected: %s", action, data["error"])
            raise FulfillmentUnavailable(f"Fulfillment API error: {data['error']}")
        return data

    def place_order(self, external_id: str, link: str, quantity: int) -> str:
        data = self.call("add", service=external_id, link=link, quantity=int(quantity))
        order_id = data.get("order")
        if order_id in (None, ""):
            raise FulfillmentUnavailable("Fulfillment API response has no order id.")
        return str(order_id)

    def get_status(self, order_id: str) -> RemoteStatus:
        data = self.call("status", retry=True, order=str(order_id))
        return RemoteStatus(
            order_id=str(order_id),
            status=str(data.get("status") or "unknown"),
            charge=_decimal(data.get("charge", 0), "charge"),
        )

    def get_account_balance(self) -> RemoteBalance:
        data = self.call("balance", retry=True)
        return RemoteBalance(
            balance=_decimal(data.get("balance", 0), "balance"),
            currency=str(data.get("currency") or "USD"),
        )
