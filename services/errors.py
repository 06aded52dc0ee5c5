"""User-facing error taxonomy.

Every error a party can trigger is a ``ShopError``; handlers reply with
``user_message()`` in the originating chat and never let these escape.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from services.tg_format import format_money as _money


class ShopError(Exception):
    def user_message(self) -> str:
        return f"❌ {self}"


class ParseFailure(ShopError):
    MISSING_ARGUMENTS = "missing_arguments"
    EMPTY_CATALOG = "empty_catalog"
    NO_ITEMS_PARSED = "no_items_parsed"
    QUANTITY_TOO_LARGE = "quantity_too_large"

    _MESSAGES = {
        MISSING_ARGUMENTS: "Missing arguments.",
        EMPTY_CATALOG: "No services are available yet.",
        NO_ITEMS_PARSED: "No service/quantity pairs found.",
        QUANTITY_TOO_LARGE: "Quantity is too large.",
    }

    def __init__(self, reason: str, usage: Optional[str] = None):
        self.reason = reason
        self.usage = usage
        super().__init__(self._MESSAGES.get(reason, reason))

    def user_message(self) -> str:
        text = f"❌ {self}"
        if self.usage:
            text += f"\nUsage: {self.usage}"
        return text


class InsufficientBalance(ShopError):
    def __init__(self, required: Decimal, available: Decimal, currency: str = "MMK"):
        self.required = required
        self.available = available
        self.currency = currency
        super().__init__(f"Insufficient balance. Required: {_money(required)} {currency}")

    def user_message(self) -> str:
        return (
            f"❌ Insufficient balance. Required: {_money(self.required)} {self.currency}, "
            f"available: {_money(self.available)} {self.currency}"
        )


class UnknownProduct(ShopError):
    def __init__(self, name: str):
        self.name = name
        super().__init__("Unknown service.")


class NotWhitelisted(ShopError):
    def __init__(self, names: Iterable[str]):
        self.names = list(names)
        quoted = ", ".join(f"'{n}'" for n in self.names)
        super().__init__(f"{quoted} is not allowed.")


class FulfillmentUnavailable(ShopError):
    """The remote fulfillment API failed or returned something unusable."""


class PersistenceUnavailable(ShopError):
    def user_message(self) -> str:
        return "❌ Storage is unavailable. Nothing was changed, try again shortly."


class AlreadyDecided(ShopError):
    def __init__(self, review_id: int, status: str):
        self.review_id = review_id
        self.status = status
        super().__init__(f"Request #{review_id} was already {status}.")

    def user_message(self) -> str:
        return f"ℹ️ {self}"


class SessionExpired(ShopError):
    def __init__(self) -> None:
        super().__init__("No active recharge. Send /recharge to start again.")

    def user_message(self) -> str:
        return f"ℹ️ {self}"
