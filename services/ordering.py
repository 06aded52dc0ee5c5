"""Ordering workflow: parse -> whitelist check -> charge -> dispatch.

Dispatch is best effort. Each priced line item gets exactly one order record
whether or not the remote call succeeded, and a failed item never stops the
rest of the batch. The debit for a failed item stays in place unless
``ordering.refund_failed_items`` is enabled.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from boost_shop.logging import log_with_context
from services.catalog import Catalog, Product
from services.errors import FulfillmentUnavailable, NotWhitelisted
from services.fulfillment import FulfillmentClient
from services.ledger import ChargeResult, Ledger, PricedItem, price_items
from services.order_parser import ParsedOrder, parse_order
from services.store import ShopStore
from services.tg_format import format_money, order_receipt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderOutcome:
    priced: PricedItem
    record_id: int
    remote_order_id: Optional[str] = None
    error: Optional[str] = None
    refunded: bool = False

    @property
    def ok(self) -> bool:
        return self.remote_order_id is not None


@dataclass
class OrderResult:
    parsed: ParsedOrder
    charge: ChargeResult
    outcomes: List[OrderOutcome] = field(default_factory=list)

    def receipt_lines(self, currency: str) -> List[str]:
        lines: List[str] = []
        for outcome in self.outcomes:
            item = outcome.priced.item
            cost = f"{format_money(outcome.priced.cost)} {currency}"
            if outcome.ok:
                lines.append(f"{item.display_name} x{item.quantity} | Order ID: {outcome.remote_order_id} | Cost: {cost}")
            else:
                line = f"{item.display_name} x{item.quantity} | ❌ Failed ({outcome.error}) | Cost: {cost}"
                if outcome.refunded:
                    line += " (refunded)"
                lines.append(line)
        return lines

    def receipt(self, currency: str, footer: str = "") -> str:
        return order_receipt(
            link=self.parsed.destination_link,
            lines=self.receipt_lines(currency),
            total=self.charge.total,
            currency=currency,
            footer=footer,
        )


class Dispatcher:
    def __init__(
        self,
        store: ShopStore,
        client: FulfillmentClient,
        ledger: Ledger,
        *,
        refund_failed_items: bool = False,
    ):
        self.store = store
        self.client = client
        self.ledger = ledger
        self.refund_failed_items = refund_failed_items

    async def _place(self, product: Product, link: str, quantity: int) -> str:
        if not product.fulfillable:
            raise FulfillmentUnavailable("service id not set")
        return await asyncio.to_thread(self.client.place_order, product.external_id, link, quantity)

    def _record(self, party_id: int, priced: PricedItem, link: str, remote_id: Optional[str], error: Optional[str]) -> int:
        with self.store.transaction() as con:
            cur = con.execute(
                """
                INSERT INTO orders (party_id, product_key, quantity, cost, link, remote_order_id, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(party_id),
                    priced.product.key,
                    int(priced.item.quantity),
                    str(priced.cost),
                    link,
                    remote_id,
                    error,
                ),
            )
            return int(cur.lastrowid)

    async def dispatch(self, charge: ChargeResult, link: str) -> List[OrderOutcome]:
        outcomes: List[OrderOutcome] = []
        for priced in charge.items:
            remote_id: Optional[str] = None
            error: Optional[str] = None
            try:
                remote_id = await self._place(priced.product, link, priced.item.quantity)
            except FulfillmentUnavailable as exc:
                error = str(exc)
                logger.warning("Order for %s x%s failed: %s", priced.product.key, priced.item.quantity, exc)

            record_id = self._record(charge.party_id, priced, link, remote_id, error)

            refunded = False
            if error and self.refund_failed_items and charge.charged and priced.cost > 0:
                await self.ledger.credit(
                    charge.party_id,
                    priced.cost,
                    actor_id=charge.party_id,
                    reason="order_refund",
                    note=f"order record {record_id}",
                )
                refunded = True

            log_with_context(
                logger,
                logging.INFO,
                "Order line dispatched",
                party_id=charge.party_id,
                product=priced.product.key,
                quantity=priced.item.quantity,
                cost=str(priced.cost),
                remote_order_id=remote_id,
                error=error,
            )
            outcomes.append(
                OrderOutcome(priced=priced, record_id=record_id, remote_order_id=remote_id, error=error, refunded=refunded)
            )
        return outcomes


def _reject_unlisted(parsed: ParsedOrder, products: Dict[str, Product]) -> None:
    blocked: List[str] = []
    for item in parsed.items:
        product = products.get(item.product_key)
        if product is not None and not product.whitelisted and item.product_key not in blocked:
            blocked.append(item.product_key)
    if blocked:
        raise NotWhitelisted(blocked)


async def place_order(
    body: str,
    party_id: int,
    *,
    is_operator: bool,
    catalog: Catalog,
    ledger: Ledger,
    dispatcher: Dispatcher,
) -> OrderResult:
    products = {p.key: p for p in catalog.list_products()}
    parsed = parse_order(body, products.keys())
    if not is_operator:
        _reject_unlisted(parsed, products)
    priced = price_items(parsed.items, products)
    charge = await ledger.charge_request(party_id, priced, is_operator=is_operator)
    outcomes = await dispatcher.dispatch(charge, parsed.destination_link)
    return OrderResult(parsed=parsed, charge=charge, outcomes=outcomes)



async def order_status_lines(client: FulfillmentClient, order_ids: Sequence[str], *, rate: Decimal, currency: str) -> List[str]:
    lines: List[str] = []
    for order_id in order_ids:
        oid = str(order_id).strip()
        if not oid:
            continue
        try:
            status = await asyncio.to_thread(client.get_status, oid)
        except FulfillmentUnavailable as exc:
            logger.warning("Status lookup for %s failed: %s", oid, exc)
            lines.append(f"ID {oid}: Error fetching status")
            continue
        lines.append(f"ID {oid}: {status.status}, {format_money(status.charge * rate)} {currency}")
    return lines
