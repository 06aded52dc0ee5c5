"""Local balance ledger.

Balances are ``Decimal`` and stored as text. ``charge_request`` is the only
path that debits for orders: it prices the whole request, checks the balance
and deducts once, serialized per party so two interleaved orders from the
same party can never both pass the check against the same balance.
"""
import asyncio
import logging
import weakref
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from boost_shop.logging import log_with_context
from services import audit_log
from services.catalog import Product
from services.errors import InsufficientBalance, UnknownProduct
from services.order_parser import LineItem
from services.store import ShopStore

logger = logging.getLogger(__name__)

ZERO = Decimal(0)
UNITS_PER_PRICE = Decimal(1000)


def quote(price_per_1000: Optional[Decimal], quantity: int) -> Decimal:
    if not price_per_1000:
        return ZERO
    return Decimal(price_per_1000) * Decimal(int(quantity)) / UNITS_PER_PRICE


@dataclass(frozen=True)
class PricedItem:
    product: Product
    item: LineItem
    cost: Decimal


@dataclass(frozen=True)
class ChargeResult:
    party_id: int
    items: List[PricedItem]
    total: Decimal
    charged: bool
    balance_after: Optional[Decimal] = None


@dataclass(frozen=True)
class PartyAccount:
    user_id: int
    balance: Decimal
    is_whitelisted: bool
    username: Optional[str] = None


def price_items(items: Sequence[LineItem], products: Dict[str, Product]) -> List[PricedItem]:
    priced: List[PricedItem] = []
    for item in items:
        product = products.get(item.product_key)
        if product is None:
            raise UnknownProduct(item.display_name)
        priced.append(PricedItem(product=product, item=item, cost=quote(product.price_per_1000, item.quantity)))
    return priced


def _row_to_account(row) -> PartyAccount:
    return PartyAccount(
        user_id=int(row["user_id"]),
        balance=Decimal(str(row["balance"] or "0")),
        is_whitelisted=bool(row["is_whitelisted"]),
        username=row["username"],
    )


class Ledger:
    def __init__(self, store: ShopStore, *, currency: str = "MMK"):
        self.store = store
        self.currency = currency
        # An entry disappears once no coroutine references its lock.
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, party_id: int) -> asyncio.Lock:
        key = int(party_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def ensure_party(
        self,
        party_id: int,
        *,
        whitelisted: Optional[bool] = None,
        username: Optional[str] = None,
    ) -> tuple:
        """Create the account lazily. Returns ``(account, created)``."""
        with self.store.transaction() as con:
            created = self._ensure_row(con, party_id)
            if whitelisted is not None:
                con.execute(
                    "UPDATE parties SET is_whitelisted = ? WHERE user_id = ?",
                    (1 if whitelisted else 0, int(party_id)),
                )
            if username:
                con.execute(
                    "UPDATE parties SET username = ? WHERE user_id = ?", (username, int(party_id))
                )
            row = con.execute("SELECT * FROM parties WHERE user_id = ?", (int(party_id),)).fetchone()
        return _row_to_account(row), created

    @staticmethod
    def _ensure_row(con, party_id: int) -> bool:
        cur = con.execute(
            "INSERT OR IGNORE INTO parties (user_id, balance, is_whitelisted) VALUES (?, '0', 0)",
            (int(party_id),),
        )
        return cur.rowcount > 0

    def account(self, party_id: int) -> Optional[PartyAccount]:
        with self.store.read() as con:
            row = con.execute("SELECT * FROM parties WHERE user_id = ?", (int(party_id),)).fetchone()
        return _row_to_account(row) if row else None

    def balance(self, party_id: int) -> Decimal:
        account = self.account(party_id)
        return account.balance if account else ZERO

    def accounts(self) -> List[PartyAccount]:
        with self.store.read() as con:
            rows = con.execute("SELECT * FROM parties ORDER BY user_id ASC").fetchall()
        return [_row_to_account(row) for row in rows]

    async def charge_request(
        self,
        party_id: int,
        priced: Sequence[PricedItem],
        *,
        is_operator: bool,
    ) -> ChargeResult:
        total = sum((p.cost for p in priced), ZERO)
        if is_operator:
            return ChargeResult(party_id=party_id, items=list(priced), total=total, charged=False)

        async with self.lock_for(party_id):
            # The account outlives a rejected order, so create it in its own commit.
            with self.store.transaction() as con:
                self._ensure_row(con, party_id)
            with self.store.transaction() as con:
                row = con.execute(
                    "SELECT balance FROM parties WHERE user_id = ?", (int(party_id),)
                ).fetchone()
                available = Decimal(str(row["balance"]))
                if available < total:
                    log_with_context(
                        logger,
                        logging.INFO,
                        "Order rejected: insufficient balance",
                        party_id=party_id,
                        required=str(total),
                        available=str(available),
                    )
                    raise InsufficientBalance(total, available, self.currency)
                remaining = available - total
                con.execute(
                    "UPDATE parties SET balance = ? WHERE user_id = ?",
                    (str(remaining), int(party_id)),
                )
                audit_log.record_event(
                    con,
                    actor_id=party_id,
                    action_type="order_charge",
                    entity_type="party",
                    entity_id=party_id,
                    old_value=str(available),
                    new_value=str(remaining),
                    note=", ".join(f"{p.item.product_key}x{p.item.quantity}" for p in priced),
                )

        log_with_context(
            logger, logging.INFO, "Order charged", party_id=party_id, total=str(total), balance=str(remaining)
        )
        return ChargeResult(
            party_id=party_id, items=list(priced), total=total, charged=True, balance_after=remaining
        )

    async def credit(
        self,
        party_id: int,
        amount: Decimal,
        *,
        actor_id: int,
        reason: str,
        note: Optional[str] = None,
    ) -> Decimal:
        """Add ``amount`` (negative for a manual correction) and return the new balance."""
        async with self.lock_for(party_id):
            with self.store.transaction() as con:
                return self.credit_in(con, party_id, Decimal(amount), actor_id=actor_id, reason=reason, note=note)

    def credit_in(
        self,
        con,
        party_id: int,
        amount: Decimal,
        *,
        actor_id: int,
        reason: str,
        note: Optional[str] = None,
    ) -> Decimal:
        """Credit inside an already-open transaction (used by recharge decisions)."""
        self._ensure_row(con, party_id)
        row = con.execute("SELECT balance FROM parties WHERE user_id = ?", (int(party_id),)).fetchone()
        old = Decimal(str(row["balance"]))
        new = old + Decimal(amount)
        con.execute("UPDATE parties SET balance = ? WHERE user_id = ?", (str(new), int(party_id)))
        audit_log.record_event(
            con,
            actor_id=actor_id,
            action_type=reason,
            entity_type="party",
            entity_id=party_id,
            old_value=str(old),
            new_value=str(new),
            note=note,
        )
        logger.info("Ledger %s: party %s %s -> %s", reason, party_id, old, new)
        return new
