import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from services import audit_log
from services.errors import UnknownProduct
from services.store import ShopStore

logger = logging.getLogger(__name__)

# Bounds for any price, rate or balance adjustment typed by the operator.
MAX_AMOUNT = Decimal("1e15")
MAX_DECIMAL_PLACES = 6


@dataclass(frozen=True)
class Product:
    key: str
    display_name: str
    external_id: Optional[str]
    price_per_1000: Decimal
    whitelisted: bool = False

    @property
    def fulfillable(self) -> bool:
        return bool(self.external_id)


def normalize_key(name: str) -> str:
    return " ".join(str(name or "").split()).lower()


def amount_in_range(value: Decimal) -> bool:
    return abs(value) <= MAX_AMOUNT and value.normalize().as_tuple().exponent >= -MAX_DECIMAL_PLACES


def parse_price(raw: Any) -> Decimal:
    try:
        price = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid price: {raw!r}") from None
    if not price.is_finite() or price < 0:
        raise ValueError(f"Price must be a non-negative number: {raw!r}")
    if not amount_in_range(price):
        raise ValueError(f"Price is out of range: {raw!r}")
    return price


def _row_to_product(row) -> Product:
    return Product(
        key=str(row["key"]),
        display_name=str(row["display_name"]),
        external_id=str(row["external_id"]) if row["external_id"] else None,
        price_per_1000=Decimal(str(row["price_per_1000"] or "0")),
        whitelisted=bool(row["whitelisted"]),
    )


class Catalog:
    def __init__(self, store: ShopStore):
        self.store = store

    def upsert_identifier(self, name: str, external_id: str, *, actor_id: int = 0) -> Product:
        key = normalize_key(name)
        if not key:
            raise ValueError("Product name is required.")
        ext = str(external_id or "").strip() or None
        with self.store.transaction() as con:
            con.execute(
                """
                INSERT INTO products (key, display_name, external_id)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    external_id = excluded.external_id,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, name.strip(), ext),
            )
            audit_log.record_event(
                con,
                actor_id=actor_id,
                action_type="upsert_identifier",
                entity_type="product",
                entity_id=key,
                new_value=ext,
            )
        logger.info("Catalog: %s -> service %s", key, ext)
        return self._require(key)

    def upsert_price(self, name: str, price_per_1000: Any, *, actor_id: int = 0) -> Product:
        key = normalize_key(name)
        if not key:
            raise ValueError("Product name is required.")
        price = parse_price(price_per_1000)
        with self.store.transaction() as con:
            old = con.execute("SELECT price_per_1000 FROM products WHERE key = ?", (key,)).fetchone()
            con.execute(
                """
                INSERT INTO products (key, display_name, price_per_1000)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    price_per_1000 = excluded.price_per_1000,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, name.strip(), str(price)),
            )
            audit_log.record_event(
                con,
                actor_id=actor_id,
                action_type="upsert_price",
                entity_type="product",
                entity_id=key,
                old_value=old["price_per_1000"] if old else None,
                new_value=str(price),
            )
        logger.info("Catalog: %s priced at %s per 1000", key, price)
        return self._require(key)

    def set_whitelisted(self, name: str, flag: bool, *, actor_id: int = 0) -> Product:
        key = normalize_key(name)
        with self.store.transaction() as con:
            cur = con.execute(
                "UPDATE products SET whitelisted = ?, updated_at = CURRENT_TIMESTAMP WHERE key = ?",
                (1 if flag else 0, key),
            )
            if cur.rowcount == 0:
                raise UnknownProduct(name)
            audit_log.record_event(
                con,
                actor_id=actor_id,
                action_type="whitelist" if flag else "unwhitelist",
                entity_type="product",
                entity_id=key,
            )
        return self._require(key)

    def lookup(self, name: str) -> Optional[Product]:
        with self.store.read() as con:
            row = con.execute(
                "SELECT * FROM products WHERE key = ?", (normalize_key(name),)
            ).fetchone()
        return _row_to_product(row) if row else None

    def _require(self, key: str) -> Product:
        product = self.lookup(key)
        if product is None:
            raise UnknownProduct(key)
        return product

    def list_products(self) -> List[Product]:
        with self.store.read() as con:
            rows = con.execute("SELECT * FROM products ORDER BY key ASC").fetchall()
        return [_row_to_product(row) for row in rows]

    def keys(self) -> List[str]:
        return [p.key for p in self.list_products()]

    def whitelisted_products(self) -> List[Product]:
        return [p for p in self.list_products() if p.whitelisted]

    def load_presets(self, presets: Iterable[Dict[str, Any]], *, actor_id: int = 0) -> List[Product]:
        loaded: List[Product] = []
        for preset in presets:
            name = str(preset["name"])
            self.upsert_identifier(name, str(preset.get("service_id") or ""), actor_id=actor_id)
            self.upsert_price(name, preset.get("price", 0), actor_id=actor_id)
            loaded.append(self.set_whitelisted(name, True, actor_id=actor_id))
        return loaded
