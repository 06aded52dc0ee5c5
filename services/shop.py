"""Process-wide wiring of the shop components around one ``ShopStore``."""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from boost_shop import config as shop_config
from services import audit_log
from services.access import AccessControl
from services.catalog import Catalog, parse_price
from services.fulfillment import DEFAULT_BASE_URL, FulfillmentClient
from services.ledger import Ledger
from services.ordering import Dispatcher
from services.recharge import RechargeSessions
from services.store import ShopStore

logger = logging.getLogger(__name__)

USD_RATE_SETTING = "usd_rate"


@dataclass
class ShopContext:
    config: Dict[str, Any]
    store: ShopStore
    catalog: Catalog
    ledger: Ledger
    access: AccessControl
    sessions: RechargeSessions
    client: FulfillmentClient
    dispatcher: Dispatcher
    currency: str
    review_chat_id: int

    @property
    def receipt_footer(self) -> str:
        shop = self.config.get("shop", {}) if isinstance(self.config.get("shop"), dict) else {}
        return str(shop.get("receipt_footer") or "")

    @property
    def payment_instructions(self) -> str:
        recharge = self.config.get("recharge", {}) if isinstance(self.config.get("recharge"), dict) else {}
        return str(recharge.get("payment_instructions") or "").strip()

    def usd_rate(self) -> Decimal:
        stored = self.store.get_setting(USD_RATE_SETTING)
        if stored:
            return Decimal(stored)
        return shop_config.get_usd_rate(self.config)

    def set_usd_rate(self, raw: Any, *, actor_id: int) -> Decimal:
        rate = parse_price(raw)
        old = self.usd_rate()
        with self.store.transaction() as con:
            con.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (USD_RATE_SETTING, str(rate)),
            )
            audit_log.record_event(
                con,
                actor_id=actor_id,
                action_type="set_rate",
                entity_type="setting",
                entity_id=USD_RATE_SETTING,
                old_value=str(old),
                new_value=str(rate),
            )
        return rate


def build_context(
    config: Optional[Dict[str, Any]] = None,
    *,
    client: Optional[FulfillmentClient] = None,
) -> ShopContext:
    cfg = config or shop_config.load_config()
    operator_id = shop_config.get_operator_id(cfg)

    store = ShopStore(shop_config.get_db_path(cfg))
    store.init_db()

    if client is None:
        ff = cfg.get("fulfillment", {}) if isinstance(cfg.get("fulfillment"), dict) else {}
        client = FulfillmentClient(
            api_key=shop_config.get_secret(str(ff.get("api_key_env_var", "SHWEBOOST_KEY"))),
            base_url=str(ff.get("base_url") or DEFAULT_BASE_URL),
            timeout_seconds=float(ff.get("timeout_seconds", 30)),
        )

    currency = shop_config.get_currency(cfg)
    ledger = Ledger(store, currency=currency)
    refund = shop_config.refund_failed_items(cfg)
    if refund:
        logger.info("Failed order lines will be refunded automatically.")

    return ShopContext(
        config=cfg,
        store=store,
        catalog=Catalog(store),
        ledger=ledger,
        access=AccessControl(store, operator_id),
        sessions=RechargeSessions(
            store,
            ledger,
            allowed_amounts=shop_config.get_allowed_amounts(cfg),
            ttl_minutes=shop_config.get_session_ttl_minutes(cfg),
        ),
        client=client,
        dispatcher=Dispatcher(store, client, ledger, refund_failed_items=refund),
        currency=currency,
        review_chat_id=shop_config.get_review_chat_id(cfg),
    )
