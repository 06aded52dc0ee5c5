"""Parsing and execution of operator commands that need no Telegram I/O.

``execute_command`` returns a ``CommandResponse``; the Telegram layer only
decides who may run what and sends the text back.
"""
import logging
import shlex
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional

from boost_shop import config as shop_config
from services.catalog import amount_in_range
from services.errors import UnknownProduct
from services.shop import ShopContext
from services.tg_format import format_money, tg_lines

logger = logging.getLogger(__name__)


@dataclass
class CommandRequest:
    raw: str
    name: str
    args: List[str] = field(default_factory=list)
    body: str = ""


@dataclass
class CommandResponse:
    text: str = ""
    silent: bool = False


def split_command_line(text: str) -> List[str]:
    raw = str(text or "").strip()
    if not raw:
        return []
    try:
        return shlex.split(raw)
    except ValueError:
        # Unbalanced quotes: fall back to whitespace.
        return raw.split()


def parse_command(text: str) -> Optional[CommandRequest]:
    raw = str(text or "").strip()
    if not raw.startswith("/"):
        return None
    head, _, body = raw.partition(" ")
    name = head[1:].split("@", 1)[0].strip().lower()
    if not name:
        return None
    body = body.strip()
    return CommandRequest(raw=raw, name=name, args=split_command_line(body), body=body)


def _usage(text: str) -> CommandResponse:
    return CommandResponse(text=f"Usage: {text}")


def _parse_user_id(raw: str) -> Optional[int]:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _parse_amount(raw: str) -> Optional[Decimal]:
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or not amount_in_range(value):
        return None
    return value


Executor = Callable[[CommandRequest, ShopContext, int], Awaitable[CommandResponse]]


async def _post(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    if len(req.args) < 2:
        return _usage("/post <service_id> <name>")
    service_id, name = req.args[0], " ".join(req.args[1:])
    shop.catalog.upsert_identifier(name, service_id, actor_id=actor_id)
    return CommandResponse(text=f"✅ Service '{name}' posted.")


async def _setprice(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    if len(req.args) < 2:
        return _usage("/setprice <name> <price>")
    name, raw_price = " ".join(req.args[:-1]), req.args[-1]
    if shop.catalog.lookup(name) is None:
        raise UnknownProduct(name)
    try:
        product = shop.catalog.upsert_price(name, raw_price, actor_id=actor_id)
    except ValueError:
        return _usage("/setprice <name> <price>  (price must be a non-negative number)")
    return CommandResponse(
        text=f"✅ '{product.key}' price set to {format_money(product.price_per_1000)} {shop.currency}/1k"
    )


async def _wl(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    if not req.args:
        return _usage("/wl <service_name>")
    product = shop.catalog.set_whitelisted(req.body, True, actor_id=actor_id)
    return CommandResponse(text=f"✅ '{product.key}' whitelisted.")


async def _unwl(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    if not req.args:
        return _usage("/unwl <service_name>")
    product = shop.catalog.set_whitelisted(req.body, False, actor_id=actor_id)
    return CommandResponse(text=f"✅ '{product.key}' removed from whitelist.")


async def _wl_list(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    products = shop.catalog.whitelisted_products()
    if not products:
        return CommandResponse(text="ℹ️ No whitelisted services.")
    return CommandResponse(text=tg_lines("✅ Whitelisted services:", [p.key for p in products]))


async def _services(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    products = shop.catalog.list_products()
    if not products:
        return CommandResponse(text="ℹ️ No services available.")
    lines = []
    for product in products:
        sid = product.external_id or "unset"
        lines.append(f"{product.key} — {format_money(product.price_per_1000)} {shop.currency} /1k (id {sid})")
    return CommandResponse(text=tg_lines("📦 Services:", lines))


async def _load(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    presets = shop_config.get_presets(shop.config)
    if not presets:
        return CommandResponse(text="ℹ️ No presets configured.")
    loaded = shop.catalog.load_presets(presets, actor_id=actor_id)
    lines = [f"- {p.key} ({format_money(p.price_per_1000)} {shop.currency}/1k)" for p in loaded]
    return CommandResponse(text=tg_lines("✅ Preset services loaded:", lines))


async def _addbalance(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    if len(req.args) < 2:
        return _usage("/addbalance <tg_id> <amount>")
    party_id, amount = _parse_user_id(req.args[0]), _parse_amount(req.args[1])
    if party_id is None or amount is None:
        return _usage("/addbalance <tg_id> <amount>")
    new_balance = await shop.ledger.credit(party_id, amount, actor_id=actor_id, reason="manual_adjustment")
    return CommandResponse(
        text=(
            f"✅ Added {format_money(amount)} {shop.currency} to user {party_id}. "
            f"Balance: {format_money(new_balance)} {shop.currency}"
        )
    )


async def _setrate(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    if not req.args:
        return _usage("/setrate <rate>")
    try:
        rate = shop.set_usd_rate(req.args[0], actor_id=actor_id)
    except ValueError:
        return _usage("/setrate <rate>")
    return CommandResponse(text=f"✅ Exchange rate set to {format_money(rate)} {shop.currency}/USD")


async def _reviews(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    pending = shop.sessions.pending_reviews()
    if not pending:
        return CommandResponse(text="ℹ️ No pending recharge requests.")
    lines = [f"#{r.id}: user {r.party_id}, {r.amount} {shop.currency}" for r in pending]
    return CommandResponse(text=tg_lines("🧾 Pending recharges:", lines))


async def _adduser(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    party_id = _parse_user_id(req.args[0]) if req.args else None
    if party_id is None:
        return _usage("/adduser <tg_id>")
    shop.ledger.ensure_party(party_id, whitelisted=True)
    return CommandResponse(text=f"✅ User {party_id} whitelisted.")


async def _promote(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    party_id = _parse_user_id(req.args[0]) if req.args else None
    if party_id is None:
        return CommandResponse(text="❌ Invalid TG ID.")
    if shop.access.promote(party_id, actor_id=actor_id):
        return CommandResponse(text=f"✅ User {party_id} promoted to admin.")
    return CommandResponse(text=f"ℹ️ User {party_id} is already an admin.")


async def _demote(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    party_id = _parse_user_id(req.args[0]) if req.args else None
    if party_id is None:
        return CommandResponse(text="❌ Invalid TG ID.")
    shop.access.demote(party_id, actor_id=actor_id)
    return CommandResponse(text=f"✅ User {party_id} demoted from admin.")


async def _userlist(req: CommandRequest, shop: ShopContext, actor_id: int) -> CommandResponse:
    accounts = shop.ledger.accounts()
    if not accounts:
        return CommandResponse(text="ℹ️ No users found.")
    return CommandResponse(text=tg_lines("👥 User IDs:", [str(a.user_id) for a in accounts]))


EXECUTORS: Dict[str, Executor] = {
    "post": _post,
    "setprice": _setprice,
    "wl": _wl,
    "unwl": _unwl,
    "wl_list": _wl_list,
    "services": _services,
    "load": _load,
    "addbalance": _addbalance,
    "setrate": _setrate,
    "reviews": _reviews,
    "adduser": _adduser,
    "promote": _promote,
    "demote": _demote,
    "userlist": _userlist,
}


async def execute_command(req: CommandRequest, shop: ShopContext, *, actor_id: int) -> CommandResponse:
    executor = EXECUTORS.get(req.name)
    if executor is None:
        return CommandResponse(silent=True)
    return await executor(req, shop, actor_id)


def balance_overview(shop: ShopContext, remote: Optional[Any] = None) -> str:
    lines: List[str] = []
    if remote is not None:
        lines.append(f"💰 API balance: {format_money(remote.balance * shop.usd_rate())} {shop.currency}")
        lines.append("")
    lines.append("📊 Users:")
    for account in shop.ledger.accounts():
        lines.append(f"{account.user_id}: {format_money(account.balance)} {shop.currency}")
    return "\n".join(lines)
