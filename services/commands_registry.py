from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

# (update, context, CommandRequest)
CommandHandler = Callable[[Any, Any, Any], Awaitable[None]]

GROUP_ORDER: List[str] = [
    "Account",
    "Orders",
    "Catalog",
    "Ledger",
    "Admin",
]

# Who may run a command, and where. Anything else is silently ignored.
GATE_ANYONE_PRIVATE = "anyone_private"
GATE_OPERATOR_PRIVATE = "operator_private"
GATE_GROUP_AUTHORITY = "group_authority"
GATES = {GATE_ANYONE_PRIVATE, GATE_OPERATOR_PRIVATE, GATE_GROUP_AUTHORITY}


@dataclass
class CommandSpec:
    name: str
    usage: str
    description: str
    group: str
    gate: str
    handler: Optional[CommandHandler] = None

    @property
    def operator_only(self) -> bool:
        return self.gate == GATE_OPERATOR_PRIVATE


def _c(name: str, usage: str, description: str, group: str, gate: str) -> CommandSpec:
    return CommandSpec(name=name, usage=usage, description=description, group=group, gate=gate)


COMMANDS: Dict[str, CommandSpec] = {
    # Account
    "start": _c("start", "/start", "register and show balance", "Account", GATE_ANYONE_PRIVATE),
    "help": _c("help", "/help", "show command help", "Account", GATE_ANYONE_PRIVATE),
    "balance": _c("balance", "/balance", "show balance", "Account", GATE_ANYONE_PRIVATE),
    "recharge": _c("recharge", "/recharge", "top up balance with payment proof", "Account", GATE_ANYONE_PRIVATE),
    # Orders (groups)
    "add": _c("add", "/add <link> <service> <qty> [<service> <qty> ...]", "place orders", "Orders", GATE_GROUP_AUTHORITY),
    "status": _c("status", "/status <order_id>", "remote order status", "Orders", GATE_GROUP_AUTHORITY),
    "orders": _c("orders", "/orders <id1,id2,...>", "status of several orders", "Orders", GATE_GROUP_AUTHORITY),
    # Catalog
    "post": _c("post", "/post <service_id> <name>", "set a service's remote id", "Catalog", GATE_OPERATOR_PRIVATE),
    "setprice": _c("setprice", "/setprice <name> <price>", "set price per 1000", "Catalog", GATE_OPERATOR_PRIVATE),
    "wl": _c("wl", "/wl <service_name>", "allow a service for customers", "Catalog", GATE_OPERATOR_PRIVATE),
    "unwl": _c("unwl", "/unwl <service_name>", "disallow a service", "Catalog", GATE_OPERATOR_PRIVATE),
    "wl_list": _c("wl_list", "/wl_list", "allowed services", "Catalog", GATE_OPERATOR_PRIVATE),
    "services": _c("services", "/services", "list services and prices", "Catalog", GATE_OPERATOR_PRIVATE),
    "load": _c("load", "/load", "load preset services", "Catalog", GATE_OPERATOR_PRIVATE),
    # Ledger
    "addbalance": _c("addbalance", "/addbalance <tg_id> <amount>", "adjust a user's balance", "Ledger", GATE_OPERATOR_PRIVATE),
    "setrate": _c("setrate", "/setrate <rate>", "set USD exchange rate", "Ledger", GATE_OPERATOR_PRIVATE),
    "reviews": _c("reviews", "/reviews", "pending recharge requests", "Ledger", GATE_OPERATOR_PRIVATE),
    # Admin
    "adduser": _c("adduser", "/adduser <tg_id>", "whitelist a user", "Admin", GATE_OPERATOR_PRIVATE),
    "promote": _c("promote", "/promote <tg_id>", "make a user admin", "Admin", GATE_OPERATOR_PRIVATE),
    "demote": _c("demote", "/demote <tg_id>", "remove an admin", "Admin", GATE_OPERATOR_PRIVATE),
    "userlist": _c("userlist", "/userlist", "list known users", "Admin", GATE_OPERATOR_PRIVATE),
    "send": _c("send", "/send <tg_id> <message>", "message one user", "Admin", GATE_OPERATOR_PRIVATE),
    "broadcast": _c("broadcast", "/broadcast <message>", "message all whitelisted users", "Admin", GATE_OPERATOR_PRIVATE),
}


def resolve_root(command_name: str) -> str:
    # Telegram allows command aliases with an @bot_name suffix.
    return str(command_name or "").strip().lower().split("@", 1)[0]


def command_specs() -> List[CommandSpec]:
    return list(COMMANDS.values())


def get_spec(name: str) -> Optional[CommandSpec]:
    return COMMANDS.get(resolve_root(name))


def get_group_order() -> List[str]:
    return list(GROUP_ORDER)


def known_roots() -> Set[str]:
    return set(COMMANDS)


def bind_handlers(handlers: Dict[str, CommandHandler]) -> None:
    for name, handler in handlers.items():
        spec = COMMANDS.get(name)
        if spec is not None:
            spec.handler = handler


def validate_registry() -> List[str]:
    issues: List[str] = []
    for key, spec in COMMANDS.items():
        if key != spec.name:
            issues.append(f"Registry key '{key}' does not match command name '{spec.name}'")
        if not spec.usage.startswith(f"/{spec.name}"):
            issues.append(f"Usage must start with '/{spec.name}': {spec.usage}")
        if spec.gate not in GATES:
            issues.append(f"Unknown gate '{spec.gate}' on {spec.name}")
        if spec.group not in GROUP_ORDER:
            issues.append(f"Unknown command group '{spec.group}' on {spec.name}")
        if spec.handler is None:
            issues.append(f"Missing handler: {spec.name}")
    return issues
