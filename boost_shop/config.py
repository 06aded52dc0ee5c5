from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "config.yaml"

DEFAULT_ALLOWED_AMOUNTS: List[int] = [500, 1000, 2000, 5000, 10000]


class ConfigError(RuntimeError):
    """Required configuration is missing or malformed. Fatal at startup."""


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _int_env(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    db_path = os.getenv("BOOST_SHOP_DB_PATH")
    if db_path:
        overrides.setdefault("storage", {})["db_path"] = db_path

    owner_id = _int_env("OWNER_ID")
    if owner_id is not None:
        overrides.setdefault("telegram", {})["operator_id"] = owner_id

    review_chat = _int_env("REVIEW_CHAT_ID")
    if review_chat is not None:
        overrides.setdefault("telegram", {})["review_chat_id"] = review_chat

    rate = os.getenv("USD_TO_MMK", "").strip()
    if rate:
        overrides.setdefault("shop", {})["usd_rate"] = rate

    return overrides


def resolve_path(path_value: str, *, base_dir: Optional[Path] = None) -> Path:
    candidate = Path(path_value)
    if not candidate.is_absolute():
        candidate = (base_dir or BASE_DIR) / candidate
    return candidate.resolve()


@lru_cache(maxsize=1)
def load_config() -> Dict[str, Any]:
    # Load .env once through a single interface.
    load_dotenv(dotenv_path=BASE_DIR / ".env")

    config_path = os.getenv("BOOST_SHOP_CONFIG")
    path = resolve_path(config_path, base_dir=Path.cwd()) if config_path else DEFAULT_CONFIG_PATH

    data: Dict[str, Any] = {}
    if path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            data = loaded

    return _deep_merge(data, _env_overrides())


def reload_config() -> Dict[str, Any]:
    load_config.cache_clear()
    return load_config()


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = cfg.get(name, {})
    return value if isinstance(value, dict) else {}


def get_db_path(config: Optional[Dict[str, Any]] = None) -> Path:
    cfg = config or load_config()
    db_path = str(_section(cfg, "storage").get("db_path", "data/shop.db"))
    return resolve_path(db_path)


def get_log_path(config: Optional[Dict[str, Any]] = None) -> Path:
    cfg = config or load_config()
    log_path = str(_section(cfg, "paths").get("log_file", "logs/boost-shop.log"))
    return resolve_path(log_path)


def get_operator_id(config: Optional[Dict[str, Any]] = None) -> int:
    cfg = config or load_config()
    raw = _section(cfg, "telegram").get("operator_id")
    try:
        operator_id = int(raw)
    except (TypeError, ValueError):
        raise ConfigError("OWNER_ID is not set. Put it in your .env file.") from None
    if operator_id <= 0:
        raise ConfigError("OWNER_ID must be a positive Telegram user id.")
    return operator_id


def get_review_chat_id(config: Optional[Dict[str, Any]] = None) -> int:
    cfg = config or load_config()
    raw = _section(cfg, "telegram").get("review_chat_id")
    if raw in (None, ""):
        return get_operator_id(cfg)
    return int(raw)


def get_secret(env_var_name: str) -> str:
    """Read a required secret from the environment (after .env has loaded)."""
    load_config()
    value = os.getenv(env_var_name, "").strip()
    if not value:
        raise ConfigError(f"{env_var_name} is not set. Put it in your .env file.")
    return value


def get_usd_rate(config: Optional[Dict[str, Any]] = None) -> Decimal:
    cfg = config or load_config()
    raw = _section(cfg, "shop").get("usd_rate", 2100)
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        raise ConfigError(f"shop.usd_rate is not a number: {raw!r}") from None


def get_currency(config: Optional[Dict[str, Any]] = None) -> str:
    cfg = config or load_config()
    return str(_section(cfg, "shop").get("currency", "MMK"))


def get_allowed_amounts(config: Optional[Dict[str, Any]] = None) -> List[int]:
    cfg = config or load_config()
    raw = _section(cfg, "recharge").get("allowed_amounts")
    if not raw:
        return list(DEFAULT_ALLOWED_AMOUNTS)
    return sorted({int(x) for x in raw})


def get_session_ttl_minutes(config: Optional[Dict[str, Any]] = None) -> float:
    cfg = config or load_config()
    return float(_section(cfg, "recharge").get("session_ttl_minutes", 30))


def refund_failed_items(config: Optional[Dict[str, Any]] = None) -> bool:
    cfg = config or load_config()
    return bool(_section(cfg, "ordering").get("refund_failed_items", False))


def get_presets(config: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    cfg = config or load_config()
    presets = _section(cfg, "catalog").get("presets") or []
    return [p for p in presets if isinstance(p, dict) and p.get("name")]
