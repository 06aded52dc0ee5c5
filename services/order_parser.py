"""Free-text multi-item order parsing.

Order bodies look like ``<link> view 10000, like 500 / comment 20``. There is
no grammar for the separators: the parser anchors on known catalog names and
reads the digits that follow each one.

Matching rules:
- names match case-insensitively as plain substrings (no word boundaries);
- the earliest match in the remaining text wins, and when several names start
  at the same offset the longest one wins;
- a name must be followed (after optional whitespace) by a run of digits,
  otherwise scanning stops and the rest of the text is ignored;
- a quantity wider than ``MAX_QUANTITY_DIGITS`` fails the whole order.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Pattern

from services.errors import ParseFailure

ORDER_USAGE = "/add <link> <service> <quantity> [<service> <quantity> ...]"

QUANTITY_RE = re.compile(r"\s*([0-9]+)\s*")
MAX_QUANTITY_DIGITS = 10


@dataclass(frozen=True)
class LineItem:
    product_key: str
    display_name: str
    quantity: int


@dataclass(frozen=True)
class ParsedOrder:
    destination_link: str
    items: List[LineItem] = field(default_factory=list)


def build_name_pattern(catalog_keys: Iterable[str]) -> Pattern[str]:
    # Longest first so that, at one start offset, the alternation prefers it.
    keys = sorted({k for k in catalog_keys if k}, key=lambda k: (-len(k), k))
    return re.compile("|".join(re.escape(k) for k in keys), re.IGNORECASE)


def parse_order(body: str, catalog_keys: Iterable[str]) -> ParsedOrder:
    parts = str(body or "").strip().split(None, 1)
    if len(parts) < 2 or not parts[1].strip():
        raise ParseFailure(ParseFailure.MISSING_ARGUMENTS, usage=ORDER_USAGE)
    link, remainder = parts

    keys = {str(k).lower() for k in catalog_keys if str(k).strip()}
    if not keys:
        raise ParseFailure(ParseFailure.EMPTY_CATALOG)
    pattern = build_name_pattern(keys)

    items: List[LineItem] = []
    pos = 0
    while pos < len(remainder):
        match = pattern.search(remainder, pos)
        if not match:
            break
        qty_match = QUANTITY_RE.match(remainder, match.end())
        if not qty_match:
            break
        digits = qty_match.group(1)
        if len(digits.lstrip("0")) > MAX_QUANTITY_DIGITS:
            raise ParseFailure(ParseFailure.QUANTITY_TOO_LARGE, usage=ORDER_USAGE)
        span = match.group(0)
        items.append(
            LineItem(
                product_key=_canonical_key(span, keys),
                display_name=span,
                quantity=int(digits),
            )
        )
        pos = qty_match.end()

    if not items:
        raise ParseFailure(ParseFailure.NO_ITEMS_PARSED, usage=ORDER_USAGE)
    return ParsedOrder(destination_link=link, items=items)


def _canonical_key(span: str, keys: set) -> str:
    lowered = span.lower()
    if lowered in keys:
        return lowered
    # Case-insensitive regex matching can disagree with str.lower() outside ASCII.
    for key in keys:
        if re.fullmatch(re.escape(key), span, re.IGNORECASE):
            return key
    return lowered


def format_items(items: Iterable[LineItem]) -> str:
    return " ".join(f"{item.display_name} {item.quantity}" for item in items)
