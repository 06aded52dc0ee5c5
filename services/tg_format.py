"""Plain-text message builders. Replies are sent without a parse mode, so
user-supplied links and names are never interpreted as markup."""
from decimal import Decimal
from typing import Iterable, List, Optional


def format_money(value: Decimal) -> str:
    """Render a Decimal amount without exponent or trailing zeros (``1000``, ``0.5``)."""
    return format(Decimal(value).normalize(), "f")


def tg_lines(title: str, lines: Optional[Iterable[object]] = None) -> str:
    out: List[str] = [title.strip()]
    for line in lines or []:
        value = str(line or "").strip()
        if value:
            out.append(value)
    return "\n".join(out).strip()


def order_receipt(
    *,
    link: str,
    lines: Iterable[str],
    total: Decimal,
    currency: str,
    footer: str = "",
) -> str:
    out: List[str] = ["Order placed ✅", "-----------------------"]
    out.extend(lines)
    out.append(f"Link used: {link}")
    out.append(f"Total cost: {format_money(total)} {currency}")
    if footer.strip():
        out.append(footer.strip())
    return "\n".join(out)


def review_caption(*, review_id: int, party_id: int, amount: int, currency: str) -> str:
    return f"💰 Recharge request #{review_id} from user {party_id}\nAmount: {amount} {currency}"


def split_for_telegram(text: str, limit: int = 3500) -> List[str]:
    content = (text or "").strip()
    if not content:
        return []

    chunks: List[str] = []
    remaining = content
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut < int(limit * 0.5):
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks
