import json
import sqlite3
from typing import Any, Optional


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, sort_keys=True, default=str)
    return str(value)


def record_event(
    con: sqlite3.Connection,
    *,
    actor_id: int,
    action_type: str,
    entity_type: str,
    entity_id: Any,
    old_value: Any = None,
    new_value: Any = None,
    note: Optional[str] = None,
) -> int:
    """Append an audit row inside the caller's open transaction."""
    cur = con.execute(
        """
        INSERT INTO audit_events (
            actor_id, action_type, entity_type, entity_id, old_value, new_value, note
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            int(actor_id or 0),
            str(action_type or "").strip(),
            str(entity_type or "").strip(),
            str(entity_id),
            _stringify(old_value),
            _stringify(new_value),
            str(note or "")[:1000],
        ),
    )
    return int(cur.lastrowid)

