"""Role resolution and command gates.

Group authority is looked up from Telegram on every guarded command and never
cached: the creator of a group can change between two commands.
"""
import logging
from enum import Enum
from typing import Any, List, Optional

from services import audit_log
from services.store import ShopStore

logger = logging.getLogger(__name__)

PRIVATE = "private"
GROUP_TYPES = {"group", "supergroup"}


class Role(str, Enum):
    OPERATOR = "operator"
    ADMIN = "admin"
    GROUP_AUTHORITY = "group_authority"
    WHITELISTED = "whitelisted"
    NONE = "none"


class AccessControl:
    def __init__(self, store: ShopStore, operator_id: int):
        self.store = store
        self.operator_id = int(operator_id)

    def is_operator(self, user_id: Optional[int]) -> bool:
        return user_id is not None and int(user_id) == self.operator_id

    def is_admin(self, user_id: Optional[int]) -> bool:
        if user_id is None:
            return False
        with self.store.read() as con:
            row = con.execute("SELECT 1 FROM admins WHERE user_id = ?", (int(user_id),)).fetchone()
        return row is not None

    def is_privileged(self, user_id: Optional[int]) -> bool:
        return self.is_operator(user_id) or self.is_admin(user_id)

    def is_whitelisted(self, user_id: Optional[int]) -> bool:
        if user_id is None:
            return False
        with self.store.read() as con:
            row = con.execute(
                "SELECT is_whitelisted FROM parties WHERE user_id = ?", (int(user_id),)
            ).fetchone()
        return bool(row and row["is_whitelisted"])

    def admin_ids(self) -> List[int]:
        with self.store.read() as con:
            rows = con.execute("SELECT user_id FROM admins ORDER BY user_id ASC").fetchall()
        return [int(row["user_id"]) for row in rows]

    def review_recipients(self) -> List[int]:
        recipients = [self.operator_id]
        recipients.extend(a for a in self.admin_ids() if a != self.operator_id)
        return recipients

    def promote(self, user_id: int, *, actor_id: int) -> bool:
        with self.store.transaction() as con:
            cur = con.execute("INSERT OR IGNORE INTO admins (user_id) VALUES (?)", (int(user_id),))
            added = cur.rowcount > 0
            if added:
                audit_log.record_event(
                    con, actor_id=actor_id, action_type="promote", entity_type="admin", entity_id=user_id
                )
        return added

    def demote(self, user_id: int, *, actor_id: int) -> bool:
        with self.store.transaction() as con:
            cur = con.execute("DELETE FROM admins WHERE user_id = ?", (int(user_id),))
            removed = cur.rowcount > 0
            if removed:
                audit_log.record_event(
                    con, actor_id=actor_id, action_type="demote", entity_type="admin", entity_id=user_id
                )
        return removed

    async def group_creator_id(self, bot: Any, chat_id: int) -> Optional[int]:
        try:
            members = await bot.get_chat_administrators(chat_id)
        except Exception as exc:
            logger.warning("Could not fetch administrators for chat %s: %s", chat_id, exc)
            return None
        for member in members:
            if getattr(member, "status", None) == "creator":
                return int(member.user.id)
        return None

    async def resolve_role(self, bot: Any, user_id: int, chat_id: int, chat_type: str) -> Role:
        if self.is_operator(user_id):
            return Role.OPERATOR
        if self.is_admin(user_id):
            return Role.ADMIN
        if chat_type in GROUP_TYPES and await self.group_creator_id(bot, chat_id) == int(user_id):
            return Role.GROUP_AUTHORITY
        if self.is_whitelisted(user_id):
            return Role.WHITELISTED
        return Role.NONE

    # -- gates -----------------------------------------------------------------

    def operator_private(self, user_id: Optional[int], chat_type: Optional[str]) -> bool:
        return chat_type == PRIVATE and self.is_operator(user_id)

    def privileged_private(self, user_id: Optional[int], chat_type: Optional[str]) -> bool:
        return chat_type == PRIVATE and self.is_privileged(user_id)

    async def group_authority(self, bot: Any, user_id: Optional[int], chat_id: int, chat_type: Optional[str]) -> bool:
        """Ordering gate: group chats only; the operator always passes, otherwise the group creator."""
        if chat_type not in GROUP_TYPES or user_id is None:
            return False
        if self.is_operator(user_id):
            return True
        return await self.group_creator_id(bot, chat_id) == int(user_id)
