"""SQLite-backed persistence for catalog, parties, orders and recharge reviews.

One ``ShopStore`` is created per process and handed to every component; there
is no module-level database path. Each mutation commits immediately.
"""
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from boost_shop.db.connect import open_connection
from services.errors import PersistenceUnavailable

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS products (
        key TEXT PRIMARY KEY,
        display_name TEXT NOT NULL,
        external_id TEXT,
        price_per_1000 TEXT NOT NULL DEFAULT '0',
        whitelisted INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS parties (
        user_id INTEGER PRIMARY KEY,
        balance TEXT NOT NULL DEFAULT '0',
        is_whitelisted INTEGER NOT NULL DEFAULT 0,
        username TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS admins (
        user_id INTEGER PRIMARY KEY,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        party_id INTEGER NOT NULL,
        product_key TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        cost TEXT NOT NULL,
        link TEXT NOT NULL,
        remote_order_id TEXT,
        error TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS recharge_reviews (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        party_id INTEGER NOT NULL,
        amount INTEGER NOT NULL,
        proof_file_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK(status IN ('pending', 'confirmed', 'rejected')),
        decided_by INTEGER,
        decided_at TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        actor_id INTEGER NOT NULL,
        action_type TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        old_value TEXT,
        new_value TEXT,
        note TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_party ON orders(party_id);",
    "CREATE INDEX IF NOT EXISTS idx_reviews_party ON recharge_reviews(party_id);",
)


class ShopStore:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def get_conn(self) -> sqlite3.Connection:
        try:
            return open_connection(self.db_path)
        except sqlite3.Error as exc:
            logger.error("Cannot open database %s: %s", self.db_path, exc)
            raise PersistenceUnavailable(str(exc)) from exc

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        con = self.get_conn()
        try:
            yield con
        except sqlite3.Error as exc:
            logger.error("Database read failed: %s", exc)
            raise PersistenceUnavailable(str(exc)) from exc
        finally:
            con.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction taken with BEGIN IMMEDIATE; rolled back on any error."""
        con = self.get_conn()
        try:
            con.execute("BEGIN IMMEDIATE;")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK;")
                raise
            con.execute("COMMIT;")
        except sqlite3.Error as exc:
            logger.error("Database write failed: %s", exc)
            raise PersistenceUnavailable(str(exc)) from exc
        finally:
            con.close()

    def init_db(self) -> None:
        with self.transaction() as con:
            for statement in SCHEMA:
                con.execute(statement)
        logger.info("Shop DB ready at %s", self.db_path)

    def get_setting(self, key: str) -> Optional[str]:
        with self.read() as con:
            row = con.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return str(row["value"]) if row else None

