"""
SQLite database connection and initialization.
"""
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

from .config import BACKEND_DIR, DB_PATH

SCHEMA_FILE = BACKEND_DIR / "db" / "schema.sql"
REQUIRED_TABLES = ("notes", "profiles", "chat_histories", "files")


class Database:
    """Database manager for SQLite operations."""

    def __init__(self, db_path: Path = DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ensure_tables()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_tables(self):
        """Create all tables if they don't exist."""
        schema = SCHEMA_FILE.read_text(encoding="utf-8")
        with self.get_connection() as conn:
            conn.executescript(schema)

    def missing_tables(self) -> List[str]:
        rows = self.execute("SELECT name FROM sqlite_master WHERE type='table'")
        present = {row["name"] for row in rows}
        return [table for table in REQUIRED_TABLES if table not in present]

    def execute(self, query: str, params: Optional[tuple] = None) -> List[sqlite3.Row]:
        """Execute a SELECT query and return results."""
        with self.get_connection() as conn:
            cursor = conn.execute(query, params or ())
            return cursor.fetchall()

    def execute_one(self, query: str, params: Optional[tuple] = None) -> Optional[sqlite3.Row]:
        """Execute a SELECT query and return first result."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_write(self, query: str, params: Optional[tuple] = None) -> int:
        """Execute an INSERT/UPDATE/DELETE query and return the affected row count."""
        with self.get_connection() as conn:
            cursor = conn.execute(query, params or ())
            return cursor.rowcount

    def execute_many_writes(self, statements: List[tuple]) -> None:
        """Run several (query, params) writes in one transaction."""
        with self.get_connection() as conn:
            for query, params in statements:
                conn.execute(query, params or ())
