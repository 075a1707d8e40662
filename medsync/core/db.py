"""
SQLite document store
Backs the atomic storage interface with one JSON document table
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator, List, Optional, Sequence

from medsync.core.errors import InfrastructureError
from medsync.core.logger import get_logger
from medsync.core.sqls import queries, schema
from medsync.core.storage import AtomicStorage, Document, Filter, T, Transaction
from medsync.core.timeutils import looks_like_datetime

logger = get_logger(__name__)


def _json_default(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class SQLiteStorage(AtomicStorage):
    """Document storage on top of sqlite3"""

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            from medsync.config.loader import get_config

            config = get_config()
            db_path = config.get("database.path") or str(config.config_dir / "medsync.db")

        self.db_path = str(db_path)
        self._init_database()

    def _init_database(self):
        """Initialize database"""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self.get_connection() as conn:
            for table_sql in schema.ALL_TABLES:
                conn.execute(table_sql)
            for index_sql in schema.ALL_INDEXES:
                conn.execute(index_sql)
        logger.info(f"Database initialization completed: {self.db_path}")

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get database connection context manager

        Connections run in autocommit mode; transactions are opened explicitly.
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=30.0,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise InfrastructureError(f"Database error: {e}") from e
        finally:
            conn.close()

    def _read_conn(self, conn: sqlite3.Connection, collection: str, doc_id: str) -> Optional[Document]:
        row = conn.execute(queries.SELECT_DOCUMENT, (collection, doc_id)).fetchone()
        return json.loads(row["data"]) if row else None

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self.get_connection() as conn:
            return self._read_conn(conn, collection, doc_id)

    def _scan_conn(
        self, conn: sqlite3.Connection, collection: str, filters: Sequence[Filter]
    ) -> List[Document]:
        sql = queries.SELECT_COLLECTION
        params: List[Any] = [collection]
        for path, op, value in filters:
            # Only plain equality on scalars is pushed down; everything is re-checked in Python.
            # Datetime strings are compared parsed, so they stay in Python.
            if op == "==" and isinstance(value, (str, int, float, bool)) and not looks_like_datetime(value):
                sql += queries.JSON_FIELD_EQUALS
                params.extend([f"$.{path}", value])
        rows = conn.execute(sql, params).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def _scan(self, collection: str, filters: Sequence[Filter]) -> List[Document]:
        with self.get_connection() as conn:
            return self._scan_conn(conn, collection, filters)

    def count(self, collection: str) -> int:
        with self.get_connection() as conn:
            row = conn.execute(queries.COUNT_COLLECTION, (collection,)).fetchone()
            return int(row["total"]) if row else 0

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run fn inside BEGIN IMMEDIATE; commit its buffered writes or roll back"""
        with self.get_connection() as conn:
            conn.execute(queries.BEGIN_IMMEDIATE)
            try:
                txn = Transaction(
                    lambda c, i: self._read_conn(conn, c, i),
                    lambda c, f: self._scan_conn(conn, c, f),
                )
                result = fn(txn)
                for (collection, doc_id), doc in txn.pending_writes().items():
                    if doc is None:
                        conn.execute(queries.DELETE_DOCUMENT, (collection, doc_id))
                    else:
                        conn.execute(
                            queries.UPSERT_DOCUMENT,
                            (collection, doc_id, json.dumps(doc, default=_json_default)),
                        )
                conn.execute("COMMIT")
                return result
            except BaseException:
                conn.execute("ROLLBACK")
                raise


# Global storage instance for process entry points (app.py, cli.py)
db_manager: Optional[SQLiteStorage] = None


def get_db() -> SQLiteStorage:
    """Get the process-wide storage instance

    Reads database.path from config.toml, defaults to ~/.config/medsync/medsync.db
    """
    global db_manager
    if db_manager is None:
        db_manager = SQLiteStorage()
    return db_manager


def switch_database(new_db_path: str) -> bool:
    """Switch database to new path (for runtime database location modification)"""
    global db_manager

    try:
        new_manager = SQLiteStorage(new_db_path)
    except InfrastructureError as e:
        logger.error(f"Failed to switch database to {new_db_path}: {e}", exc_info=True)
        return False

    db_manager = new_manager
    logger.info(f"✓ Database switched to: {new_db_path}")
    return True
