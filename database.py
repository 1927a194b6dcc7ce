import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Mapping, Optional, Union

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from data_paths import ensure_data_root

DATABASE_FILENAME = 'local_store.db'


def default_database_path() -> Path:
    return ensure_data_root() / DATABASE_FILENAME


def get_db_connection(database_file: Optional[Union[str, Path]] = None):
    """Establishes a connection to the SQLite database backing the local store."""
    if database_file is None:
        database_file = default_database_path()
    conn = sqlite3.connect(str(database_file), timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(database_file: Optional[Union[str, Path]] = None):
    """Initializes the key/value schema."""
    conn = get_db_connection(database_file)
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS local_storage (
                key TEXT PRIMARY KEY NOT NULL,
                value TEXT NOT NULL,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        conn.commit()
    finally:
        conn.close()


class LocalStore:
    """Flat string-to-string persistent store, one SQLite row per key.

    Values are stored verbatim; callers serialize collections to JSON text
    before writing, the same way a browser ``localStorage`` is used.
    """

    def __init__(self, database_file: Optional[Union[str, Path]] = None) -> None:
        self.database_file = Path(database_file) if database_file else default_database_path()
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        init_db(self.database_file)

    @property
    def identity(self) -> str:
        return str(self.database_file.resolve())

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = get_db_connection(self.database_file)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_item(self, key: str) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT value FROM local_storage WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        self.apply({key: value})

    def remove_item(self, key: str) -> None:
        self.apply({key: None})

    def keys(self) -> List[str]:
        with self._connection() as conn:
            rows = conn.execute("SELECT key FROM local_storage ORDER BY key").fetchall()
        return [row["key"] for row in rows]

    def item_size(self, key: str) -> Optional[int]:
        """Return the UTF-8 byte length of a stored value without loading it."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT length(CAST(value AS BLOB)) AS size FROM local_storage WHERE key = ?",
                (key,),
            ).fetchone()
        return int(row["size"]) if row else None

    def read_prefix(self, key: str, length: int) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT substr(value, 1, ?) AS head FROM local_storage WHERE key = ?",
                (length, key),
            ).fetchone()
        return row["head"] if row else None

    def apply(self, updates: Mapping[str, Optional[str]]) -> None:
        """Write and remove several keys in a single transaction.

        A ``None`` value removes the key.
        """
        if not updates:
            return
        with self._connection() as conn:
            for key, value in updates.items():
                if value is None:
                    conn.execute("DELETE FROM local_storage WHERE key = ?", (key,))
                    continue
                if not isinstance(value, str):
                    raise TypeError(f"Store values must be strings, got {type(value).__name__} for '{key}'")
                conn.execute(
                    """
                    INSERT INTO local_storage (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )

    def claim(self, key: str, value: str, *, stale_before: Optional[str] = None) -> bool:
        """Insert *key* only if it is absent and return whether this call won.

        A holder whose ``updated_at`` is older than *stale_before*
        (``YYYY-MM-DD HH:MM:SS`` UTC) is discarded first.  SQLite serializes
        the write, so at most one concurrent caller, in any process, wins.
        """
        with self._connection() as conn:
            if stale_before is not None:
                stale = conn.execute(
                    "DELETE FROM local_storage WHERE key = ? AND updated_at < ?",
                    (key, stale_before),
                )
                if stale.rowcount:
                    logger.warning(f"Discarded stale '{key}' marker")
            cursor = conn.execute(
                """
                INSERT INTO local_storage (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO NOTHING
                """,
                (key, value),
            )
            return cursor.rowcount == 1

    def release_claim(self, key: str, value: str) -> bool:
        """Remove *key* only while it still holds *value*."""
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM local_storage WHERE key = ? AND value = ?", (key, value)
            )
            return cursor.rowcount == 1
