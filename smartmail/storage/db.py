"""
SQLite database connection and schema management.

This module provides a simple, synchronous interface for SQLite database
operations with connection management and schema initialization. Every
helper opens its own short-lived connection, so callers on different
threads never share a handle.
"""
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence, Tuple

from smartmail import config
from smartmail.utils.errors import StorageError


def get_connection() -> sqlite3.Connection:
    """
    Get a SQLite database connection.

    Returns:
        A sqlite3.Connection with row_factory set to sqlite3.Row and
        foreign keys enforced.

    Note:
        The connection should be closed by the caller when done.
    """
    config.SQLITE_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(config.SQLITE_DB_PATH, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # WAL allows readers while a sync thread writes
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _add_column(cursor: sqlite3.Cursor, table: str, definition: str) -> None:
    try:
        cursor.execute(f"ALTER TABLE {table} ADD COLUMN {definition}")
    except sqlite3.OperationalError:
        pass  # Column already exists


def init_db() -> None:
    """
    Initialize the database schema.

    Creates all required tables if they don't exist, adds columns missing
    from databases created by older builds and seeds the default categories.
    """
    conn = get_connection()
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                name TEXT,
                email TEXT NOT NULL,
                provider TEXT,
                imap_host TEXT NOT NULL,
                imap_port INTEGER DEFAULT 993,
                security TEXT DEFAULT 'ssl',
                username TEXT,
                password TEXT,
                color TEXT,
                last_sync_uid INTEGER DEFAULT 0,
                last_sync_time TEXT DEFAULT NULL,
                storage_used INTEGER DEFAULT 0,
                storage_total INTEGER DEFAULT 0
            )
        """)
        _add_column(cursor, "accounts", "security TEXT DEFAULT 'ssl'")
        _add_column(cursor, "accounts", "last_sync_time TEXT DEFAULT NULL")
        _add_column(cursor, "accounts", "storage_used INTEGER DEFAULT 0")
        _add_column(cursor, "accounts", "storage_total INTEGER DEFAULT 0")

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS emails (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                folder TEXT NOT NULL DEFAULT '{config.INBOX_FOLDER}',
                uid INTEGER NOT NULL,
                sender TEXT,
                sender_email TEXT,
                subject TEXT,
                body TEXT,
                body_html TEXT,
                date TEXT,
                smart_category TEXT,
                is_read INTEGER DEFAULT 0,
                is_flagged INTEGER DEFAULT 0,
                has_attachments INTEGER DEFAULT 0,
                ai_summary TEXT,
                ai_reasoning TEXT,
                confidence REAL DEFAULT 0,
                FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE,
                UNIQUE(account_id, folder, uid)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS attachments (
                id TEXT PRIMARY KEY,
                email_id TEXT NOT NULL,
                filename TEXT,
                content_type TEXT,
                size INTEGER DEFAULT 0,
                data BLOB,
                FOREIGN KEY (email_id) REFERENCES emails(id)
                    ON DELETE CASCADE ON UPDATE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                name TEXT PRIMARY KEY,
                type TEXT DEFAULT 'custom',
                icon TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_emails_account
            ON emails(account_id)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_emails_folder_uid
            ON emails(account_id, folder, uid)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_emails_category
            ON emails(smart_category)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_emails_account_read
            ON emails(account_id, is_read)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_attachments_email
            ON attachments(email_id)
        """)

        # Seed defaults only on a fresh categories table
        count = cursor.execute("SELECT COUNT(*) FROM categories").fetchone()[0]
        if count == 0:
            cursor.executemany(
                "INSERT INTO categories (name, type) VALUES (?, 'system')",
                [(name,) for name in config.DEFAULT_CATEGORIES]
            )

        conn.commit()
    finally:
        conn.close()


def execute(query: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
    """
    Execute a single write statement and commit it.

    Returns:
        The cursor object (useful for rowcount).

    Raises:
        StorageError: If SQLite rejects the statement.
    """
    conn = get_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(query, params)
        conn.commit()
        return cursor
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageError(f"Database write failed: {str(e)}") from e
    finally:
        conn.close()


def fetchall(query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
    """Execute a SELECT query and return all rows."""
    conn = get_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return cursor.fetchall()
    finally:
        conn.close()


def fetchone(query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
    """Execute a SELECT query and return the first row, or None."""
    conn = get_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return cursor.fetchone()
    finally:
        conn.close()


def execute_many(query: str, params_list: List[Tuple[Any, ...]]) -> int:
    """
    Execute a query multiple times in one transaction.

    Returns:
        Total number of rows changed.
    """
    conn = get_connection()
    try:
        cursor = conn.cursor()
        cursor.executemany(query, params_list)
        conn.commit()
        return cursor.rowcount
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageError(f"Database write failed: {str(e)}") from e
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Cursor]:
    """
    Run several statements atomically.

    Example:
        >>> with transaction() as cursor:
        ...     cursor.execute("UPDATE emails SET folder = ? WHERE folder = ?", (new, old))
        ...     cursor.execute("UPDATE categories SET name = ? WHERE name = ?", (new, old))
    """
    conn = get_connection()
    try:
        cursor = conn.cursor()
        yield cursor
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageError(f"Database transaction failed: {str(e)}") from e
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()
