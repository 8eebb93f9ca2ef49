"""
Cache repository layer for SQLite persistence.

This module is the local store the sync engine runs against. It converts
between database rows and domain models and keeps every uid-keyed
operation scoped by (account_id, folder, uid): IMAP only guarantees UID
uniqueness within one folder.
"""
import logging
import sqlite3
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from smartmail.models import Account, Attachment, Category, Email
from smartmail.storage import db
from smartmail.storage.credentials import decrypt_password, encrypt_password
from smartmail.utils.errors import AccountError, AccountNotFoundError
from smartmail.utils.parsing import has_flag


logger = logging.getLogger(__name__)

CATEGORY_TYPES = ("system", "custom", "folder")

_EMAIL_LIST_COLUMNS = """
    id, account_id, folder, uid, sender, sender_email, subject, date,
    smart_category, is_read, is_flagged, has_attachments,
    ai_summary, ai_reasoning, confidence
"""


# ============================================================================
# Accounts
# ============================================================================

def add_account(account: Account) -> Account:
    """
    Insert a new account. The password is encrypted before it is stored.

    Raises:
        AccountError: If the id is empty or already taken.
    """
    if not account.id:
        raise AccountError("Account id must be set")

    existing = db.fetchone("SELECT id FROM accounts WHERE id = ?", (account.id,))
    if existing:
        raise AccountError(f"Account with ID {account.id} already exists")

    db.execute(
        """
        INSERT INTO accounts (
            id, name, email, provider, imap_host, imap_port, security,
            username, password, color, last_sync_uid, storage_used, storage_total
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            account.id,
            account.name,
            account.email.strip(),
            account.provider,
            account.imap_host,
            account.imap_port,
            account.security,
            account.username,
            encrypt_password(account.password),
            account.color,
            account.last_sync_uid,
            account.storage_used,
            account.storage_total,
        )
    )
    return account


def get_account(account_id: str, with_password: bool = True) -> Account:
    """
    Load an account.

    Args:
        account_id: The account ID.
        with_password: Decrypt and include the password (for a session).

    Raises:
        AccountNotFoundError: If no such account exists.
        DecryptionError: If the stored password cannot be decrypted.
    """
    row = db.fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))
    if not row:
        raise AccountNotFoundError(f"Account with ID {account_id} not found")
    return _row_to_account(row, with_password=with_password)


def list_accounts() -> List[Account]:
    """List all accounts, without passwords."""
    rows = db.fetchall("SELECT * FROM accounts ORDER BY name, id")
    return [_row_to_account(row, with_password=False) for row in rows]


def delete_account(account_id: str) -> None:
    """Delete an account; its emails and attachments cascade."""
    db.execute("DELETE FROM accounts WHERE id = ?", (account_id,))


def update_account_sync(
    account_id: str,
    last_sync_uid: int,
    last_sync_time: Optional[str] = None
) -> None:
    """
    Advance the account's sync cursor.

    The cursor only moves forward: a smaller value than the stored one is
    ignored. ``last_sync_time`` is kept unchanged when None.
    """
    db.execute(
        """
        UPDATE accounts
        SET last_sync_uid = MAX(COALESCE(last_sync_uid, 0), ?),
            last_sync_time = COALESCE(?, last_sync_time)
        WHERE id = ?
        """,
        (int(last_sync_uid), last_sync_time, account_id)
    )


def update_account_quota(account_id: str, used: int, total: int) -> None:
    """Store the account's quota (KB)."""
    db.execute(
        "UPDATE accounts SET storage_used = ?, storage_total = ? WHERE id = ?",
        (int(used), int(total), account_id)
    )


# ============================================================================
# Emails
# ============================================================================

def save_email(email: Email) -> Email:
    """
    Insert or update an email keyed by (account_id, folder, uid).

    Re-saving the same key refreshes the server-derived columns and never
    creates a second row. Categorizer-owned columns (smart_category,
    ai_summary, ai_reasoning, confidence) are only overwritten when the
    incoming record carries a category.

    Returns:
        The email with its id populated.

    Raises:
        StorageError: If the write fails.
    """
    if not email.id:
        email.id = Email.make_id(email.account_id, email.folder, email.uid)

    with db.transaction() as cursor:
        cursor.execute(
            """
            INSERT INTO emails (
                id, account_id, folder, uid, sender, sender_email, subject,
                body, body_html, date, smart_category, is_read, is_flagged,
                has_attachments, ai_summary, ai_reasoning, confidence
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(account_id, folder, uid) DO UPDATE SET
                sender = excluded.sender,
                sender_email = excluded.sender_email,
                subject = excluded.subject,
                body = excluded.body,
                body_html = excluded.body_html,
                date = excluded.date,
                is_read = excluded.is_read,
                is_flagged = excluded.is_flagged,
                has_attachments = excluded.has_attachments,
                smart_category = COALESCE(excluded.smart_category, emails.smart_category),
                ai_summary = CASE WHEN excluded.smart_category IS NOT NULL
                    THEN excluded.ai_summary ELSE emails.ai_summary END,
                ai_reasoning = CASE WHEN excluded.smart_category IS NOT NULL
                    THEN excluded.ai_reasoning ELSE emails.ai_reasoning END,
                confidence = CASE WHEN excluded.smart_category IS NOT NULL
                    THEN excluded.confidence ELSE emails.confidence END
            """,
            (
                email.id,
                email.account_id,
                email.folder,
                email.uid,
                email.sender or "Unknown",
                email.sender_email or "",
                email.subject or "(No Subject)",
                email.body or "",
                email.body_html,
                email.date,
                email.smart_category,
                1 if email.is_read else 0,
                1 if email.is_flagged else 0,
                1 if (email.has_attachments or email.attachments) else 0,
                email.ai_summary,
                email.ai_reasoning,
                email.confidence or 0.0,
            )
        )

        # The stored id wins if the row pre-dates the current id scheme
        row = cursor.execute(
            "SELECT id FROM emails WHERE account_id = ? AND folder = ? AND uid = ?",
            (email.account_id, email.folder, email.uid)
        ).fetchone()
        email.id = row["id"]

        if email.attachments:
            cursor.execute("DELETE FROM attachments WHERE email_id = ?", (email.id,))
            for attachment in email.attachments:
                attachment.id = attachment.id or str(uuid.uuid4())
                attachment.email_id = email.id
                cursor.execute(
                    """
                    INSERT INTO attachments (id, email_id, filename, content_type, size, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        attachment.id,
                        attachment.email_id,
                        attachment.filename or "unnamed",
                        attachment.content_type or "application/octet-stream",
                        attachment.size or 0,
                        attachment.data,
                    )
                )

    return email


def get_emails(account_id: str) -> List[Email]:
    """
    List an account's emails, newest first.

    Bodies are not loaded (too large for list views).
    """
    rows = db.fetchall(
        f"SELECT {_EMAIL_LIST_COLUMNS} FROM emails WHERE account_id = ? ORDER BY date DESC",
        (account_id,)
    )
    return [_row_to_email(row) for row in rows]


def get_email(account_id: str, folder: str, uid: int) -> Optional[Email]:
    """Get one email (with body and attachments) by its identity."""
    row = db.fetchone(
        "SELECT * FROM emails WHERE account_id = ? AND folder = ? AND uid = ?",
        (account_id, folder, uid)
    )
    if not row:
        return None
    email = _row_to_email(row)
    email.attachments = _load_attachments(email.id, with_data=True)
    return email


def get_email_content(email_id: str) -> Optional[Tuple[str, Optional[str]]]:
    """Return (body, body_html) for an email, or None."""
    row = db.fetchone("SELECT body, body_html FROM emails WHERE id = ?", (email_id,))
    if not row:
        return None
    return row["body"] or "", row["body_html"]


def get_all_uids_for_folder(account_id: str, folder: str) -> List[int]:
    """All locally stored UIDs of one folder."""
    rows = db.fetchall(
        "SELECT uid FROM emails WHERE account_id = ? AND folder = ? ORDER BY uid",
        (account_id, folder)
    )
    return [row["uid"] for row in rows]


def get_max_uid_for_folder(account_id: str, folder: str) -> int:
    """Highest locally stored UID of one folder, or 0."""
    row = db.fetchone(
        "SELECT MAX(uid) AS max_uid FROM emails WHERE account_id = ? AND folder = ?",
        (account_id, folder)
    )
    return (row["max_uid"] or 0) if row else 0


def delete_emails_by_uid(account_id: str, folder: str, uids: Iterable[int]) -> int:
    """
    Delete the given UIDs of one folder.

    Returns:
        Number of rows removed.
    """
    params = [(account_id, folder, int(uid)) for uid in uids]
    if not params:
        return 0
    return db.execute_many(
        "DELETE FROM emails WHERE account_id = ? AND folder = ? AND uid = ?",
        params
    )


def update_email_read_status(account_id: str, folder: str, uid: int, is_read: bool) -> int:
    """Set is_read for one email. Returns the number of rows changed."""
    cursor = db.execute(
        "UPDATE emails SET is_read = ? WHERE account_id = ? AND folder = ? AND uid = ?",
        (1 if is_read else 0, account_id, folder, uid)
    )
    return cursor.rowcount


def update_email_flag_status(account_id: str, folder: str, uid: int, is_flagged: bool) -> int:
    """Set is_flagged for one email. Returns the number of rows changed."""
    cursor = db.execute(
        "UPDATE emails SET is_flagged = ? WHERE account_id = ? AND folder = ? AND uid = ?",
        (1 if is_flagged else 0, account_id, folder, uid)
    )
    return cursor.rowcount


def update_flags_by_uid(account_id: str, folder: str, flags_by_uid: Dict[int, Iterable[str]]) -> int:
    """
    Mirror server flags onto stored rows.

    Only rows whose read/flagged state differs are written.

    Returns:
        Number of rows changed.
    """
    params = []
    for uid, flags in flags_by_uid.items():
        is_read = 1 if has_flag(flags, "\\Seen") else 0
        is_flagged = 1 if has_flag(flags, "\\Flagged") else 0
        params.append((is_read, is_flagged, account_id, folder, int(uid), is_read, is_flagged))
    if not params:
        return 0
    return db.execute_many(
        """
        UPDATE emails SET is_read = ?, is_flagged = ?
        WHERE account_id = ? AND folder = ? AND uid = ?
          AND (is_read != ? OR is_flagged != ?)
        """,
        params
    )


def update_email_smart_category(
    email_id: str,
    smart_category: Optional[str],
    ai_summary: Optional[str] = None,
    ai_reasoning: Optional[str] = None,
    confidence: float = 0.0
) -> int:
    """Store the external categorizer's verdict for one email."""
    cursor = db.execute(
        """
        UPDATE emails
        SET smart_category = ?, ai_summary = ?, ai_reasoning = ?, confidence = ?
        WHERE id = ?
        """,
        (smart_category, ai_summary, ai_reasoning, confidence, email_id)
    )
    return cursor.rowcount


def get_unread_count(account_id: str) -> int:
    row = db.fetchone(
        "SELECT COUNT(*) AS count FROM emails WHERE account_id = ? AND is_read = 0",
        (account_id,)
    )
    return row["count"] if row else 0


def get_total_unread_count() -> int:
    row = db.fetchone("SELECT COUNT(*) AS count FROM emails WHERE is_read = 0")
    return row["count"] if row else 0


def migrate_folder(old_name: str, new_name: str, account_id: Optional[str] = None) -> int:
    """
    Move stored emails (and a same-named folder category) from one display folder
    to another.

    Used when the display name of a server folder changes between builds.
    Rows that already exist under the new name are kept and the old
    duplicates dropped.

    Args:
        old_name: Previous display folder.
        new_name: New display folder.
        account_id: Restrict the email migration to one account.

    Returns:
        Number of emails moved.
    """
    if old_name == new_name:
        return 0

    account_clause = " AND account_id = ?" if account_id else ""
    account_params: Tuple[str, ...] = (account_id,) if account_id else ()

    with db.transaction() as cursor:
        cursor.execute(
            f"""
            UPDATE OR IGNORE emails
            SET folder = ?, id = account_id || ':' || ? || ':' || uid
            WHERE folder = ?{account_clause}
            """,
            (new_name, new_name, old_name) + account_params
        )
        moved = cursor.rowcount
        # Leftovers collided with rows already present under the new name
        cursor.execute(
            f"DELETE FROM emails WHERE folder = ?{account_clause}",
            (old_name,) + account_params
        )

        # Only folder categories follow; a user label of the same name stays
        cursor.execute(
            "UPDATE OR IGNORE categories SET name = ? WHERE name = ? AND type = 'folder'",
            (new_name, old_name)
        )
        cursor.execute(
            "DELETE FROM categories WHERE name = ? AND type = 'folder'",
            (old_name,)
        )

    if moved > 0:
        logger.info(f"Migrated {moved} emails from {old_name} to {new_name}")
    return moved


# ============================================================================
# Attachments
# ============================================================================

def get_email_attachments(email_id: str) -> List[Attachment]:
    """List an email's attachments without their data."""
    return _load_attachments(email_id, with_data=False)


def get_attachment(attachment_id: str) -> Optional[Attachment]:
    """Get one attachment including its data."""
    row = db.fetchone("SELECT * FROM attachments WHERE id = ?", (attachment_id,))
    if not row:
        return None
    return _row_to_attachment(row, with_data=True)


def _load_attachments(email_id: str, with_data: bool) -> List[Attachment]:
    columns = "*" if with_data else "id, email_id, filename, content_type, size"
    rows = db.fetchall(
        f"SELECT {columns} FROM attachments WHERE email_id = ? ORDER BY filename",
        (email_id,)
    )
    return [_row_to_attachment(row, with_data=with_data) for row in rows]


# ============================================================================
# Categories
# ============================================================================

def get_categories() -> List[Category]:
    rows = db.fetchall("SELECT name, type, icon FROM categories ORDER BY name")
    return [Category(name=row["name"], type=row["type"], icon=row["icon"]) for row in rows]


def get_category(name: str) -> Optional[Category]:
    row = db.fetchone("SELECT name, type, icon FROM categories WHERE name = ?", (name,))
    if not row:
        return None
    return Category(name=row["name"], type=row["type"], icon=row["icon"])


def add_category(name: str, category_type: str = "custom", icon: Optional[str] = None) -> bool:
    """
    Add a category. Existing names are left untouched.

    Returns:
        True if a new category was inserted.
    """
    if category_type not in CATEGORY_TYPES:
        raise ValueError(f"Unknown category type: {category_type}")
    cursor = db.execute(
        "INSERT OR IGNORE INTO categories (name, type, icon) VALUES (?, ?, ?)",
        (name, category_type, icon)
    )
    return cursor.rowcount > 0


def update_category_type(name: str, new_type: str) -> int:
    if new_type not in CATEGORY_TYPES:
        raise ValueError(f"Unknown category type: {new_type}")
    cursor = db.execute("UPDATE categories SET type = ? WHERE name = ?", (new_type, name))
    return cursor.rowcount


def delete_category(name: str) -> int:
    """
    Delete a category and untag every email that referenced it.

    Returns:
        Number of emails whose smart_category was cleared.
    """
    logger.info(f"Deleting category \"{name}\"")
    with db.transaction() as cursor:
        cursor.execute("DELETE FROM categories WHERE name = ?", (name,))
        cursor.execute(
            "UPDATE emails SET smart_category = NULL WHERE smart_category = ?",
            (name,)
        )
        changes = cursor.rowcount
    logger.info(f"Deleted category \"{name}\". Emails affected: {changes}")
    return changes


def rename_category(old_name: str, new_name: str) -> int:
    """
    Rename a category, merging into ``new_name`` if it already exists.

    Returns:
        Number of emails re-tagged.
    """
    if old_name == new_name:
        return 0
    logger.info(f"Renaming category from \"{old_name}\" to \"{new_name}\"")
    with db.transaction() as cursor:
        cursor.execute(
            """
            INSERT OR IGNORE INTO categories (name, type, icon)
            SELECT ?, type, icon FROM categories WHERE name = ?
            """,
            (new_name, old_name)
        )
        cursor.execute(
            "INSERT OR IGNORE INTO categories (name, type) VALUES (?, 'custom')",
            (new_name,)
        )
        cursor.execute(
            "UPDATE emails SET smart_category = ? WHERE smart_category = ?",
            (new_name, old_name)
        )
        changes = cursor.rowcount
        cursor.execute("DELETE FROM categories WHERE name = ?", (old_name,))
    return changes


# ============================================================================
# Helper functions for row conversion
# ============================================================================

def _row_to_account(row: sqlite3.Row, with_password: bool) -> Account:
    password = ""
    if with_password and row["password"]:
        password = decrypt_password(row["password"])

    return Account(
        id=row["id"],
        name=row["name"] or "",
        email=(row["email"] or "").strip(),
        provider=row["provider"] or "",
        imap_host=row["imap_host"] or "",
        imap_port=row["imap_port"] or 993,
        security=row["security"] or "ssl",
        username=row["username"] or "",
        password=password,
        color=row["color"] or "",
        last_sync_uid=row["last_sync_uid"] or 0,
        last_sync_time=row["last_sync_time"],
        storage_used=row["storage_used"] or 0,
        storage_total=row["storage_total"] or 0,
    )


def _row_to_email(row: sqlite3.Row) -> Email:
    keys = row.keys()
    return Email(
        id=row["id"],
        account_id=row["account_id"],
        folder=row["folder"],
        uid=row["uid"],
        sender=row["sender"] or "",
        sender_email=row["sender_email"] or "",
        subject=row["subject"] or "",
        body=(row["body"] or "") if "body" in keys else "",
        body_html=row["body_html"] if "body_html" in keys else None,
        date=row["date"] or "",
        smart_category=row["smart_category"],
        is_read=bool(row["is_read"]),
        is_flagged=bool(row["is_flagged"]),
        has_attachments=bool(row["has_attachments"]),
        ai_summary=row["ai_summary"],
        ai_reasoning=row["ai_reasoning"],
        confidence=row["confidence"] or 0.0,
    )


def _row_to_attachment(row: sqlite3.Row, with_data: bool) -> Attachment:
    return Attachment(
        id=row["id"],
        email_id=row["email_id"],
        filename=row["filename"] or "",
        content_type=row["content_type"] or "",
        size=row["size"] or 0,
        data=row["data"] if with_data else None,
    )
