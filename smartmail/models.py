"""
Core domain models for the sync core.

This module contains pure domain models (dataclasses) without any database
or network dependencies. These models represent the core business entities
and the result objects handed back to the UI layer.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional


@dataclass(slots=True)
class Account:
    """Represents a mailbox credential set and its sync state."""
    id: str = ""
    name: str = ""
    email: str = ""
    provider: str = ""  # e.g., 'gmx', 'webde', 'gmail', 'custom'
    imap_host: str = ""
    imap_port: int = 993
    security: str = "ssl"  # 'ssl', 'starttls' or 'plain'
    username: str = ""
    password: str = ""  # Only populated when loaded for a session
    color: str = ""
    last_sync_uid: int = 0
    last_sync_time: Optional[str] = None
    storage_used: int = 0  # KB
    storage_total: int = 0  # KB

    @property
    def login_name(self) -> str:
        """Name used for IMAP LOGIN (explicit username, else the address)."""
        return self.username or self.email


@dataclass(slots=True)
class Attachment:
    """Represents an email attachment stored with its message."""
    id: Optional[str] = None
    email_id: str = ""
    filename: str = "attachment"
    content_type: str = "application/octet-stream"
    size: int = 0
    data: Optional[bytes] = None


@dataclass(slots=True)
class Email:
    """A locally persisted representation of one remote message."""
    id: str = ""
    account_id: str = ""
    folder: str = ""
    uid: int = 0
    sender: str = ""
    sender_email: str = ""
    subject: str = ""
    body: str = ""
    body_html: Optional[str] = None
    date: str = ""  # ISO-8601
    smart_category: Optional[str] = None
    is_read: bool = False
    is_flagged: bool = False
    has_attachments: bool = False
    ai_summary: Optional[str] = None
    ai_reasoning: Optional[str] = None
    confidence: float = 0.0
    attachments: List[Attachment] = field(default_factory=list)

    @staticmethod
    def make_id(account_id: str, folder: str, uid: int) -> str:
        """Derive the row id from the (account, folder, uid) identity."""
        return f"{account_id}:{folder}:{uid}"


@dataclass(slots=True)
class Category:
    """A named label; type is 'system', 'custom' or 'folder'."""
    name: str = ""
    type: str = "custom"
    icon: Optional[str] = None


@dataclass(slots=True)
class RemoteFolder:
    """A mailbox as reported by the server's LIST response."""
    name: str = ""  # Leaf name, decoded for display
    path: str = ""  # Full server path, used for addressing
    delimiter: Optional[str] = "/"
    flags: FrozenSet[str] = frozenset()
    special_use: Optional[str] = None  # e.g. '\\Sent'

    @property
    def selectable(self) -> bool:
        lowered = {flag.lower() for flag in self.flags}
        return "\\noselect" not in lowered and "\\nonexistent" not in lowered


@dataclass(slots=True)
class FetchedMessage:
    """One FETCH response item: uid, flags and (optionally) raw source."""
    uid: int = 0
    flags: FrozenSet[str] = frozenset()
    source: Optional[bytes] = None


@dataclass(slots=True)
class ParsedMessage:
    """Normalized fields extracted from a message source."""
    sender: str = "Unknown"
    sender_email: str = ""
    subject: str = "(No Subject)"
    body: str = ""
    body_html: Optional[str] = None
    date: str = ""
    attachments: List[Attachment] = field(default_factory=list)


@dataclass(slots=True)
class Quota:
    """Storage quota in KB as reported by GETQUOTAROOT."""
    used_kb: int = 0
    limit_kb: int = 0


@dataclass(slots=True)
class SyncResult:
    """Upward status contract for one sync pass."""
    success: bool = False
    emails_synced: int = 0
    error: Optional[str] = None
    cancelled: bool = False
    folders_synced: int = 0


@dataclass(slots=True)
class ConnectionTestResult:
    """Upward status contract for a connection test."""
    success: bool = False
    error: Optional[str] = None
