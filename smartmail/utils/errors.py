"""
Centralized error hierarchy for the sync core.

This module provides a base exception class and specific error types
for different parts of the application, along with a helper for converting
technical errors to the single summary message shown to the user.
"""
from typing import Any, Optional, Union


class EmailClientError(Exception):
    """
    Base exception class for all application errors.

    All application-specific exceptions inherit from this class
    to enable centralized error handling and user-friendly message mapping.
    """
    pass


class ImapError(EmailClientError):
    """Raised when IMAP operations fail."""
    transient = False


class ImapConnectionError(ImapError):
    """
    Raised when the connection to the IMAP server cannot be used.

    ``reason`` is one of 'timeout', 'network' or 'tls'. These failures are
    transient: callers may retry once.
    """
    transient = True

    def __init__(self, message: str, reason: str = "network"):
        super().__init__(message)
        self.reason = reason


class ImapAuthenticationError(ImapError):
    """Raised when the server rejects the credentials. Never retried."""
    transient = False
    reason = "auth"


class ProtocolError(ImapError):
    """Raised when the server answers with an unexpected response shape."""
    pass


class MessageParseError(EmailClientError):
    """Raised when a message source cannot be parsed."""

    def __init__(self, message: str, uid: Optional[int] = None):
        super().__init__(message)
        self.uid = uid


class StorageError(EmailClientError):
    """Raised when a local store write fails."""
    pass


class DecryptionError(EmailClientError):
    """Raised when a stored credential cannot be decrypted."""
    pass


class SyncError(EmailClientError):
    """Raised when synchronization operations fail."""
    pass


class SyncInProgressError(SyncError):
    """Raised when a sync is requested for an account that is already syncing."""

    def __init__(self, account_id: str):
        super().__init__(f"Sync already in progress for account {account_id}")
        self.account_id = account_id


class SyncCancelledError(SyncError):
    """Raised internally when a sync is cancelled between folders."""
    pass


class AccountError(EmailClientError):
    """Raised when account management operations fail."""
    pass


class AccountNotFoundError(AccountError):
    """Raised when an account is not found."""
    pass


class FolderError(EmailClientError):
    """Raised when folder operations fail."""
    pass


class FolderNotFoundError(FolderError):
    """Raised when a display folder has no server-side counterpart."""

    def __init__(self, folder: str):
        super().__init__(f"No server folder found for '{folder}'")
        self.folder = folder


class MailActionError(EmailClientError):
    """
    Raised when a flag or delete mutation could not be confirmed by the server.

    The local store has already been updated optimistically. ``previous``
    holds the state before that write (a bool for flags, an Email snapshot
    for deletions) so the caller can revert it.
    """

    def __init__(self, message: str, previous: Any = None):
        super().__init__(message)
        self.previous = previous


def human_friendly_message(exc: Union[EmailClientError, Exception]) -> str:
    """
    Convert technical error exceptions to a single user-facing summary.

    Args:
        exc: The exception to convert.

    Returns:
        A user-friendly error message string.
    """
    error_msg = str(exc) if str(exc) else ""

    if isinstance(exc, ImapAuthenticationError):
        return (
            "Could not sign in to your email account. Please check "
            "your email address and password."
        )
    elif isinstance(exc, ImapConnectionError):
        if exc.reason == "timeout":
            return (
                "The connection to the email server timed out. This might be "
                "due to a slow internet connection or server issues. Please try again."
            )
        elif exc.reason == "tls":
            return (
                "A secure connection to the email server could not be established. "
                "Please check the server settings for this account."
            )
        return (
            "Could not connect to the email server. Please check your "
            "internet connection and the server settings for this account."
        )
    elif isinstance(exc, ProtocolError):
        return (
            "The email server sent an unexpected response. "
            "Please try again later."
        )
    elif isinstance(exc, ImapError):
        return (
            "An error occurred while accessing your email. "
            "Please try again."
        )
    elif isinstance(exc, StorageError):
        return (
            "Messages could not be saved locally. Please check the free disk "
            "space and try syncing again."
        )
    elif isinstance(exc, DecryptionError):
        return (
            "The stored password could not be decrypted. "
            "Please re-enter the password for this account."
        )
    elif isinstance(exc, SyncInProgressError):
        return "Sync already in progress"
    elif isinstance(exc, SyncCancelledError):
        return "Sync cancelled"
    elif isinstance(exc, SyncError):
        return (
            "An error occurred while synchronizing your email. "
            "Some messages may not have been updated."
        )
    elif isinstance(exc, AccountNotFoundError):
        return "The requested account could not be found."
    elif isinstance(exc, FolderNotFoundError):
        return f"The folder '{exc.folder}' no longer exists on the server."
    elif isinstance(exc, MailActionError):
        return "The change could not be applied on the server."
    elif isinstance(exc, EmailClientError):
        if error_msg:
            return f"An error occurred: {error_msg}"
        return "An unexpected error occurred. Please try again."

    # Standard Python exceptions
    elif isinstance(exc, TimeoutError):
        return (
            "The operation timed out. This might be due to a slow connection "
            "or server issues. Please try again."
        )
    elif isinstance(exc, ConnectionError):
        return (
            "Could not connect to the server. Please check your internet "
            "connection and try again."
        )
    elif isinstance(exc, ValueError):
        return f"Invalid input: {error_msg}"

    return f"An error occurred: {error_msg or 'Unknown error'}"
