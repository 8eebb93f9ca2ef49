"""
Flag and delete mutations.

Each mutation writes the local store first so the UI updates immediately,
then applies the change on the server inside a scoped session and finally
writes the server's answer back. If the server step fails a
MailActionError carries the pre-write state; reverting is the caller's
decision.
"""
import logging
from typing import Optional

from smartmail.core.folder_resolver import build_folder_map
from smartmail.core.session import SessionManager
from smartmail.models import Account, Email
from smartmail.network.imap_client import ImapClient
from smartmail.storage import cache_repo
from smartmail.utils.errors import EmailClientError, MailActionError


logger = logging.getLogger(__name__)

SEEN = "\\Seen"
FLAGGED = "\\Flagged"


def _require_uid(uid: Optional[int]) -> int:
    if not uid:
        raise ValueError("No UID")
    return int(uid)


class MailActions:
    """Optimistic flag and delete operations on single messages."""

    def __init__(self, session_manager: Optional[SessionManager] = None):
        self.session_manager = session_manager or SessionManager()

    @staticmethod
    def _resolve_path(client: ImapClient, folder: str) -> str:
        return build_folder_map(client.list_folders()).server_path_for(folder)

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def set_flag(self, account: Account, uid: int, folder: str, flag: str, value: bool) -> None:
        """
        Set or clear ``\\Seen`` or ``\\Flagged`` on one message.

        Raises:
            ValueError: If uid is missing or the flag is not supported.
            MailActionError: If the server change failed. ``previous`` is the
                local value before the optimistic write.
        """
        uid = _require_uid(uid)
        if flag not in (SEEN, FLAGGED):
            raise ValueError(f"Unsupported flag: {flag}")

        existing = cache_repo.get_email(account.id, folder, uid)
        previous = None
        if existing is not None:
            previous = existing.is_read if flag == SEEN else existing.is_flagged
        self._write_flag(account.id, folder, uid, flag, value)

        def apply(client: ImapClient):
            path = self._resolve_path(client, folder)
            with client.mailbox_lock(path):
                if value:
                    client.message_flags_add(uid, flag)
                else:
                    client.message_flags_remove(uid, flag)
                return client.get_flags(uid)

        try:
            flags = self.session_manager.run(account, apply)
        except EmailClientError as e:
            logger.error(f"Setting {flag}={value} on UID {uid} in {folder} failed: {e}")
            raise MailActionError(f"Could not update {flag} on message {uid}: {e}", previous=previous) from e

        if flags is None:
            logger.warning(f"UID {uid} vanished from {folder} after flag update")
            return
        cache_repo.update_flags_by_uid(account.id, folder, {uid: flags})
        logger.debug(f"UID {uid} in {folder} now has flags {sorted(flags)}")

    @staticmethod
    def _write_flag(account_id: str, folder: str, uid: int, flag: str, value: bool) -> None:
        if flag == SEEN:
            cache_repo.update_email_read_status(account_id, folder, uid, value)
        else:
            cache_repo.update_email_flag_status(account_id, folder, uid, value)

    def revert_flag(self, account: Account, uid: int, folder: str, flag: str, previous: Optional[bool]) -> None:
        """Restore the local value carried by a MailActionError."""
        if previous is None:
            return
        self._write_flag(account.id, folder, _require_uid(uid), flag, previous)

    def mark_read(self, account: Account, uid: int, folder: str, read: bool = True) -> None:
        self.set_flag(account, uid, folder, SEEN, read)

    def mark_flagged(self, account: Account, uid: int, folder: str, flagged: bool = True) -> None:
        self.set_flag(account, uid, folder, FLAGGED, flagged)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_email(self, account: Account, uid: int, folder: str) -> None:
        """
        Permanently delete one message locally and on the server.

        Raises:
            ValueError: If uid is missing.
            MailActionError: If the server delete failed. ``previous`` is the
                stored Email (or None if it was not stored).
        """
        uid = _require_uid(uid)
        snapshot = cache_repo.get_email(account.id, folder, uid)
        cache_repo.delete_emails_by_uid(account.id, folder, [uid])

        def apply(client: ImapClient):
            path = self._resolve_path(client, folder)
            with client.mailbox_lock(path):
                # A retry after an expunge that already went through finds nothing
                if client.get_flags(uid) is None:
                    return
                client.message_delete(uid)

        try:
            self.session_manager.run(account, apply)
        except EmailClientError as e:
            logger.error(f"Deleting UID {uid} in {folder} failed: {e}")
            raise MailActionError(f"Could not delete message {uid}: {e}", previous=snapshot) from e

        cache_repo.delete_emails_by_uid(account.id, folder, [uid])
        logger.info(f"Deleted UID {uid} from {folder}")

    @staticmethod
    def restore_email(previous: Optional[Email]) -> None:
        """
        Re-insert the snapshot carried by a MailActionError.

        The snapshot keeps its row id and attachment ids. Restore it before
        the next sync of the account; once a pass has run, that pass has
        already reconciled the row against the server and the snapshot may
        be stale. Re-saving onto a row the sync put back updates it in place.
        """
        if previous is None:
            return
        cache_repo.save_email(previous)
