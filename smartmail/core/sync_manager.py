"""
Synchronization manager for the mail client.

This module orchestrates synchronization between remote mailboxes (via IMAP)
and the local store (via repository functions). A pass walks every
selectable folder, diffs remote UIDs against stored ones, fetches what is
missing, reconciles deletions and advances the account's sync cursor.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional, Sequence, Set

from smartmail import config
from smartmail.core.folder_resolver import (
    build_folder_map,
    migrate_legacy_folders,
    register_categories,
)
from smartmail.core.session import SessionManager
from smartmail.models import Account, Email, FetchedMessage, SyncResult
from smartmail.network.imap_client import ImapClient
from smartmail.storage import cache_repo
from smartmail.utils.errors import (
    EmailClientError,
    ImapAuthenticationError,
    ImapConnectionError,
    ImapError,
    MessageParseError,
    SyncCancelledError,
    SyncInProgressError,
    human_friendly_message,
)
from smartmail.utils.parsing import has_flag, parse_message


logger = logging.getLogger(__name__)

# progress_callback(display_folder, new_in_folder, folder_index, folder_total)
ProgressCallback = Callable[[str, int, int, int], None]


class SyncRegistry:
    """
    Thread-safe registry of accounts with a sync in flight.

    At most one sync runs per account; different accounts may sync in
    parallel.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()

    def try_acquire(self, account_id: str) -> bool:
        with self._lock:
            if account_id in self._in_flight:
                return False
            self._in_flight.add(account_id)
            return True

    def release(self, account_id: str) -> None:
        with self._lock:
            self._in_flight.discard(account_id)

    def is_syncing(self, account_id: str) -> bool:
        with self._lock:
            return account_id in self._in_flight

    @contextmanager
    def claim(self, account_id: str) -> Iterator[None]:
        """
        Hold the account for the duration of the block.

        Raises:
            SyncInProgressError: If the account is already claimed.
        """
        if not self.try_acquire(account_id):
            raise SyncInProgressError(account_id)
        try:
            yield
        finally:
            self.release(account_id)


# Shared by every SyncManager that is not given its own registry
default_registry = SyncRegistry()


@dataclass(slots=True)
class FolderOutcome:
    """What one folder pass committed."""
    new: int = 0
    removed: int = 0
    cursor_candidate: int = 0
    failed: List[int] = field(default_factory=list)


class _Connection:
    """The live client of one sync pass, with a single reconnect per call."""

    def __init__(self, session_manager: SessionManager, account: Account):
        self.session_manager = session_manager
        self.account = account
        self.client: Optional[ImapClient] = None

    def open(self) -> None:
        self.client = self.session_manager.connect(self.account)

    def call(self, fn: Callable[[ImapClient], object]):
        try:
            return fn(self.client)
        except ImapConnectionError as e:
            logger.warning(f"Connection lost ({e}), reconnecting and retrying once")
            self.client = self.session_manager.reconnect(self.client, self.account)
            return fn(self.client)

    def close(self) -> None:
        if self.client is not None:
            self.session_manager.close(self.client)
            self.client = None


class SyncManager:
    """
    Manages synchronization between remote mailboxes and the local store.

    Thread-safe design but does not create threads internally.
    Callers decide which thread runs ``sync_account``.
    """

    def __init__(
        self,
        session_manager: Optional[SessionManager] = None,
        registry: Optional[SyncRegistry] = None,
        batch_size: Optional[int] = None
    ):
        """
        Initialize the sync manager.

        Args:
            session_manager: Source of IMAP sessions.
            registry: Single-flight registry (process-wide default if None).
            batch_size: Messages per UID FETCH request.
        """
        self.session_manager = session_manager or SessionManager()
        self.registry = registry or default_registry
        self.batch_size = max(1, batch_size or config.SYNC_FETCH_BATCH_SIZE)

    def sync_account(
        self,
        account: Account,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> SyncResult:
        """
        Run one full sync pass for an account.

        Never raises for remote or storage failures; they are reported in
        the returned SyncResult.

        Args:
            account: The account, with its password loaded.
            cancel_event: Checked between folders; set it to stop the pass.
            progress_callback: Called after each folder commits.
        """
        try:
            with self.registry.claim(account.id):
                return self._run_pass(account, cancel_event, progress_callback)
        except SyncInProgressError as e:
            logger.warning(str(e))
            return SyncResult(success=False, error=human_friendly_message(e))

    def _run_pass(
        self,
        account: Account,
        cancel_event: Optional[threading.Event],
        progress_callback: Optional[ProgressCallback]
    ) -> SyncResult:
        result = SyncResult()
        connection = _Connection(self.session_manager, account)
        cursor = account.last_sync_uid or 0
        # Lowest UID skipped anywhere in this pass; the cursor stays below it
        lowest_failed: Optional[int] = None
        logger.info(f"Starting sync for account {account.id} ({account.email})")

        try:
            connection.open()
            remote_folders = connection.call(lambda client: client.list_folders())
            folder_map = build_folder_map(remote_folders)
            register_categories(folder_map)
            migrate_legacy_folders(folder_map, account_id=account.id)

            entries = folder_map.items()
            total = len(entries)
            for index, (path, display) in enumerate(entries, start=1):
                if cancel_event is not None and cancel_event.is_set():
                    raise SyncCancelledError(f"Sync of account {account.id} cancelled")

                # Owned here so rows committed before a retry or an abort are counted
                outcome = FolderOutcome()
                try:
                    connection.call(
                        lambda client: self._sync_folder(client, account, path, display, outcome)
                    )
                except (ImapConnectionError, ImapAuthenticationError):
                    raise
                except ImapError as e:
                    logger.warning(f"Skipping folder {display} ({path}): {e}")
                    continue
                finally:
                    result.emails_synced += outcome.new

                if outcome.failed:
                    lowest = min(outcome.failed)
                    lowest_failed = lowest if lowest_failed is None else min(lowest_failed, lowest)

                candidate = outcome.cursor_candidate
                if lowest_failed is not None:
                    candidate = min(candidate, lowest_failed - 1)
                if candidate > cursor:
                    cursor = candidate
                    cache_repo.update_account_sync(account.id, cursor)

                result.folders_synced += 1
                if progress_callback:
                    progress_callback(display, outcome.new, index, total)

            self._refresh_quota(connection, account)

            sync_time = datetime.now(timezone.utc).isoformat()
            cache_repo.update_account_sync(account.id, cursor, sync_time)
            account.last_sync_time = sync_time
            result.success = True
            logger.info(
                f"Sync for account {account.id} finished: {result.emails_synced} new emails "
                f"in {result.folders_synced} folders"
            )
        except SyncCancelledError as e:
            logger.info(str(e))
            result.cancelled = True
            result.error = human_friendly_message(e)
        except EmailClientError as e:
            logger.error(f"Sync for account {account.id} aborted: {e}")
            result.error = human_friendly_message(e)
        except Exception as e:
            logger.exception(f"Unexpected error syncing account {account.id}")
            result.error = human_friendly_message(e)
        finally:
            connection.close()
            account.last_sync_uid = max(account.last_sync_uid or 0, cursor)

        return result

    def _sync_folder(
        self,
        client: ImapClient,
        account: Account,
        path: str,
        display: str,
        outcome: FolderOutcome
    ) -> FolderOutcome:
        """
        Synchronize one folder into ``outcome``. Safe to re-run after a
        dropped connection: it re-diffs and only fetches what is still
        missing, and ``outcome.new`` keeps counting across the attempts.
        """
        # Messages skipped by an earlier attempt are fetched again
        outcome.failed.clear()
        logger.info(f"Syncing folder {display} ({path})")

        # Read-only so that fetching RFC822 leaves \Seen untouched
        with client.mailbox_lock(path, readonly=True) as lock:
            local_uids = set(cache_repo.get_all_uids_for_folder(account.id, display))

            if lock.exists == 0:
                outcome.removed = cache_repo.delete_emails_by_uid(account.id, display, local_uids)
                logger.info(f"Folder {display} is empty, removed {outcome.removed} local emails")
                return outcome

            remote = client.list_uid_flags()
            to_fetch = sorted(set(remote) - local_uids)
            to_delete = local_uids - set(remote)

            unchanged = {uid: flags for uid, flags in remote.items() if uid in local_uids}
            if unchanged:
                updated = cache_repo.update_flags_by_uid(account.id, display, unchanged)
                if updated:
                    logger.debug(f"Updated flags of {updated} emails in {display}")

            for start in range(0, len(to_fetch), self.batch_size):
                batch = to_fetch[start:start + self.batch_size]
                self._fetch_batch(client, account, display, batch, outcome)

            if to_delete:
                outcome.removed = cache_repo.delete_emails_by_uid(account.id, display, to_delete)

        candidate = cache_repo.get_max_uid_for_folder(account.id, display)
        if outcome.failed:
            candidate = min(candidate, min(outcome.failed) - 1)
        outcome.cursor_candidate = max(candidate, 0)

        logger.info(
            f"Folder {display}: {outcome.new} new, {outcome.removed} removed, "
            f"{len(outcome.failed)} skipped"
        )
        return outcome

    def _fetch_batch(
        self,
        client: ImapClient,
        account: Account,
        display: str,
        batch: Sequence[int],
        outcome: FolderOutcome
    ) -> None:
        wanted = set(batch)
        seen: Set[int] = set()

        try:
            for message in client.fetch(batch):
                if message.uid not in wanted or message.uid in seen:
                    # Unsolicited FETCH for another message
                    continue
                seen.add(message.uid)
                try:
                    email = self._to_email(account, display, message)
                except MessageParseError as e:
                    logger.warning(f"Skipping message UID {message.uid} in {display}: {e}")
                    outcome.failed.append(message.uid)
                    continue
                cache_repo.save_email(email)
                outcome.new += 1
        except (ImapConnectionError, ImapAuthenticationError):
            raise
        except ImapError as e:
            remaining = [uid for uid in batch if uid not in seen]
            if len(batch) == 1:
                logger.warning(f"Skipping message UID {batch[0]} in {display}: {e}")
                outcome.failed.extend(remaining)
                return
            logger.warning(f"Fetching UIDs {list(batch)} in {display} failed ({e}), retrying one by one")
            for uid in remaining:
                self._fetch_batch(client, account, display, [uid], outcome)
            return

        missing = wanted - seen
        if missing:
            logger.warning(f"Server returned no data for UIDs {sorted(missing)} in {display}")
            outcome.failed.extend(missing)

    @staticmethod
    def _to_email(account: Account, display: str, message: FetchedMessage) -> Email:
        parsed = parse_message(message.source, uid=message.uid)
        return Email(
            id=Email.make_id(account.id, display, message.uid),
            account_id=account.id,
            folder=display,
            uid=message.uid,
            sender=parsed.sender,
            sender_email=parsed.sender_email,
            subject=parsed.subject,
            body=parsed.body,
            body_html=parsed.body_html,
            date=parsed.date,
            is_read=has_flag(message.flags, "\\Seen"),
            is_flagged=has_flag(message.flags, "\\Flagged"),
            has_attachments=bool(parsed.attachments),
            attachments=parsed.attachments,
        )

    @staticmethod
    def _refresh_quota(connection: _Connection, account: Account) -> None:
        try:
            quota = connection.call(lambda client: client.get_quota(config.SERVER_INBOX))
        except ImapError as e:
            logger.warning(f"Could not read quota for account {account.id}: {e}")
            return
        if quota is None:
            logger.debug(f"No quota reported for account {account.id}")
            return
        cache_repo.update_account_quota(account.id, quota.used_kb, quota.limit_kb)
        account.storage_used = quota.used_kb
        account.storage_total = quota.limit_kb
