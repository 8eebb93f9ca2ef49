"""
Sync engine tests against the in-memory server.

Covers the full pass: folder resolution, UID diffing, idempotent re-sync,
cursor handling, reconciliation and failure isolation.
"""
import threading

import pytest

from smartmail.core.sync_manager import SyncManager, SyncRegistry
from smartmail.models import Email, Quota
from smartmail.storage import cache_repo
from smartmail.utils.errors import (
    ImapAuthenticationError,
    ImapConnectionError,
    ImapError,
    SyncInProgressError,
)


def _uids(account, folder):
    return cache_repo.get_all_uids_for_folder(account.id, folder)


def _cursor(account):
    return cache_repo.get_account(account.id, with_password=False).last_sync_uid


class TestInitialSync:

    def test_inbox_scenario_stores_three_rows_and_advances_cursor(self, sync_manager, server, account):
        server.mailbox("INBOX").add_many([100, 101, 102])

        result = sync_manager.sync_account(account)

        assert result.success is True
        assert result.emails_synced == 3
        assert result.folders_synced == 1
        assert _uids(account, "Posteingang") == [100, 101, 102]
        assert _cursor(account) == 102

    def test_second_pass_is_idempotent(self, sync_manager, server, account):
        server.mailbox("INBOX").add_many([100, 101, 102])
        sync_manager.sync_account(account)

        result = sync_manager.sync_account(account)

        assert result.success is True
        assert result.emails_synced == 0
        assert len(cache_repo.get_emails(account.id)) == 3
        assert _cursor(account) == 102

    def test_rows_carry_parsed_fields_and_flags(self, sync_manager, server, account):
        server.mailbox("INBOX").add(7, flags={"\\Seen", "\\Flagged"})
        server.mailbox("INBOX").add(8)

        sync_manager.sync_account(account)

        seen = cache_repo.get_email(account.id, "Posteingang", 7)
        unseen = cache_repo.get_email(account.id, "Posteingang", 8)
        assert seen.id == "acc1:Posteingang:7"
        assert seen.subject == "Message 7"
        assert seen.sender == "Alice <alice@example.com>"
        assert seen.sender_email == "alice@example.com"
        assert seen.is_read is True
        assert seen.is_flagged is True
        assert unseen.is_read is False
        assert unseen.is_flagged is False

    def test_fetches_in_ascending_batches(self, sync_manager, server, account):
        server.mailbox("INBOX").add_many([5, 3, 9, 1, 7])

        sync_manager.sync_account(account)

        assert server.fetch_calls == [[1, 3], [5, 7], [9]]

    def test_last_sync_time_recorded(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)

        sync_manager.sync_account(account)

        assert cache_repo.get_account(account.id, with_password=False).last_sync_time


class TestFolders:

    def test_inbox_children_and_same_named_top_level_stay_apart(self, sync_manager, server, account):
        server.mailbox("INBOX", delimiter=".").add(1)
        server.mailbox("INBOX.Bondora", delimiter=".").add(1)
        server.mailbox("Bondora", delimiter=".").add(1)

        result = sync_manager.sync_account(account)

        assert result.success is True
        assert _uids(account, "Posteingang") == [1]
        assert _uids(account, "Posteingang/Bondora") == [1]
        assert _uids(account, "Bondora") == [1]

    def test_special_use_folders_map_to_canonical_names(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        server.mailbox("Sent Items", special_use="\\Sent").add(2)
        server.mailbox("Deleted Items", special_use="\\Trash").add(3)
        server.mailbox("Junk-E-Mail", special_use="\\Junk").add(4)

        sync_manager.sync_account(account)

        assert _uids(account, "Gesendet") == [2]
        assert _uids(account, "Papierkorb") == [3]
        assert _uids(account, "Spam") == [4]

    def test_unselectable_and_virtual_folders_skipped(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        server.mailbox("[Gmail]", flags={"\\Noselect", "\\HasChildren"})
        server.mailbox("[Gmail]/All Mail", special_use="\\All").add(1)

        result = sync_manager.sync_account(account)

        assert result.folders_synced == 1
        assert len(cache_repo.get_emails(account.id)) == 1

    def test_unselectable_folder_on_server_is_skipped_with_warning(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        server.mailbox("Archive").add(2)
        server.select_errors["Archive"] = ImapError("Failed to select folder 'Archive': NO")

        result = sync_manager.sync_account(account)

        assert result.success is True
        assert result.folders_synced == 1
        assert _uids(account, "Archive") == []

    def test_custom_folders_registered_as_folder_categories(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        server.mailbox("Projects/2024").add(1)

        sync_manager.sync_account(account)

        category = cache_repo.get_category("Projects/2024")
        assert category is not None
        assert category.type == "folder"

    def test_legacy_leaf_rows_migrated_without_refetch(self, sync_manager, server, account):
        cache_repo.save_email(Email(account_id=account.id, folder="Bondora", uid=7, subject="old"))
        server.mailbox("INBOX", delimiter=".")
        server.mailbox("INBOX.Bondora", delimiter=".").add(7)

        result = sync_manager.sync_account(account)

        assert result.emails_synced == 0
        assert _uids(account, "Bondora") == []
        moved = cache_repo.get_email(account.id, "Posteingang/Bondora", 7)
        assert moved.id == "acc1:Posteingang/Bondora:7"


class TestReconciliation:

    def test_server_side_deletions_removed_locally(self, sync_manager, server, account):
        inbox = server.mailbox("INBOX").add_many([1, 2, 3])
        sync_manager.sync_account(account)

        del inbox.messages[2]
        sync_manager.sync_account(account)

        assert _uids(account, "Posteingang") == [1, 3]

    def test_emptied_folder_removes_all_rows(self, sync_manager, server, account):
        inbox = server.mailbox("INBOX").add_many([1, 2])
        sync_manager.sync_account(account)

        inbox.messages.clear()
        result = sync_manager.sync_account(account)

        assert result.success is True
        assert _uids(account, "Posteingang") == []

    def test_flag_changes_mirrored_for_existing_rows(self, sync_manager, server, account):
        inbox = server.mailbox("INBOX").add(1)
        sync_manager.sync_account(account)
        assert cache_repo.get_email(account.id, "Posteingang", 1).is_read is False

        inbox.messages[1][0].add("\\Seen")
        sync_manager.sync_account(account)

        assert cache_repo.get_email(account.id, "Posteingang", 1).is_read is True

    def test_categorizer_verdict_survives_resync(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        sync_manager.sync_account(account)
        cache_repo.update_email_smart_category("acc1:Posteingang:1", "Rechnungen", "Invoice", "amount due", 0.9)

        sync_manager.sync_account(account)

        email = cache_repo.get_email(account.id, "Posteingang", 1)
        assert email.smart_category == "Rechnungen"
        assert email.confidence == 0.9


class TestFailures:

    def test_unparseable_message_skipped_and_cursor_capped(self, sync_manager, server, account):
        inbox = server.mailbox("INBOX")
        inbox.add(1)
        inbox.add(2, source=b"")
        inbox.add(3)

        result = sync_manager.sync_account(account)

        assert result.success is True
        assert result.emails_synced == 2
        assert _uids(account, "Posteingang") == [1, 3]
        assert _cursor(account) == 1

    def test_cursor_stays_below_failure_in_earlier_folder(self, sync_manager, server, account):
        inbox = server.mailbox("INBOX")
        inbox.add(1)
        inbox.add(2, source=b"")
        inbox.add(3)
        server.mailbox("Archive").add(500)

        result = sync_manager.sync_account(account)

        assert result.success is True
        assert _uids(account, "Archive") == [500]
        assert _cursor(account) == 1

    def test_failed_fetch_batch_skips_only_its_messages(self, sync_manager, server, account):
        server.mailbox("INBOX").add_many([1, 2, 3, 4, 5, 6])
        # Batch [1, 2] is refused, then UID 1 alone is refused again
        server.fetch_failures = [ImapError("FETCH 1,2 failed: NO"), ImapError("FETCH 1 failed: NO")]

        result = sync_manager.sync_account(account)

        assert result.success is True
        assert result.emails_synced == 5
        assert result.folders_synced == 1
        assert _uids(account, "Posteingang") == [2, 3, 4, 5, 6]
        assert server.fetch_calls == [[1, 2], [1], [2], [3, 4], [5, 6]]
        assert _cursor(account) == 0

    def test_refused_fetch_still_reconciles_deletions(self, sync_manager, server, account):
        cache_repo.save_email(Email(account_id=account.id, folder="Posteingang", uid=9,
                                    date="2024-01-01T00:00:00+00:00"))
        server.mailbox("INBOX").add_many([1, 2])
        server.fetch_failures = [ImapError("NO"), ImapError("NO"), ImapError("NO")]

        result = sync_manager.sync_account(account)

        assert result.success is True
        assert _uids(account, "Posteingang") == []

        result = sync_manager.sync_account(account)

        assert result.emails_synced == 2
        assert _uids(account, "Posteingang") == [1, 2]

    def test_skipped_message_retried_on_next_pass(self, sync_manager, server, account):
        inbox = server.mailbox("INBOX")
        inbox.add(1)
        inbox.add(2, source=b"")
        inbox.add(3)
        sync_manager.sync_account(account)

        inbox.add(2)
        result = sync_manager.sync_account(account)

        assert result.emails_synced == 1
        assert _uids(account, "Posteingang") == [1, 2, 3]
        assert _cursor(account) == 3

    def test_single_transient_failure_reconnects_and_completes(self, sync_manager, server, account):
        server.mailbox("INBOX").add_many([1, 2, 3, 4])
        server.fetch_failures = [None, ImapConnectionError("connection reset")]

        result = sync_manager.sync_account(account)

        assert result.success is True
        assert _uids(account, "Posteingang") == [1, 2, 3, 4]
        assert result.emails_synced == 4
        assert server.connect_attempts == 2
        assert server.logouts == 2

    def test_interrupted_sync_resumes_without_duplicates(self, sync_manager, server, account):
        server.mailbox("INBOX").add_many([1, 2, 3, 4, 5])
        server.fetch_failures = [
            None,
            ImapConnectionError("connection reset"),
            ImapConnectionError("connection reset"),
        ]

        interrupted = sync_manager.sync_account(account)

        assert interrupted.success is False
        assert interrupted.error
        assert interrupted.emails_synced == 2
        assert _uids(account, "Posteingang") == [1, 2]
        assert _cursor(account) == 0

        resumed = sync_manager.sync_account(account)

        assert resumed.success is True
        assert resumed.emails_synced == 3
        assert _uids(account, "Posteingang") == [1, 2, 3, 4, 5]
        assert len(cache_repo.get_emails(account.id)) == 5
        assert _cursor(account) == 5

    def test_cursor_kept_for_folders_committed_before_abort(self, sync_manager, server, account):
        server.mailbox("INBOX").add_many([10, 11])
        server.mailbox("Archive").add_many([1, 2])
        server.fetch_failures = [None, ImapConnectionError("reset"), ImapConnectionError("reset")]

        result = sync_manager.sync_account(account)

        assert result.success is False
        assert result.folders_synced == 1
        assert _cursor(account) == 11

    def test_auth_error_not_retried(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        server.connect_errors = [ImapAuthenticationError("AUTHENTICATIONFAILED")]

        result = sync_manager.sync_account(account)

        assert result.success is False
        assert "sign in" in result.error
        assert server.connect_attempts == 1

    def test_quota_failure_does_not_fail_sync(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        server.quota_error = ImapError("GETQUOTAROOT INBOX failed: NO")

        result = sync_manager.sync_account(account)

        assert result.success is True

    def test_quota_stored_in_kb(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        server.quota = Quota(used_kb=2048, limit_kb=1048576)

        sync_manager.sync_account(account)

        stored = cache_repo.get_account(account.id, with_password=False)
        assert stored.storage_used == 2048
        assert stored.storage_total == 1048576


class TestConcurrencyAndCancel:

    def test_concurrent_sync_of_same_account_rejected(self, session_manager, server, account):
        registry = SyncRegistry()
        manager = SyncManager(session_manager=session_manager, registry=registry)
        server.mailbox("INBOX").add(1)
        assert registry.try_acquire(account.id)

        result = manager.sync_account(account)

        assert result.success is False
        assert result.error == "Sync already in progress"
        assert server.connect_attempts == 0
        registry.release(account.id)
        assert manager.sync_account(account).success is True

    def test_claim_released_after_failure(self, sync_manager, server, account):
        server.connect_errors = [ImapAuthenticationError("nope")]

        sync_manager.sync_account(account)

        assert sync_manager.registry.is_syncing(account.id) is False

    def test_claim_raises_when_held(self):
        registry = SyncRegistry()
        with registry.claim("a"):
            with pytest.raises(SyncInProgressError):
                with registry.claim("a"):
                    pass
            with registry.claim("b"):
                assert registry.is_syncing("b")
        assert registry.is_syncing("a") is False

    def test_cancel_before_start(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        cancel = threading.Event()
        cancel.set()

        result = sync_manager.sync_account(account, cancel_event=cancel)

        assert result.cancelled is True
        assert result.success is False
        assert cache_repo.get_emails(account.id) == []

    def test_cancel_between_folders(self, sync_manager, server, account):
        server.mailbox("INBOX").add(1)
        server.mailbox("Archive").add(2)
        cancel = threading.Event()
        progress = []

        def on_progress(folder, new, index, total):
            progress.append((folder, new, index, total))
            cancel.set()

        result = sync_manager.sync_account(account, cancel_event=cancel, progress_callback=on_progress)

        assert result.cancelled is True
        assert result.folders_synced == 1
        assert progress == [("Posteingang", 1, 1, 2)]
        assert _uids(account, "Archive") == []
