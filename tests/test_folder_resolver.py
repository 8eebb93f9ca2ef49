"""Folder mapping between server paths and display folders."""
import pytest

from smartmail.core import folder_resolver
from smartmail.core.folder_resolver import build_folder_map, display_name
from smartmail.models import Email, RemoteFolder
from smartmail.storage import cache_repo
from smartmail.utils.errors import FolderNotFoundError


def folder(path, delimiter="/", flags=(), special_use=None):
    return RemoteFolder(name=path.split(delimiter)[-1] if delimiter else path, path=path,
                        delimiter=delimiter, flags=frozenset(flags), special_use=special_use)


@pytest.mark.parametrize("remote, expected", [
    (folder("INBOX"), ("Posteingang", False)),
    (folder("inbox"), ("Posteingang", False)),
    (folder("Sent Items", special_use="\\Sent"), ("Gesendet", False)),
    (folder("Gelöscht", special_use="\\Trash"), ("Papierkorb", False)),
    (folder("Bulk", special_use="\\Junk"), ("Spam", False)),
    (folder("Gesendet"), ("Gesendet", False)),
    (folder("SPAM"), ("Spam", False)),
    (folder("INBOX.Bondora", delimiter="."), ("Posteingang/Bondora", False)),
    (folder("INBOX/Rechnungen/2024"), ("Posteingang/Rechnungen/2024", False)),
    (folder("Archiv.2023", delimiter="."), ("Archiv/2023", True)),
    (folder("Bondora"), ("Bondora", True)),
    (folder("Entw&APw-rfe"), ("Entwürfe", True)),
    (folder("Notes", delimiter=None), ("Notes", True)),
])
def test_display_name(remote, expected):
    assert display_name(remote) == expected


def test_special_use_wins_over_leaf_name():
    folder_map = build_folder_map([
        folder("INBOX"),
        folder("Sent"),
        folder("Sent Messages", special_use="\\Sent"),
    ])

    assert folder_map.display_for("Sent Messages") == "Gesendet"
    assert folder_map.display_for("Sent") == "Sent"
    assert folder_map.server_path_for("Gesendet") == "Sent Messages"


def test_repeated_collision_falls_back_to_path_suffix():
    folder_map = build_folder_map([
        folder("Spam"),
        folder("Bulk", special_use="\\Junk"),
    ])

    assert folder_map.display_for("Bulk") == "Spam"
    assert folder_map.display_for("Spam") == "Spam (Spam)"
    assert folder_map.server_path_for("Spam") == "Bulk"


def test_top_level_and_inbox_child_stay_distinct():
    folder_map = build_folder_map([
        folder("INBOX", delimiter="."),
        folder("Bondora", delimiter="."),
        folder("INBOX.Bondora", delimiter="."),
    ])

    assert folder_map.display_for("Bondora") == "Bondora"
    assert folder_map.display_for("INBOX.Bondora") == "Posteingang/Bondora"
    assert folder_map.custom_folders == ["Bondora"]


def test_unselectable_and_virtual_folders_skipped():
    folder_map = build_folder_map([
        folder("INBOX"),
        folder("[Gmail]", flags=("\\Noselect", "\\HasChildren")),
        folder("[Gmail]/All Mail", special_use="\\All"),
        folder("[Gmail]/Starred", special_use="\\Flagged"),
        folder("Gone", flags=("\\NonExistent",)),
        folder("[Gmail]/Sent Mail", special_use="\\Sent"),
    ])

    assert [path for path, _ in folder_map] == ["INBOX", "[Gmail]/Sent Mail"]


def test_inbox_iterated_first_then_server_order():
    folder_map = build_folder_map([
        folder("Zeta"),
        folder("Trash", special_use="\\Trash"),
        folder("INBOX"),
        folder("Alpha"),
    ])

    assert folder_map.displays == ["Posteingang", "Zeta", "Papierkorb", "Alpha"]
    assert "Alpha" in folder_map
    assert "Missing" not in folder_map


def test_reverse_lookup():
    folder_map = build_folder_map([folder("INBOX.Bondora", delimiter=".")])

    assert folder_map.server_path_for("Posteingang/Bondora") == "INBOX.Bondora"
    # The inbox always exists even when the listing did not name it
    assert folder_map.server_path_for("Posteingang") == "INBOX"
    with pytest.raises(FolderNotFoundError):
        folder_map.server_path_for("Nowhere")


class TestCategoriesAndMigration:

    def test_custom_folders_registered_as_folder_categories(self, temp_db):
        cache_repo.add_category("Reisen", "custom")
        folder_map = build_folder_map([folder("INBOX"), folder("Reisen"), folder("Bondora")])

        folder_resolver.register_categories(folder_map)
        folder_resolver.register_categories(folder_map)

        assert cache_repo.get_category("Bondora").type == "folder"
        assert cache_repo.get_category("Reisen").type == "folder"

    def test_system_category_type_not_downgraded(self, temp_db):
        folder_map = build_folder_map([folder("Rechnungen")])

        folder_resolver.register_categories(folder_map)

        assert cache_repo.get_category("Rechnungen").type == "system"

    def test_legacy_leaf_rows_moved(self, account):
        cache_repo.save_email(Email(account_id="acc1", folder="Rechnungen", uid=4, date="2024-01-01"))
        folder_map = build_folder_map([folder("INBOX", delimiter="."), folder("INBOX.Rechnungen", delimiter=".")])

        moved = folder_resolver.migrate_legacy_folders(folder_map, account_id="acc1")

        assert moved == 1
        assert cache_repo.get_all_uids_for_folder("acc1", "Posteingang/Rechnungen") == [4]

    def test_leaf_owned_by_another_folder_not_migrated(self, account):
        cache_repo.save_email(Email(account_id="acc1", folder="Bondora", uid=4, date="2024-01-01"))
        folder_map = build_folder_map([
            folder("INBOX", delimiter="."),
            folder("Bondora", delimiter="."),
            folder("INBOX.Bondora", delimiter="."),
        ])

        moved = folder_resolver.migrate_legacy_folders(folder_map, account_id="acc1")

        assert moved == 0
        assert cache_repo.get_all_uids_for_folder("acc1", "Bondora") == [4]
