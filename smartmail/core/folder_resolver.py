"""
Mapping between server folder paths and local display folders.

Server folders are addressed by their full path; the local store files
messages under a display folder. Well-known folders collapse onto the four
canonical names, INBOX children live under ``Posteingang/...`` and every
other folder keeps its path with ``/`` as separator.
"""
import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from smartmail import config
from smartmail.models import RemoteFolder
from smartmail.storage import cache_repo
from smartmail.utils.errors import FolderNotFoundError
from smartmail.utils.parsing import decode_imap_utf7


logger = logging.getLogger(__name__)


class FolderMap:
    """
    Ordered ``server_path -> display_folder`` mapping with reverse lookup.

    Iteration yields (path, display) pairs with the inbox first.
    """

    def __init__(self):
        self._by_path: Dict[str, str] = {}
        self._by_display: Dict[str, str] = {}
        self._custom: List[str] = []

    def add(self, path: str, display: str, custom: bool = False) -> None:
        self._by_path[path] = display
        self._by_display[display] = path
        if custom:
            self._custom.append(display)

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self.items())

    def __len__(self) -> int:
        return len(self._by_path)

    def __contains__(self, path: str) -> bool:
        return path in self._by_path

    def items(self) -> List[Tuple[str, str]]:
        inbox = [(p, d) for p, d in self._by_path.items() if d == config.INBOX_FOLDER]
        rest = [(p, d) for p, d in self._by_path.items() if d != config.INBOX_FOLDER]
        return inbox + rest

    def display_for(self, path: str) -> Optional[str]:
        return self._by_path.get(path)

    def has_display(self, display: str) -> bool:
        return display in self._by_display

    @property
    def displays(self) -> List[str]:
        return [display for _, display in self.items()]

    @property
    def custom_folders(self) -> List[str]:
        return list(self._custom)

    def server_path_for(self, display: str) -> str:
        """
        Reverse lookup of a display folder.

        Raises:
            FolderNotFoundError: If no listed folder maps to ``display``.
        """
        path = self._by_display.get(display)
        if path is not None:
            return path
        if display == config.INBOX_FOLDER:
            return config.SERVER_INBOX
        raise FolderNotFoundError(display)


def _segments(folder: RemoteFolder) -> List[str]:
    if folder.delimiter:
        parts = [part for part in folder.path.split(folder.delimiter) if part != ""]
    else:
        parts = [folder.path]
    return [decode_imap_utf7(part) for part in parts] or [folder.path]


def is_syncable(folder: RemoteFolder) -> bool:
    """False for non-selectable folders and virtual aggregates (All Mail, Starred)."""
    if not folder.selectable:
        return False
    return not (folder.special_use and folder.special_use.lower() in config.SKIPPED_SPECIAL_USE)


def canonical_folder(folder: RemoteFolder) -> Optional[str]:
    """Canonical display name for a well-known folder, or None."""
    if folder.special_use:
        canonical = config.SPECIAL_USE_FOLDERS.get(folder.special_use.lower())
        if canonical:
            return canonical
    leaf = _segments(folder)[-1]
    return config.NAMED_FOLDERS.get(leaf.lower())


def display_name(folder: RemoteFolder) -> Tuple[str, bool]:
    """
    Display folder for a remote folder.

    Returns:
        (display, is_custom)
    """
    if folder.path.upper() == config.SERVER_INBOX:
        return config.INBOX_FOLDER, False

    canonical = canonical_folder(folder)
    if canonical:
        return canonical, False

    segments = _segments(folder)
    if len(segments) > 1 and segments[0].upper() == config.SERVER_INBOX:
        return "/".join([config.INBOX_FOLDER] + segments[1:]), False

    return "/".join(segments), True


def build_folder_map(folders: Iterable[RemoteFolder]) -> FolderMap:
    """
    Resolve LIST results into a FolderMap.

    Special-use matches claim their canonical folder before name matches,
    so two server folders never share one display folder.
    """
    folders = [folder for folder in folders if is_syncable(folder)]
    folder_map = FolderMap()
    claimed: Dict[str, str] = {}

    ordered = sorted(
        folders,
        key=lambda f: 0 if f.path.upper() == config.SERVER_INBOX else (1 if f.special_use else 2)
    )
    resolved: Dict[str, Tuple[str, bool]] = {}
    for folder in ordered:
        display, custom = display_name(folder)
        if display in claimed:
            # Second folder with the same canonical name keeps its own path
            fallback = "/".join(_segments(folder))
            if fallback in claimed:
                fallback = f"{fallback} ({folder.path})"
            logger.warning(
                f"Folder {folder.path} also maps to {display} (owned by {claimed[display]}), "
                f"using {fallback}"
            )
            display, custom = fallback, True
        claimed[display] = folder.path
        resolved[folder.path] = (display, custom)

    # Keep server order apart from the inbox, which FolderMap puts first
    for folder in folders:
        display, custom = resolved[folder.path]
        folder_map.add(folder.path, display, custom=custom)

    logger.debug(f"Resolved {len(folder_map)} folders: {folder_map.displays}")
    return folder_map


def register_categories(folder_map: FolderMap) -> None:
    """Register custom folders as 'folder' categories."""
    for display in folder_map.custom_folders:
        if cache_repo.add_category(display, "folder"):
            logger.info(f"Registered folder category {display}")
            continue
        existing = cache_repo.get_category(display)
        if existing and existing.type == "custom":
            cache_repo.update_category_type(display, "folder")


def migrate_legacy_folders(folder_map: FolderMap, account_id: Optional[str] = None) -> int:
    """
    Move rows stored under a bare INBOX child leaf to its full display name.

    A leaf that is itself the display name of another listed folder (for
    example a top-level ``Bondora`` next to ``INBOX.Bondora``) is left alone.

    Returns:
        Number of emails moved.
    """
    moved = 0
    prefix = config.INBOX_FOLDER + "/"
    for _, display in folder_map.items():
        if not display.startswith(prefix):
            continue
        leaf = display.rsplit("/", 1)[-1]
        if leaf == display or folder_map.has_display(leaf):
            continue
        moved += cache_repo.migrate_folder(leaf, display, account_id=account_id)
    return moved
