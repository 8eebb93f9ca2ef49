"""
High-level IMAP client wrapper.

This module provides a clean, high-level interface for IMAP operations,
hiding the complexity of imaplib and mapping its errors onto the
application's error hierarchy. Every message-targeted command runs in UID
mode: sequence numbers shift under concurrent expunges and are never used
to address a specific message.
"""
import imaplib
import logging
import re
import socket
import ssl
from contextlib import contextmanager
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple, Union

from smartmail import config
from smartmail.models import Account, FetchedMessage, Quota, RemoteFolder
from smartmail.utils.errors import (
    ImapAuthenticationError,
    ImapConnectionError,
    ImapError,
    ProtocolError,
)
from smartmail.utils.parsing import decode_imap_utf7, parse_flags, parse_uid


logger = logging.getLogger(__name__)

DEFAULT_FETCH_FIELDS = "(UID FLAGS RFC822)"

# RFC 6154 special-use attributes
SPECIAL_USE_ATTRIBUTES = (
    "\\all", "\\archive", "\\drafts", "\\flagged", "\\junk", "\\sent", "\\trash",
)

_LIST_RE = re.compile(
    r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$',
    re.IGNORECASE,
)
_LITERAL_RE = re.compile(r'\{\d+\}$')
_ATOM_RE = re.compile(r'^[A-Za-z0-9.&_+\-]+$')
_FETCH_START_RE = re.compile(rb'^\d+ \(')
_STORAGE_RE = re.compile(rb'STORAGE\s+(\d+)\s+(\d+)', re.IGNORECASE)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('\\"', '"').replace('\\\\', '\\')
    return value


class MailboxLock:
    """
    Handle for a selected mailbox.

    ``exists`` is the message count reported by SELECT.
    """

    def __init__(self, path: str, exists: int, readonly: bool):
        self.path = path
        self.exists = exists
        self.readonly = readonly

    def __repr__(self) -> str:
        return f"MailboxLock(path={self.path!r}, exists={self.exists})"


class ImapClient:
    """
    High-level IMAP client wrapper for password-authenticated accounts.

    Example:
        >>> with ImapClient(account) as client:
        ...     for folder in client.list_folders():
        ...         print(folder.path)
    """

    def __init__(self, account: Account, timeout: Optional[float] = None):
        """
        Initialize the IMAP client.

        Args:
            account: The account to connect with. Its password must be set.
            timeout: Socket timeout in seconds for every network operation.
        """
        self.account = account
        self.timeout = timeout if timeout is not None else config.IMAP_TIMEOUT
        self.connection: Optional[imaplib.IMAP4] = None
        self.selected: Optional[str] = None
        self._authenticated = False
        self._capabilities: FrozenSet[str] = frozenset()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """
        Establish the connection and log in.

        Raises:
            ImapConnectionError: On timeout, network or TLS failure.
            ImapAuthenticationError: If the server rejects the credentials.
        """
        if self.connection and self._authenticated:
            return

        host = self.account.imap_host
        port = self.account.imap_port or config.DEFAULT_IMAP_PORT
        security = (self.account.security or "ssl").lower()
        logger.debug(f"Connecting to {host}:{port} ({security})")

        try:
            if security == "ssl":
                conn = imaplib.IMAP4_SSL(
                    host, port,
                    ssl_context=ssl.create_default_context(),
                    timeout=self.timeout,
                )
            else:
                conn = imaplib.IMAP4(host, port, timeout=self.timeout)
                if security == "starttls":
                    conn.starttls(ssl_context=ssl.create_default_context())
        except imaplib.IMAP4.error as e:
            raise ImapConnectionError(f"Secure connection to {host} failed: {e}", reason="tls") from e
        except Exception as e:
            raise self._map_socket_error(e, f"Failed to connect to IMAP server {host}:{port}") from e

        try:
            conn.login(self.account.login_name, self.account.password)
        except imaplib.IMAP4.abort as e:
            self._shutdown_quietly(conn)
            raise ImapConnectionError(f"Connection dropped during login: {e}") from e
        except imaplib.IMAP4.error as e:
            self._shutdown_quietly(conn)
            raise ImapAuthenticationError(f"Password authentication failed: {e}") from e
        except Exception as e:
            self._shutdown_quietly(conn)
            raise self._map_socket_error(e, "Login failed") from e

        self.connection = conn
        self._authenticated = True
        self._capabilities = self._read_capabilities(conn)
        logger.debug(f"Logged in to {host} as {self.account.login_name}")

    def _read_capabilities(self, conn: imaplib.IMAP4) -> FrozenSet[str]:
        # Capabilities usually change after LOGIN
        try:
            typ, data = conn.capability()
            if typ == 'OK' and data and data[-1]:
                raw = data[-1]
                if isinstance(raw, bytes):
                    raw = raw.decode('ascii', errors='ignore')
                return frozenset(raw.upper().split())
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"CAPABILITY after login failed: {e}")
        return frozenset(str(cap).upper() for cap in getattr(conn, 'capabilities', ()) or ())

    @staticmethod
    def _map_socket_error(exc: Exception, message: str) -> ImapError:
        if isinstance(exc, ImapError):
            return exc
        if isinstance(exc, (socket.timeout, TimeoutError)):
            return ImapConnectionError(f"{message}: timed out", reason="timeout")
        if isinstance(exc, ssl.SSLError):
            return ImapConnectionError(f"{message}: {exc}", reason="tls")
        if isinstance(exc, OSError):
            return ImapConnectionError(f"{message}: {exc}", reason="network")
        return ImapError(f"{message}: {exc}")

    @staticmethod
    def _shutdown_quietly(conn: imaplib.IMAP4) -> None:
        try:
            conn.shutdown()
        except (OSError, imaplib.IMAP4.error):
            pass

    @property
    def capabilities(self) -> FrozenSet[str]:
        """Upper-cased capability names advertised after login."""
        return self._capabilities

    def has_capability(self, name: str) -> bool:
        return name.upper() in self._capabilities

    def logout(self) -> None:
        """
        Send LOGOUT and drop the connection.

        Raises:
            ImapError: If the server could not be told. The connection is
                dropped regardless.
        """
        conn = self.connection
        self.connection = None
        self.selected = None
        self._authenticated = False
        if conn is None:
            return
        try:
            conn.logout()
        except Exception as e:
            raise self._map_socket_error(e, "Logout failed") from e

    def close(self) -> None:
        """Close the IMAP connection, ignoring errors."""
        try:
            self.logout()
        except ImapError as e:
            logger.debug(f"Ignoring error while closing connection: {e}")

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False

    def _ensure_connected(self) -> imaplib.IMAP4:
        if not self.connection or not self._authenticated:
            raise ImapConnectionError("Not connected to the IMAP server")
        return self.connection

    def _command(self, name: str, *args) -> Tuple[str, list]:
        """
        Run one imaplib command and map its failures.

        Returns:
            The (typ, data) pair from imaplib.
        """
        conn = self._ensure_connected()
        try:
            return getattr(conn, name)(*args)
        except imaplib.IMAP4.abort as e:
            raise ImapConnectionError(f"Connection lost during {name.upper()}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ImapError(f"{name.upper()} {' '.join(str(a) for a in args[:1])} failed: {e}") from e
        except Exception as e:
            raise self._map_socket_error(e, f"{name.upper()} failed") from e

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def _quote_folder_name(self, folder_path: str) -> str:
        """
        Quote an IMAP folder name unless it is a plain atom.

        For example: "Sent Items" -> '"Sent Items"', "INBOX" -> 'INBOX'
        """
        if folder_path.startswith('"') and folder_path.endswith('"') and len(folder_path) >= 2:
            return folder_path
        if _ATOM_RE.match(folder_path):
            return folder_path
        escaped = folder_path.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'

    def list_folders(self) -> List[RemoteFolder]:
        """
        List all folders on the server.

        Returns:
            RemoteFolder objects in server order.

        Raises:
            ProtocolError: If LIST is refused.
        """
        typ, data = self._command('list')
        if typ != 'OK':
            raise ProtocolError(f"Failed to list folders: {typ}")

        folders = []
        for item in data or []:
            # imaplib leaves an empty trailer after a literal name
            if not item:
                continue
            folder = self._parse_folder_list_item(item)
            if folder is None:
                logger.warning(f"Skipping unparseable LIST entry: {item!r}")
                continue
            folders.append(folder)
        return folders

    def _parse_folder_list_item(self, folder_data: Union[bytes, tuple]) -> Optional[RemoteFolder]:
        """
        Parse an IMAP LIST response item into a RemoteFolder.

        LIST format: (flags) "delimiter" name, where name is quoted, an atom
        or a literal (imaplib then hands back a tuple).
        Example: (\\HasNoChildren \\Sent) "/" "Sent Items"
        """
        literal_name = None
        if isinstance(folder_data, tuple):
            if len(folder_data) < 2:
                return None
            head, literal_name = folder_data[0], folder_data[1]
            if isinstance(literal_name, bytes):
                literal_name = literal_name.decode('utf-8', errors='replace')
        else:
            head = folder_data

        if isinstance(head, bytes):
            head = head.decode('utf-8', errors='replace')

        match = _LIST_RE.match(str(head).strip())
        if not match:
            return None

        flags = frozenset(match.group('flags').split())
        raw_delimiter = match.group('delimiter')
        delimiter = None if raw_delimiter.upper() == 'NIL' else _unquote(raw_delimiter)

        if literal_name is not None:
            path = literal_name
        else:
            path = _unquote(match.group('name').strip())
            if _LITERAL_RE.search(path):
                return None
        if not path:
            return None

        special_use = None
        for flag in flags:
            if flag.lower() in SPECIAL_USE_ATTRIBUTES:
                special_use = flag
                break

        leaf = path.split(delimiter)[-1] if delimiter else path
        return RemoteFolder(
            name=decode_imap_utf7(leaf),
            path=path,
            delimiter=delimiter,
            flags=flags,
            special_use=special_use,
        )

    @contextmanager
    def mailbox_lock(self, path: str, readonly: bool = False) -> Iterator[MailboxLock]:
        """
        Select a mailbox for the duration of the block.

        Raises:
            ImapError: If the mailbox cannot be selected.
            ProtocolError: If SELECT returns no usable EXISTS count.
        """
        typ, data = self._command('select', self._quote_folder_name(path), readonly)
        if typ != 'OK':
            detail = data[0].decode('utf-8', errors='ignore') if data and isinstance(data[0], bytes) else typ
            raise ImapError(f"Failed to select folder '{path}': {detail}")
        try:
            exists = int(data[0]) if data and data[0] is not None else 0
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Unexpected SELECT response for '{path}': {data!r}") from e

        self.selected = path
        lock = MailboxLock(path, exists, readonly)
        try:
            yield lock
        finally:
            self.selected = None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @staticmethod
    def _format_uid_set(uids: Union[str, int, Iterable[int]]) -> str:
        if isinstance(uids, str):
            return uids
        if isinstance(uids, int):
            return str(uids)
        return ','.join(str(int(uid)) for uid in uids)

    @staticmethod
    def _format_flags(flags: Union[str, Iterable[str]]) -> str:
        if isinstance(flags, str):
            flags = [flags]
        return '(' + ' '.join(flags) + ')'

    def fetch(
        self,
        uids: Union[str, int, Iterable[int]],
        fields: str = DEFAULT_FETCH_FIELDS,
        uid: bool = True
    ) -> Iterator[FetchedMessage]:
        """
        Fetch messages from the selected mailbox.

        Args:
            uids: UID set: an iterable of UIDs, a single UID or a set string
                such as "1:*".
            fields: FETCH data items.
            uid: Address messages by UID. Sequence mode only when False.

        Yields:
            FetchedMessage items. Items without a UID in the response are
            skipped with a warning.
        """
        uid_set = self._format_uid_set(uids)
        if not uid_set:
            return

        if uid:
            typ, data = self._command('uid', 'FETCH', uid_set, fields)
        else:
            typ, data = self._command('fetch', uid_set, fields)
        if typ != 'OK':
            raise ImapError(f"FETCH {uid_set} failed: {typ}")

        for header, source in self._group_fetch_response(data):
            message_uid = parse_uid(header)
            if message_uid is None:
                logger.warning(f"FETCH response without UID skipped: {header[:80]!r}")
                continue
            yield FetchedMessage(uid=message_uid, flags=parse_flags(header), source=source)

    @staticmethod
    def _group_fetch_response(data: Optional[list]) -> List[Tuple[bytes, Optional[bytes]]]:
        """
        Group imaplib's flat FETCH data into (header, literal) pairs.

        imaplib returns literals as (header, literal) tuples followed by the
        rest of the response line as plain bytes (which may still carry
        FLAGS), and literal-free responses as plain bytes.
        """
        items: List[List] = []
        for part in data or []:
            if part is None:
                continue
            if isinstance(part, tuple):
                header = part[0] if isinstance(part[0], bytes) else str(part[0]).encode()
                source = part[1] if len(part) > 1 else None
                items.append([header, source])
            elif isinstance(part, bytes):
                if _FETCH_START_RE.match(part) or not items:
                    items.append([part, None])
                else:
                    items[-1][0] = items[-1][0] + b' ' + part
        return [(header, source) for header, source in items]

    def list_uid_flags(self) -> Dict[int, Set[str]]:
        """Map every UID of the selected mailbox to its flags."""
        return {
            message.uid: set(message.flags)
            for message in self.fetch('1:*', '(UID FLAGS)')
        }

    def get_flags(self, uid: int) -> Optional[FrozenSet[str]]:
        """Current flags of one message, or None if it no longer exists."""
        for message in self.fetch([uid], '(UID FLAGS)'):
            if message.uid == int(uid):
                return message.flags
        return None

    def _store(self, uid: int, operation: str, flags: Union[str, Iterable[str]]) -> None:
        flag_list = self._format_flags(flags)
        typ, data = self._command('uid', 'STORE', str(int(uid)), operation, flag_list)
        if typ != 'OK':
            raise ImapError(f"Failed to store {operation} {flag_list} on message {uid}: {typ}")

    def message_flags_add(self, uid: int, flags: Union[str, Iterable[str]]) -> None:
        self._store(uid, '+FLAGS', flags)

    def message_flags_remove(self, uid: int, flags: Union[str, Iterable[str]]) -> None:
        self._store(uid, '-FLAGS', flags)

    def message_delete(self, uid: int) -> None:
        """
        Permanently delete one message from the selected mailbox.

        Marks it \\Deleted, then expunges with UID EXPUNGE when the server
        supports UIDPLUS, else with a plain EXPUNGE.
        """
        self._store(uid, '+FLAGS', '\\Deleted')
        if self.has_capability('UIDPLUS'):
            typ, data = self._command('xatom', 'UID', 'EXPUNGE', str(int(uid)))
        else:
            typ, data = self._command('expunge')
        if typ != 'OK':
            raise ImapError(f"Failed to expunge message {uid}: {typ}")

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    def get_quota(self, root: str = config.SERVER_INBOX) -> Optional[Quota]:
        """
        Read the STORAGE quota (KB) for a mailbox via GETQUOTAROOT.

        Returns:
            A Quota, or None if the server has no QUOTA support or reports
            no STORAGE resource.
        """
        if not self.has_capability('QUOTA'):
            return None
        typ, data = self._command('getquotaroot', self._quote_folder_name(root))
        if typ != 'OK':
            raise ImapError(f"GETQUOTAROOT {root} failed: {typ}")

        for line in self._flatten(data):
            match = _STORAGE_RE.search(line)
            if match:
                return Quota(used_kb=int(match.group(1)), limit_kb=int(match.group(2)))
        return None

    @staticmethod
    def _flatten(data) -> Iterator[bytes]:
        for item in data or []:
            if isinstance(item, (list, tuple)):
                yield from ImapClient._flatten(item)
            elif isinstance(item, bytes):
                yield item
            elif item is not None:
                yield str(item).encode('utf-8', errors='ignore')
