"""
Session management for remote mailboxes.

Opens, retries and tears down authenticated IMAP connections. The manager
holds no local state: every session is scoped to one caller and always
logs out when the caller is done.
"""
import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from smartmail import config
from smartmail.models import Account, ConnectionTestResult
from smartmail.network.imap_client import ImapClient
from smartmail.utils.errors import (
    ImapConnectionError,
    ImapError,
    human_friendly_message,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionManager:
    """
    Creates authenticated IMAP sessions for accounts.

    Transient connection failures (timeout, network, TLS) are retried
    ``retries`` times; authentication failures never are.
    """

    def __init__(
        self,
        client_factory: Callable[..., ImapClient] = ImapClient,
        timeout: Optional[float] = None,
        retries: Optional[int] = None
    ):
        self.client_factory = client_factory
        self.timeout = timeout if timeout is not None else config.IMAP_TIMEOUT
        self.retries = retries if retries is not None else config.CONNECT_RETRIES

    def connect(self, account: Account) -> ImapClient:
        """
        Open and authenticate a connection.

        Raises:
            ImapConnectionError: If every attempt failed.
            ImapAuthenticationError: If the credentials are rejected.
        """
        attempt = 0
        while True:
            client = self.client_factory(account, timeout=self.timeout)
            try:
                client.connect()
                return client
            except ImapConnectionError as e:
                if attempt >= self.retries:
                    logger.error(f"Connection to {account.imap_host} failed: {e}")
                    raise
                attempt += 1
                logger.warning(
                    f"Connection to {account.imap_host} failed ({e.reason}), "
                    f"retrying ({attempt}/{self.retries})"
                )

    def reconnect(self, client: Optional[ImapClient], account: Account) -> ImapClient:
        """Drop ``client`` quietly and return a fresh connection."""
        if client is not None:
            self.close(client)
        return self.connect(account)

    @staticmethod
    def close(client: ImapClient) -> None:
        """Log out, logging (never raising) a failure."""
        try:
            client.logout()
        except Exception as e:
            logger.debug(f"Logout failed: {e}")

    @contextmanager
    def session(self, account: Account) -> Iterator[ImapClient]:
        """
        Scoped session; logs out on exit, including on exceptions.

        Example:
            >>> with manager.session(account) as client:
            ...     folders = client.list_folders()
        """
        client = self.connect(account)
        try:
            yield client
        finally:
            self.close(client)

    def run(self, account: Account, fn: Callable[[ImapClient], T]) -> T:
        """
        Run ``fn(client)`` in a session, reconnecting once if the
        connection drops. ``fn`` must be safe to run twice.
        """
        client = self.connect(account)
        try:
            return fn(client)
        except ImapConnectionError as e:
            logger.warning(f"Connection lost ({e}), reconnecting once")
            client = self.reconnect(client, account)
            return fn(client)
        finally:
            self.close(client)

    def test_connection(self, account: Account) -> ConnectionTestResult:
        """Connect, select INBOX read-only and log out. Never raises."""
        try:
            with self.session(account) as client:
                with client.mailbox_lock(config.SERVER_INBOX, readonly=True) as lock:
                    logger.info(f"Connection test for {account.email} OK ({lock.exists} messages in INBOX)")
            return ConnectionTestResult(success=True)
        except ImapError as e:
            logger.warning(f"Connection test for {account.email} failed: {e}")
            return ConnectionTestResult(success=False, error=human_friendly_message(e))
        except Exception as e:
            logger.exception(f"Unexpected error testing connection for {account.email}")
            return ConnectionTestResult(success=False, error=human_friendly_message(e))
