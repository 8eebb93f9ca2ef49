"""Session manager: retry policy, scoped logout and connection test."""
import pytest

from smartmail.core.session import SessionManager
from smartmail.models import Account
from smartmail.utils.errors import (
    ImapAuthenticationError,
    ImapConnectionError,
    ImapError,
)

from fakes import FakeServer


@pytest.fixture
def plain_account():
    return Account(id="a1", email="user@example.com", imap_host="imap.example.com", password="pw")


def test_transient_connect_error_retried_once(session_manager, server, plain_account):
    server.connect_errors = [ImapConnectionError("timed out", reason="timeout")]

    client = session_manager.connect(plain_account)

    assert client.connected is True
    assert server.connect_attempts == 2


def test_second_transient_error_is_raised(session_manager, server, plain_account):
    server.connect_errors = [
        ImapConnectionError("timed out", reason="timeout"),
        ImapConnectionError("refused", reason="network"),
    ]

    with pytest.raises(ImapConnectionError) as exc_info:
        session_manager.connect(plain_account)

    assert exc_info.value.reason == "network"
    assert server.connect_attempts == 2


def test_auth_error_never_retried(session_manager, server, plain_account):
    server.connect_errors = [ImapAuthenticationError("AUTHENTICATIONFAILED")]

    with pytest.raises(ImapAuthenticationError):
        session_manager.connect(plain_account)

    assert server.connect_attempts == 1


def test_retries_configurable():
    server = FakeServer()
    manager = SessionManager(client_factory=server.client_factory, retries=0)
    server.connect_errors = [ImapConnectionError("timed out", reason="timeout")]

    with pytest.raises(ImapConnectionError):
        manager.connect(Account(id="a1", imap_host="h"))

    assert server.connect_attempts == 1


def test_client_gets_timeout(server, plain_account):
    manager = SessionManager(client_factory=server.client_factory, timeout=12.5)

    client = manager.connect(plain_account)

    assert client.timeout == 12.5


def test_session_logs_out_on_exception(session_manager, server, plain_account):
    with pytest.raises(RuntimeError):
        with session_manager.session(plain_account):
            raise RuntimeError("boom")

    assert server.logouts == 1


def test_logout_failure_does_not_mask_original_error(session_manager, server, plain_account):
    server.logout_error = ImapError("BYE")

    with pytest.raises(ValueError):
        with session_manager.session(plain_account):
            raise ValueError("original")


def test_logout_failure_after_success_is_swallowed(session_manager, server, plain_account):
    server.logout_error = ImapError("BYE")

    with session_manager.session(plain_account) as client:
        assert client.connected

    assert server.logouts == 1


def test_run_reconnects_once_on_dropped_connection(session_manager, server, plain_account):
    calls = []

    def work(client):
        calls.append(client)
        if len(calls) == 1:
            raise ImapConnectionError("connection reset")
        return 42

    assert session_manager.run(plain_account, work) == 42
    assert len(calls) == 2
    assert calls[0] is not calls[1]
    assert server.logouts == 2


def test_run_does_not_retry_other_errors(session_manager, server, plain_account):
    calls = []

    def work(client):
        calls.append(client)
        raise ImapError("NO")

    with pytest.raises(ImapError):
        session_manager.run(plain_account, work)

    assert len(calls) == 1
    assert server.logouts == 1


def test_connection_test_success(session_manager, server, plain_account):
    server.mailbox("INBOX").add(1)

    result = session_manager.test_connection(plain_account)

    assert result.success is True
    assert result.error is None
    assert server.logouts == 1


def test_connection_test_reports_auth_failure(session_manager, server, plain_account):
    server.connect_errors = [ImapAuthenticationError("AUTHENTICATIONFAILED")]

    result = session_manager.test_connection(plain_account)

    assert result.success is False
    assert "password" in result.error


def test_connection_test_reports_missing_inbox(session_manager, server, plain_account):
    result = session_manager.test_connection(plain_account)

    assert result.success is False
    assert result.error
