"""
IMAP Session Management

Connect / authenticate / logout lifecycle for one account. An open session
exposes the authenticated connection, the INBOX folder and the personal
namespace roots the folder walker starts from.

Connection failures and credential rejections raise distinct exceptions so the
orchestrator can report them per account without stopping the run.
"""

from __future__ import annotations

import imaplib
import socket
import ssl
import urllib.parse

import imap_common
import imap_retry
from auth import imap_oauth2

safe_print = imap_common.safe_print

DEFAULT_TIMEOUT = 30
RETRY_INITIAL_WAIT = 5


class SessionError(Exception):
    """Base class for failures that make an account unusable for this run."""

    kind = imap_common.ERROR_UNEXPECTED


class ServerConnectError(SessionError):
    """Transport, TLS, timeout or protocol failure reaching the server."""

    kind = imap_common.ERROR_CONNECTION


class AuthenticationError(SessionError):
    """The server rejected the credentials, or no OAuth2 token could be acquired."""

    kind = imap_common.ERROR_AUTH


def resolve_endpoint(host, port, use_ssl):
    """
    Resolve host, port and TLS flag.

    The host may be a URL: imap://host:port (plain) or imaps://host:port (TLS).
    A scheme overrides use_ssl, an explicit URL port overrides port.
    """
    if "://" not in host:
        return host, port, use_ssl

    parsed = urllib.parse.urlparse(host)
    scheme = parsed.scheme.lower()
    if not scheme or not parsed.hostname:
        raise ServerConnectError(f"Invalid IMAP host: {host}")
    if scheme in {"imap", "tcp"}:
        use_ssl = False
    elif scheme in {"imaps", "imap+ssl", "imapssl", "ssl"}:
        use_ssl = True
    else:
        raise ServerConnectError(f"Unsupported IMAP scheme: {scheme}")
    return parsed.hostname, parsed.port or port, use_ssl


def connect(host, port, use_ssl=True, timeout=DEFAULT_TIMEOUT, starttls=True):
    """
    Open a transport connection. Every socket operation is bounded by timeout.

    Plain connections are upgraded with STARTTLS when the server advertises it
    and starttls is enabled.

    Raises:
        ServerConnectError: refused, unreachable, timed out, TLS failure or bad greeting.
    """
    conn = None
    try:
        if use_ssl:
            conn = imaplib.IMAP4_SSL(host, port, ssl_context=ssl.create_default_context(), timeout=timeout)
        else:
            conn = imaplib.IMAP4(host, port, timeout=timeout)
            if starttls and "STARTTLS" in conn.capabilities:
                conn.starttls(ssl_context=ssl.create_default_context())
    except (OSError, imaplib.IMAP4.error) as e:
        if conn is not None:
            _shutdown_quietly(conn)
        raise ServerConnectError(f"Connection error to {host}:{port}: {e}") from e
    return conn


def authenticate(conn, user, password=None, oauth2_token=None):
    """
    Log in with a password, or with XOAUTH2 when a token is given.

    Raises:
        AuthenticationError: the server rejected the credentials.
        ServerConnectError: the connection dropped while authenticating.
    """
    if not password and not oauth2_token:
        raise AuthenticationError(f"Either a password or an OAuth2 token is required for {user}")

    try:
        if oauth2_token:
            auth_string = f"user={user}\x01auth=Bearer {oauth2_token}\x01\x01"
            conn.authenticate("XOAUTH2", lambda _: auth_string.encode())
        else:
            conn.login(user, password)
    except imaplib.IMAP4.abort as e:
        raise ServerConnectError(f"Connection lost while authenticating {user}: {e}") from e
    except imaplib.IMAP4.error as e:
        raise AuthenticationError(f"Authentication failed for {user}: {e}") from e
    except OSError as e:
        raise ServerConnectError(f"Connection lost while authenticating {user}: {e}") from e


def get_hierarchy_delimiter(conn):
    """Ask the server for its hierarchy delimiter with LIST "" "". Returns None if unknown."""
    try:
        typ, data = conn.list('""', '""')
    except imaplib.IMAP4.abort:
        raise
    except imaplib.IMAP4.error:
        return None
    if typ != "OK":
        return None
    for item in data or []:
        entry = imap_common.parse_list_entry(item)
        if entry is not None and entry.delimiter:
            return entry.delimiter
    return None


def discover_personal_namespaces(conn, label=""):
    """
    Return (personal_namespaces, delimiter).

    Servers without NAMESPACE support get a single root with the empty prefix
    and the delimiter reported by LIST "" "". A server that answers NAMESPACE
    with no personal namespace yields an empty list.
    """
    prefix = f"[{label}] " if label else ""
    try:
        typ, data = conn.namespace()
    except imaplib.IMAP4.abort:
        raise
    except imaplib.IMAP4.error as e:
        typ, data = "BAD", [str(e).encode()]

    if typ == "OK":
        try:
            roots = imap_common.parse_namespace_response(data)
        except ValueError as e:
            safe_print(f"{prefix}Warning: Unreadable NAMESPACE response ({e}), assuming the default namespace.")
        else:
            delimiter = next((root.delimiter for root in roots if root.delimiter), None)
            if delimiter is None:
                delimiter = get_hierarchy_delimiter(conn)
            return roots, delimiter

    delimiter = get_hierarchy_delimiter(conn)
    safe_print(f"{prefix}NAMESPACE not available, using the default namespace (delimiter {delimiter!r}).")
    return [imap_common.NamespaceRoot(prefix="", delimiter=delimiter)], delimiter


def get_inbox_folder(conn, fallback_delimiter=None):
    """Return the INBOX as reported by LIST (server spelling, delimiter and flags)."""
    try:
        typ, data = conn.list('""', imap_common.quote_mailbox(imap_common.FOLDER_INBOX))
    except imaplib.IMAP4.abort:
        raise
    except imaplib.IMAP4.error:
        typ, data = "BAD", []
    if typ == "OK":
        for item in data or []:
            entry = imap_common.parse_list_entry(item)
            if entry is not None and entry.key == imap_common.FOLDER_INBOX.casefold():
                return entry
    return imap_common.RemoteFolder(
        name=imap_common.FOLDER_INBOX,
        raw_name=imap_common.FOLDER_INBOX,
        delimiter=fallback_delimiter,
    )


def _shutdown_quietly(conn):
    try:
        conn.shutdown()
    except OSError:
        pass


class AccountSession:
    """An authenticated connection for one account plus its starting folders."""

    def __init__(self, conn, label, inbox, personal_namespaces, auth_method="Basic (password)"):
        self.conn = conn
        self.label = label
        self.inbox = inbox
        self.personal_namespaces = list(personal_namespaces)
        self.auth_method = auth_method

    @property
    def closed(self):
        return self.conn is None

    def close(self):
        """Log out. Failures are logged, never raised."""
        conn, self.conn = self.conn, None
        if conn is None:
            return
        try:
            typ, data = conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            safe_print(f"[{self.label}] Warning: Logout failed: {e}")
            _shutdown_quietly(conn)
            return
        # imaplib reports a clean logout as BYE and swallows transport errors into NO
        if typ not in ("OK", "BYE"):
            safe_print(f"[{self.label}] Warning: Logout failed: {imap_common.response_text(data)}")

    def abort(self):
        """Shut the socket down so a blocked command fails immediately.

        Only the socket is shut down; the reader thread still owns the file
        object and sees EOF. close() releases the rest afterwards.
        """
        sock = getattr(self.conn, "sock", None)
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def open_session(account, timeout=DEFAULT_TIMEOUT, retry_wait=RETRY_INITIAL_WAIT):
    """
    Connect, authenticate and discover the starting folders of one account.

    Args:
        account: mirror_config.Account
        timeout: Socket timeout in seconds for every network operation
        retry_wait: Initial backoff for transient "server busy" responses

    Returns:
        AccountSession

    Raises:
        ServerConnectError, AuthenticationError
    """
    label = account.label
    host, port, use_ssl = resolve_endpoint(account.host, account.port, account.use_ssl)

    oauth2_token = None
    provider = None
    if account.oauth2_client_id:
        try:
            oauth2_token, provider = imap_oauth2.acquire_token(
                account.host, account.oauth2_client_id, account.username, account.oauth2_client_secret, label
            )
        except imap_oauth2.OAuth2Error as e:
            raise AuthenticationError(str(e)) from e
    auth_method = imap_oauth2.auth_description(provider)

    safe_print(f"[{label}] Connecting to {host}:{port} (SSL: {use_ssl}, Auth: {auth_method})...")
    raw_conn = connect(host, port, use_ssl, timeout, starttls=account.starttls)
    try:
        authenticate(raw_conn, account.username, account.password, oauth2_token)
    except SessionError:
        _shutdown_quietly(raw_conn)
        raise
    safe_print(f"[{label}] Authenticated as {account.username}.")

    conn = imap_retry.ConnectionProxy(
        raw_conn,
        initial_wait=retry_wait,
        log_fn=lambda message: safe_print(f"[{label}] {message}"),
    )
    try:
        namespaces, delimiter = discover_personal_namespaces(conn, label)
        inbox = get_inbox_folder(conn, delimiter)
    except (imaplib.IMAP4.error, OSError) as e:
        _shutdown_quietly(raw_conn)
        raise ServerConnectError(f"Connection lost during folder discovery: {e}") from e

    if not namespaces:
        safe_print(f"[{label}] Warning: No personal namespaces returned, mirroring INBOX tree only.")

    return AccountSession(conn, label, inbox, namespaces, auth_method=auth_method)


def close_session(session):
    session.close()
