"""
IMAP Retry Logic

Some servers (Microsoft 365 in particular) answer NO [UNAVAILABLE] or
"Server Busy" under load. The proxy below re-issues the read-only commands the
mirror sends until the server accepts them or the attempts run out.
"""

from __future__ import annotations

import functools
import time

import imap_common

TRANSIENT_PATTERNS = (b"UNAVAILABLE", b"Server Busy", b"try again", b"THROTTLED")

# Commands that never modify the mailbox, so repeating them is harmless
RETRYABLE_METHODS = frozenset({"uid", "select", "list", "namespace", "noop", "status"})


def is_transient_error(data) -> bool:
    """True if any line of an IMAP response carries a "busy, try later" marker."""
    for item in data or []:
        line = item[0] if isinstance(item, tuple) else item
        if isinstance(line, bytes) and any(pattern in line for pattern in TRANSIENT_PATTERNS):
            return True
    return False


class ConnectionProxy:
    """imaplib connection wrapper; retryable commands go through call()."""

    RETRYABLE_METHODS = RETRYABLE_METHODS

    def __init__(self, conn, max_retries=3, initial_wait=5, log_fn=imap_common.safe_print, sleep_fn=time.sleep):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._conn = conn
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn
        self._sleep_fn = sleep_fn
        self.retry_count = 0

    @property
    def wrapped(self):
        return self._conn

    def backoff(self):
        """Waits between attempts: initial_wait, doubled each time."""
        return [self._initial_wait * 2**n for n in range(self._max_retries - 1)]

    def call(self, name, *args, **kwargs):
        """
        Invoke conn.<name>(*args, **kwargs), retrying transient NO/BAD replies.

        Returns the last (typ, data) reply. Exceptions are never retried.
        """
        method = getattr(self._conn, name)
        waits = self.backoff()
        attempt = 0
        while True:
            reply = method(*args, **kwargs)
            if not isinstance(reply, tuple) or len(reply) < 2:
                return reply
            if reply[0] == "OK" or not is_transient_error(reply[1]) or attempt == len(waits):
                return reply

            wait = waits[attempt]
            attempt += 1
            self.retry_count += 1
            self._log_fn(f"Server busy on {name.upper()}, retrying in {wait}s... (attempt {attempt}/{self._max_retries})")
            self._sleep_fn(wait)

    def __getattr__(self, name):
        attr = getattr(self._conn, name)
        if name in self.RETRYABLE_METHODS and callable(attr):
            return functools.partial(self.call, name)
        return attr
