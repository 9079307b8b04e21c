"""
Shared pytest fixtures and utilities for the mail mirror tests.
"""

import os
import socket
import sys
import time
from contextlib import contextmanager

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_imap_server import start_server_thread  # noqa: E402

import mirror_config  # noqa: E402


def get_free_port():
    """Get a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


@pytest.fixture
def single_mock_server():
    """
    Creates mock IMAP servers on demand. Keyword options are passed to
    MockIMAPServer (namespace, denied, fail_fetch, reject_users, ...).
    """
    servers = []

    def _create(initial_data=None, **options):
        server, actual_port = start_server_thread(0, initial_data, **options)
        time.sleep(0.1)
        servers.append(server)
        return server, actual_port

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


def make_account(port, name="Example", username="user@example.com", password="secret", **kwargs):
    """Plain-text account pointing at a local mock server."""
    return mirror_config.Account(
        name=name,
        host="localhost",
        port=port,
        username=username,
        password=password,
        use_ssl=False,
        starttls=False,
        **kwargs,
    )


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["test_script.py"]
    yield
    sys.argv = original


__all__ = [
    "single_mock_server",
    "get_free_port",
    "make_account",
    "temp_env",
]
