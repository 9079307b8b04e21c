"""
Tests for mail_mirror.py

Tests cover:
- Mirroring several accounts, one failing authentication
- Unreachable servers and unexpected errors isolated per account
- Account label collisions
- Parallel accounts
- Cancellation
- Command line: exit codes, account filter, summary
"""

import json
import os
import sys
import threading
from types import SimpleNamespace
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import imap_common
import mail_mirror
from conftest import get_free_port, make_account, temp_env


def msg(n):
    return f"Subject: {n}\r\n\r\nBody {n}\r\n".encode()


class TestRunMirror:
    def test_three_accounts_second_fails_auth(self, single_mock_server, tmp_path, capsys):
        _, port = single_mock_server({"INBOX": [msg(1), msg(2)]}, reject_users={"bob@example.com"})
        accounts = [
            make_account(port, name="Alice", username="alice@example.com"),
            make_account(port, name="Bob", username="bob@example.com"),
            make_account(port, name="Carol", username="carol@example.com"),
        ]

        result = mail_mirror.run_mirror(accounts, str(tmp_path), timeout=5)

        assert [a.account for a in result.accounts] == ["Alice", "Bob", "Carol"]
        alice, bob, carol = result.accounts
        assert alice.ok and alice.fetched == 2
        assert bob.error_kind == imap_common.ERROR_AUTH
        assert carol.ok and carol.fetched == 2
        assert sorted(os.listdir(tmp_path / "Alice" / "INBOX")) == [".folder", "1.eml", "2.eml"]
        assert sorted(os.listdir(tmp_path / "Carol" / "INBOX")) == [".folder", "1.eml", "2.eml"]
        assert os.listdir(tmp_path / "Bob") == []
        assert [a.account for a in result.failed_accounts] == ["Bob"]
        assert "[Bob] Error: Authentication failed" in capsys.readouterr().out

    def test_unreachable_server_isolated(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [msg(1)]})
        accounts = [
            make_account(get_free_port(), name="Down"),
            make_account(port, name="Up"),
        ]

        result = mail_mirror.run_mirror(accounts, str(tmp_path), timeout=2)

        assert result.accounts[0].error_kind == imap_common.ERROR_CONNECTION
        assert result.accounts[1].ok
        assert result.fetched == 1

    def test_full_tree_layout(self, single_mock_server, tmp_path):
        folders = {
            "INBOX": [msg(1)],
            "INBOX/Work": [msg(2)],
            "INBOX/Work/2024": [msg(3)],
            "Sent Items": [msg(4)],
            "Notes?": [msg(5)],
        }
        _, port = single_mock_server(folders)

        result = mail_mirror.run_mirror([make_account(port, name="Example")], str(tmp_path), timeout=5)

        account = result.accounts[0]
        assert account.ok
        assert [f.folder for f in account.folders] == ["INBOX", "INBOX/Work", "INBOX/Work/2024", "Sent Items", "Notes?"]
        assert (tmp_path / "Example" / "INBOX" / "Work" / "2024" / "1.eml").read_bytes() == msg(3)
        assert (tmp_path / "Example" / "Sent Items" / "1.eml").exists()
        assert (tmp_path / "Example" / "Notes_" / "1.eml").exists()

    def test_second_pass_fetches_nothing(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [msg(1)], "Sent": [msg(2)]})
        accounts = [make_account(port)]

        mail_mirror.run_mirror(accounts, str(tmp_path), timeout=5)
        server.fetch_log.clear()
        result = mail_mirror.run_mirror(accounts, str(tmp_path), timeout=5)

        assert result.fetched == 0
        assert result.accounts[0].skipped == 2
        assert server.fetch_log == []

    def test_folder_errors_counted_not_fatal(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [msg(1)], "Private": [msg(2)], "Sent": [msg(3)]}, denied={"Private"})

        account = mail_mirror.run_mirror([make_account(port)], str(tmp_path), timeout=5).accounts[0]

        assert account.ok
        assert account.folder_errors == 1
        assert account.fetched == 2

    def test_damaged_marker_does_not_stop_account(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [msg(1)], "Archive": [msg(2)]})
        inbox_dir = tmp_path / "Example" / "INBOX"
        inbox_dir.mkdir(parents=True)
        (inbox_dir / ".folder").write_bytes("UIDVALIDITY=1\nTotal=1\n".encode("utf-16"))

        account = mail_mirror.run_mirror([make_account(port)], str(tmp_path), timeout=5).accounts[0]

        assert account.ok
        assert [f.folder for f in account.folders] == ["INBOX", "Archive"]
        assert (tmp_path / "Example" / "Archive" / "1.eml").read_bytes() == msg(2)

    def test_account_label_collision(self, single_mock_server, tmp_path, capsys):
        _, port = single_mock_server({"INBOX": [msg(1)]})
        accounts = [make_account(port, name="A:B"), make_account(port, name="A_B")]

        result = mail_mirror.run_mirror(accounts, str(tmp_path), timeout=5)

        assert result.accounts[0].ok
        assert result.accounts[1].error_kind == imap_common.ERROR_PATH_COLLISION
        assert os.listdir(tmp_path) == ["A_B"]
        assert "maps to the same directory as 'A:B'" in capsys.readouterr().out

    def test_parallel_accounts(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [msg(1), msg(2)], "Sent": [msg(3)]})
        accounts = [make_account(port, name=f"User{i}", username=f"user{i}@example.com") for i in range(4)]

        result = mail_mirror.run_mirror(accounts, str(tmp_path), timeout=5, workers=3)

        assert [a.account for a in result.accounts] == ["User0", "User1", "User2", "User3"]
        assert all(a.ok and a.fetched == 3 for a in result.accounts)

    def test_cancelled_before_start(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [msg(1)]})
        cancel_event = threading.Event()
        cancel_event.set()

        result = mail_mirror.run_mirror([make_account(port)], str(tmp_path), timeout=5, cancel_event=cancel_event)

        assert result.cancelled
        assert result.accounts[0].error_kind == imap_common.ERROR_CANCELLED
        assert not os.path.exists(tmp_path / "Example" / "INBOX")

    def test_unexpected_error_isolated(self, tmp_path, capsys):
        calls = []

        def broken_open_session(account, timeout):
            calls.append(account.label)
            if account.label == "First":
                raise RuntimeError("boom")
            raise mail_mirror.imap_session.ServerConnectError("unreachable")

        run = mail_mirror.MirrorRun(str(tmp_path), open_session=broken_open_session)
        result = run.run([make_account(1, name="First"), make_account(1, name="Second")])

        assert calls == ["First", "Second"]
        assert result.accounts[0].error_kind == imap_common.ERROR_UNEXPECTED
        assert result.accounts[1].error_kind == imap_common.ERROR_CONNECTION
        assert "[First] Error: Unexpected failure: boom" in capsys.readouterr().out


class TestMirrorRunCancel:
    def test_cancel_aborts_active_sessions(self, tmp_path):
        run = mail_mirror.MirrorRun(str(tmp_path))
        session = SimpleNamespace(aborted=False)
        session.abort = lambda: setattr(session, "aborted", True)
        run._active_sessions[id(session)] = session

        run.cancel()

        assert run.cancel_event.is_set()
        assert session.aborted

    def test_cancel_from_thread_holding_lock(self, tmp_path):
        # The SIGTERM handler may run cancel() while the same thread holds the lock
        run = mail_mirror.MirrorRun(str(tmp_path))
        session = SimpleNamespace(aborted=False)
        session.abort = lambda: setattr(session, "aborted", True)
        run._active_sessions[id(session)] = session

        def interrupted_while_registering():
            with run._lock:
                run.cancel()

        worker = threading.Thread(target=interrupted_while_registering, daemon=True)
        worker.start()
        worker.join(timeout=2)

        assert not worker.is_alive()
        assert run.cancel_event.is_set()
        assert session.aborted

    def test_cancel_during_walk(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [msg(1)], "A": [msg(2)], "B": [msg(3)]})
        run = mail_mirror.MirrorRun(str(tmp_path), timeout=5)
        real_mirror_folder = mail_mirror.folder_mirror.mirror_folder

        def mirror_then_cancel(*args, **kwargs):
            result = real_mirror_folder(*args, **kwargs)
            run.cancel()
            return result

        with patch.object(mail_mirror.folder_mirror, "mirror_folder", side_effect=mirror_then_cancel):
            result = run.run([make_account(port)])

        account = result.accounts[0]
        assert result.cancelled
        assert account.error_kind == imap_common.ERROR_CANCELLED
        assert [f.folder for f in account.folders] == ["INBOX"]
        assert (tmp_path / "Example" / "INBOX" / "1.eml").exists()


class TestSelectAccounts:
    def test_no_filter(self):
        accounts = [make_account(1, name="A"), make_account(1, name="B")]
        assert mail_mirror.select_accounts(accounts, None) == accounts

    def test_case_insensitive(self):
        accounts = [make_account(1, name="Work"), make_account(1, name="Home")]
        assert [a.label for a in mail_mirror.select_accounts(accounts, ["work"])] == ["Work"]

    def test_unknown(self):
        with pytest.raises(mail_mirror.mirror_config.ConfigError, match="nope"):
            mail_mirror.select_accounts([make_account(1, name="Work")], ["nope"])


class TestMain:
    def write_config(self, directory, port, **extra):
        config = {
            "output_root": "out",
            "timeout": 5,
            "accounts": [
                {
                    "name": "Example",
                    "host": "localhost",
                    "port": port,
                    "use_ssl": False,
                    "starttls": False,
                    "username": "user@example.com",
                    "password": "pw",
                },
                {
                    "name": "Other",
                    "host": "localhost",
                    "port": port,
                    "use_ssl": False,
                    "starttls": False,
                    "username": "other@example.com",
                    "password": "pw",
                },
            ],
        }
        config.update(extra)
        (directory / "mailmirror.json").write_text(json.dumps(config), encoding="utf-8")

    def test_success(self, single_mock_server, tmp_path, capsys):
        _, port = single_mock_server({"INBOX": [msg(1)]})
        self.write_config(tmp_path, port)

        with temp_env({}):
            code = mail_mirror.main(["--config-dir", str(tmp_path)])

        assert code == 0
        assert (tmp_path / "out" / "Example" / "INBOX" / "1.eml").exists()
        assert (tmp_path / "out" / "Other" / "INBOX" / "1.eml").exists()
        out = capsys.readouterr().out
        assert "--- Mirror Summary ---" in out
        assert "Done." in out

    def test_account_filter_and_output_root(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [msg(1)]})
        self.write_config(tmp_path, port)
        target = tmp_path / "elsewhere"

        with temp_env({}):
            code = mail_mirror.main(
                ["--config-dir", str(tmp_path), "--account", "other", "--output-root", str(target)]
            )

        assert code == 0
        assert os.listdir(target) == ["Other"]

    def test_failed_account_still_exit_zero(self, single_mock_server, tmp_path, capsys):
        _, port = single_mock_server({"INBOX": [msg(1)]}, reject_users={"other@example.com"})
        self.write_config(tmp_path, port)

        with temp_env({}):
            code = mail_mirror.main(["--config-dir", str(tmp_path)])

        assert code == 0
        out = capsys.readouterr().out
        assert "FAILED (auth)" in out
        assert "1 of 2 account(s) had errors" in out

    def test_no_accounts(self, tmp_path, capsys):
        with temp_env({}):
            code = mail_mirror.main(["--config-dir", str(tmp_path)])

        assert code == 1
        assert "No accounts configured" in capsys.readouterr().out

    def test_invalid_config(self, tmp_path, capsys):
        (tmp_path / "mailmirror.json").write_text('{"accounts": [{"host": "x"}]}', encoding="utf-8")

        with temp_env({}):
            code = mail_mirror.main(["--config-dir", str(tmp_path)])

        assert code == 1
        assert "Error: accounts[0]" in capsys.readouterr().out

    def test_unknown_account_filter(self, tmp_path):
        self.write_config(tmp_path, 1)

        with temp_env({}):
            assert mail_mirror.main(["--config-dir", str(tmp_path), "--account", "Missing"]) == 1

    def test_invalid_workers(self, tmp_path):
        self.write_config(tmp_path, 1)

        with temp_env({}):
            assert mail_mirror.main(["--config-dir", str(tmp_path), "--workers", "0"]) == 1

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            mail_mirror.main(["--version"])
        assert exc_info.value.code == 0
        assert imap_common.get_version() in capsys.readouterr().out


class TestCli:
    def test_keyboard_interrupt(self, capsys):
        with patch.object(mail_mirror, "main", side_effect=KeyboardInterrupt):
            assert mail_mirror.cli() == 0
        assert "Process terminated by user." in capsys.readouterr().out

    def test_fatal_error(self, capsys):
        with patch.object(mail_mirror, "main", side_effect=RuntimeError("disk on fire")):
            assert mail_mirror.cli() == 1
        assert "Fatal Error: disk on fire" in capsys.readouterr().out
