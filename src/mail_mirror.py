"""
IMAP Mail Mirror

Mirrors every folder of one or more IMAP accounts into a local directory tree:

    <output root>/<account label>/<folder>/<subfolder>/.folder
    <output root>/<account label>/<folder>/<subfolder>/<uid>.eml

Messages are downloaded once and never rewritten; running the tool again only
fetches what is new. A failing message, folder or account is logged and the
run carries on with the rest.

Configuration:
    mailmirror.json / mailmirror.local.json in the config directory, plus
    MAILMIRROR_* environment variables (see mirror_config.py).

Usage:
    python3 mail_mirror.py
    python3 mail_mirror.py --config-dir ~/mirror --account Work --account Personal
    python3 mail_mirror.py --output-root /srv/mail --workers 4 --timeout 60
"""

from __future__ import annotations

import argparse
import concurrent.futures
import os
import signal
import sys
import threading
from dataclasses import dataclass, field

import folder_mirror
import folder_walker
import imap_common
import imap_session
import mirror_config

safe_print = imap_common.safe_print


@dataclass
class AccountResult:
    account: str
    local_path: str | None = None
    folders: list = field(default_factory=list)
    fetched: int = 0
    skipped: int = 0
    failed: int = 0
    folder_errors: int = 0
    discovery_errors: int = 0
    error_kind: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    def add_folder(self, folder_result):
        self.folders.append(folder_result)
        self.fetched += folder_result.fetched
        self.skipped += folder_result.skipped
        self.failed += folder_result.failed
        if folder_result.error_kind not in (None, imap_common.ERROR_CANCELLED):
            self.folder_errors += 1


@dataclass
class RunResult:
    output_root: str
    accounts: list = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_accounts(self) -> list:
        return [account for account in self.accounts if not account.ok]

    @property
    def fetched(self) -> int:
        return sum(account.fetched for account in self.accounts)


def account_root_path(output_root, account):
    return os.path.join(output_root, imap_common.sanitize_path_segment(account.label))


class MirrorRun:
    """
    One pass over a list of accounts.

    Accounts run one after another, or in a thread pool when workers > 1. Each
    account owns its session and its subtree of the output root, folders of
    one account are always mirrored sequentially.
    """

    def __init__(
        self,
        output_root,
        timeout=imap_session.DEFAULT_TIMEOUT,
        workers=1,
        cancel_event=None,
        open_session=imap_session.open_session,
    ):
        self.output_root = output_root
        self.timeout = timeout
        self.workers = max(1, workers)
        self.cancel_event = cancel_event or threading.Event()
        self._open_session = open_session
        self._active_sessions = {}
        # SIGTERM runs cancel() on the main thread, possibly while it holds the lock
        self._lock = threading.RLock()

    def cancel(self):
        """Stop at the next folder or message boundary and interrupt blocked reads."""
        self.cancel_event.set()
        with self._lock:
            sessions = list(self._active_sessions.values())
        for session in sessions:
            session.abort()

    def mirror_account(self, account, account_root):
        label = account.label
        result = AccountResult(account=label, local_path=account_root)

        if self.cancel_event.is_set():
            result.error_kind = imap_common.ERROR_CANCELLED
            result.error = "Cancelled"
            return result

        try:
            os.makedirs(account_root, exist_ok=True)
        except OSError as e:
            result.error_kind = imap_common.ERROR_LOCAL_IO
            result.error = f"Cannot create account directory {account_root}: {e}"
            safe_print(f"[{label}] Error: {result.error}")
            return result

        try:
            session = self._open_session(account, timeout=self.timeout)
        except imap_session.SessionError as e:
            result.error_kind = e.kind
            result.error = str(e)
            safe_print(f"[{label}] Error: {e}")
            return result

        with self._lock:
            self._active_sessions[id(session)] = session
        try:
            claimed_paths = {}

            def on_folder(folder):
                folder_result = folder_mirror.mirror_folder(
                    session.conn,
                    folder,
                    account_root,
                    label=label,
                    claimed_paths=claimed_paths,
                    cancel_event=self.cancel_event,
                )
                result.add_folder(folder_result)
                return folder_result

            walk = folder_walker.walk_folders(session, on_folder, cancel_event=self.cancel_event)
            result.discovery_errors = len(walk.discovery_errors)
            if walk.error_kind:
                result.error_kind = walk.error_kind
                result.error = walk.error
        finally:
            with self._lock:
                self._active_sessions.pop(id(session), None)
            session.close()

        if self.cancel_event.is_set() and result.error_kind in (None, imap_common.ERROR_CONNECTION):
            result.error_kind = imap_common.ERROR_CANCELLED
            result.error = "Cancelled"

        safe_print(
            f"[{label}] Account finished: {len(result.folders)} folders, fetched {result.fetched}, "
            f"skipped {result.skipped}, failed {result.failed}"
        )
        return result

    def _mirror_account_isolated(self, account, account_root):
        try:
            return self.mirror_account(account, account_root)
        except Exception as e:
            safe_print(f"[{account.label}] Error: Unexpected failure: {e}")
            return AccountResult(
                account=account.label,
                local_path=account_root,
                error_kind=imap_common.ERROR_UNEXPECTED,
                error=str(e),
            )

    def run(self, accounts):
        """
        Mirror every account. Never raises for per-account failures.

        Raises:
            OSError: the output root itself cannot be created.
        """
        os.makedirs(self.output_root, exist_ok=True)
        run_result = RunResult(output_root=self.output_root)

        # Accounts whose labels sanitize to the same directory would share a tree
        claimed = {}
        slots = []
        for account in accounts:
            account_root = account_root_path(self.output_root, account)
            key = os.path.normcase(os.path.abspath(account_root))
            if key in claimed:
                message = (
                    f"Account '{account.label}' maps to the same directory as '{claimed[key]}' "
                    f"({account_root}); not mirrored."
                )
                safe_print(f"[{account.label}] Error: {message}")
                slots.append(
                    AccountResult(
                        account=account.label,
                        local_path=account_root,
                        error_kind=imap_common.ERROR_PATH_COLLISION,
                        error=message,
                    )
                )
                continue
            claimed[key] = account.label
            slots.append((account, account_root))

        jobs = [slot for slot in slots if isinstance(slot, tuple)]
        if self.workers == 1 or len(jobs) <= 1:
            try:
                finished = {id(job): self._mirror_account_isolated(*job) for job in jobs}
            except KeyboardInterrupt:
                self.cancel()
                raise
        else:
            executor = concurrent.futures.ThreadPoolExecutor(max_workers=min(self.workers, len(jobs)))
            try:
                futures = {id(job): executor.submit(self._mirror_account_isolated, *job) for job in jobs}
                finished = {key: future.result() for key, future in futures.items()}
            except KeyboardInterrupt:
                self.cancel()
                executor.shutdown(wait=False, cancel_futures=True)
                raise
            finally:
                executor.shutdown(wait=True)

        for slot in slots:
            run_result.accounts.append(finished[id(slot)] if isinstance(slot, tuple) else slot)
        run_result.cancelled = self.cancel_event.is_set()
        return run_result


def run_mirror(accounts, output_root, timeout=imap_session.DEFAULT_TIMEOUT, workers=1, cancel_event=None):
    """Mirror the given accounts into output_root and return the RunResult."""
    return MirrorRun(output_root, timeout=timeout, workers=workers, cancel_event=cancel_event).run(accounts)


def print_summary(run_result):
    print("\n--- Mirror Summary ---")
    for account in run_result.accounts:
        if account.ok:
            status = "OK"
        else:
            status = f"FAILED ({account.error_kind})"
        print(
            f"{account.account:<20}: {status}, folders {len(account.folders)}, fetched {account.fetched}, "
            f"skipped {account.skipped}, failed {account.failed}"
        )
        if account.folder_errors:
            print(f"{'':<20}  {account.folder_errors} folder(s) with errors")
        if account.discovery_errors:
            print(f"{'':<20}  {account.discovery_errors} folder listing error(s)")
        if account.error:
            print(f"{'':<20}  {account.error}")
    print("----------------------")


def select_accounts(accounts, names):
    """Filter accounts by label (case-insensitive). Unknown names raise ConfigError."""
    if not names:
        return list(accounts)
    wanted = {name.casefold() for name in names}
    selected = [account for account in accounts if account.label.casefold() in wanted]
    missing = wanted - {account.label.casefold() for account in selected}
    if missing:
        raise mirror_config.ConfigError(f"Unknown account(s): {', '.join(sorted(missing))}")
    return selected


def main(argv=None):
    parser = argparse.ArgumentParser(description="Mirror IMAP mailboxes to local .eml files.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {imap_common.get_version()}")
    parser.add_argument(
        "--config-dir",
        default=None,
        help=f"Directory holding {mirror_config.CONFIG_FILENAME} (or {mirror_config.ENV_CONFIG_DIR})",
    )
    parser.add_argument("--output-root", default=None, help="Local mirror root (overrides output_root)")
    parser.add_argument(
        "--account",
        action="append",
        dest="accounts",
        metavar="NAME",
        help="Only mirror this account (repeatable)",
    )
    parser.add_argument("--workers", type=int, default=None, help="Accounts mirrored in parallel")
    parser.add_argument("--timeout", type=int, default=None, help="Socket timeout in seconds")
    args = parser.parse_args(argv)

    try:
        config = mirror_config.load_config(args.config_dir)
        if args.output_root:
            config.output_root = mirror_config.resolve_output_root(args.output_root, os.getcwd())
        if args.workers is not None:
            if args.workers < 1:
                raise mirror_config.ConfigError(f"--workers must be >= 1, got {args.workers}")
            config.workers = args.workers
        if args.timeout is not None:
            if args.timeout < 1:
                raise mirror_config.ConfigError(f"--timeout must be >= 1, got {args.timeout}")
            config.timeout = args.timeout
        accounts = select_accounts(config.accounts, args.accounts)
    except mirror_config.ConfigError as e:
        print(f"Error: {e}")
        return 1

    if not accounts:
        print(
            f"Error: No accounts configured. Add them to {mirror_config.CONFIG_FILENAME} "
            f"or set {mirror_config.ENV_PREFIX}IMAP_HOST."
        )
        return 1

    print("\n--- Configuration Summary ---")
    print(f"Config Dir      : {config.config_dir}")
    print(f"Output Root     : {config.output_root}")
    print(f"Accounts        : {', '.join(account.label for account in accounts)}")
    print(f"Workers         : {config.workers}")
    print(f"Timeout         : {config.timeout}s")
    print("-----------------------------\n")

    mirror_run = MirrorRun(config.output_root, timeout=config.timeout, workers=config.workers)

    handle_sigterm = threading.current_thread() is threading.main_thread()
    if handle_sigterm:
        previous_handler = signal.signal(signal.SIGTERM, lambda signum, frame: mirror_run.cancel())
    try:
        run_result = mirror_run.run(accounts)
    except OSError as e:
        print(f"Error: Cannot create output root {config.output_root}: {e}")
        return 1
    finally:
        if handle_sigterm:
            signal.signal(signal.SIGTERM, previous_handler)

    print_summary(run_result)
    if run_result.cancelled:
        print("\nProcess terminated by user.")
        return 0

    failed = run_result.failed_accounts
    if failed:
        print(f"\nDone. {len(failed)} of {len(run_result.accounts)} account(s) had errors.")
    else:
        print("\nDone.")
    return 0


def cli():
    try:
        return main()
    except KeyboardInterrupt:
        print("\nProcess terminated by user.")
        return 0
    except Exception as e:
        print(f"Fatal Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(cli())
