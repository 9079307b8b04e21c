"""
IMAP Folder Mirror

Reconciles one remote folder against its local directory:

    <account root>/<sanitized segment>/.../.folder      UIDVALIDITY=<n> / Total=<n>
    <account root>/<sanitized segment>/.../<uid>.eml    raw message, never rewritten

The existence of <uid>.eml is the only record that a message was mirrored, so a
pass can be interrupted at any point and the next pass picks up where it left
off. Failures never propagate: they are logged and recorded on the returned
FolderResult.
"""

from __future__ import annotations

import imaplib
import os
import tempfile
from dataclasses import dataclass

import imap_common

safe_print = imap_common.safe_print

FOLDER_MARKER = ".folder"
EML_SUFFIX = ".eml"
PROGRESS_EVERY = 10


@dataclass
class FolderResult:
    folder: str
    local_path: str | None = None
    uidvalidity: int | None = None
    total: int = 0
    fetched: int = 0
    skipped: int = 0
    failed: int = 0
    error_kind: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def connection_lost(self) -> bool:
        return self.error_kind == imap_common.ERROR_CONNECTION


def local_folder_path(account_root: str, folder: imap_common.RemoteFolder) -> str:
    """Join the sanitized segments of the folder's hierarchical name under the account root."""
    segments = [imap_common.sanitize_path_segment(part) for part in folder.segments()]
    return os.path.join(account_root, *segments)


def message_path(folder_path: str, uid: int) -> str:
    return os.path.join(folder_path, f"{uid}{EML_SUFFIX}")


def read_folder_marker(folder_path: str) -> dict | None:
    """
    Read KEY=value pairs from the folder marker. Returns None if it does not exist.

    Undecodable bytes and malformed lines are ignored, so a damaged marker reads
    as one without a previous epoch and is simply rewritten.
    """
    path = os.path.join(folder_path, FOLDER_MARKER)
    try:
        with open(path, "rb") as f:
            lines = f.read().decode("utf-8", errors="replace").splitlines()
    except FileNotFoundError:
        return None

    values = {}
    for line in lines:
        key, sep, value = line.partition("=")
        if sep and value.strip().isdecimal():
            values[key.strip()] = int(value.strip())
    return values


def write_folder_marker(folder_path: str, uidvalidity: int, total: int) -> None:
    """Overwrite the folder marker. The replace is atomic, readers never see half a file."""
    fd, tmp_path = tempfile.mkstemp(prefix=f"{FOLDER_MARKER}.", suffix=".tmp", dir=folder_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(f"UIDVALIDITY={uidvalidity}\nTotal={total}\n")
        os.replace(tmp_path, os.path.join(folder_path, FOLDER_MARKER))
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def write_message_file(path: str, raw_message: bytes) -> bool:
    """
    Create path exclusively and write the raw message to it.

    Returns False if the file already exists (another writer won the race).
    A write failure removes the partial file and re-raises, so a truncated
    message is never mistaken for a mirrored one.
    """
    try:
        f = open(path, "xb")
    except FileExistsError:
        return False

    try:
        with f:
            f.write(raw_message)
    except BaseException:
        os.remove(path)
        raise
    return True


def examine_folder(conn, folder: imap_common.RemoteFolder) -> tuple[int, int]:
    """
    Open the folder read-only (EXAMINE).

    Returns:
        (uidvalidity, message_count)

    Raises:
        imaplib.IMAP4.error: the server refused to open the folder.
    """
    typ, data = conn.select(imap_common.quote_mailbox(folder.raw_name), readonly=True)
    if typ != "OK":
        raise imaplib.IMAP4.error(f"EXAMINE refused: {imap_common.response_text(data)}")

    _, validity = conn.response("UIDVALIDITY")
    try:
        total = int(data[0]) if data and data[0] else 0
        uidvalidity = int(validity[0]) if validity and validity[0] else 0
    except (TypeError, ValueError) as e:
        raise imaplib.IMAP4.error(f"EXAMINE returned an unreadable EXISTS/UIDVALIDITY: {e}") from e
    return uidvalidity, total


def search_all_uids(conn) -> list[int]:
    typ, data = conn.uid("search", None, "ALL")
    if typ != "OK":
        raise imaplib.IMAP4.error(f"UID SEARCH refused: {imap_common.response_text(data)}")
    return imap_common.parse_uid_list(data)


def fetch_message(conn, uid: int) -> bytes:
    """Fetch the full raw message without touching its \\Seen flag."""
    typ, data = conn.uid("fetch", str(uid), "(BODY.PEEK[])")
    if typ != "OK":
        raise imaplib.IMAP4.error(f"UID FETCH refused: {imap_common.response_text(data)}")
    raw = imap_common.extract_fetch_body(data, uid)
    if raw is None:
        raise imaplib.IMAP4.error("UID FETCH returned no message body")
    return raw


def mirror_folder(conn, folder, account_root, *, label="", claimed_paths=None, cancel_event=None):
    """
    Mirror one remote folder into its local directory.

    Args:
        conn: Authenticated IMAP connection (imaplib or ConnectionProxy)
        folder: imap_common.RemoteFolder
        account_root: Local directory of the account
        label: Account label used in log messages
        claimed_paths: Dict of normalized local path -> remote folder name, shared
            by all folders of one account walk to refuse sanitization collisions
        cancel_event: threading.Event; when set, stops before the next message

    Returns:
        FolderResult with fetched/skipped/failed counts and the error kind, if any.
    """
    prefix = f"[{label}] " if label else ""
    name = folder.name
    folder_path = local_folder_path(account_root, folder)
    result = FolderResult(folder=name, local_path=folder_path)

    def fail(kind, message):
        result.error_kind = kind
        result.error = message
        safe_print(f"{prefix}Error: {message}")
        return result

    if claimed_paths is not None:
        owner = claimed_paths.setdefault(os.path.normcase(os.path.abspath(folder_path)), name)
        if owner != name:
            return fail(
                imap_common.ERROR_PATH_COLLISION,
                f"Folder '{name}' maps to the same local directory as '{owner}' ({folder_path}); not mirrored.",
            )

    try:
        os.makedirs(folder_path, exist_ok=True)
    except OSError as e:
        return fail(imap_common.ERROR_LOCAL_IO, f"Cannot create directory {folder_path}: {e}")

    if not folder.selectable:
        safe_print(f"{prefix}Folder {name} is not selectable, only its subfolders are mirrored.")
        return result

    try:
        uidvalidity, total = examine_folder(conn, folder)
    except imaplib.IMAP4.abort as e:
        return fail(imap_common.ERROR_CONNECTION, f"Connection lost opening folder {name}: {e}")
    except imaplib.IMAP4.error as e:
        return fail(imap_common.ERROR_FOLDER_OPEN, f"Cannot open folder {name}: {e}")
    except OSError as e:
        return fail(imap_common.ERROR_CONNECTION, f"Connection lost opening folder {name}: {e}")

    result.uidvalidity = uidvalidity
    result.total = total
    safe_print(f"{prefix}Processing folder {name} with {total} messages")

    try:
        previous = read_folder_marker(folder_path)
        if previous and previous.get("UIDVALIDITY") not in (None, uidvalidity):
            safe_print(
                f"{prefix}Warning: UIDVALIDITY of {name} changed from {previous['UIDVALIDITY']} to "
                f"{uidvalidity}; existing local files belong to the old UID numbering and are kept."
            )
        write_folder_marker(folder_path, uidvalidity, total)
    except OSError as e:
        return fail(imap_common.ERROR_LOCAL_IO, f"Cannot write {FOLDER_MARKER} for folder {name}: {e}")

    if total == 0:
        return result

    try:
        uids = search_all_uids(conn)
    except imaplib.IMAP4.abort as e:
        return fail(imap_common.ERROR_CONNECTION, f"Connection lost searching folder {name}: {e}")
    except imaplib.IMAP4.error as e:
        return fail(imap_common.ERROR_FOLDER_OPEN, f"Cannot search folder {name}: {e}")
    except OSError as e:
        return fail(imap_common.ERROR_CONNECTION, f"Connection lost searching folder {name}: {e}")

    safe_print(f"{prefix}Found {len(uids)} UIDs to process in folder {name}")

    for uid in uids:
        if cancel_event is not None and cancel_event.is_set():
            result.error_kind = imap_common.ERROR_CANCELLED
            result.error = "Cancelled"
            break

        eml_path = message_path(folder_path, uid)
        if os.path.exists(eml_path):
            result.skipped += 1
            continue

        try:
            raw_message = fetch_message(conn, uid)
        except imaplib.IMAP4.abort as e:
            fail(imap_common.ERROR_CONNECTION, f"Connection lost fetching UID {uid} in folder {name}: {e}")
            break
        except imaplib.IMAP4.error as e:
            result.failed += 1
            safe_print(f"{prefix}Error processing message UID {uid} in folder {name}: {e}")
            continue
        except OSError as e:
            fail(imap_common.ERROR_CONNECTION, f"Connection lost fetching UID {uid} in folder {name}: {e}")
            break

        try:
            created = write_message_file(eml_path, raw_message)
        except OSError as e:
            result.failed += 1
            safe_print(f"{prefix}Error writing message UID {uid} in folder {name} to {eml_path}: {e}")
            continue

        if not created:
            result.skipped += 1
            safe_print(f"{prefix}UID {uid} in folder {name} was written by another process, skipped.")
            continue

        result.fetched += 1
        if result.fetched % PROGRESS_EVERY == 0:
            safe_print(f"{prefix}Processed {result.fetched} messages in folder {name}")

    safe_print(
        f"{prefix}Completed folder {name}: fetched {result.fetched}, skipped {result.skipped}, failed {result.failed}"
    )
    return result
