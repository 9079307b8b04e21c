"""
IMAP Folder Tree Walker

Discovers the folder hierarchy of one account one level at a time:

    INBOX, then its children (LIST "" "INBOX/%"), depth-first
    each personal namespace root, then its children (LIST "" "<prefix>%"), depth-first

The server's recursive listing ("*") is never used, so servers that truncate
or misreport deep listings are still walked completely. Every folder is handed
to the on_folder callback before its children are listed, at most once per
walk (keyed by the case-folded full name).
"""

from __future__ import annotations

import imaplib
from dataclasses import dataclass, field

import imap_common

safe_print = imap_common.safe_print


@dataclass
class WalkResult:
    visited: list = field(default_factory=list)
    duplicates: int = 0
    discovery_errors: list = field(default_factory=list)
    error_kind: str | None = None
    error: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.error_kind == imap_common.ERROR_CANCELLED

    @property
    def connection_lost(self) -> bool:
        return self.error_kind == imap_common.ERROR_CONNECTION


def list_subfolders(conn, pattern):
    """
    Lists the folders matching a one-level wire-form pattern such as "INBOX/%".

    Returns:
        List of RemoteFolder in server order. Unparsable entries are dropped.

    Raises:
        imaplib.IMAP4.abort / OSError: the connection is gone.
        imaplib.IMAP4.error: the server refused the LIST command.
    """
    typ, data = conn.list('""', imap_common.quote_mailbox(pattern))
    if typ != "OK":
        raise imaplib.IMAP4.error(f"LIST {pattern} refused: {imap_common.response_text(data)}")

    folders = []
    for item in data or []:
        entry = imap_common.parse_list_entry(item)
        if entry is not None:
            folders.append(entry)
    return folders


def walk_folders(session, on_folder, *, list_children=None, visited=None, cancel_event=None):
    """
    Walk every folder of the session's account.

    Args:
        session: imap_session.AccountSession (conn, label, inbox, personal_namespaces)
        on_folder: Callable(RemoteFolder) -> FolderResult | None. A result whose
            error kind is "connection" stops the walk.
        list_children: Callable(pattern) -> list[RemoteFolder]; defaults to
            list_subfolders on the session connection
        visited: Set of folder keys already seen; a fresh set when omitted
        cancel_event: threading.Event; when set, stops before the next folder

    Returns:
        WalkResult. Listing failures are recorded and the walk continues.
    """
    label = session.label
    if list_children is None:

        def list_children(pattern):
            return list_subfolders(session.conn, pattern)

    if visited is None:
        visited = set()
    result = WalkResult()

    def expand(parent_key, pattern, description):
        """Return the children listed under pattern, or None if the walk must stop."""
        try:
            children = list_children(pattern)
        except imaplib.IMAP4.abort as e:
            result.error_kind = imap_common.ERROR_CONNECTION
            result.error = f"Connection lost listing subfolders of {description}: {e}"
            return None
        except imaplib.IMAP4.error as e:
            message = f"Could not list subfolders of {description}: {e}"
            result.discovery_errors.append(message)
            safe_print(f"[{label}] Warning: {message}")
            return []
        except OSError as e:
            result.error_kind = imap_common.ERROR_CONNECTION
            result.error = f"Connection lost listing subfolders of {description}: {e}"
            return None
        return [child for child in children if child.key != parent_key]

    def visit_tree(start):
        stack = [start]
        while stack:
            if cancel_event is not None and cancel_event.is_set():
                result.error_kind = imap_common.ERROR_CANCELLED
                result.error = "Cancelled"
                return False

            folder = stack.pop()
            if folder.key in visited:
                result.duplicates += 1
                continue
            visited.add(folder.key)
            result.visited.append(folder.name)

            outcome = on_folder(folder)
            if outcome is not None and outcome.error_kind == imap_common.ERROR_CONNECTION:
                result.error_kind = imap_common.ERROR_CONNECTION
                result.error = outcome.error
                return False

            pattern = folder.child_pattern() if folder.may_have_children else None
            if pattern is None:
                continue
            children = expand(folder.key, pattern, folder.name)
            if children is None:
                return False
            stack.extend(reversed(children))
        return True

    if not visit_tree(session.inbox):
        return _finish(result, label)

    for root in session.personal_namespaces:
        if cancel_event is not None and cancel_event.is_set():
            result.error_kind = imap_common.ERROR_CANCELLED
            result.error = "Cancelled"
            break

        description = f"namespace '{root.name}'" if root.prefix else "the default namespace"
        children = expand(root.key, root.child_pattern(), description)
        if children is None:
            break
        stopped = False
        for child in children:
            if not visit_tree(child):
                stopped = True
                break
        if stopped:
            break

    return _finish(result, label)


def _finish(result, label):
    if result.connection_lost:
        safe_print(f"[{label}] Error: {result.error}")
    elif result.cancelled:
        safe_print(f"[{label}] Folder walk cancelled after {len(result.visited)} folders.")
    return result
