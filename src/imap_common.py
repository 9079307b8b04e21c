"""
IMAP Common Utilities

Shared functionality for the mirror engine: console logging, folder name
encoding, IMAP response parsing and local path sanitization.
"""

from __future__ import annotations

import binascii
import re
import threading
from dataclasses import dataclass

from imapclient import imap_utf7

__version__ = "1.0.0"

# IMAP Folder Constants
FOLDER_INBOX = "INBOX"

# LIST attributes (RFC 3501 / RFC 5258), compared case-insensitively
FLAG_NOSELECT = "\\Noselect"
FLAG_NONEXISTENT = "\\NonExistent"
FLAG_NOINFERIORS = "\\Noinferiors"
UNSELECTABLE_FLAGS = {FLAG_NOSELECT.lower(), FLAG_NONEXISTENT.lower()}

# Error kinds recorded on folder/account results
ERROR_CONNECTION = "connection"
ERROR_AUTH = "auth"
ERROR_NAMESPACE_DISCOVERY = "namespace_discovery"
ERROR_FOLDER_OPEN = "folder_open"
ERROR_MESSAGE_FETCH = "message_fetch"
ERROR_COLLISION_RACE = "collision_race"
ERROR_PATH_COLLISION = "path_collision"
ERROR_LOCAL_IO = "local_io"
ERROR_CANCELLED = "cancelled"
ERROR_UNEXPECTED = "unexpected"

# Characters rejected in file names by at least one common platform
_ILLEGAL_PATH_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
PATH_REPLACEMENT_CHAR = "_"

_print_lock = threading.Lock()


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}", flush=True)


def get_version() -> str:
    return __version__


def sanitize_path_segment(name: str) -> str:
    """
    Maps one account label or folder segment to a safe directory name.

    Every character that is illegal in a file name is replaced with "_".
    Everything else (case, spaces, non-ASCII) is left untouched. The special
    entries "", "." and ".." are replaced so a segment can never point at its
    parent or at the directory itself.
    """
    if name in ("", "."):
        return PATH_REPLACEMENT_CHAR
    if name == "..":
        return PATH_REPLACEMENT_CHAR * 2
    return _ILLEGAL_PATH_CHARS.sub(PATH_REPLACEMENT_CHAR, name)


def decode_folder_name(raw_name: str) -> str:
    """Decode an IMAP modified UTF-7 folder name. Malformed names are returned as-is."""
    try:
        return imap_utf7.decode(raw_name.encode("ascii"))
    except (UnicodeError, ValueError, binascii.Error):
        return raw_name


def encode_folder_name(name: str) -> str:
    """Encode a folder name to its IMAP modified UTF-7 wire form."""
    return imap_utf7.encode(name).decode("ascii")


def quote_mailbox(raw_name: str) -> str:
    """Quote a wire-form mailbox name (or LIST pattern) for an IMAP command."""
    escaped = raw_name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def response_text(data) -> str:
    """Flatten imaplib response data into a readable string for log messages."""
    if not data:
        return ""
    parts = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            item = item[0]
        if isinstance(item, bytes):
            item = item.decode("utf-8", errors="replace")
        parts.append(str(item))
    return " ".join(parts).strip()


# Tokens of an IMAP response line: parentheses, quoted strings, atoms
_TOKEN_RE = re.compile(r'\s*(?:(\()|(\))|"((?:[^"\\]|\\.)*)"|([^\s()"]+))')


class _Atom(str):
    """An unquoted token; lets NIL be told apart from the quoted string "NIL"."""


def parse_response_tokens(text: str) -> list:
    """
    Parses an IMAP response line into nested lists.

    Quoted strings become str (unescaped), atoms become _Atom, NIL becomes None
    and parenthesized lists become Python lists.
    """
    stack: list[list] = [[]]
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ValueError(f"Cannot parse IMAP response: {text!r}")
        pos = match.end()
        open_paren, close_paren, quoted, atom = match.groups()
        if open_paren:
            stack.append([])
        elif close_paren:
            if len(stack) == 1:
                raise ValueError(f"Unbalanced parenthesis in IMAP response: {text!r}")
            inner = stack.pop()
            stack[-1].append(inner)
        elif quoted is not None:
            stack[-1].append(re.sub(r"\\(.)", r"\1", quoted))
        elif atom is not None:
            stack[-1].append(None if atom.upper() == "NIL" else _Atom(atom))
    if len(stack) != 1:
        raise ValueError(f"Unbalanced parenthesis in IMAP response: {text!r}")
    return stack[0]


def _to_text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


@dataclass(frozen=True)
class RemoteFolder:
    """A folder as reported by LIST: decoded name, wire name, separator, attributes."""

    name: str
    raw_name: str
    delimiter: str | None = None
    flags: tuple = ()

    @property
    def key(self) -> str:
        """Identity used by the visited set: the full name, case-insensitive."""
        return self.name.casefold()

    @property
    def selectable(self) -> bool:
        return not any(flag.lower() in UNSELECTABLE_FLAGS for flag in self.flags)

    @property
    def may_have_children(self) -> bool:
        return FLAG_NOINFERIORS.lower() not in {flag.lower() for flag in self.flags}

    def segments(self) -> list[str]:
        if not self.delimiter:
            return [self.name]
        return self.name.split(self.delimiter)

    def child_pattern(self) -> str | None:
        """Wire-form LIST pattern matching the direct children of this folder."""
        if not self.delimiter:
            return None
        return f"{self.raw_name}{self.delimiter}%"


@dataclass(frozen=True)
class NamespaceRoot:
    """A personal namespace prefix as reported by NAMESPACE (RFC 2342)."""

    prefix: str
    delimiter: str | None = None

    @property
    def name(self) -> str:
        return decode_folder_name(self.prefix)

    @property
    def key(self) -> str:
        return f"namespace:{self.prefix}"

    def child_pattern(self) -> str:
        if not self.prefix or not self.delimiter or self.prefix.endswith(self.delimiter):
            return f"{self.prefix}%"
        return f"{self.prefix}{self.delimiter}%"


def parse_list_entry(item) -> RemoteFolder | None:
    """
    Parses one LIST response item into a RemoteFolder.

    Handles quoted names, atom names, NIL delimiters and names sent as literals
    (imaplib returns those as a (header, literal) tuple). Returns None when the
    entry cannot be parsed.
    """
    if item is None:
        return None

    literal_name = None
    if isinstance(item, tuple):
        if len(item) < 2:
            return None
        line, literal_name = _to_text(item[0]), _to_text(item[1])
    else:
        line = _to_text(item)

    try:
        tokens = parse_response_tokens(line)
    except ValueError:
        return None

    if len(tokens) < 2 or not isinstance(tokens[0], list):
        return None

    flags = tuple(str(flag) for flag in tokens[0] if flag is not None)
    delimiter = tokens[1]
    if literal_name is not None:
        raw_name = literal_name
    elif len(tokens) >= 3 and tokens[2] is not None:
        raw_name = str(tokens[2])
    else:
        return None

    return RemoteFolder(
        name=decode_folder_name(raw_name),
        raw_name=raw_name,
        delimiter=str(delimiter) if delimiter else None,
        flags=flags,
    )


def parse_namespace_response(data) -> list[NamespaceRoot]:
    """
    Extracts the personal namespaces from a NAMESPACE response.

    Example input: [b'(("" "/")("Archive/" "/")) NIL (("#shared/" "/"))']
    Only the first group (personal namespaces) is returned.
    """
    line = " ".join(_to_text(item) for item in data if item is not None and not isinstance(item, tuple))
    if not line.strip():
        return []

    tokens = parse_response_tokens(line)
    if not tokens or not isinstance(tokens[0], list):
        return []

    roots = []
    for entry in tokens[0]:
        if not isinstance(entry, list) or not entry or entry[0] is None:
            continue
        delimiter = entry[1] if len(entry) > 1 and entry[1] else None
        roots.append(NamespaceRoot(prefix=str(entry[0]), delimiter=str(delimiter) if delimiter else None))
    return roots


def parse_uid_list(data) -> list[int]:
    """Parses a UID SEARCH response into a list of integers, keeping server order."""
    uids = []
    for item in data or []:
        if not item:
            continue
        for token in _to_text(item).split():
            if token.isdigit():
                uids.append(int(token))
    return uids


def extract_fetch_body(data, uid: int | None = None) -> bytes | None:
    """
    Returns the literal payload of a FETCH response.

    When several messages are returned (unsolicited FETCH responses), the one
    whose header mentions the requested UID wins.
    """
    bodies = [item for item in data or [] if isinstance(item, tuple) and len(item) >= 2]
    if not bodies:
        return None
    if uid is not None and len(bodies) > 1:
        uid_pattern = re.compile(rf"\bUID\s+{uid}\b")
        for header, body in bodies:
            if uid_pattern.search(_to_text(header)):
                return body
    return bodies[0][1]
