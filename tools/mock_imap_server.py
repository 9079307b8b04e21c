import base64
import re
import socketserver
import threading

RESPONSE_SELECT_FIRST = "NO Select first"
DEFAULT_NAMESPACE = '(("" "/")) NIL NIL'

_ARG_RE = re.compile(r'"((?:[^"\\]|\\.)*)"|(\S+)')


def parse_args(text):
    """Split command arguments into strings, unquoting quoted ones."""
    args = []
    for quoted, atom in _ARG_RE.findall(text):
        if atom:
            args.append(atom)
        else:
            args.append(re.sub(r"\\(.)", r"\1", quoted))
    return args


def quote(name):
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def pattern_to_regex(pattern, delimiter):
    """IMAP LIST wildcards: "*" matches anything, "%" anything but the delimiter."""
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "%":
            parts.append(f"[^{re.escape(delimiter)}]*" if delimiter else ".*")
        else:
            parts.append(re.escape(ch))
    return re.compile("^" + "".join(parts) + "$")


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    A minimal IMAP4rev1 mock server handler for testing purposes.
    Supports the read-only commands used by the mirror, plus failure injection.
    """

    def handle(self):
        caps = "IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2"
        if self.server.namespace is not None:
            caps += " NAMESPACE"
        self.wfile.write(f"* OK [CAPABILITY {caps}] Mock IMAP Server Ready\r\n".encode())
        self.selected_folder = None
        self.current_folders = self.server.folders

        while True:
            try:
                line = self.rfile.readline()
                if not line:
                    break
                line = line.decode("utf-8").strip()
                if not line:
                    continue

                parts = line.split(" ", 2)
                tag = parts[0]
                cmd = parts[1].upper()
                args = parts[2] if len(parts) > 2 else ""
                self.server.command_log.append(f"{cmd} {args}".strip())

                if cmd == "LOGIN":
                    login_args = parse_args(args)
                    user = login_args[0] if login_args else ""
                    if user in self.server.reject_users:
                        self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
                    else:
                        self.send_response(tag, "OK LOGIN completed")

                elif cmd == "AUTHENTICATE":
                    if args.strip().upper() != "XOAUTH2":
                        self.send_response(tag, "NO Unsupported mechanism")
                        continue
                    self.wfile.write(b"+ \r\n")
                    response = self.rfile.readline().strip()
                    try:
                        decoded = base64.b64decode(response).decode("utf-8")
                    except ValueError:
                        self.send_response(tag, "BAD Invalid response")
                        continue
                    fields = dict(item.split("=", 1) for item in decoded.split("\x01") if "=" in item)
                    user = fields.get("user", "")
                    token = fields.get("auth", "").replace("Bearer ", "", 1)
                    self.server.auth_log.append((user, token))
                    valid = self.server.valid_tokens
                    if user in self.server.reject_users or (valid is not None and token not in valid):
                        self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid token")
                    else:
                        self.send_response(tag, "OK AUTHENTICATE completed")

                elif cmd == "LOGOUT":
                    if self.server.fail_logout:
                        break
                    self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
                    self.send_response(tag, "OK LOGOUT completed")
                    break

                elif cmd == "CAPABILITY":
                    self.wfile.write(b"* CAPABILITY IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2\r\n")
                    self.send_response(tag, "OK CAPABILITY completed")

                elif cmd == "NAMESPACE":
                    if self.server.namespace is None:
                        self.send_response(tag, "BAD Command not recognized")
                        continue
                    self.wfile.write(f"* NAMESPACE {self.server.namespace}\r\n".encode())
                    self.send_response(tag, "OK NAMESPACE completed")

                elif cmd == "LIST":
                    list_args = parse_args(args)
                    reference = list_args[0] if list_args else ""
                    pattern = reference + (list_args[1] if len(list_args) > 1 else "")
                    self.handle_list(tag, pattern)

                elif cmd in ("SELECT", "EXAMINE"):
                    folder_args = parse_args(args)
                    folder = folder_args[0] if folder_args else ""
                    if folder.upper() == "INBOX":
                        folder = "INBOX"
                    self.selected_folder = None

                    busy = self.server.busy.get(folder, 0)
                    if busy > 0:
                        self.server.busy[folder] = busy - 1
                        self.send_response(tag, "NO [UNAVAILABLE] Server Busy")
                        continue
                    if folder in self.server.denied:
                        self.send_response(tag, "NO [NOPERM] Access denied")
                        continue
                    if folder not in self.current_folders:
                        self.send_response(tag, "NO [NONEXISTENT] Folder not found")
                        continue

                    self.selected_folder = folder
                    count = len(self.current_folders[folder])
                    uidvalidity = self.server.uidvalidity.get(folder, 1)
                    self.wfile.write(f"* {count} EXISTS\r\n".encode())
                    self.wfile.write(b"* 0 RECENT\r\n")
                    self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
                    self.wfile.write(f"* OK [UIDVALIDITY {uidvalidity}] UIDs valid\r\n".encode())
                    if cmd == "EXAMINE":
                        self.send_response(tag, "OK [READ-ONLY] EXAMINE completed")
                    else:
                        self.send_response(tag, "OK [READ-WRITE] SELECT completed")

                elif cmd == "UID":
                    sub_parts = args.split(" ", 1)
                    sub_cmd = sub_parts[0].upper()
                    sub_rest = sub_parts[1] if len(sub_parts) > 1 else ""

                    if not self.selected_folder:
                        self.send_response(tag, RESPONSE_SELECT_FIRST)
                        continue
                    msgs = self.current_folders[self.selected_folder]

                    if sub_cmd == "SEARCH":
                        uids_str = " ".join(str(m["uid"]) for m in msgs)
                        if uids_str:
                            self.wfile.write(f"* SEARCH {uids_str}\r\n".encode())
                        else:
                            self.wfile.write(b"* SEARCH\r\n")
                        self.send_response(tag, "OK SEARCH completed")

                    elif sub_cmd == "FETCH":
                        fetch_parts = sub_rest.split(" ", 1)
                        try:
                            t_uid = int(fetch_parts[0])
                        except ValueError:
                            self.send_response(tag, "BAD Only single UIDs are supported")
                            continue

                        key = (self.selected_folder, t_uid)
                        if key in self.server.drop_on_fetch:
                            break
                        if key in self.server.fail_fetch:
                            self.send_response(tag, "NO [SERVERBUG] Fetch failed")
                            continue

                        for idx, m in enumerate(msgs, start=1):
                            if m["uid"] != t_uid:
                                continue
                            msg_content = m["content"]
                            resp = f"* {idx} FETCH (UID {t_uid} BODY[] {{{len(msg_content)}}}\r\n"
                            self.wfile.write(resp.encode("utf-8"))
                            self.wfile.write(msg_content)
                            self.wfile.write(b")\r\n")
                            self.server.fetch_log.append(key)
                        self.wfile.flush()
                        self.send_response(tag, "OK FETCH completed")

                    else:
                        self.send_response(tag, "BAD UID command not supported")

                elif cmd == "NOOP":
                    self.send_response(tag, "OK NOOP")

                else:
                    self.send_response(tag, "BAD Command not recognized")

            except Exception:
                break

    def handle_list(self, tag, pattern):
        server = self.server
        delimiter = server.delimiter
        delim_wire = quote(delimiter) if delimiter else "NIL"

        if pattern == "":
            self.wfile.write(f"* LIST (\\Noselect) {delim_wire} \"\"\r\n".encode())
            self.send_response(tag, "OK LIST completed")
            return

        if pattern in server.fail_list:
            self.send_response(tag, "NO [CANNOT] LIST failed")
            return

        matcher = pattern_to_regex(pattern, delimiter)
        names = list(self.current_folders) + [c for c in server.containers if c not in self.current_folders]
        matched = [name for name in names if matcher.match(name)]
        matched.extend(server.list_extra.get(pattern, []))

        for name in matched:
            flags = server.folder_flags.get(name)
            if flags is None:
                has_children = bool(delimiter) and any(
                    other.startswith(name + delimiter) for other in names if other != name
                )
                flags = ["\\HasChildren" if has_children else "\\HasNoChildren"]
                if name in server.containers and name not in self.current_folders:
                    flags.insert(0, "\\Noselect")
            self.wfile.write(f"* LIST ({' '.join(flags)}) {delim_wire} {quote(name)}\r\n".encode())
        self.send_response(tag, "OK LIST completed")

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """
    In-process IMAP server.

    initial_folders maps wire-form folder names to lists of raw messages (bytes)
    or message dicts ({"uid", "flags", "content"}). Options:
        namespace      NAMESPACE response body, None answers BAD
        delimiter      hierarchy delimiter, None reports NIL
        uidvalidity    folder -> UIDVALIDITY (default 1)
        containers     folder names listed as \\Noselect without messages
        folder_flags   folder -> explicit LIST attributes
        list_extra     LIST pattern -> extra names appended to the response
        fail_list      LIST patterns answered with NO
        denied         folders whose EXAMINE is answered with NO [NOPERM]
        busy           folder -> number of "Server Busy" answers before EXAMINE succeeds
        fail_fetch     (folder, uid) pairs answered with NO
        drop_on_fetch  (folder, uid) pairs on which the connection is dropped
        reject_users   users whose LOGIN / AUTHENTICATE is refused
        valid_tokens   accepted XOAUTH2 tokens, None accepts any
        fail_logout    drop the connection instead of answering LOGOUT
    """

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, initial_folders=None, **options):
        super().__init__(server_address, request_handler_class)
        self.folders = {}
        if initial_folders:
            for fname, contents in initial_folders.items():
                self.folders[fname] = []
                for i, c in enumerate(contents):
                    if isinstance(c, bytes):
                        self.folders[fname].append({"uid": i + 1, "flags": set(), "content": c})
                    else:
                        self.folders[fname].append(c)
        else:
            self.folders = {"INBOX": []}

        self.namespace = options.pop("namespace", DEFAULT_NAMESPACE)
        self.delimiter = options.pop("delimiter", "/")
        self.uidvalidity = dict(options.pop("uidvalidity", {}))
        self.containers = list(options.pop("containers", []))
        self.folder_flags = dict(options.pop("folder_flags", {}))
        self.list_extra = dict(options.pop("list_extra", {}))
        self.fail_list = set(options.pop("fail_list", ()))
        self.denied = set(options.pop("denied", ()))
        self.busy = dict(options.pop("busy", {}))
        self.fail_fetch = set(options.pop("fail_fetch", ()))
        self.drop_on_fetch = set(options.pop("drop_on_fetch", ()))
        self.reject_users = set(options.pop("reject_users", ()))
        self.valid_tokens = options.pop("valid_tokens", None)
        self.fail_logout = options.pop("fail_logout", False)
        if options:
            raise TypeError(f"Unknown mock server options: {', '.join(sorted(options))}")

        self.fetch_log = []
        self.auth_log = []
        self.command_log = []

    def add_message(self, folder, content, uid=None):
        msgs = self.folders.setdefault(folder, [])
        if uid is None:
            uid = max((m["uid"] for m in msgs), default=0) + 1
        msgs.append({"uid": uid, "flags": set(), "content": content})
        return uid


def start_server_thread(port=0, initial_folders=None, **options):
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders, **options)
    t = threading.Thread(target=server.serve_forever)
    t.daemon = True
    t.start()
    return server, server.server_address[1]
