"""
Mirror Configuration

Loads the accounts to mirror and the output root.

Sources, later ones overriding earlier ones:
  1. mailmirror.json        in the config directory
  2. mailmirror.local.json  in the config directory (keys override, "accounts" replaces)
  3. Environment variables:
       MAILMIRROR_OUTPUT_ROOT, MAILMIRROR_TIMEOUT, MAILMIRROR_WORKERS
       MAILMIRROR_IMAP_HOST, MAILMIRROR_IMAP_USERNAME, MAILMIRROR_IMAP_PASSWORD,
       MAILMIRROR_IMAP_PORT, MAILMIRROR_IMAP_USE_SSL, MAILMIRROR_ACCOUNT_NAME,
       MAILMIRROR_OAUTH2_CLIENT_ID, MAILMIRROR_OAUTH2_CLIENT_SECRET
         (adds one account on top of the configured ones)

The config directory is the --config-dir argument, else MAILMIRROR_CONFIG_DIR,
else the current directory. A relative output_root is resolved against it.

Example mailmirror.json:
    {
        "output_root": "Data",
        "accounts": [
            {"name": "Work", "host": "imap.example.com", "username": "me@example.com", "password": "..."}
        ]
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field

ENV_PREFIX = "MAILMIRROR_"
ENV_CONFIG_DIR = f"{ENV_PREFIX}CONFIG_DIR"
CONFIG_FILENAME = "mailmirror.json"
LOCAL_CONFIG_FILENAME = "mailmirror.local.json"

DEFAULT_OUTPUT_ROOT = "Data"
DEFAULT_IMAP_PORT = 993
DEFAULT_TIMEOUT = 30
DEFAULT_WORKERS = 1

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised for unreadable config files or invalid values."""


@dataclass
class Account:
    """Identity of one mailbox. Only used to open sessions, never persisted."""

    name: str = ""
    host: str = ""
    username: str = ""
    password: str | None = field(default=None, repr=False)
    port: int = DEFAULT_IMAP_PORT
    use_ssl: bool = True
    starttls: bool = True
    oauth2_client_id: str | None = None
    oauth2_client_secret: str | None = field(default=None, repr=False)

    @property
    def label(self) -> str:
        """Display name, falling back to the username."""
        return self.name.strip() or self.username

    def validate(self, where="account"):
        if not self.host:
            raise ConfigError(f"{where}: 'host' is required")
        if not self.username:
            raise ConfigError(f"{where}: 'username' is required")
        if not self.password and not self.oauth2_client_id:
            raise ConfigError(f"{where}: either 'password' or 'oauth2_client_id' is required")
        if not 0 < self.port < 65536:
            raise ConfigError(f"{where}: 'port' must be between 1 and 65535, got {self.port}")

    @classmethod
    def from_dict(cls, data, where="account"):
        if not isinstance(data, dict):
            raise ConfigError(f"{where}: expected an object, got {type(data).__name__}")

        known = {"name", "host", "username", "password", "port", "use_ssl", "starttls"}
        known |= {"oauth2_client_id", "oauth2_client_secret"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"{where}: unknown keys {', '.join(unknown)}")

        account = cls(
            name=_parse_str(data.get("name"), f"{where}.name") or "",
            host=_parse_str(data.get("host"), f"{where}.host") or "",
            username=_parse_str(data.get("username"), f"{where}.username") or "",
            password=_parse_str(data.get("password"), f"{where}.password"),
            port=_parse_int(data.get("port", DEFAULT_IMAP_PORT), f"{where}.port"),
            use_ssl=_parse_bool(data.get("use_ssl", True), f"{where}.use_ssl"),
            starttls=_parse_bool(data.get("starttls", True), f"{where}.starttls"),
            oauth2_client_id=_parse_str(data.get("oauth2_client_id"), f"{where}.oauth2_client_id"),
            oauth2_client_secret=_parse_str(data.get("oauth2_client_secret"), f"{where}.oauth2_client_secret"),
        )
        account.validate(where)
        return account


@dataclass
class MirrorConfig:
    output_root: str
    accounts: list = field(default_factory=list)
    timeout: int = DEFAULT_TIMEOUT
    workers: int = DEFAULT_WORKERS
    config_dir: str | None = None


def _parse_str(value, key):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key}: expected a string, got {type(value).__name__}")
    return value


def _parse_int(value, key, minimum=None):
    if isinstance(value, bool):
        raise ConfigError(f"{key}: expected an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key}: expected an integer, got {value!r}") from None
    if minimum is not None and number < minimum:
        raise ConfigError(f"{key}: must be >= {minimum}, got {number}")
    return number


def _parse_bool(value, key):
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise ConfigError(f"{key}: expected true or false, got {value!r}")


def resolve_config_dir(config_dir=None, environ=None):
    environ = os.environ if environ is None else environ
    chosen = config_dir or environ.get(ENV_CONFIG_DIR) or os.getcwd()
    return os.path.abspath(os.path.expanduser(chosen))


def load_json_file(path):
    """Load one settings file. Returns {} if it does not exist."""
    if not os.path.exists(path):
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top-level value must be an object")
    return data


def account_from_env(environ):
    """Build one account from MAILMIRROR_IMAP_* variables, or None if no host is set."""
    host = environ.get(f"{ENV_PREFIX}IMAP_HOST")
    if not host:
        return None
    account = Account(
        name=environ.get(f"{ENV_PREFIX}ACCOUNT_NAME", ""),
        host=host,
        username=environ.get(f"{ENV_PREFIX}IMAP_USERNAME", ""),
        password=environ.get(f"{ENV_PREFIX}IMAP_PASSWORD") or None,
        port=_parse_int(environ.get(f"{ENV_PREFIX}IMAP_PORT", DEFAULT_IMAP_PORT), f"{ENV_PREFIX}IMAP_PORT"),
        use_ssl=_parse_bool(environ.get(f"{ENV_PREFIX}IMAP_USE_SSL", "true"), f"{ENV_PREFIX}IMAP_USE_SSL"),
        oauth2_client_id=environ.get(f"{ENV_PREFIX}OAUTH2_CLIENT_ID") or None,
        oauth2_client_secret=environ.get(f"{ENV_PREFIX}OAUTH2_CLIENT_SECRET") or None,
    )
    account.validate("environment account")
    return account


def resolve_output_root(output_root, base_dir):
    output_root = os.path.expanduser(output_root or DEFAULT_OUTPUT_ROOT)
    if not os.path.isabs(output_root):
        output_root = os.path.join(base_dir, output_root)
    return os.path.abspath(output_root)


def load_config(config_dir=None, environ=None):
    """
    Load the mirror configuration.

    Args:
        config_dir: Directory holding mailmirror.json (see module docstring)
        environ: Mapping used instead of os.environ (tests)

    Returns:
        MirrorConfig with an absolute output_root and validated accounts.

    Raises:
        ConfigError: a file is unreadable or a value is invalid.
    """
    environ = os.environ if environ is None else environ
    base_dir = resolve_config_dir(config_dir, environ)

    settings = load_json_file(os.path.join(base_dir, CONFIG_FILENAME))
    settings.update(load_json_file(os.path.join(base_dir, LOCAL_CONFIG_FILENAME)))

    raw_accounts = settings.get("accounts", [])
    if not isinstance(raw_accounts, list):
        raise ConfigError("'accounts' must be a list")
    accounts = [Account.from_dict(item, f"accounts[{i}]") for i, item in enumerate(raw_accounts)]

    env_account = account_from_env(environ)
    if env_account is not None:
        accounts.append(env_account)

    output_root = environ.get(f"{ENV_PREFIX}OUTPUT_ROOT") or _parse_str(settings.get("output_root"), "output_root")
    timeout = environ.get(f"{ENV_PREFIX}TIMEOUT", settings.get("timeout", DEFAULT_TIMEOUT))
    workers = environ.get(f"{ENV_PREFIX}WORKERS", settings.get("workers", DEFAULT_WORKERS))

    return MirrorConfig(
        output_root=resolve_output_root(output_root, base_dir),
        accounts=accounts,
        timeout=_parse_int(timeout, "timeout", minimum=1),
        workers=_parse_int(workers, "workers", minimum=1),
        config_dir=base_dir,
    )
