"""
Microsoft OAuth2 Token Acquisition

XOAUTH2 access tokens for Outlook / Microsoft 365 mailboxes via the MSAL
device code flow. The tenant is looked up from the mailbox domain, so only a
client ID has to be configured per account.

Requires the 'msal' package: pip install msal
"""

import os
import re

import requests

import imap_common

safe_print = imap_common.safe_print

IMAP_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]
DEFAULT_LOGIN_HOST = "https://login.microsoftonline.com"
DISCOVERY_TIMEOUT = 10

_TENANT_RE = re.compile(r"/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})(?:/|$)")

_authorities = {}  # mailbox domain -> authority URL
_apps = {}  # (client_id, authority) -> msal.PublicClientApplication


def _login_host(env_name):
    return (os.getenv(env_name) or DEFAULT_LOGIN_HOST).rstrip("/")


def tenant_authority(email):
    """
    Return the MSAL authority URL for the tenant owning the mailbox domain, or None.

    The tenant GUID is read from the issuer of the domain's OpenID configuration.
    """
    domain = email.rpartition("@")[2].strip().lower()
    if not domain:
        safe_print(f"Error: Cannot look up the Microsoft tenant of '{email}': no mail domain")
        return None
    if domain in _authorities:
        return _authorities[domain]

    url = f"{_login_host('OAUTH2_MICROSOFT_DISCOVERY_URL')}/{domain}/.well-known/openid-configuration"
    try:
        response = requests.get(url, headers={"Accept": "application/json"}, timeout=DISCOVERY_TIMEOUT)
        response.raise_for_status()
        issuer = response.json().get("issuer", "")
    except (requests.RequestException, ValueError) as e:
        safe_print(f"Error: Microsoft tenant lookup for '{domain}' failed: {e}")
        return None

    match = _TENANT_RE.search(issuer)
    if not match:
        safe_print(f"Error: No tenant ID in issuer '{issuer}' for '{domain}'")
        return None

    authority = f"{_login_host('OAUTH2_MICROSOFT_AUTHORITY_BASE_URL')}/{match.group(1)}"
    _authorities[domain] = authority
    return authority


def acquire_token(client_id, email):
    """
    Return an access token for the mailbox, or None.

    Tokens cached in the MSAL app for this account are refreshed silently;
    otherwise the user is asked to complete the device code flow.
    """
    authority = tenant_authority(email)
    if authority is None:
        return None

    import msal

    app = _apps.get((client_id, authority))
    if app is None:
        app = _apps[(client_id, authority)] = msal.PublicClientApplication(client_id, authority=authority)

    for account in app.get_accounts(username=email):
        result = app.acquire_token_silent(IMAP_SCOPES, account=account)
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=IMAP_SCOPES)
    if "user_code" not in flow:
        safe_print(f"Error: Device code sign-in for {email} not started: {flow.get('error_description', 'unknown')}")
        return None

    safe_print(f"[{email}] {flow['message']}")
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" in result:
        return result["access_token"]

    safe_print(f"Error: Device code sign-in for {email} failed: {result.get('error_description', 'unknown')}")
    return None
