"""
Google OAuth2 Token Acquisition

OAuth2 token acquisition for Google/Gmail IMAP using installed app flow.
Opens a browser for user consent and runs a local HTTP server for the redirect.

Requires the 'google-auth-oauthlib' package: pip install google-auth-oauthlib
"""

import os

import google.auth.exceptions
import google.auth.transport.requests

import imap_common

safe_print = imap_common.safe_print

IMAP_SCOPES = ["https://mail.google.com/"]

# Module-level cache for credentials (holds refresh token)
_creds_cache = {}  # (client_id, client_secret, email) -> credentials


def acquire_token(client_id, client_secret, email=None):
    """
    Acquires a Google OAuth2 access token using the installed app flow.

    Credentials are cached per (client, mailbox) so repeated sessions for the
    same account refresh silently without opening the browser again.
    Returns the access token or None.
    """
    cache_key = (client_id, client_secret, email)
    creds = _creds_cache.get(cache_key)
    if creds and creds.refresh_token:
        try:
            creds.refresh(google.auth.transport.requests.Request())
            if creds.token:
                return creds.token
        except google.auth.exceptions.GoogleAuthError as e:
            safe_print(f"Warning: Google token refresh failed, starting a new consent flow: {e}")

    from google_auth_oauthlib.flow import InstalledAppFlow

    auth_uri = os.getenv("OAUTH2_GOOGLE_AUTH_URL") or "https://accounts.google.com/o/oauth2/auth"
    token_uri = os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or "https://oauth2.googleapis.com/token"

    client_config = {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": auth_uri,
            "token_uri": token_uri,
            "redirect_uris": ["http://localhost"],
        }
    }

    flow = InstalledAppFlow.from_client_config(client_config, scopes=IMAP_SCOPES)

    safe_print("Opening browser for Google authentication...")
    safe_print("If the browser does not open, check the terminal for a URL to visit.")

    if email:
        credentials = flow.run_local_server(port=0, login_hint=email)
    else:
        credentials = flow.run_local_server(port=0)

    if credentials and credentials.token:
        _creds_cache[cache_key] = credentials
        return credentials.token

    safe_print("Error: Could not acquire Google OAuth2 token.")
    return None
