"""
IMAP OAuth2 Authentication

OAuth2 token acquisition for Microsoft and Google IMAP providers, used when an
account is configured with an OAuth2 client ID instead of a password.
Dispatches to provider-specific modules (oauth2_microsoft, oauth2_google).

Provider is auto-detected from the IMAP host string.
"""

import imap_common
from auth import oauth2_google, oauth2_microsoft

PROVIDER_MICROSOFT = "microsoft"
PROVIDER_GOOGLE = "google"


class OAuth2Error(Exception):
    """Raised when no OAuth2 token can be acquired for an account."""


def detect_oauth2_provider(host):
    """
    Detects the OAuth2 provider from the IMAP host.
    Returns "microsoft", "google", or None if unrecognized.
    """
    host_lower = host.lower()
    if "outlook" in host_lower or "office365" in host_lower or "microsoft" in host_lower:
        return PROVIDER_MICROSOFT
    if "gmail" in host_lower or "google" in host_lower:
        return PROVIDER_GOOGLE
    return None


def acquire_oauth2_token_for_provider(provider, client_id, email, client_secret=None):
    """
    Acquires an OAuth2 token for the specified provider.

    Args:
        provider: "microsoft" or "google"
        client_id: OAuth2 client ID
        email: User's email address (tenant discovery for Microsoft, login hint for Google)
        client_secret: Required for Google, not needed for Microsoft

    Returns:
        The access token, or None if the provider flow failed.
    """
    if provider == PROVIDER_MICROSOFT:
        return oauth2_microsoft.acquire_token(client_id, email)
    if provider == PROVIDER_GOOGLE:
        if not client_secret:
            raise OAuth2Error("OAuth2 client secret is required for Google OAuth2 (oauth2_client_secret).")
        return oauth2_google.acquire_token(client_id, client_secret, email)
    raise OAuth2Error(f"Unknown OAuth2 provider: {provider}")


def acquire_token(host, client_id, email, client_secret=None, label=None):
    """
    Detect the OAuth2 provider from the host and acquire a token.

    Args:
        host: IMAP host string (used to detect provider)
        client_id: OAuth2 client ID
        email: User's email address
        client_secret: OAuth2 client secret (required for Google)
        label: Optional account label for status messages

    Returns:
        (token, provider) tuple.

    Raises:
        OAuth2Error: provider unknown, provider library missing, or flow failed.
    """
    prefix = f"[{label}] " if label else ""
    provider = detect_oauth2_provider(host)
    if not provider:
        raise OAuth2Error(f"Could not detect OAuth2 provider from host '{host}'.")

    imap_common.safe_print(f"{prefix}Acquiring OAuth2 token ({provider})...")
    try:
        token = acquire_oauth2_token_for_provider(provider, client_id, email, client_secret)
    except ImportError as e:
        raise OAuth2Error(f"OAuth2 support for {provider} is not installed: {e}") from e
    if not token:
        raise OAuth2Error(f"Failed to acquire OAuth2 token ({provider}).")

    imap_common.safe_print(f"{prefix}OAuth2 token acquired successfully.")
    return token, provider


def auth_description(provider):
    """
    Return a human-readable auth description for config summaries.

    Returns:
        "OAuth2/{provider} (XOAUTH2)" or "Basic (password)".
    """
    if provider:
        return f"OAuth2/{provider} (XOAUTH2)"
    return "Basic (password)"
