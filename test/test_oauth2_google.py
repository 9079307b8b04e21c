"""
Tests for auth/oauth2_google.py

Tests cover:
- Token acquisition using installed app flow
- Credentials caching and silent token refresh
"""

import os
import sys
from unittest.mock import MagicMock, patch

import google.auth.exceptions
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from auth import oauth2_google


@pytest.fixture(autouse=True)
def clear_caches():
    """Clear module-level caches between tests."""
    oauth2_google._creds_cache.clear()
    yield
    oauth2_google._creds_cache.clear()


def flow_modules(token):
    """sys.modules entries replacing google_auth_oauthlib with a flow returning token."""
    mock_credentials = MagicMock()
    mock_credentials.token = token

    mock_flow = MagicMock()
    mock_flow.run_local_server.return_value = mock_credentials

    mock_module = MagicMock()
    mock_module.InstalledAppFlow.from_client_config.return_value = mock_flow
    modules = {"google_auth_oauthlib": MagicMock(), "google_auth_oauthlib.flow": mock_module}
    return modules, mock_module.InstalledAppFlow, mock_flow


class TestAcquireToken:
    """Tests for acquire_token function."""

    def test_successful_token(self):
        modules, installed_app_flow, mock_flow = flow_modules("google_test_token")

        with patch.dict("sys.modules", modules):
            result = oauth2_google.acquire_token("client-id", "client-secret", "user@gmail.com")

        assert result == "google_test_token"
        mock_flow.run_local_server.assert_called_once_with(port=0, login_hint="user@gmail.com")
        client_config = installed_app_flow.from_client_config.call_args[0][0]
        assert client_config["installed"]["client_id"] == "client-id"
        assert client_config["installed"]["token_uri"] == "https://oauth2.googleapis.com/token"

    def test_without_email_no_login_hint(self):
        modules, _, mock_flow = flow_modules("token")

        with patch.dict("sys.modules", modules):
            oauth2_google.acquire_token("client-id", "client-secret")

        mock_flow.run_local_server.assert_called_once_with(port=0)

    def test_token_url_override(self, monkeypatch):
        monkeypatch.setenv("OAUTH2_GOOGLE_TOKEN_URL", "http://127.0.0.1:9000/token")
        modules, installed_app_flow, _ = flow_modules("token")

        with patch.dict("sys.modules", modules):
            oauth2_google.acquire_token("client-id", "client-secret")

        client_config = installed_app_flow.from_client_config.call_args[0][0]
        assert client_config["installed"]["token_uri"] == "http://127.0.0.1:9000/token"

    def test_missing_library(self):
        with patch.dict("sys.modules", {"google_auth_oauthlib": None, "google_auth_oauthlib.flow": None}):
            with pytest.raises(ImportError):
                oauth2_google.acquire_token("client-id", "client-secret")

    def test_no_token_returned(self, capsys):
        modules, _, _ = flow_modules(None)

        with patch.dict("sys.modules", modules):
            result = oauth2_google.acquire_token("client-id", "client-secret")

        assert result is None
        assert "Could not acquire Google OAuth2 token" in capsys.readouterr().out

    def test_credentials_cached_per_mailbox(self):
        modules, _, _ = flow_modules("google_token")

        with patch.dict("sys.modules", modules):
            oauth2_google.acquire_token("client-id", "client-secret", "a@gmail.com")

        assert ("client-id", "client-secret", "a@gmail.com") in oauth2_google._creds_cache
        assert ("client-id", "client-secret", "b@gmail.com") not in oauth2_google._creds_cache

    def test_cached_credentials_refreshed_on_second_call(self):
        mock_creds = MagicMock()
        mock_creds.refresh_token = "refresh_tok"
        mock_creds.token = "refreshed_google_token"
        oauth2_google._creds_cache[("client-id", "client-secret", None)] = mock_creds

        with patch("google.auth.transport.requests.Request"):
            result = oauth2_google.acquire_token("client-id", "client-secret")

        assert result == "refreshed_google_token"
        mock_creds.refresh.assert_called_once()

    def test_falls_back_to_browser_if_refresh_fails(self, capsys):
        mock_creds = MagicMock()
        mock_creds.refresh_token = "refresh_tok"
        mock_creds.refresh.side_effect = google.auth.exceptions.RefreshError("Refresh failed")
        oauth2_google._creds_cache[("client-id", "client-secret", None)] = mock_creds
        modules, _, _ = flow_modules("new_browser_token")

        with patch("google.auth.transport.requests.Request"), patch.dict("sys.modules", modules):
            result = oauth2_google.acquire_token("client-id", "client-secret")

        assert result == "new_browser_token"
        assert "refresh failed" in capsys.readouterr().out

    def test_no_refresh_if_no_refresh_token(self):
        mock_creds = MagicMock()
        mock_creds.refresh_token = None
        oauth2_google._creds_cache[("client-id", "client-secret", None)] = mock_creds
        modules, _, _ = flow_modules("new_browser_token")

        with patch.dict("sys.modules", modules):
            result = oauth2_google.acquire_token("client-id", "client-secret")

        assert result == "new_browser_token"
        mock_creds.refresh.assert_not_called()
