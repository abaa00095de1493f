"""OAuth 2.0 authentication with token caching for the Gmail API."""

from __future__ import annotations

import logging
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from inbox_reports.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


def authenticate(credentials_path: Path, token_path: Path) -> Credentials:
    """Return valid Gmail credentials, refreshing or re-running consent as needed.

    A cached token is used when valid. An expired token with a refresh token
    is refreshed in place; otherwise the installed-app consent flow runs and
    the new token is cached.

    Raises:
        AuthenticationError: If no usable credentials can be obtained.
    """
    creds: Credentials | None = None

    if token_path.exists():
        try:
            creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        except (ValueError, OSError) as e:
            logger.warning("Ignoring unreadable token cache %s: %s", token_path, e)

    if creds and creds.valid:
        return creds

    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
        except Exception as e:
            logger.warning("Token refresh failed, falling back to consent flow: %s", e)
        else:
            _save_token(creds, token_path)
            return creds

    if not credentials_path.exists():
        raise AuthenticationError(
            f"Gmail client secret missing at {credentials_path}; "
            "create an OAuth desktop client and download its JSON there."
        )

    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)
    except Exception as e:
        raise AuthenticationError(f"Gmail consent flow failed: {e}") from e

    _save_token(creds, token_path)
    logger.info("Gmail authorized, token cached at %s", token_path)
    return creds


def build_gmail_service(creds: Credentials) -> Resource:
    """Gmail v1 service resource for the given credentials."""
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def _save_token(creds: Credentials, token_path: Path) -> None:
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
