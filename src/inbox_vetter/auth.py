"""Authentication helpers for the Gmail API."""

from __future__ import annotations

import asyncio
import logging

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from inbox_vetter.constants import CONFIG_DIR, CREDENTIALS_PATH, SCOPES
from inbox_vetter.errors import CredentialsMissing
from inbox_vetter.store import VetterStore

logger = logging.getLogger(__name__)


def load_user_credentials(store: VetterStore, email: str) -> Credentials:
    """Build credentials from the token stored for ``email``.

    Raises CredentialsMissing when nothing is stored or the token cannot be
    refreshed later (no refresh token).
    """
    info = store.load_credentials(email)
    if not info or not info.get("refresh_token"):
        raise CredentialsMissing(email)
    try:
        return Credentials.from_authorized_user_info(info, SCOPES)
    except ValueError as exc:
        raise CredentialsMissing(email, str(exc)) from exc


def refresh_credentials(creds: Credentials, email: str = "") -> Credentials:
    """Refresh ``creds`` in place and hand them back for the caller to persist."""
    try:
        creds.refresh(Request())
    except RefreshError as exc:
        raise CredentialsMissing(email, f"token refresh failed: {exc}") from exc
    return creds


async def ensure_fresh_credentials(store: VetterStore, email: str) -> Credentials:
    """Load the user's credentials, refreshing and saving them when expired.

    The token refresh is an HTTP round trip and runs in a worker thread.
    The store is only touched from the calling thread.
    """
    creds = load_user_credentials(store, email)
    if not creds.valid:
        creds = await asyncio.to_thread(refresh_credentials, creds, email)
        store.save_credentials(email, creds.to_json())
        logger.debug("Refreshed Gmail token for %s", email)
    return creds


def build_gmail_service(creds: Credentials) -> Resource:
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def connect_account(store: VetterStore) -> str:
    """Run the OAuth browser flow and store the token for the signed-in account.

    Requires credentials.json at CREDENTIALS_PATH.  Returns the email of the
    connected account.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    if not CREDENTIALS_PATH.exists():
        raise FileNotFoundError(
            f"Credentials file not found at {CREDENTIALS_PATH}.\n"
            "Download your OAuth client credentials from the Google Cloud Console "
            "and save them as:\n"
            f"  {CREDENTIALS_PATH}"
        )
    flow = InstalledAppFlow.from_client_secrets_file(str(CREDENTIALS_PATH), SCOPES)
    creds = flow.run_local_server(port=0)

    service = build_gmail_service(creds)
    profile = service.users().getProfile(userId="me").execute()
    email = profile["emailAddress"].lower()

    store.upsert_user(email)
    store.save_credentials(email, creds.to_json())
    logger.info("Connected Gmail account %s", email)
    return email
