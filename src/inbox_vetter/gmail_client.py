"""Gmail API gateway: the mailbox operations the review pipeline relies on."""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from inbox_vetter.auth import build_gmail_service, ensure_fresh_credentials
from inbox_vetter.constants import GMAIL_LINK_TEMPLATE, PAGE_SIZE
from inbox_vetter.errors import CredentialsMissing
from inbox_vetter.models import Attachment, MessageEnvelope
from inbox_vetter.store import VetterStore

logger = logging.getLogger(__name__)

_FROM_RE = re.compile(r"^(.*?)\s*<([^>]+)>$")


class MailboxGateway(Protocol):
    """Mailbox capability consumed by the pipeline. GmailGateway is the real binding."""

    async def list_message_ids(self, query: str, max_results: int) -> list[str]: ...

    async def get_message(self, message_id: str) -> dict: ...

    async def get_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes: ...

    async def ensure_labels(self, names: Iterable[str]) -> dict[str, str]: ...

    async def apply_labels(self, message_id: str, label_ids: list[str]) -> None: ...

    async def trash_message(self, message_id: str) -> None: ...


def _is_retryable_http_error(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in (429, 500, 503)


@retry(
    retry=retry_if_exception(_is_retryable_http_error),
    wait=wait_exponential(multiplier=1, min=1, max=60),
    stop=stop_after_attempt(5),
    reraise=True,
)
def _execute(request) -> Any:
    return request.execute()


def parse_from_header(from_value: str) -> tuple[str, str]:
    """Parse a From header into (display name, email address).

    Handles formats like:
      "John Doe <john@example.com>" -> ("John Doe", "john@example.com")
      "<john@example.com>"          -> ("", "john@example.com")
      "john@example.com"            -> ("", "john@example.com")
    """
    if not from_value:
        return ("", "")
    m = _FROM_RE.match(from_value.strip())
    if m:
        name = m.group(1).strip().strip('"').strip("'")
        return (name, m.group(2).strip().lower())
    email = from_value.strip().strip("<>")
    return ("", email.lower())


def get_header(headers: list[dict], name: str) -> str:
    lower = name.lower()
    for header in headers or []:
        if str(header.get("name", "")).lower() == lower:
            return header.get("value", "")
    return ""


def decode_b64url(data: str) -> bytes:
    """Decode Gmail's base64url payloads, tolerating missing padding."""
    data = data or ""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def flatten_parts(payload: dict | None) -> list[dict]:
    """Return the MIME part tree depth-first, parents before children."""
    if not payload:
        return []
    out = [payload]
    for part in payload.get("parts") or []:
        out.extend(flatten_parts(part))
    return out


def extract_plain_text(payload: dict | None) -> str:
    for part in flatten_parts(payload):
        data = (part.get("body") or {}).get("data")
        if part.get("mimeType") == "text/plain" and data:
            return decode_b64url(data).decode("utf-8", errors="replace")
    return ""


def gmail_link(message_id: str) -> str | None:
    return GMAIL_LINK_TEMPLATE.format(message_id=message_id) if message_id else None


def build_envelope(raw: dict, attachments: Iterable[Attachment] = ()) -> MessageEnvelope:
    """Snapshot a ``format=full`` message resource."""
    payload = raw.get("payload") or {}
    headers = payload.get("headers") or []
    from_value = get_header(headers, "From")
    name, email = parse_from_header(from_value)

    received_at = ""
    if raw.get("internalDate"):
        received_at = datetime.fromtimestamp(int(raw["internalDate"]) / 1000, tz=timezone.utc).isoformat()

    return MessageEnvelope(
        message_id=raw.get("id", ""),
        sender=from_value,
        sender_name=name,
        sender_email=email,
        subject=get_header(headers, "Subject") or "(no subject)",
        received_at=received_at,
        body=extract_plain_text(payload) or raw.get("snippet", ""),
        attachments=tuple(attachments),
    )


class GmailGateway:
    """MailboxGateway backed by the Gmail REST API.

    The googleapiclient calls are blocking, so each one runs in a worker
    thread.  Calls for one user are awaited one after another, never
    concurrently, which keeps the shared httplib2 transport safe.
    """

    def __init__(self, service, email: str = "") -> None:
        self.service = service
        self.email = email
        self._label_ids: dict[str, str] = {}

    @classmethod
    async def for_user(cls, store: VetterStore, email: str) -> GmailGateway:
        creds = await ensure_fresh_credentials(store, email)
        service = await asyncio.to_thread(build_gmail_service, creds)
        return cls(service, email=email)

    async def _call(self, request) -> Any:
        try:
            return await asyncio.to_thread(_execute, request)
        except RefreshError as exc:
            raise CredentialsMissing(self.email, f"token refresh failed: {exc}") from exc

    async def list_message_ids(self, query: str, max_results: int) -> list[str]:
        """List message IDs matching the query, handling pagination."""
        ids: list[str] = []
        page_token: str | None = None

        while True:
            kwargs: dict = {
                "userId": "me",
                "maxResults": min(PAGE_SIZE, max_results),
                "fields": "messages/id,nextPageToken",
            }
            if query:
                kwargs["q"] = query
            if page_token:
                kwargs["pageToken"] = page_token

            resp = await self._call(self.service.users().messages().list(**kwargs))
            for msg in resp.get("messages", []):
                ids.append(msg["id"])
                if len(ids) >= max_results:
                    return ids

            page_token = resp.get("nextPageToken")
            if not page_token:
                break

        return ids

    async def get_message(self, message_id: str) -> dict:
        return await self._call(self.service.users().messages().get(userId="me", id=message_id, format="full"))

    async def get_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        resp = await self._call(
            self.service.users().messages().attachments().get(userId="me", messageId=message_id, id=attachment_id)
        )
        return decode_b64url(resp.get("data", ""))

    async def ensure_labels(self, names: Iterable[str]) -> dict[str, str]:
        """Return {name: id} for ``names``, creating missing labels once."""
        wanted = list(names)
        if any(name not in self._label_ids for name in wanted):
            resp = await self._call(self.service.users().labels().list(userId="me"))
            for label in resp.get("labels", []):
                self._label_ids[label["name"]] = label["id"]
            for name in wanted:
                if name in self._label_ids:
                    continue
                created = await self._call(
                    self.service.users().labels().create(
                        userId="me",
                        body={
                            "name": name,
                            "labelListVisibility": "labelShow",
                            "messageListVisibility": "show",
                        },
                    )
                )
                self._label_ids[name] = created["id"]
                logger.info("Created Gmail label %s for %s", name, self.email)
        return {name: self._label_ids[name] for name in wanted}

    async def apply_labels(self, message_id: str, label_ids: list[str]) -> None:
        if not label_ids:
            return
        await self._call(
            self.service.users().messages().modify(userId="me", id=message_id, body={"addLabelIds": label_ids})
        )

    async def trash_message(self, message_id: str) -> None:
        await self._call(self.service.users().messages().trash(userId="me", id=message_id))
