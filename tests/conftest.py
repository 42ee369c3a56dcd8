"""Shared fixtures for tests."""

from __future__ import annotations

import base64
from typing import Iterable

import pytest

from inbox_vetter.config import build_run_config
from inbox_vetter.models import ACTION_IMPORTANT, ACTION_KEEP, ACTION_TRASH, RunConfig, UserSettings, Verdict
from inbox_vetter.store import VetterStore

OWNER = "owner@example.com"


def b64url(data: str | bytes) -> str:
    raw = data.encode("utf-8") if isinstance(data, str) else data
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def make_message(
    message_id: str,
    sender: str = "Alice Smith <alice@example.com>",
    subject: str = "Hello",
    body: str = "Just checking in.",
    parts: Iterable[dict] = (),
    internal_date: str = "1700000000000",
) -> dict:
    """Build a Gmail ``format=full`` message resource."""
    return {
        "id": message_id,
        "internalDate": internal_date,
        "snippet": body[:40],
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "Subject", "value": subject},
            ],
            "parts": [
                {"mimeType": "text/plain", "filename": "", "body": {"data": b64url(body), "size": len(body)}},
                *parts,
            ],
        },
    }


def attachment_part(filename: str, mime_type: str, attachment_id: str, size: int = 100) -> dict:
    return {"mimeType": mime_type, "filename": filename, "body": {"attachmentId": attachment_id, "size": size}}


class FakeGateway:
    """In-memory mailbox. Records every mutation."""

    def __init__(self, messages: Iterable[dict] = ()) -> None:
        self.messages: dict[str, dict] = {m["id"]: m for m in messages}
        self.attachments: dict[str, bytes] = {}
        self.failing_messages: set[str] = set()
        self.failing_attachments: set[str] = set()
        self.list_error: Exception | None = None
        self.label_error: Exception | None = None
        self.applied: list[tuple[str, list[str]]] = []
        self.trashed: list[str] = []
        self.list_calls: list[tuple[str, int]] = []
        self.fetched: list[str] = []

    def add(self, message: dict) -> None:
        self.messages[message["id"]] = message

    async def list_message_ids(self, query: str, max_results: int) -> list[str]:
        self.list_calls.append((query, max_results))
        if self.list_error is not None:
            raise self.list_error
        return list(self.messages)[:max_results]

    async def get_message(self, message_id: str) -> dict:
        self.fetched.append(message_id)
        if message_id in self.failing_messages:
            raise RuntimeError(f"boom on {message_id}")
        return self.messages[message_id]

    async def get_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        if attachment_id in self.failing_attachments:
            raise ConnectionError("attachment unavailable")
        return self.attachments[attachment_id]

    async def ensure_labels(self, names: Iterable[str]) -> dict[str, str]:
        if self.label_error is not None:
            raise self.label_error
        return {name: f"Label_{name}" for name in names}

    async def apply_labels(self, message_id: str, label_ids: list[str]) -> None:
        self.applied.append((message_id, list(label_ids)))

    async def trash_message(self, message_id: str) -> None:
        self.trashed.append(message_id)

    def labels_for(self, message_id: str) -> list[str]:
        return [label for mid, ids in self.applied if mid == message_id for label in ids]


class ScriptedClassifier:
    """Returns canned verdicts per message id; raises when the script holds an exception."""

    def __init__(self, script: dict | None = None, default: Verdict | None = None, descriptor: str = "payments") -> None:
        self.script = script or {}
        self.default = default or Verdict(ACTION_KEEP, False, False, 0.7, "looks fine")
        self.descriptor = descriptor
        self.calls: list[str] = []
        self.envelopes: list = []

    async def classify(self, config, envelope, descriptor):
        self.calls.append(envelope.message_id)
        self.envelopes.append(envelope)
        outcome = self.script.get(envelope.message_id, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def describe_importance(self, settings):
        return self.descriptor


@pytest.fixture
def trash_verdict() -> Verdict:
    return Verdict(ACTION_TRASH, True, False, 0.95, "Gift card scam")


@pytest.fixture
def important_verdict() -> Verdict:
    return Verdict(ACTION_IMPORTANT, False, True, 0.9, "Sponsorship offer")


@pytest.fixture
def run_config() -> RunConfig:
    return build_run_config(
        UserSettings(),
        {
            "safe_mode": True,
            "allow_attachments": True,
            "max_attachment_mb": 5,
            "max_images": 3,
            "max_pdf_text_chars": 4000,
            "gmail_query": "label:inbox",
            "gmail_max_results": 50,
            "window_days": 7,
            "model": "gpt-4.1-mini",
        },
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def classifier() -> ScriptedClassifier:
    return ScriptedClassifier()


@pytest.fixture
def store(tmp_path) -> VetterStore:
    s = VetterStore(tmp_path / "vetter.db")
    yield s
    s.close()


@pytest.fixture
def owner(store: VetterStore) -> str:
    store.upsert_user(OWNER, "Owner")
    return OWNER
