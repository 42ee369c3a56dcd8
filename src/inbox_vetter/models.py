"""Data models for Inbox Vetter."""

from __future__ import annotations

import random
import string
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Iterator

from inbox_vetter.constants import FALLBACK_CONFIDENCE, LOG_RING_CAPACITY, OMITTED_REASON, REASON_CHAR_LIMIT

ACTION_TRASH = "TRASH"
ACTION_KEEP = "KEEP"
ACTION_IMPORTANT = "IMPORTANT"
ACTIONS = (ACTION_TRASH, ACTION_KEEP, ACTION_IMPORTANT)

KIND_IMAGE = "image"
KIND_PDF = "pdf"
KIND_TEXT = "text"
KIND_OTHER = "other"
KIND_SKIPPED = "skipped"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp into an aware datetime.

    Accepts a trailing ``Z`` for UTC and treats naive values as UTC.
    Raises ValueError for anything else ``fromisoformat`` rejects.
    """
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def random_suffix(length: int = 6) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


@dataclass(frozen=True)
class RunConfig:
    """Validated settings for a single review run. Built by ``build_run_config``."""

    safe_mode: bool
    allow_attachments: bool
    max_attachment_mb: float
    max_images: int
    max_pdf_text_chars: int
    gmail_query: str  # Effective query, including the newer_than clause
    gmail_max_results: int
    openai_model: str
    gmail_query_raw: str = ""
    window_days: int = 7


@dataclass(frozen=True)
class UserSettings:
    """Per-user preferences as stored; values are already normalized."""

    omitted_senders: str = ""
    important_desc: str = ""
    allow_attachments: bool | None = None
    max_attachment_mb: float | None = None
    max_images: int | None = None
    max_pdf_text_chars: int | None = None
    model: str = ""
    safe_mode: bool | None = None
    gmail_query: str = ""
    gmail_max_results: int | None = None
    window_days: int | None = None

    def omitted_sender_list(self) -> list[str]:
        return [s.strip().lower() for s in self.omitted_senders.split(",") if s.strip()]


@dataclass(frozen=True)
class Attachment:
    """One attachment found in a message part tree.

    ``payload`` is a data URI for images, extracted text for pdf/text parts
    and ``None`` for other or skipped parts.
    """

    kind: str
    filename: str
    mime_type: str
    size_mb: float = 0.0
    payload: str | None = None
    reason: str = ""


@dataclass(frozen=True)
class AttachmentSummary:
    kind: str
    filename: str
    mime_type: str
    size_mb: float
    summary: str


@dataclass(frozen=True)
class MessageEnvelope:
    """Snapshot of one Gmail message as fetched."""

    message_id: str
    sender: str  # Full From header value
    sender_name: str
    sender_email: str
    subject: str
    received_at: str = ""
    body: str = ""
    attachments: tuple[Attachment, ...] = ()


@dataclass(frozen=True)
class Verdict:
    action: str
    is_scam: bool
    is_important: bool
    confidence: float
    reason: str

    @classmethod
    def fallback(cls, cause: str) -> Verdict:
        """The verdict used whenever classification cannot be trusted."""
        return cls(
            action=ACTION_KEEP,
            is_scam=False,
            is_important=False,
            confidence=FALLBACK_CONFIDENCE,
            reason=cause[:REASON_CHAR_LIMIT],
        )

    @classmethod
    def omitted(cls) -> Verdict:
        return cls(
            action=ACTION_KEEP,
            is_scam=False,
            is_important=False,
            confidence=1.0,
            reason=OMITTED_REASON,
        )

    def normalized(self) -> Verdict:
        """Return a copy where IMPORTANT always implies ``is_important``."""
        action = self.action if self.action in ACTIONS else ACTION_KEEP
        return Verdict(
            action=action,
            is_scam=bool(self.is_scam),
            is_important=bool(self.is_important or action == ACTION_IMPORTANT),
            confidence=min(1.0, max(0.0, float(self.confidence))),
            reason=self.reason[:REASON_CHAR_LIMIT],
        )


@dataclass(frozen=True)
class ResultItem:
    """One reviewed message together with what was done to it."""

    envelope: MessageEnvelope
    verdict: Verdict
    labels_applied: tuple[str, ...] = ()
    attachments: tuple[AttachmentSummary, ...] = ()

    def to_dict(self) -> dict:
        return {
            "id": self.envelope.message_id,
            "from": self.envelope.sender,
            "subject": self.envelope.subject,
            "receivedAt": self.envelope.received_at,
            "action": self.verdict.action,
            "is_scam": self.verdict.is_scam,
            "is_important": self.verdict.is_important,
            "confidence": self.verdict.confidence,
            "reason": self.verdict.reason,
            "labelsApplied": list(self.labels_applied),
            "attachments": [asdict(a) for a in self.attachments],
        }


@dataclass
class RunStats:
    reviewed: int = 0
    skipped: int = 0
    failed: int = 0
    important: int = 0
    trash: int = 0
    keep: int = 0

    @property
    def total(self) -> int:
        return self.important + self.trash + self.keep

    def count(self, verdict: Verdict) -> None:
        if verdict.action == ACTION_IMPORTANT:
            self.important += 1
        elif verdict.action == ACTION_TRASH:
            self.trash += 1
        else:
            self.keep += 1


@dataclass(frozen=True)
class ReportFile:
    path: str
    file_name: str
    generated_at: str


@dataclass
class PipelineRun:
    """Everything a single pipeline execution produced."""

    results: list[ResultItem]
    report: ReportFile
    processed_ids: frozenset[str]
    stats: RunStats
    descriptor: str = ""


@dataclass(frozen=True)
class LogEntry:
    id: str
    level: str
    message: str
    timestamp: str

    @classmethod
    def create(cls, message: str, level: str = "info") -> LogEntry:
        return cls(
            id=f"log-{int(time.time() * 1000)}-{random_suffix()}",
            level=level,
            message=message,
            timestamp=utcnow_iso(),
        )


class LogRing:
    """Fixed-capacity log buffer; appending past capacity drops the oldest entry."""

    def __init__(self, entries: Iterable[LogEntry] = (), capacity: int = LOG_RING_CAPACITY) -> None:
        self._entries: deque[LogEntry] = deque(entries, maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)

    def extend(self, entries: Iterable[LogEntry]) -> None:
        self._entries.extend(entries)

    def to_list(self) -> list[dict]:
        return [asdict(e) for e in self._entries]

    @classmethod
    def from_list(cls, rows: Iterable[dict], capacity: int = LOG_RING_CAPACITY) -> LogRing:
        return cls((LogEntry(**row) for row in rows), capacity=capacity)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class VetterState:
    """Persisted per-user run state. ``active`` is the mutual-exclusion guard."""

    active: bool = False
    last_run_at: str | None = None
    last_report_id: str | None = None
    next_run_at: str | None = None
    processed_message_ids: frozenset[str] = frozenset()
    logs: LogRing = field(default_factory=LogRing)


@dataclass
class ReportRecord:
    id: str
    email: str
    title: str
    description: str
    status: str
    snippet: str
    created_at: str
    meta: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Subscription:
    plan: str = "free"
    status: str = "active"
    renews_at: str | None = None


@dataclass(frozen=True)
class UserRecord:
    email: str
    name: str = ""
    created_at: str = field(default_factory=utcnow_iso)
