"""Attachment extraction: fetch, size-check and convert message attachments.

Images become data URIs, PDFs and text files become truncated text, and
anything else is only noted.  A single bad attachment never fails the
message; it comes back as a ``skipped`` record with the reason.
"""

from __future__ import annotations

import base64
import io
import logging
from typing import Iterable

from pypdf import PdfReader

from inbox_vetter.errors import AttachmentFetchFailed
from inbox_vetter.gmail_client import MailboxGateway, decode_b64url, flatten_parts
from inbox_vetter.models import (
    KIND_IMAGE,
    KIND_OTHER,
    KIND_PDF,
    KIND_SKIPPED,
    KIND_TEXT,
    Attachment,
    AttachmentSummary,
    RunConfig,
)

logger = logging.getLogger(__name__)

_BYTES_PER_MB = 1024 * 1024


def bytes_to_mb(n: int) -> float:
    return n / _BYTES_PER_MB


def _candidate_parts(payload: dict | None) -> list[dict]:
    """Parts that carry a filename and either inline data or an attachment id."""
    parts = []
    for part in flatten_parts(payload):
        body = part.get("body") or {}
        if part.get("filename") and (body.get("attachmentId") or body.get("data")):
            parts.append(part)
    return parts


def extract_pdf_text(data: bytes, max_chars: int, filename: str = "file.pdf") -> str:
    """Best-effort PDF text, truncated to ``max_chars``; a placeholder note on failure."""
    size = bytes_to_mb(len(data))
    try:
        reader = PdfReader(io.BytesIO(data))
        text = "\n".join(page.extract_text() or "" for page in reader.pages).strip()
    except Exception as exc:  # noqa: BLE001
        return f"[PDF {filename} present, {size:.2f} MB. Could not extract text: {exc}]"
    if not text:
        return f"[PDF {filename} present, {size:.2f} MB. No extractable text.]"
    return text[:max_chars]


async def _fetch_part_bytes(gateway: MailboxGateway, message_id: str, part: dict) -> bytes:
    body = part.get("body") or {}
    filename = part.get("filename") or "file"
    try:
        if body.get("attachmentId"):
            return await gateway.get_attachment_bytes(message_id, body["attachmentId"])
        return decode_b64url(body.get("data", ""))
    except Exception as exc:  # noqa: BLE001
        raise AttachmentFetchFailed(filename, exc) from exc


def _too_large(filename: str, mime_type: str, size_mb: float) -> Attachment:
    return Attachment(
        kind=KIND_SKIPPED,
        filename=filename,
        mime_type=mime_type,
        size_mb=size_mb,
        reason=f"Too large ({size_mb:.1f} MB)",
    )


async def extract_attachments(
    gateway: MailboxGateway,
    message_id: str,
    payload: dict | None,
    config: RunConfig,
) -> list[Attachment]:
    """Walk a message's part tree and return its attachments.

    At most ``config.max_images`` images are kept (the earliest ones),
    followed by every non-image attachment in the order encountered.
    """
    if not config.allow_attachments:
        return []

    attachments: list[Attachment] = []
    image_count = 0

    for part in _candidate_parts(payload):
        filename = part.get("filename") or "file"
        mime_type = part.get("mimeType") or "application/octet-stream"
        is_image = mime_type.startswith("image/")

        if is_image and image_count >= config.max_images:
            continue

        # Gmail reports the decoded size up front; skip before downloading.
        declared_mb = bytes_to_mb(int((part.get("body") or {}).get("size") or 0))
        if declared_mb > config.max_attachment_mb:
            attachments.append(_too_large(filename, mime_type, declared_mb))
            continue

        try:
            data = await _fetch_part_bytes(gateway, message_id, part)
        except AttachmentFetchFailed as exc:
            logger.warning("Attachment %s on %s: %s", filename, message_id, exc)
            attachments.append(
                Attachment(kind=KIND_SKIPPED, filename=filename, mime_type=mime_type, reason=str(exc))
            )
            continue

        size_mb = bytes_to_mb(len(data))
        if size_mb > config.max_attachment_mb:
            attachments.append(_too_large(filename, mime_type, size_mb))
            continue

        if is_image:
            data_uri = f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
            attachments.append(
                Attachment(kind=KIND_IMAGE, filename=filename, mime_type=mime_type, size_mb=size_mb, payload=data_uri)
            )
            image_count += 1
        elif mime_type == "application/pdf":
            text = extract_pdf_text(data, config.max_pdf_text_chars, filename)
            attachments.append(
                Attachment(kind=KIND_PDF, filename=filename, mime_type=mime_type, size_mb=size_mb, payload=text)
            )
        elif mime_type.startswith("text/"):
            text = data.decode("utf-8", errors="replace")[: config.max_pdf_text_chars]
            attachments.append(
                Attachment(kind=KIND_TEXT, filename=filename, mime_type=mime_type, size_mb=size_mb, payload=text)
            )
        else:
            attachments.append(Attachment(kind=KIND_OTHER, filename=filename, mime_type=mime_type, size_mb=size_mb))

    images = [a for a in attachments if a.kind == KIND_IMAGE][: config.max_images]
    others = [a for a in attachments if a.kind != KIND_IMAGE]
    return images + others


def summarize_attachments(attachments: Iterable[Attachment | AttachmentSummary]) -> str:
    """Compact count string, e.g. ``"2 img, 1 pdf"``."""
    counts = {KIND_IMAGE: 0, KIND_PDF: 0, KIND_TEXT: 0, KIND_OTHER: 0, KIND_SKIPPED: 0}
    for item in attachments:
        counts[item.kind] = counts.get(item.kind, 0) + 1
    labels = [
        (KIND_IMAGE, "img"),
        (KIND_PDF, "pdf"),
        (KIND_TEXT, "txt"),
        (KIND_OTHER, "other"),
        (KIND_SKIPPED, "skipped"),
    ]
    return ", ".join(f"{counts[kind]} {label}" for kind, label in labels if counts[kind])


def to_summary(attachment: Attachment) -> AttachmentSummary:
    return AttachmentSummary(
        kind=attachment.kind,
        filename=attachment.filename,
        mime_type=attachment.mime_type,
        size_mb=attachment.size_mb,
        summary=summarize_attachments([attachment]),
    )
