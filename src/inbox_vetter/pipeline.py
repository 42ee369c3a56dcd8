"""Review orchestration - lists new messages, classifies them, applies labels."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable

from inbox_vetter.attachments import extract_attachments, to_summary
from inbox_vetter.classifier import Classifier
from inbox_vetter.constants import LABEL_IMPORTANT, LABEL_REVIEW_SPAM, LABEL_SCAM, VETTER_LABELS
from inbox_vetter.errors import CredentialsMissing, ListingFailed, MessageProcessingFailed
from inbox_vetter.gmail_client import MailboxGateway, build_envelope, get_header, parse_from_header
from inbox_vetter.models import (
    ACTION_IMPORTANT,
    ACTION_TRASH,
    PipelineRun,
    ResultItem,
    RunConfig,
    RunStats,
    Verdict,
)
from inbox_vetter.report import write_report

logger = logging.getLogger(__name__)

RunLogger = Callable[..., None]


def _module_log(message: str, level: str = "info") -> None:
    logger.log(logging.ERROR if level == "error" else logging.INFO, message)


def sender_is_omitted(email_address: str, omitted: Iterable[str]) -> bool:
    """Match a sender against omission entries.

    An entry may be a full address, a bare domain (``example.com``) or an
    ``@domain`` suffix.  Matching is case-insensitive.
    """
    if not email_address:
        return False
    normalized = email_address.strip().lower()
    domain = normalized.rsplit("@", 1)[-1] if "@" in normalized else ""
    for entry in omitted:
        entry = entry.strip().lower()
        if not entry:
            continue
        if entry.startswith("@"):
            if normalized.endswith(entry):
                return True
        elif "@" not in entry:
            if domain == entry:
                return True
        elif normalized == entry:
            return True
    return False


async def _apply_verdict(
    gateway: MailboxGateway,
    message_id: str,
    verdict: Verdict,
    config: RunConfig,
    label_ids: dict[str, str],
) -> tuple[str, ...]:
    """Label or trash one message; return the label names actually applied."""
    applied: list[str] = []
    if verdict.action == ACTION_TRASH or verdict.is_scam:
        await gateway.apply_labels(message_id, [label_ids[LABEL_SCAM]])
        applied.append(LABEL_SCAM)
        if config.safe_mode:
            await gateway.apply_labels(message_id, [label_ids[LABEL_REVIEW_SPAM]])
            applied.append(LABEL_REVIEW_SPAM)
        else:
            await gateway.trash_message(message_id)
    elif verdict.action == ACTION_IMPORTANT or verdict.is_important:
        await gateway.apply_labels(message_id, [label_ids[LABEL_IMPORTANT]])
        applied.append(LABEL_IMPORTANT)
    return tuple(applied)


async def _classify(classifier: Classifier, config: RunConfig, envelope, descriptor: str) -> Verdict:
    try:
        verdict = await classifier.classify(config, envelope, descriptor)
    except CredentialsMissing:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning("Classifier raised for %s: %s", envelope.message_id, exc)
        return Verdict.fallback(f"Classifier error: {exc}")
    return verdict.normalized()


async def review_inbox(
    gateway: MailboxGateway,
    classifier: Classifier,
    config: RunConfig,
    processed_ids: Iterable[str],
    report_dir: Path,
    omitted_senders: Iterable[str] = (),
    descriptor: str = "",
    log: RunLogger | None = None,
) -> PipelineRun:
    """Run one review over every message not already in ``processed_ids``.

    Only a failure to list messages (or to prepare labels) aborts the run,
    as ``ListingFailed``; ``CredentialsMissing`` always propagates.  Any other
    per-message problem is logged and the message is still marked processed.
    """
    log = log or _module_log
    omitted = list(omitted_senders)
    seen = set(processed_ids)

    log(f'Fetching Gmail messages with query "{config.gmail_query}" (max {config.gmail_max_results}).')
    try:
        message_ids = await gateway.list_message_ids(config.gmail_query, config.gmail_max_results)
    except CredentialsMissing:
        raise
    except Exception as exc:
        raise ListingFailed(f"Listing messages failed: {exc}") from exc

    new_ids = [mid for mid in dict.fromkeys(message_ids) if mid and mid not in seen]
    stats = RunStats()
    results: list[ResultItem] = []

    if not new_ids:
        log("No new messages to review.")
        report = write_report(report_dir, results, descriptor)
        return PipelineRun(results, report, frozenset(seen), stats, descriptor)

    try:
        label_ids = await gateway.ensure_labels(VETTER_LABELS)
    except CredentialsMissing:
        raise
    except Exception as exc:
        raise ListingFailed(f"Preparing labels failed: {exc}") from exc

    log(f"Reviewing {len(new_ids)} message(s).")
    for message_id in new_ids:
        try:
            raw = await gateway.get_message(message_id)
            headers = (raw.get("payload") or {}).get("headers") or []
            _, from_email = parse_from_header(get_header(headers, "From"))

            if sender_is_omitted(from_email, omitted):
                envelope = build_envelope(raw)
                results.append(ResultItem(envelope=envelope, verdict=Verdict.omitted()))
                stats.skipped += 1
                stats.count(Verdict.omitted())
                log(f"Omitted via preference: {from_email} | {envelope.subject}")
                continue

            attachments = await extract_attachments(gateway, message_id, raw.get("payload"), config)
            envelope = build_envelope(raw, attachments)
            verdict = await _classify(classifier, config, envelope, descriptor)
            applied = await _apply_verdict(gateway, message_id, verdict, config, label_ids)

            results.append(
                ResultItem(
                    envelope=envelope,
                    verdict=verdict,
                    labels_applied=applied,
                    attachments=tuple(to_summary(a) for a in attachments),
                )
            )
            stats.reviewed += 1
            stats.count(verdict)
            if LABEL_SCAM in applied:
                outcome = "Flagged (safe mode)" if config.safe_mode else "Trashed"
            elif LABEL_IMPORTANT in applied:
                outcome = "Important"
            else:
                outcome = "Keep"
            log(f"{outcome}: {envelope.sender_email} | {envelope.subject}")
        except CredentialsMissing:
            raise
        except Exception as exc:  # noqa: BLE001
            failure = MessageProcessingFailed(message_id, exc)
            stats.failed += 1
            log(str(failure), "error")
        finally:
            seen.add(message_id)

    report = write_report(report_dir, results, descriptor)
    return PipelineRun(results, report, frozenset(seen), stats, descriptor)
