"""HTML run reports written to the user's report directory."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from html import escape
from pathlib import Path

from inbox_vetter.gmail_client import gmail_link
from inbox_vetter.models import (
    ACTION_IMPORTANT,
    ACTION_TRASH,
    KIND_IMAGE,
    KIND_OTHER,
    KIND_PDF,
    KIND_SKIPPED,
    KIND_TEXT,
    AttachmentSummary,
    ReportFile,
    ResultItem,
)

_BADGE_COLORS = {ACTION_IMPORTANT: "#10b981", ACTION_TRASH: "#ef4444"}
_KIND_ICONS = {KIND_IMAGE: "[img]", KIND_PDF: "[pdf]", KIND_TEXT: "[txt]", KIND_SKIPPED: "[skip]", KIND_OTHER: "[file]"}

_STYLE = """
  :root { color-scheme: dark; --bg: #0b0f17; --panel: #0f172a; --thead: #0b1222; --row-alt: #0d162a;
          --text: #e5e7eb; --muted: #93a4bc; --border: #1f2937; }
  html, body { background: var(--bg); }
  body { color: var(--text); font-family: ui-sans-serif, system-ui, -apple-system, Segoe UI, Roboto, Arial;
         margin: 24px; }
  h1 { margin: 0 0 12px; }
  .meta { color: var(--muted); margin-bottom: 18px; }
  table { width: 100%; border-collapse: collapse; background: var(--panel); border: 1px solid var(--border); }
  th, td { padding: 12px 14px; border-bottom: 1px solid var(--border); vertical-align: top; }
  th { text-align: left; background: var(--thead); position: sticky; top: 0; }
  tbody tr:nth-child(odd) { background: var(--row-alt); }
  .idx, .date { color: var(--muted); }
  .date { white-space: nowrap; }
  .subject a { color: #93c5fd; }
  .badge { color: white; padding: 6px 10px; border-radius: 999px; font-size: 12px; white-space: nowrap; }
  .pill { padding: 6px 10px; border-radius: 999px; font-size: 12px; border: 1px solid transparent; }
  .pill-scam { background: #1b0f12; color: #fca5a5; border-color: #7f1d1d; }
  .pill-ok { background: #0f1a14; color: #bbf7d0; border-color: #065f46; }
  .conf { text-align: right; font-variant-numeric: tabular-nums; }
  .att-list { list-style: none; margin: 0; padding: 0; }
  .att { font-size: 12px; }
  .footer { margin-top: 16px; color: var(--muted); font-size: 12px; }
"""


def report_file_name(generated_at: str) -> str:
    """``inbox_report-<timestamp>.html`` with ``:`` ``.`` and ``+`` made filesystem safe."""
    return f"inbox_report-{re.sub(r'[:.+]', '-', generated_at)}.html"


def _human_mb(size_mb: float) -> str:
    if size_mb <= 0:
        return ""
    return f"{size_mb:.2f} MB" if size_mb < 1 else f"{size_mb:.1f} MB"


def _action_badge(action: str) -> str:
    color = _BADGE_COLORS.get(action, "#3b82f6")
    return f'<span class="badge" data-kind="{escape(action)}" style="background:{color}">{escape(action)}</span>'


def _scam_pill(is_scam: bool) -> str:
    if is_scam:
        return '<span class="pill pill-scam">SCAM</span>'
    return '<span class="pill pill-ok">Not Scam</span>'


def _attachment_list(attachments: tuple[AttachmentSummary, ...]) -> str:
    if not attachments:
        return '<span class="att none">-</span>'
    items = []
    for att in attachments:
        label = f"{_KIND_ICONS.get(att.kind, '[file]')} {att.filename or '(file)'}"
        hint = " - ".join(p for p in (att.mime_type, _human_mb(att.size_mb)) if p)
        items.append(f'<li class="att" title="{escape(hint)}">{escape(label)}</li>')
    return f'<ul class="att-list">{"".join(items)}</ul>'


def _row(index: int, item: ResultItem) -> str:
    env = item.envelope
    verdict = item.verdict
    link = gmail_link(env.message_id)
    subject = escape(env.subject or "(no subject)")
    if link:
        subject = f'<a href="{escape(link)}" target="_blank" rel="noopener">{subject}</a>'
    return (
        "<tr>"
        f'<td class="idx">{index}</td>'
        f'<td class="date">{escape(env.received_at)}</td>'
        f'<td class="from">{escape(env.sender)}</td>'
        f'<td class="subject">{subject}</td>'
        f'<td class="action">{_action_badge(verdict.action)}</td>'
        f'<td class="scam">{_scam_pill(verdict.is_scam)}</td>'
        f'<td class="conf">{verdict.confidence:.2f}</td>'
        f'<td class="labels">{escape(", ".join(item.labels_applied))}</td>'
        f'<td class="reason">{escape(verdict.reason)}</td>'
        f'<td class="atts">{_attachment_list(item.attachments)}</td>'
        "</tr>"
    )


def render_html(results: list[ResultItem], generated_at: str, descriptor: str) -> str:
    rows = "\n".join(_row(i, item) for i, item in enumerate(results, start=1))
    return f"""<!doctype html>
<html>
<head>
<meta charset="utf-8"/>
<title>Inbox Vetter Report</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>{_STYLE}</style>
</head>
<body>
  <h1>Inbox Vetter - Run Report</h1>
  <div class="meta">Generated at {escape(generated_at)} | {len(results)} item(s). IMPORTANT focus: {escape(descriptor)}</div>
  <table>
    <thead>
      <tr><th>#</th><th>Date</th><th>From</th><th>Subject</th><th>Action</th><th>SCAM</th><th>Conf</th><th>Labels</th><th>Reason</th><th>Attachments</th></tr>
    </thead>
    <tbody>
{rows}
    </tbody>
  </table>
  <div class="footer">"Action" = model decision; "SCAM" = explicit scam flag.</div>
</body>
</html>
"""


def write_report(
    report_dir: Path,
    results: list[ResultItem],
    descriptor: str,
    generated_at: str | None = None,
) -> ReportFile:
    """Render ``results`` and write them under ``report_dir``."""
    generated_at = generated_at or datetime.now(timezone.utc).isoformat()
    report_dir.mkdir(parents=True, exist_ok=True)
    file_name = report_file_name(generated_at)
    out_path = report_dir / file_name
    out_path.write_text(render_html(results, generated_at, descriptor), encoding="utf-8")
    return ReportFile(path=str(out_path), file_name=file_name, generated_at=generated_at)
