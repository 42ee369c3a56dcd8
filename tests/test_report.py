"""Tests for HTML report rendering."""

from inbox_vetter.models import AttachmentSummary, MessageEnvelope, ResultItem, Verdict
from inbox_vetter.report import render_html, report_file_name, write_report


def _item(subject: str = "Hello <world>") -> ResultItem:
    envelope = MessageEnvelope(
        message_id="18c2f0a1",
        sender='"Mallory" <mallory@evil.example>',
        sender_name="Mallory",
        sender_email="mallory@evil.example",
        subject=subject,
        received_at="2024-06-01T09:30:00+00:00",
    )
    return ResultItem(
        envelope=envelope,
        verdict=Verdict("TRASH", True, False, 0.97, "Credential phishing"),
        labels_applied=("SCAM", "REVIEW_SPAM"),
        attachments=(AttachmentSummary("pdf", "invoice.pdf", "application/pdf", 0.25, "1 pdf"),),
    )


def test_report_file_name_is_filesystem_safe():
    assert report_file_name("2024-06-01T10:00:00.123+00:00") == "inbox_report-2024-06-01T10-00-00-123-00-00.html"


def test_render_html_escapes_and_links():
    html = render_html([_item()], "2024-06-01T10:00:00+00:00", "payments")
    assert "Hello &lt;world&gt;" in html
    assert "https://mail.google.com/mail/u/0/#all/18c2f0a1" in html
    assert 'data-kind="TRASH"' in html
    assert "pill-scam" in html
    assert "0.97" in html
    assert "SCAM, REVIEW_SPAM" in html
    assert "invoice.pdf" in html
    assert "IMPORTANT focus: payments" in html


def test_render_html_empty():
    html = render_html([], "2024-06-01T10:00:00+00:00", "payments")
    assert "0 item(s)" in html
    assert "<tbody>" in html


def test_write_report(tmp_path):
    report = write_report(tmp_path / "reports", [_item()], "payments", generated_at="2024-06-01T10:00:00+00:00")
    assert report.file_name == "inbox_report-2024-06-01T10-00-00-00-00.html"
    assert report.generated_at == "2024-06-01T10:00:00+00:00"
    content = (tmp_path / "reports" / report.file_name).read_text(encoding="utf-8")
    assert "Credential phishing" in content
