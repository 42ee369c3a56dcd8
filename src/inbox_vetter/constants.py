"""Constants for Inbox Vetter."""

import os
from pathlib import Path

# --- Config paths ---
CONFIG_DIR = Path(os.getenv("INBOX_VETTER_HOME", str(Path.home() / ".inbox-vetter")))
CREDENTIALS_PATH = CONFIG_DIR / "credentials.json"
STORE_DB_PATH = CONFIG_DIR / "vetter.db"
USERS_DIR = CONFIG_DIR / "users"

# --- Gmail API ---
SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]
PAGE_SIZE = 500  # messages per list page
GMAIL_LINK_TEMPLATE = "https://mail.google.com/mail/u/0/#all/{message_id}"

# --- Labels ---
LABEL_SCAM = "SCAM"
LABEL_REVIEW_SPAM = "REVIEW_SPAM"
LABEL_IMPORTANT = "IMPORTANT_TO_ME"
VETTER_LABELS = [LABEL_REVIEW_SPAM, LABEL_IMPORTANT, LABEL_SCAM]

# --- Run defaults (process-level, overridable per user) ---
DEFAULT_GMAIL_QUERY = os.getenv("GMAIL_QUERY", "label:inbox")
DEFAULT_SAFE_MODE = os.getenv("SAFE_MODE", "true").strip().lower() == "true"
DEFAULT_ALLOW_ATTACHMENTS = os.getenv("ALLOW_ATTACHMENTS", "true").strip().lower() == "true"
DEFAULT_MAX_ATTACHMENT_MB = float(os.getenv("MAX_ATTACHMENT_MB", "5"))
DEFAULT_MAX_IMAGES = int(os.getenv("MAX_IMAGES", "3"))
DEFAULT_MAX_PDF_TEXT_CHARS = int(os.getenv("MAX_PDF_TEXT_CHARS", "4000"))
DEFAULT_OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
DEFAULT_GMAIL_MAX_RESULTS = int(os.getenv("GMAIL_MAX_RESULTS", "200"))
DEFAULT_WINDOW_DAYS = int(os.getenv("GMAIL_WINDOW_DAYS", "7"))

# --- Clamp bounds ---
MIN_ATTACHMENT_MB = 1
MIN_PDF_TEXT_CHARS = 500
MAX_GMAIL_RESULTS = 500
MAX_WINDOW_DAYS = 30

# --- Classifier ---
BODY_CHAR_LIMIT = 4000
REASON_CHAR_LIMIT = 300
FALLBACK_CONFIDENCE = 0.2
DEFAULT_IMPORTANT_DESCRIPTOR = "sponsorships/brand deals/payments/account security/school/admin"
DESCRIPTOR_MAX_WORDS = 12
OMITTED_REASON = "omitted"

# --- Vetter state ---
LOG_RING_CAPACITY = 100
STALE_RUN_SECONDS = 60 * 60

# --- Scheduler ---
DEFAULT_POLL_INTERVAL_SECONDS = int(os.getenv("INBOX_POLL_INTERVAL_SECONDS", "300"))
MIN_POLL_INTERVAL_SECONDS = 60
NO_AUTO_RUN_PLANS = {"", "free"}
