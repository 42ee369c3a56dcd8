"""Run configuration: merge user settings with overrides into a bounded RunConfig.

Everything that arrives here is loosely typed (form values, env strings,
JSON numbers).  Nothing loosely typed leaves: callers get a ``UserSettings``
or a ``RunConfig`` with every field coerced and clamped.
"""

from __future__ import annotations

import math
import re
from typing import Any, Mapping

from inbox_vetter.constants import (
    DEFAULT_ALLOW_ATTACHMENTS,
    DEFAULT_GMAIL_MAX_RESULTS,
    DEFAULT_GMAIL_QUERY,
    DEFAULT_MAX_ATTACHMENT_MB,
    DEFAULT_MAX_IMAGES,
    DEFAULT_MAX_PDF_TEXT_CHARS,
    DEFAULT_OPENAI_MODEL,
    DEFAULT_SAFE_MODE,
    DEFAULT_WINDOW_DAYS,
    MAX_GMAIL_RESULTS,
    MAX_WINDOW_DAYS,
    MIN_ATTACHMENT_MB,
    MIN_PDF_TEXT_CHARS,
)
from inbox_vetter.models import RunConfig, UserSettings

_TRUE_TOKENS = {"true", "1", "yes", "on"}
_FALSE_TOKENS = {"false", "0", "no", "off"}


def bool_from(value: Any, fallback: bool) -> bool:
    """Coerce booleans, numbers and truthy/falsy tokens; keep ``fallback`` otherwise."""
    if value is None or value == "":
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_TOKENS:
            return True
        if normalized in _FALSE_TOKENS:
            return False
        return fallback
    return fallback


def number_from(
    value: Any,
    fallback: float,
    minimum: float | None = None,
    maximum: float | None = None,
    round_result: bool = False,
) -> float:
    """Coerce ``value`` to a finite number and clamp it.

    Missing, unparseable and non-finite values return ``fallback`` unchanged.
    """
    if value is None or value == "" or isinstance(value, bool):
        return fallback
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(num):
        return fallback
    if round_result:
        num = math.floor(num + 0.5)
    if minimum is not None:
        num = max(minimum, num)
    if maximum is not None:
        num = min(maximum, num)
    return num


def normalize_query(query: str | None = None, window_days: float = DEFAULT_WINDOW_DAYS) -> str:
    """Append a ``newer_than:<N>d`` clause unless the query already has it."""
    trimmed = str(query or "").strip() or DEFAULT_GMAIL_QUERY
    clause = f"newer_than:{max(1, math.floor(window_days + 0.5))}d"
    if re.search(rf"\b{re.escape(clause)}\b", trimmed, re.IGNORECASE):
        return trimmed
    return f"{trimmed} {clause}".strip()


def normalize_settings(raw: Mapping[str, Any] | None) -> UserSettings:
    """Turn a loosely typed settings mapping into ``UserSettings``.

    Unset numeric and boolean fields stay ``None`` so the process defaults
    apply when the run config is built.
    """
    raw = raw or {}

    def opt_bool(key: str) -> bool | None:
        return bool_from(raw.get(key), fallback=None)  # type: ignore[arg-type]

    def opt_number(key: str, as_int: bool = False) -> float | int | None:
        value = number_from(raw.get(key), fallback=math.nan, round_result=as_int)
        if math.isnan(value):
            return None
        return int(value) if as_int else value

    return UserSettings(
        omitted_senders=str(raw.get("omitted_senders") or "").strip(),
        important_desc=str(raw.get("important_desc") or "").strip(),
        allow_attachments=opt_bool("allow_attachments"),
        max_attachment_mb=opt_number("max_attachment_mb"),
        max_images=opt_number("max_images", as_int=True),
        max_pdf_text_chars=opt_number("max_pdf_text_chars", as_int=True),
        model=str(raw.get("model") or "").strip(),
        safe_mode=opt_bool("safe_mode"),
        gmail_query=str(raw.get("gmail_query") or "").strip(),
        gmail_max_results=opt_number("gmail_max_results", as_int=True),
        window_days=opt_number("window_days", as_int=True),
    )


def build_run_config(
    settings: UserSettings | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RunConfig:
    """Merge per-user settings with call-site overrides. Never raises."""
    settings = settings or UserSettings()
    overrides = overrides or {}

    def pick(key: str) -> Any:
        value = overrides.get(key)
        if value is None:
            value = getattr(settings, key, None)
        return value

    window_days = int(
        number_from(pick("window_days"), DEFAULT_WINDOW_DAYS, minimum=1, maximum=MAX_WINDOW_DAYS, round_result=True)
    )
    base_query = str(pick("gmail_query") or "").strip() or DEFAULT_GMAIL_QUERY

    return RunConfig(
        safe_mode=bool_from(pick("safe_mode"), DEFAULT_SAFE_MODE),
        allow_attachments=bool_from(pick("allow_attachments"), DEFAULT_ALLOW_ATTACHMENTS),
        max_attachment_mb=number_from(
            pick("max_attachment_mb"), DEFAULT_MAX_ATTACHMENT_MB, minimum=MIN_ATTACHMENT_MB
        ),
        max_images=int(number_from(pick("max_images"), DEFAULT_MAX_IMAGES, minimum=0, round_result=True)),
        max_pdf_text_chars=int(
            number_from(
                pick("max_pdf_text_chars"),
                DEFAULT_MAX_PDF_TEXT_CHARS,
                minimum=MIN_PDF_TEXT_CHARS,
                round_result=True,
            )
        ),
        gmail_query=normalize_query(base_query, window_days),
        gmail_max_results=int(
            number_from(
                pick("gmail_max_results"),
                DEFAULT_GMAIL_MAX_RESULTS,
                minimum=1,
                maximum=MAX_GMAIL_RESULTS,
                round_result=True,
            )
        ),
        openai_model=str(overrides.get("model") or settings.model or DEFAULT_OPENAI_MODEL),
        gmail_query_raw=base_query,
        window_days=window_days,
    )
