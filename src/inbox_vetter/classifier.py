"""Email classification through the OpenAI chat completions API.

The model is forced to answer through a single function tool whose schema
mirrors ``VerdictPayload``.  Anything that does not validate against that
model, and any transport error, degrades to ``Verdict.fallback`` (KEEP at
confidence 0.2), so a classifier outage can never trash mail.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Literal, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator

from inbox_vetter.constants import (
    BODY_CHAR_LIMIT,
    DEFAULT_IMPORTANT_DESCRIPTOR,
    DEFAULT_OPENAI_MODEL,
    DESCRIPTOR_MAX_WORDS,
    REASON_CHAR_LIMIT,
)
from inbox_vetter.errors import ClassificationDegraded
from inbox_vetter.models import KIND_IMAGE, KIND_PDF, KIND_TEXT, MessageEnvelope, RunConfig, UserSettings, Verdict

logger = logging.getLogger(__name__)

TOOL_NAME = "set_classification"

_VISION_RE = re.compile(r"^(gpt-5|gpt-4o|gpt-4\.1)", re.IGNORECASE)
_REASONING_RE = re.compile(r"^(gpt-5|o[0-9])", re.IGNORECASE)
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class Classifier(Protocol):
    async def classify(self, config: RunConfig, envelope: MessageEnvelope, descriptor: str) -> Verdict: ...

    async def describe_importance(self, settings: UserSettings) -> str: ...


class VerdictPayload(BaseModel):
    """Strict shape of the classifier's answer."""

    model_config = ConfigDict(extra="forbid")

    action: Literal["TRASH", "KEEP", "IMPORTANT"]
    is_scam: StrictBool
    is_important: StrictBool
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str

    @field_validator("reason")
    @classmethod
    def _clip_reason(cls, value: str) -> str:
        return value.strip()[:REASON_CHAR_LIMIT]

    def to_verdict(self) -> Verdict:
        return Verdict(
            action=self.action,
            is_scam=self.is_scam,
            is_important=self.is_important,
            confidence=self.confidence,
            reason=self.reason,
        ).normalized()


CLASSIFICATION_TOOL = {
    "type": "function",
    "function": {
        "name": TOOL_NAME,
        "description": "Return the email classification in strict schema.",
        "parameters": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["TRASH", "KEEP", "IMPORTANT"]},
                "is_scam": {"type": "boolean"},
                "is_important": {"type": "boolean"},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "reason": {"type": "string", "maxLength": REASON_CHAR_LIMIT},
            },
            "required": ["action", "is_scam", "is_important", "confidence", "reason"],
            "additionalProperties": False,
        },
    },
}


def supports_vision(model: str) -> bool:
    return bool(_VISION_RE.match(model or ""))


def completion_params(model: str, max_tokens: int, temperature: float) -> dict[str, Any]:
    """Token-limit and temperature arguments in the form ``model`` accepts."""
    if _REASONING_RE.match(model or ""):
        return {"max_completion_tokens": max_tokens}
    return {"max_tokens": max_tokens, "temperature": temperature}


def build_system_prompt(descriptor: str) -> str:
    descriptor = descriptor or DEFAULT_IMPORTANT_DESCRIPTOR
    return (
        "You are an email screener.\n"
        "Decide if the email is:\n"
        '- "TRASH" (obvious scam/phish/junk/unsolicited sales),\n'
        '- "KEEP" (legit but not critical),\n'
        f'- "IMPORTANT" ({descriptor}).\n\n'
        "Consider email text, and if present, attachment content (images/PDF text).\n"
        "Prefer IMPORTANT for sponsorship/payment/security even if tentative.\n"
        "Return the result ONLY via the provided function schema."
    )


def build_user_content(config: RunConfig, envelope: MessageEnvelope) -> list[dict[str, Any]]:
    body = (envelope.body or "")[:BODY_CHAR_LIMIT]
    content: list[dict[str, Any]] = [
        {
            "type": "text",
            "text": f"Subject: {envelope.subject}\nFrom: {envelope.sender}\nBody (truncated):\n{body}",
        }
    ]

    if supports_vision(config.openai_model):
        for att in envelope.attachments:
            if att.kind == KIND_IMAGE and att.payload:
                content.append({"type": "image_url", "image_url": {"url": att.payload}})

    excerpts = [
        f"---\nAttachment: {att.filename} ({att.mime_type}, {att.size_mb:.2f} MB)\n{att.payload}"
        for att in envelope.attachments
        if att.kind in (KIND_PDF, KIND_TEXT) and att.payload
    ]
    if excerpts:
        content.append({"type": "text", "text": "Attachment text excerpts:\n" + "\n".join(excerpts)})

    return content


def parse_verdict(message: Any) -> Verdict:
    """Validate a chat completion message into a Verdict.

    Prefers the forced tool call; falls back to a JSON object embedded in
    the text content.  Raises ClassificationDegraded when neither validates.
    """
    raw: str | None = None
    for call in getattr(message, "tool_calls", None) or []:
        if call.function.name == TOOL_NAME and call.function.arguments:
            raw = call.function.arguments
            break
    if raw is None:
        match = _JSON_OBJECT_RE.search(getattr(message, "content", None) or "")
        if match is None:
            raise ClassificationDegraded("Classifier returned no structured data")
        raw = match.group(0)

    try:
        return VerdictPayload.model_validate_json(raw).to_verdict()
    except ValidationError as exc:
        raise ClassificationDegraded(f"Classifier response rejected: {exc.error_count()} schema error(s)") from exc


class OpenAIClassifier:
    """Classifier backed by an ``AsyncOpenAI`` client."""

    def __init__(self, client: AsyncOpenAI | None = None, api_key: str | None = None) -> None:
        self._client = client
        self._api_key = api_key

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = (self._api_key or os.getenv("OPENAI_API_KEY", "")).strip()
            if not api_key:
                raise ClassificationDegraded("OPENAI_API_KEY is required for classification.")
            self._client = AsyncOpenAI(api_key=api_key)
        return self._client

    async def classify(self, config: RunConfig, envelope: MessageEnvelope, descriptor: str) -> Verdict:
        model = config.openai_model or DEFAULT_OPENAI_MODEL
        try:
            resp = await self.client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": build_system_prompt(descriptor)},
                    {"role": "user", "content": build_user_content(config, envelope)},
                ],
                tools=[CLASSIFICATION_TOOL],
                tool_choice={"type": "function", "function": {"name": TOOL_NAME}},
                **completion_params(model, 200, 0.1),
            )
            if not resp.choices:
                raise ClassificationDegraded("Classifier returned no choices")
            return parse_verdict(resp.choices[0].message)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Classification degraded for %s: %s", envelope.message_id, exc)
            return Verdict.fallback(f"Classifier error: {exc}")

    async def describe_importance(self, settings: UserSettings) -> str:
        """Rewrite the user's importance description as a short phrase."""
        base = (settings.important_desc or "").strip()
        if not base:
            return DEFAULT_IMPORTANT_DESCRIPTOR
        prompt = (
            f'Take this description of what emails are important to the user:\n\n"{base}"\n\n'
            f"Rewrite it as a short phrase (max {DESCRIPTOR_MAX_WORDS} words) that can fit inside "
            "parentheses after the word IMPORTANT."
        )
        try:
            resp = await self.client.chat.completions.create(
                model=DEFAULT_OPENAI_MODEL,
                messages=[
                    {"role": "system", "content": "You produce concise phrases."},
                    {"role": "user", "content": prompt},
                ],
                **completion_params(DEFAULT_OPENAI_MODEL, 40, 0.4),
            )
            text = (resp.choices[0].message.content or "") if resp.choices else ""
        except Exception as exc:  # noqa: BLE001
            logger.warning("Important descriptor generation failed: %s", exc)
            return DEFAULT_IMPORTANT_DESCRIPTOR
        cleaned = " ".join(re.sub(r'["\n]', " ", text).split()[:DESCRIPTOR_MAX_WORDS])
        return cleaned or DEFAULT_IMPORTANT_DESCRIPTOR

