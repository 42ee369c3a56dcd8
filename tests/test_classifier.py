"""Tests for the OpenAI-backed classifier."""

import json
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from inbox_vetter.classifier import (
    TOOL_NAME,
    OpenAIClassifier,
    build_system_prompt,
    build_user_content,
    completion_params,
    parse_verdict,
    supports_vision,
)
from inbox_vetter.constants import DEFAULT_IMPORTANT_DESCRIPTOR
from inbox_vetter.errors import ClassificationDegraded
from inbox_vetter.models import ACTION_IMPORTANT, ACTION_KEEP, Attachment, MessageEnvelope, UserSettings


def _tool_message(arguments: dict | str) -> SimpleNamespace:
    args = arguments if isinstance(arguments, str) else json.dumps(arguments)
    call = SimpleNamespace(function=SimpleNamespace(name=TOOL_NAME, arguments=args))
    return SimpleNamespace(tool_calls=[call], content=None)


def _response(message) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(*responses) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(responses))
    return client


@pytest.fixture
def envelope() -> MessageEnvelope:
    return MessageEnvelope(
        message_id="m1",
        sender="Brand Team <deals@brand.example>",
        sender_name="Brand Team",
        sender_email="deals@brand.example",
        subject="Paid partnership for your channel",
        body="We would love to sponsor your next video. " * 200,
        attachments=(
            Attachment("image", "banner.png", "image/png", 0.1, "data:image/png;base64,AAAA"),
            Attachment("pdf", "brief.pdf", "application/pdf", 0.3, "Campaign brief text"),
            Attachment("skipped", "huge.mov", "video/quicktime", 40.0, None, "Too large (40.0 MB)"),
        ),
    )


GOOD_ARGS = {
    "action": "IMPORTANT",
    "is_scam": False,
    "is_important": True,
    "confidence": 0.9,
    "reason": "Sponsorship offer",
}


def test_parse_verdict_from_tool_call():
    verdict = parse_verdict(_tool_message(GOOD_ARGS))
    assert verdict.action == ACTION_IMPORTANT
    assert verdict.is_important is True
    assert verdict.confidence == 0.9


def test_parse_verdict_from_json_content():
    message = SimpleNamespace(tool_calls=None, content=f"Here you go: {json.dumps(GOOD_ARGS)}")
    assert parse_verdict(message).reason == "Sponsorship offer"


def test_parse_verdict_clips_reason():
    verdict = parse_verdict(_tool_message({**GOOD_ARGS, "reason": "x" * 1000}))
    assert len(verdict.reason) == 300


@pytest.mark.parametrize(
    "bad",
    [
        {**GOOD_ARGS, "action": "DELETE"},
        {**GOOD_ARGS, "confidence": 1.5},
        {**GOOD_ARGS, "is_scam": "yes"},
        {**GOOD_ARGS, "extra": 1},
        {k: v for k, v in GOOD_ARGS.items() if k != "reason"},
    ],
)
def test_parse_verdict_rejects_off_schema(bad):
    with pytest.raises(ClassificationDegraded):
        parse_verdict(_tool_message(bad))


def test_parse_verdict_without_structure():
    with pytest.raises(ClassificationDegraded):
        parse_verdict(SimpleNamespace(tool_calls=[], content="I think it's fine"))


def test_model_capabilities():
    assert supports_vision("gpt-4o-mini")
    assert supports_vision("gpt-4.1-mini")
    assert not supports_vision("gpt-3.5-turbo")
    assert completion_params("o3-mini", 200, 0.1) == {"max_completion_tokens": 200}
    assert completion_params("gpt-4.1-mini", 200, 0.1) == {"max_tokens": 200, "temperature": 0.1}


def test_system_prompt_uses_descriptor():
    assert "(school fees)" in build_system_prompt("school fees")
    assert DEFAULT_IMPORTANT_DESCRIPTOR in build_system_prompt("")


def test_user_content_with_vision_model(run_config, envelope):
    content = build_user_content(replace(run_config, openai_model="gpt-4o"), envelope)
    assert content[0]["type"] == "text"
    assert "Subject: Paid partnership" in content[0]["text"]
    body = content[0]["text"].split("Body (truncated):\n", 1)[1]
    assert len(body) == 4000
    assert content[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}
    assert "Campaign brief text" in content[2]["text"]
    assert "huge.mov" not in content[2]["text"]


def test_user_content_without_vision(run_config, envelope):
    content = build_user_content(replace(run_config, openai_model="gpt-3.5-turbo"), envelope)
    assert all(part["type"] == "text" for part in content)


@pytest.mark.asyncio
async def test_classify_forces_tool_call(run_config, envelope):
    client = _client(_response(_tool_message(GOOD_ARGS)))
    verdict = await OpenAIClassifier(client=client).classify(run_config, envelope, "sponsorships")

    assert verdict.action == ACTION_IMPORTANT
    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == run_config.openai_model
    assert kwargs["tool_choice"] == {"type": "function", "function": {"name": TOOL_NAME}}
    assert kwargs["tools"][0]["function"]["parameters"]["additionalProperties"] is False


@pytest.mark.asyncio
async def test_classify_falls_back_on_transport_error(run_config, envelope):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=TimeoutError("read timed out"))
    verdict = await OpenAIClassifier(client=client).classify(run_config, envelope, "")

    assert verdict.action == ACTION_KEEP
    assert verdict.confidence == 0.2
    assert verdict.is_scam is False
    assert "read timed out" in verdict.reason


@pytest.mark.asyncio
async def test_classify_falls_back_on_bad_payload(run_config, envelope):
    client = _client(_response(_tool_message({**GOOD_ARGS, "action": "TRASH", "confidence": 7})))
    verdict = await OpenAIClassifier(client=client).classify(run_config, envelope, "")
    assert verdict.action == ACTION_KEEP
    assert verdict.confidence == 0.2


@pytest.mark.asyncio
async def test_classify_without_api_key_degrades(run_config, envelope, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    verdict = await OpenAIClassifier().classify(run_config, envelope, "")
    assert verdict.action == ACTION_KEEP
    assert "OPENAI_API_KEY" in verdict.reason


@pytest.mark.asyncio
async def test_describe_importance_default_when_empty():
    client = _client()
    result = await OpenAIClassifier(client=client).describe_importance(UserSettings())
    assert result == DEFAULT_IMPORTANT_DESCRIPTOR
    client.chat.completions.create.assert_not_awaited()


@pytest.mark.asyncio
async def test_describe_importance_cleans_output():
    message = SimpleNamespace(content='"Brand deals\nand invoices from clients"', tool_calls=None)
    client = _client(_response(message))
    result = await OpenAIClassifier(client=client).describe_importance(UserSettings(important_desc="deals"))
    assert result == "Brand deals and invoices from clients"


@pytest.mark.asyncio
async def test_describe_importance_failure_uses_default():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=RuntimeError("quota"))
    result = await OpenAIClassifier(client=client).describe_importance(UserSettings(important_desc="deals"))
    assert result == DEFAULT_IMPORTANT_DESCRIPTOR
