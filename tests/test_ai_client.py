from __future__ import annotations

import json

import httpx
import pytest

from civic_triage.ai_client import (
    AiClassification,
    AiError,
    AnthropicClassifier,
    CircuitBreaker,
    DummyClassifier,
    GeminiClassifier,
    OpenAIClassifier,
    get_classifier,
    parse_classification_text,
)
from civic_triage.config import LLMConfig


def _gemini_payload(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def test_parse_extracts_json_wrapped_in_prose():
    text = 'Sure! Here is the analysis:\n```json\n{"severity": "HIGH", "department": "Water Supply", ' \
           '"priorityScore": 88, "suggestions": ["Shut the valve"]}\n```\nHope this helps.'
    result = parse_classification_text(text)
    assert result == AiClassification(
        severity="high",
        department="Water Supply",
        priority_score=88,
        suggestions=["Shut the valve"],
    )


def test_parse_missing_fields_are_none():
    result = parse_classification_text('{"severity": "low"}')
    assert isinstance(result, AiClassification)
    assert result.severity == "low"
    assert result.department is None
    assert result.priority_score is None
    assert result.suggestions is None


@pytest.mark.parametrize(
    "text",
    [
        "",
        "I cannot classify this issue.",
        '{"severity": "high", "department": }',
        "[1, 2, 3]",
        '{"severity": "catastrophic"}',
    ],
)
def test_parse_failures_are_values(text: str):
    result = parse_classification_text(text)
    assert isinstance(result, AiError)
    assert result.kind == "parse"


def test_parse_tolerates_non_numeric_score():
    result = parse_classification_text('{"severity": "medium", "priorityScore": "urgent"}')
    assert isinstance(result, AiClassification)
    assert result.priority_score is None


def test_gemini_classify_success(fake_httpx):
    body = {"severity": "high", "department": "Public Safety", "priorityScore": 90, "suggestions": {"a": 1}}

    def handler(url):
        return httpx.Response(
            200,
            json=_gemini_payload("Result: " + json.dumps(body)),
            request=httpx.Request("POST", url),
        )

    calls = fake_httpx(handler)
    clf = GeminiClassifier(api_key="test-key", timeout=3.0)
    result = clf.classify("Live wire", "Fallen power line on the sidewalk", "Electricity")

    assert result == AiClassification(severity="high", department="Public Safety", priority_score=90, suggestions={"a": 1})
    assert calls["count"] == 1
    req = calls["requests"][0]
    assert req["url"].endswith(":generateContent")
    assert req["headers"]["x-goog-api-key"] == "test-key"
    assert req["timeout"] == 3.0
    prompt = req["json"]["contents"][0]["parts"][0]["text"]
    assert "Title: Live wire" in prompt
    assert "Reported Category: Electricity" in prompt


def test_gemini_http_error_becomes_ai_error(fake_httpx):
    fake_httpx(lambda url: httpx.Response(503, request=httpx.Request("POST", url)))
    result = GeminiClassifier(api_key="k").classify("t", "d", "Road")
    assert isinstance(result, AiError)
    assert result.kind == "http"


def test_network_error_becomes_ai_error(fake_httpx):
    def handler(url):
        raise httpx.ConnectError("connection refused")

    fake_httpx(handler)
    result = GeminiClassifier(api_key="k").classify("t", "d", "Road")
    assert isinstance(result, AiError)
    assert result.kind == "network"


def test_timeout_becomes_ai_error(fake_httpx):
    def handler(url):
        raise httpx.ReadTimeout("slow backend")

    fake_httpx(handler)
    result = GeminiClassifier(api_key="k").classify("t", "d", "Road")
    assert isinstance(result, AiError)
    assert result.kind == "timeout"


def test_openai_response_shape(fake_httpx):
    content = json.dumps({"severity": "low", "department": "Sanitation"})

    def handler(url):
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": content}}]},
            request=httpx.Request("POST", url),
        )

    fake_httpx(handler)
    result = OpenAIClassifier(api_key="k").classify("Blocked drain", "Water pooling", "Sanitation")
    assert isinstance(result, AiClassification)
    assert result.severity == "low"
    assert result.department == "Sanitation"


def test_circuit_breaker_stops_calls_after_repeated_failures(fake_httpx):
    def handler(url):
        raise httpx.ConnectError("down")

    calls = fake_httpx(handler)
    now = {"t": 0.0}
    breaker = CircuitBreaker(failure_threshold=2, reset_seconds=30.0, clock=lambda: now["t"])
    clf = GeminiClassifier(api_key="k", breaker=breaker)

    assert clf.classify("t", "d", "Road").kind == "network"
    assert clf.classify("t", "d", "Road").kind == "network"
    short_circuited = clf.classify("t", "d", "Road")
    assert short_circuited.kind == "circuit_open"
    assert calls["count"] == 2

    now["t"] = 31.0
    assert clf.classify("t", "d", "Road").kind == "network"
    assert calls["count"] == 3
    # A failed half-open trial call re-opens immediately
    assert clf.classify("t", "d", "Road").kind == "circuit_open"


def test_circuit_breaker_resets_on_success():
    breaker = CircuitBreaker(failure_threshold=2, reset_seconds=30.0, clock=lambda: 0.0)
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.is_open is False


def test_factory_without_key_is_deterministic():
    clf = get_classifier(LLMConfig(provider="gemini"))
    assert isinstance(clf, DummyClassifier)
    assert clf.enabled is False
    result = clf.classify("t", "d", "Road")
    assert isinstance(result, AiError)
    assert result.kind == "disabled"


def test_factory_with_key(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")
    clf = get_classifier(LLMConfig(provider="gemini", timeout_seconds=4.0))
    assert isinstance(clf, GeminiClassifier)
    assert clf.api_key == "env-key"
    assert clf.timeout == 4.0


def test_factory_unknown_provider():
    assert isinstance(get_classifier(LLMConfig(provider="ollama")), DummyClassifier)


@pytest.mark.parametrize(
    "text",
    [
        '{"severity": "high", "priorityScore": 1e999}',
        '{"severity": "high", "priorityScore": "Infinity"}',
        '{"severity": "high", "priorityScore": -Infinity}',
        '{"severity": "high", "priorityScore": NaN}',
    ],
)
def test_parse_non_finite_score_is_dropped(text: str):
    result = parse_classification_text(text)
    assert result == AiClassification(severity="high")


def test_parse_rejects_non_text():
    result = parse_classification_text(None)  # type: ignore[arg-type]
    assert isinstance(result, AiError)
    assert result.kind == "parse"


@pytest.mark.parametrize(
    "body",
    [
        ["unexpected"],
        {"candidates": ["not-an-object"]},
        {"candidates": [{"content": {"parts": ["plain string"]}}]},
        {"candidates": [{"content": "flat"}]},
    ],
)
def test_gemini_odd_reply_shapes_become_parse_errors(fake_httpx, json_reply, body):
    fake_httpx(json_reply(body))
    clf = GeminiClassifier(api_key="k")
    result = clf.classify("t", "d", "Road")
    assert isinstance(result, AiError)
    assert result.kind == "parse"
    assert clf.breaker.failures == 1


@pytest.mark.parametrize(
    "body",
    [
        ["unexpected"],
        {"content": ["not-a-block"]},
        {"content": "flat text"},
    ],
)
def test_anthropic_odd_reply_shapes_become_parse_errors(fake_httpx, json_reply, body):
    fake_httpx(json_reply(body))
    result = AnthropicClassifier(api_key="k").classify("t", "d", "Road")
    assert isinstance(result, AiError)
    assert result.kind == "parse"


def test_openai_list_body_becomes_parse_error(fake_httpx, json_reply):
    fake_httpx(json_reply([]))
    result = OpenAIClassifier(api_key="k").classify("t", "d", "Road")
    assert isinstance(result, AiError)
    assert result.kind == "parse"


def test_anthropic_text_blocks(fake_httpx, json_reply):
    reply = {"content": [{"type": "text", "text": '{"severity": "low", "department": "Sanitation"}'}]}
    calls = fake_httpx(json_reply(reply))
    result = AnthropicClassifier(api_key="k").classify("Drain", "Blocked", "Sanitation")
    assert result == AiClassification(severity="low", department="Sanitation")
    assert calls["requests"][0]["url"].endswith("/v1/messages")
    assert calls["requests"][0]["headers"]["x-api-key"] == "k"


def test_breaker_shared_across_threads():
    import threading

    breaker = CircuitBreaker(failure_threshold=1000, reset_seconds=30.0)

    def fail_many():
        for _ in range(250):
            breaker.record_failure()

    threads = [threading.Thread(target=fail_many) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert breaker.failures == 1000
    assert breaker.is_open is True
