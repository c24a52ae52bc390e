from __future__ import annotations

import json
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import httpx

from .config import LLMConfig
from .logger import get_logger, log_extra
from .prompts import SYSTEM_PROMPT, build_classification_prompt

log = get_logger(__name__)

SEVERITIES = frozenset({"low", "medium", "high"})


@dataclass(frozen=True)
class AiClassification:
    """Fields recovered from an AI response. None means the model did not supply it."""
    severity: Optional[str] = None
    department: Optional[str] = None
    priority_score: Optional[int] = None
    suggestions: Any = None


@dataclass(frozen=True)
class AiError:
    kind: str  # disabled, circuit_open, timeout, network, http, parse
    message: str


AiResult = Union[AiClassification, AiError]


def parse_classification_text(text: str) -> AiResult:
    """Extract the JSON object embedded in a free-text model reply.

    The model may wrap its answer in prose or code fences, so the payload is
    taken from the first ``{`` to the last ``}``.
    """
    if not isinstance(text, str):
        return AiError("parse", f"expected text, got {type(text).__name__}")
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        return AiError("parse", "no JSON object in response")
    try:
        obj = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        return AiError("parse", f"malformed JSON: {e.msg}")
    if not isinstance(obj, dict):
        return AiError("parse", "JSON payload is not an object")

    severity = obj.get("severity")
    if severity:
        severity = str(severity).strip().lower()
        if severity not in SEVERITIES:
            return AiError("parse", f"unknown severity {severity!r}")
    else:
        severity = None

    department = obj.get("department")
    department = str(department).strip() if department else None

    priority_score: Optional[int] = None
    raw_score = obj.get("priorityScore")
    if raw_score not in (None, ""):
        try:
            value = float(raw_score)
        except (TypeError, ValueError):
            value = math.nan
        # json accepts Infinity, NaN and 1e999
        priority_score = int(value) if math.isfinite(value) else None

    suggestions = obj.get("suggestions") or None
    return AiClassification(
        severity=severity,
        department=department or None,
        priority_score=priority_score,
        suggestions=suggestions,
    )


class CircuitBreaker:
    """Short-circuits calls after ``failure_threshold`` consecutive failures."""

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_seconds = float(reset_seconds)
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        with self._lock:
            if self._opened_at is None:
                return False
            if self._clock() - self._opened_at >= self.reset_seconds:
                # Half-open: let the next call through; one more failure re-opens.
                self._opened_at = None
                self._failures = self.failure_threshold - 1
                return False
            return True

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.failure_threshold and self._opened_at is None:
                self._opened_at = self._clock()


class BaseClassifier:
    provider = "base"
    enabled = True

    def __init__(self, timeout: float = 15.0, breaker: Optional[CircuitBreaker] = None):
        self.timeout = float(timeout)
        self.breaker = breaker or CircuitBreaker()

    def generate(self, prompt: str) -> str:
        """Send ``prompt`` to the backend and return the raw reply text."""
        raise NotImplementedError

    def classify(self, title: str, description: str, category: str) -> AiResult:
        if self.breaker.is_open:
            return AiError("circuit_open", f"{self.provider} calls suspended after repeated failures")

        prompt = build_classification_prompt(title, description, category)
        try:
            text = self.generate(prompt)
        except httpx.TimeoutException as e:
            result: AiResult = AiError("timeout", str(e) or "request timed out")
        except httpx.HTTPStatusError as e:
            result = AiError("http", f"status {e.response.status_code}")
        except httpx.HTTPError as e:
            result = AiError("network", str(e))
        except Exception as e:
            # Any other reply shape (list bodies, non-object blocks) degrades like a parse error
            result = AiError("parse", f"unexpected response shape: {type(e).__name__}: {e}")
        else:
            try:
                result = parse_classification_text(text)
            except Exception as e:
                result = AiError("parse", f"unparseable reply: {type(e).__name__}: {e}")

        if isinstance(result, AiError):
            self.breaker.record_failure()
            log.warning(
                "%s classification failed (%s): %s",
                self.provider,
                result.kind,
                result.message,
                extra=log_extra(provider=self.provider, error_kind=result.kind),
            )
        else:
            self.breaker.record_success()
        return result


class DummyClassifier(BaseClassifier):
    """Deterministic mode used when no AI credential is configured."""

    provider = "dummy"
    enabled = False

    def generate(self, prompt: str) -> str:
        raise RuntimeError("DummyClassifier does not call a backend")

    def classify(self, title: str, description: str, category: str) -> AiResult:
        return AiError("disabled", "no AI backend configured")


class GeminiClassifier(BaseClassifier):
    provider = "gemini"

    def __init__(
        self,
        model: str | None = None,
        temperature: float = 0.2,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 15.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(timeout=timeout, breaker=breaker)
        self.model = model or os.getenv("GEMINI_MODEL") or "gemini-2.0-flash"
        self.temperature = float(temperature or 0.0)
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        self.base_url = (
            base_url or os.getenv("GEMINI_BASE_URL") or "https://generativelanguage.googleapis.com/v1beta"
        )
        if not self.api_key:
            raise RuntimeError("Missing Gemini API key")

    def generate(self, prompt: str) -> str:
        url = f"{self.base_url.rstrip('/')}/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key or "", "Content-Type": "application/json"}
        body = {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": self.temperature},
        }
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(url, headers=headers, json=body)
        resp.raise_for_status()
        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            return "{}"
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text") or "" for p in parts) or "{}"


class OpenAIClassifier(BaseClassifier):
    provider = "openai"

    def __init__(
        self,
        model: str | None = None,
        temperature: float = 0.2,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 15.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(timeout=timeout, breaker=breaker)
        self.model = model or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.temperature = float(temperature or 0.0)
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL") or "https://api.openai.com/v1"
        if not self.api_key:
            raise RuntimeError("Missing OpenAI API key")

    def generate(self, prompt: str) -> str:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        body = {
            "model": self.model,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(url, headers=headers, json=body)
        resp.raise_for_status()
        data = resp.json()
        return data["choices"][0]["message"]["content"] or ""


class AnthropicClassifier(BaseClassifier):
    provider = "anthropic"

    def __init__(
        self,
        model: str | None = None,
        temperature: float = 0.2,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 15.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(timeout=timeout, breaker=breaker)
        self.model = model or os.getenv("ANTHROPIC_MODEL") or "claude-3-5-haiku-latest"
        self.temperature = float(temperature or 0.0)
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.base_url = base_url or os.getenv("ANTHROPIC_BASE_URL") or "https://api.anthropic.com"
        if not self.api_key:
            raise RuntimeError("Missing Anthropic API key")

    def generate(self, prompt: str) -> str:
        url = f"{self.base_url.rstrip('/')}/v1/messages"
        headers = {
            "x-api-key": self.api_key or "",
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        body = {
            "model": self.model,
            "max_tokens": 512,
            "temperature": self.temperature,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(url, headers=headers, json=body)
        resp.raise_for_status()
        data = resp.json()
        # Messages API returns content as list of blocks
        return "".join(b.get("text") or "" for b in data.get("content") or [] if b.get("type") == "text")


_PROVIDERS: dict[str, type[BaseClassifier]] = {
    "gemini": GeminiClassifier,
    "openai": OpenAIClassifier,
    "anthropic": AnthropicClassifier,
}


def get_classifier(config: LLMConfig | None = None) -> BaseClassifier:
    """Build the configured AI classifier, or DummyClassifier when no credential is available."""
    cfg = config or LLMConfig()
    p = (cfg.provider or "dummy").lower().strip()
    breaker = CircuitBreaker(cfg.circuit_failure_threshold, cfg.circuit_reset_seconds)
    if p == "dummy":
        return DummyClassifier(timeout=cfg.timeout_seconds, breaker=breaker)
    cls = _PROVIDERS.get(p)
    if cls is None:
        log.warning("Unknown LLM provider '%s'; using deterministic classification", cfg.provider)
        return DummyClassifier(timeout=cfg.timeout_seconds, breaker=breaker)
    try:
        return cls(  # type: ignore[call-arg]
            model=cfg.model,
            temperature=cfg.temperature,
            api_key=cfg.api_key,
            timeout=cfg.timeout_seconds,
            breaker=breaker,
        )
    except RuntimeError as e:
        log.info("%s; using deterministic classification", e)
        return DummyClassifier(timeout=cfg.timeout_seconds, breaker=breaker)
