from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Generator

import httpx
import pytest

from civic_triage.ai_client import AiClassification, AiError, AiResult, BaseClassifier
from civic_triage.config import Settings, load_settings
from civic_triage.db import init_db
from civic_triage.departments import seed_departments
from civic_triage.issues import IssueSubmission, submit_issue


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep real credentials and overrides from leaking into tests."""
    for var in (
        "GEMINI_API_KEY",
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "CIVIC_API_KEY",
        "CIVIC_CONFIG",
        "CIVIC_DB_PATH",
        "CIVIC_LLM_PROVIDER",
        "CIVIC_LLM_MODEL",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(scope="session")
def test_settings_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """Create an isolated settings.yaml for tests pointing at temp DB."""

    tmp_dir = tmp_path_factory.mktemp("settings")
    settings_path = tmp_dir / "settings.yaml"
    settings_yaml = f"""
app:
  database_path: "{tmp_dir / 'civic.db'}"
  llm:
    provider: "dummy"
    timeout_seconds: 2.0
  scoring:
    severity_base:
      low: 30
      medium: 50
      high: 80
    vote_bonus: 5
    cap: 100
  voting:
    step: 5
  escalation:
    overdue_days: 7
"""
    settings_path.write_text(settings_yaml.strip(), encoding="utf-8")
    return settings_path


@pytest.fixture()
def settings(test_settings_path: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Load settings referencing a temporary database path."""

    db_path = tmp_path / "civic.db"
    monkeypatch.setenv("CIVIC_DB_PATH", str(db_path))
    return load_settings(str(test_settings_path))


@pytest.fixture()
def initialized_db(settings: Settings) -> Generator[str, None, None]:
    """Yield a database path with tables created and departments seeded."""

    db_path = settings.app.database_path
    init_db(db_path)
    seed_departments(db_path, settings.app.departments)
    yield db_path


@pytest.fixture()
def make_issue(initialized_db: str) -> Callable[..., dict[str, Any]]:
    def _make(**overrides: Any) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "title": "Deep pothole on Main St",
            "description": "Large pothole near the bus stop, cars swerving into the next lane.",
            "category": "Road",
            "latitude": 12.9716,
            "longitude": 77.5946,
            "submitted_by": "citizen-1",
        }
        fields.update(overrides)
        return submit_issue(initialized_db, IssueSubmission(**fields))

    return _make


@pytest.fixture()
def fake_httpx(monkeypatch: pytest.MonkeyPatch) -> Callable[[Callable[[str], httpx.Response]], dict[str, Any]]:
    """Replace httpx.Client with a fake whose post() delegates to ``handler(url)``."""

    def _install(handler: Callable[[str], httpx.Response]) -> dict[str, Any]:
        calls: dict[str, Any] = {"count": 0, "requests": []}

        class FakeClient:
            def __init__(self, timeout: float | None = None):
                self.timeout = timeout

            def __enter__(self) -> "FakeClient":
                return self

            def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
                return False

            def post(self, url: str, headers: Any = None, json: Any = None) -> httpx.Response:
                calls["count"] += 1
                calls["requests"].append({"url": url, "headers": headers, "json": json, "timeout": self.timeout})
                return handler(url)

        monkeypatch.setattr(httpx, "Client", FakeClient)
        return calls

    return _install


@pytest.fixture()
def json_reply() -> Callable[..., Callable[[str], httpx.Response]]:
    """Build a handler answering every request with the given status and JSON body."""

    def _reply(body: Any, status: int = 200) -> Callable[[str], httpx.Response]:
        def handler(url: str) -> httpx.Response:
            return httpx.Response(status, json=body, request=httpx.Request("POST", url))

        return handler

    return _reply

class StubClassifier(BaseClassifier):
    """Returns a canned result without any network access."""

    provider = "stub"

    def __init__(self, result: AiResult):
        super().__init__()
        self.result = result
        self.calls: list[tuple[str, str, str]] = []

    def classify(self, title: str, description: str, category: str) -> AiResult:
        self.calls.append((title, description, category))
        return self.result


@pytest.fixture()
def stub_classifier() -> Callable[[AiResult], StubClassifier]:
    return StubClassifier


@pytest.fixture()
def high_severity_result() -> AiClassification:
    return AiClassification(
        severity="high",
        department="Public Safety",
        priority_score=95,
        suggestions={"actions": ["Cordon off the area", "Fill and resurface"]},
    )


@pytest.fixture()
def network_failure() -> AiError:
    return AiError("network", "connection refused")
