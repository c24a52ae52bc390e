"""Issue classification pipeline.

Each stage takes a frozen :class:`ClassificationResult` and returns a new one:

1. ``initial_classification``  neutral defaults, citizen category kept as-is
2. ``merge_with_defaults``     overlay whatever the AI backend supplied
3. ``apply_scoring``           deterministic score from severity and votes
4. ``apply_department``        fall back to the category's department

``classify_issue`` runs the stages against the record store and persists the
outcome with a single update. AI failures never reach the caller.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

from .ai_client import AiError, AiResult, BaseClassifier, get_classifier
from .config import DepartmentsConfig, ScoringWeights, Settings
from .db import count_votes, get_issue, list_issues, update_issue
from .departments import lookup_department_id, resolve_department_name
from .errors import IssueNotFoundError
from .logger import get_logger, log_extra
from .scoring import compute_priority

log = get_logger(__name__)

OPEN_STATUSES: tuple[str, ...] = ("submitted", "acknowledged", "in_progress")


@dataclass(frozen=True)
class ClassificationResult:
    category: str
    severity: str = "medium"
    department: str = ""
    priority_score: int = 50
    suggestions: Any = field(default_factory=dict)
    department_id: Optional[str] = None
    ai_priority_score: Optional[int] = None
    ai_error: Optional[str] = None
    persisted: bool = False

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "category": self.category,
            "severity": self.severity,
            "department": self.department,
            "priorityScore": self.priority_score,
            "suggestions": self.suggestions,
        }


def initial_classification(category: str, weights: ScoringWeights | None = None) -> ClassificationResult:
    w = weights or ScoringWeights()
    return ClassificationResult(category=category, priority_score=w.default_score)


def merge_with_defaults(result: AiResult, defaults: ClassificationResult) -> ClassificationResult:
    """Overlay an AI result on ``defaults``; an AiError leaves every default in place."""
    if isinstance(result, AiError):
        return replace(defaults, ai_error=result.kind)
    return replace(
        defaults,
        severity=result.severity or defaults.severity,
        department=result.department or defaults.department,
        suggestions=result.suggestions if result.suggestions is not None else defaults.suggestions,
        ai_priority_score=result.priority_score,
    )


def apply_scoring(
    classification: ClassificationResult,
    vote_count: int,
    weights: ScoringWeights | None = None,
) -> ClassificationResult:
    # ai_priority_score is kept for audit only; the stored score is always deterministic.
    score = compute_priority(classification.severity, vote_count, weights)
    return replace(classification, priority_score=score)


def apply_department(
    classification: ClassificationResult,
    category_map: Mapping[str, str] | None = None,
    fallback: str = "General",
) -> ClassificationResult:
    name = resolve_department_name(classification.department, classification.category, category_map, fallback)
    return replace(classification, department=name)


def classify_issue(
    db_path: str,
    issue_id: str,
    title: str | None = None,
    description: str | None = None,
    category: str | None = None,
    classifier: BaseClassifier | None = None,
    settings: Settings | None = None,
) -> ClassificationResult:
    """Classify an issue, persist the outcome and return it.

    Text fields left as None are read from the stored issue. Raises
    IssueNotFoundError before any AI call or write when the id is unknown.
    """
    s = settings or Settings()
    weights = s.app.scoring
    dept_cfg: DepartmentsConfig = s.app.departments

    issue = get_issue(db_path, issue_id)
    if issue is None:
        raise IssueNotFoundError(issue_id)

    title = issue["title"] if title is None else title
    description = issue["description"] if description is None else description
    category = issue["category"] if category is None else category

    analyzer = classifier or get_classifier(s.app.llm)

    defaults = initial_classification(category, weights)
    enriched = merge_with_defaults(analyzer.classify(title, description, category), defaults)
    scored = apply_scoring(enriched, count_votes(db_path, issue_id), weights)
    resolved = apply_department(scored, dept_cfg.category_map, dept_cfg.fallback)

    try:
        department_id = lookup_department_id(db_path, resolved.department)
    except sqlite3.Error as e:
        log.error("Department lookup failed for %r: %s", resolved.department, e)
        department_id = None
    resolved = replace(resolved, department_id=department_id)

    try:
        persisted = update_issue(
            db_path,
            issue_id,
            {
                "ai_detected_category": resolved.category,
                "ai_severity": resolved.severity,
                "ai_suggested_department": resolved.department,
                "ai_suggestions": resolved.suggestions,
                "priority_score": resolved.priority_score,
                "assigned_to_department": department_id,
            },
        )
    except sqlite3.Error as e:
        log.error("Failed to persist classification for issue %s: %s", issue_id, e)
        persisted = False

    log.info(
        "Classified issue %s: severity=%s department=%s priority=%d",
        issue_id,
        resolved.severity,
        resolved.department,
        resolved.priority_score,
        extra=log_extra(
            issue_id=issue_id,
            provider=analyzer.provider,
            ai_error=resolved.ai_error,
            ai_priority_score=resolved.ai_priority_score,
        ),
    )
    return replace(resolved, persisted=persisted)


def reclassify_open_issues(
    db_path: str,
    settings: Settings | None = None,
    classifier: BaseClassifier | None = None,
    limit: int | None = None,
) -> int:
    """Re-run classification for every issue that is not yet resolved or closed."""
    s = settings or Settings()
    analyzer = classifier or get_classifier(s.app.llm)
    count = 0
    for status in OPEN_STATUSES:
        for issue in list_issues(db_path, status=status, limit=limit):
            try:
                classify_issue(db_path, issue["id"], classifier=analyzer, settings=s)
            except IssueNotFoundError:
                log.info("Issue %s was removed before reclassification; skipping", issue["id"])
                continue
            count += 1
    if count:
        log.info("Reclassified %d open issues", count)
    return count
