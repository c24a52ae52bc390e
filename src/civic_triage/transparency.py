from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Iterable, List, TypedDict

from .db import count_profiles, list_departments, list_feedback, list_issues, update_department_metrics
from .logger import get_logger
from .utils import days_between

log = get_logger(__name__)

RESOLVED_STATUSES = ("resolved", "closed")


class CityStats(TypedDict):
    total_issues: int
    resolved_issues: int
    resolution_rate: int
    avg_resolution_days: int
    city_trust_score: int
    active_users: int


class CategoryStats(TypedDict):
    category: str
    total: int
    resolved: int


class AreaStats(TypedDict):
    latitude: float
    longitude: float
    issue_count: int
    resolved_count: int
    categories: Dict[str, int]


class DepartmentStats(TypedDict):
    id: str
    name: str
    issue_count: int
    resolved_count: int
    resolution_rate: int
    avg_resolution_days: float
    avg_feedback_rating: float
    transparency_score: float


def _is_resolved(issue: Dict[str, Any]) -> bool:
    return issue.get("status") in RESOLVED_STATUSES


def _avg_resolution_days(issues: Iterable[Dict[str, Any]]) -> float:
    durations = [
        d for d in (days_between(i.get("submitted_at"), i.get("resolved_at")) for i in issues if _is_resolved(i))
        if d is not None
    ]
    if not durations:
        return 0.0
    return sum(durations) / len(durations)


def _rate(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole > 0 else 0


def compute_city_stats(db_path: str) -> CityStats:
    issues = list_issues(db_path)
    feedback = list_feedback(db_path)
    resolved = sum(1 for i in issues if _is_resolved(i))
    avg_rating = sum(f["rating"] for f in feedback) / len(feedback) if feedback else 0.0
    return {
        "total_issues": len(issues),
        "resolved_issues": resolved,
        "resolution_rate": _rate(resolved, len(issues)),
        "avg_resolution_days": round(_avg_resolution_days(issues)),
        "city_trust_score": round(avg_rating / 5 * 100),
        "active_users": count_profiles(db_path),
    }


def compute_category_stats(db_path: str) -> List[CategoryStats]:
    counts: Dict[str, Dict[str, int]] = defaultdict(lambda: {"total": 0, "resolved": 0})
    for issue in list_issues(db_path):
        bucket = counts[issue["category"]]
        bucket["total"] += 1
        if _is_resolved(issue):
            bucket["resolved"] += 1
    return [
        {"category": category, "total": c["total"], "resolved": c["resolved"]}
        for category, c in sorted(counts.items())
    ]


def compute_department_stats(db_path: str) -> List[DepartmentStats]:
    issues = list_issues(db_path)
    ratings_by_issue: Dict[str, List[int]] = defaultdict(list)
    for f in list_feedback(db_path):
        ratings_by_issue[f["issue_id"]].append(int(f["rating"]))

    by_department: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for issue in issues:
        if issue.get("assigned_to_department"):
            by_department[issue["assigned_to_department"]].append(issue)

    stats: List[DepartmentStats] = []
    for dept in list_departments(db_path):
        dept_issues = by_department.get(dept["id"], [])
        resolved = sum(1 for i in dept_issues if _is_resolved(i))
        ratings = [r for i in dept_issues for r in ratings_by_issue.get(i["id"], [])]
        avg_feedback = sum(ratings) / len(ratings) if ratings else 0.0
        stats.append({
            "id": dept["id"],
            "name": dept["name"],
            "issue_count": len(dept_issues),
            "resolved_count": resolved,
            "resolution_rate": _rate(resolved, len(dept_issues)),
            "avg_resolution_days": round(_avg_resolution_days(dept_issues), 1),
            "avg_feedback_rating": round(avg_feedback, 1),
            "transparency_score": float(dept.get("transparency_score") or 0.0),
        })
    return stats


def compute_area_stats(db_path: str, precision: int = 3) -> List[AreaStats]:
    """Group located issues into grid cells for the heatmap, busiest cells first.

    Cells are keyed on coordinates rounded to ``precision`` decimals (3 is roughly
    100-200 m). Each cell reports the coordinates of the first issue seen in it.
    """
    areas: Dict[str, AreaStats] = {}
    for issue in list_issues(db_path):
        lat, lng = issue.get("latitude"), issue.get("longitude")
        if lat is None or lng is None:
            continue
        key = f"{lat:.{precision}f},{lng:.{precision}f}"
        area = areas.get(key)
        if area is None:
            area = areas[key] = {
                "latitude": float(lat),
                "longitude": float(lng),
                "issue_count": 0,
                "resolved_count": 0,
                "categories": {},
            }
        area["issue_count"] += 1
        if _is_resolved(issue):
            area["resolved_count"] += 1
        area["categories"][issue["category"]] = area["categories"].get(issue["category"], 0) + 1
    return sorted(areas.values(), key=lambda a: (-a["issue_count"], a["latitude"], a["longitude"]))

def refresh_department_scores(db_path: str) -> int:
    """Persist each department's resolution rate and average resolution time."""
    updated = 0
    for s in compute_department_stats(db_path):
        update_department_metrics(db_path, s["id"], float(s["resolution_rate"]), s["avg_resolution_days"])
        updated += 1
    log.info("Refreshed transparency scores for %d departments", updated)
    return updated
