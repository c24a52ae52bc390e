from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .config import CATEGORIES
from .db import (
    ISSUE_STATUSES,
    count_votes,
    get_issue,
    has_vote,
    insert_feedback,
    insert_issue,
    insert_timeline_entry,
    list_issues,
    list_timeline,
    mark_escalated,
    update_issue,
)
from .errors import FeedbackError, InvalidTransitionError, IssueNotFoundError, IssueValidationError
from .logger import get_logger
from .utils import parse_iso8601, utc_now_iso

log = get_logger(__name__)

CLOSED_STATUSES = ("resolved", "closed")

STATUS_TIMESTAMPS: dict[str, str] = {
    "acknowledged": "acknowledged_at",
    "resolved": "resolved_at",
    "closed": "closed_at",
}

EARTH_RADIUS_KM = 6371.0


@dataclass
class IssueSubmission:
    title: str
    description: str
    category: str
    latitude: Optional[float]
    longitude: Optional[float]
    submitted_by: Optional[str] = None
    location_address: Optional[str] = None
    ward: Optional[str] = None
    city: Optional[str] = None
    photo_url: Optional[str] = None


def validate_submission(sub: IssueSubmission) -> None:
    missing: List[str] = []
    if not (sub.title or "").strip():
        missing.append("title")
    if not (sub.description or "").strip():
        missing.append("description")
    if not sub.category:
        missing.append("category")
    elif sub.category not in CATEGORIES:
        missing.append(f"category (must be one of {', '.join(CATEGORIES)})")
    if sub.latitude is None or not -90.0 <= sub.latitude <= 90.0:
        missing.append("latitude")
    if sub.longitude is None or not -180.0 <= sub.longitude <= 180.0:
        missing.append("longitude")
    if missing:
        raise IssueValidationError(missing)


def submit_issue(db_path: str, sub: IssueSubmission, default_score: int = 50) -> Dict[str, Any]:
    """Validate and store a new issue with a neutral priority score."""
    validate_submission(sub)
    row = asdict(sub)
    row["title"] = sub.title.strip()
    row["description"] = sub.description.strip()
    row["priority_score"] = default_score
    issue_id = insert_issue(db_path, row)
    log.info("Issue %s submitted in category %s", issue_id, sub.category)
    issue = get_issue(db_path, issue_id)
    if issue is None:
        raise RuntimeError("Issue insert did not persist a row")
    return issue


def get_issue_detail(db_path: str, issue_id: str, user_id: str | None = None) -> Dict[str, Any]:
    issue = get_issue(db_path, issue_id)
    if issue is None:
        raise IssueNotFoundError(issue_id)
    issue["vote_count"] = count_votes(db_path, issue_id)
    issue["user_voted"] = has_vote(db_path, issue_id, user_id) if user_id else False
    issue["timeline"] = list_timeline(db_path, issue_id)
    return issue


def list_issues_with_votes(db_path: str, user_id: str | None = None, **filters: Any) -> List[Dict[str, Any]]:
    issues = list_issues(db_path, **filters)
    for issue in issues:
        issue["vote_count"] = count_votes(db_path, issue["id"])
        issue["user_voted"] = has_vote(db_path, issue["id"], user_id) if user_id else False
    return issues


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _bounding_box(lat: float, lng: float, radius_km: float) -> tuple[tuple[float, float], tuple[float, float] | None]:
    # Exact extent of a spherical cap; the distance check stays authoritative.
    delta = radius_km / EARTH_RADIUS_KM
    dlat = math.degrees(delta) + 1e-9
    lat_range = (max(-90.0, lat - dlat), min(90.0, lat + dlat))
    cos_lat = math.cos(math.radians(lat))
    if delta >= math.pi / 2 or cos_lat <= math.sin(delta):
        return lat_range, None
    dlng = math.degrees(math.asin(math.sin(delta) / cos_lat)) + 1e-9
    if lng - dlng < -180.0 or lng + dlng > 180.0:
        # Crosses the antimeridian
        return lat_range, None
    return lat_range, (lng - dlng, lng + dlng)


def list_issues_nearby(
    db_path: str,
    latitude: float,
    longitude: float,
    radius_km: float = 5.0,
    user_id: str | None = None,
) -> List[Dict[str, Any]]:
    """Issues within ``radius_km`` of a point, nearest first, each with ``distance_km``."""
    bad: List[str] = []
    if not -90.0 <= latitude <= 90.0:
        bad.append("latitude")
    if not -180.0 <= longitude <= 180.0:
        bad.append("longitude")
    if not radius_km > 0:
        bad.append("radius_km")
    if bad:
        raise IssueValidationError(bad)

    lat_range, lng_range = _bounding_box(latitude, longitude, radius_km)
    nearby: List[Dict[str, Any]] = []
    for issue in list_issues(db_path, lat_range=lat_range, lng_range=lng_range):
        if issue.get("latitude") is None or issue.get("longitude") is None:
            continue
        distance = haversine_km(latitude, longitude, issue["latitude"], issue["longitude"])
        if distance <= radius_km:
            issue["distance_km"] = round(distance, 2)
            issue["vote_count"] = count_votes(db_path, issue["id"])
            issue["user_voted"] = has_vote(db_path, issue["id"], user_id) if user_id else False
            nearby.append(issue)
    nearby.sort(key=lambda i: i["distance_km"])
    return nearby


def _transition_timestamp(submitted_at: str | None) -> str:
    # Keeps resolved_at/closed_at >= submitted_at even with clock skew.
    now = utc_now_iso()
    submitted = parse_iso8601(submitted_at)
    current = parse_iso8601(now)
    if submitted and current and submitted > current:
        return submitted_at or now
    return now


def update_status(
    db_path: str,
    issue_id: str,
    new_status: str,
    notes: str | None = None,
    updated_by: str | None = None,
) -> Dict[str, Any]:
    if new_status not in ISSUE_STATUSES:
        raise InvalidTransitionError(f"Unknown status: {new_status}")
    issue = get_issue(db_path, issue_id)
    if issue is None:
        raise IssueNotFoundError(issue_id)

    current = issue["status"]
    cur_idx = ISSUE_STATUSES.index(current)
    new_idx = ISSUE_STATUSES.index(new_status)
    if new_idx < cur_idx:
        raise InvalidTransitionError(f"Cannot move issue from {current} to {new_status}")
    if new_idx == cur_idx:
        return issue

    stamp = _transition_timestamp(issue.get("submitted_at"))
    updates: Dict[str, Any] = {"status": new_status}
    for passed in ISSUE_STATUSES[cur_idx + 1:new_idx + 1]:
        column = STATUS_TIMESTAMPS.get(passed)
        if column and not issue.get(column):
            updates[column] = stamp
    if notes and new_status in CLOSED_STATUSES:
        updates["resolution_notes"] = notes

    update_issue(db_path, issue_id, updates)
    insert_timeline_entry(db_path, issue_id, new_status, notes=notes, updated_by=updated_by)
    log.info("Issue %s moved %s -> %s", issue_id, current, new_status)
    updated = get_issue(db_path, issue_id)
    if updated is None:
        raise IssueNotFoundError(issue_id)
    return updated


def escalate_overdue(db_path: str, overdue_days: int = 7, now: datetime | None = None) -> List[str]:
    """Flag open issues older than ``overdue_days`` as escalated; return the newly escalated ids."""
    ref = now or datetime.now(tz=timezone.utc)
    cutoff = ref - timedelta(days=overdue_days)
    overdue: List[str] = []
    for issue in list_issues(db_path):
        if issue["status"] in CLOSED_STATUSES or issue["escalated"]:
            continue
        submitted = parse_iso8601(issue.get("submitted_at"))
        if submitted and submitted < cutoff:
            overdue.append(issue["id"])
    if overdue:
        stamp = ref.replace(microsecond=0).isoformat().replace("+00:00", "Z")
        mark_escalated(db_path, overdue, stamp)
        log.warning("Escalated %d overdue issues (older than %d days)", len(overdue), overdue_days)
    return overdue


def add_feedback(db_path: str, issue_id: str, user_id: str, rating: int, comment: str | None = None) -> str:
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise FeedbackError("Rating must be an integer between 1 and 5")
    issue = get_issue(db_path, issue_id)
    if issue is None:
        raise IssueNotFoundError(issue_id)
    if issue["status"] not in CLOSED_STATUSES:
        raise FeedbackError("Feedback is only accepted once an issue is resolved")
    return insert_feedback(db_path, issue_id, user_id, rating, comment)
