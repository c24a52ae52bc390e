from __future__ import annotations

import os
from enum import Enum
from typing import Any, Dict, List, Optional, cast

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .ai_client import BaseClassifier, get_classifier
from .classifier import classify_issue, reclassify_open_issues
from .config import Settings, load_settings
from .db import init_db, list_departments
from .departments import seed_departments
from .errors import FeedbackError, InvalidTransitionError, IssueNotFoundError, IssueValidationError
from .issues import (
    IssueSubmission,
    add_feedback,
    escalate_overdue,
    get_issue_detail,
    list_issues_nearby,
    list_issues_with_votes,
    submit_issue,
    update_status,
)
from .logger import get_logger
from .transparency import (
    compute_area_stats,
    compute_category_stats,
    compute_city_stats,
    compute_department_stats,
)
from .voting import toggle_vote

log = get_logger(__name__)


# ============================================================================
# Pydantic Models
# ============================================================================

class IssueStatus(str, Enum):
    submitted = "submitted"
    acknowledged = "acknowledged"
    in_progress = "in_progress"
    resolved = "resolved"
    closed = "closed"


class ClassifyIssueRequest(BaseModel):
    """Classification request sent by the client right after inserting an issue."""
    issueId: str
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None


class ClassifyIssueResponse(BaseModel):
    success: bool
    category: str
    severity: str
    department: str
    priorityScore: int
    suggestions: Any = None


class SubmitIssueRequest(BaseModel):
    title: str = ""
    description: str = ""
    category: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    submittedBy: Optional[str] = None
    locationAddress: Optional[str] = None
    ward: Optional[str] = None
    city: Optional[str] = None
    photoUrl: Optional[str] = None


class VoteRequest(BaseModel):
    userId: str


class VoteResponse(BaseModel):
    voted: bool
    newCount: int
    priorityScore: int


class StatusUpdateRequest(BaseModel):
    status: IssueStatus
    notes: Optional[str] = None
    updatedBy: Optional[str] = None


class FeedbackRequest(BaseModel):
    userId: str
    rating: int
    comment: Optional[str] = None


def create_app(settings_path: Optional[str] = None, classifier: Optional[BaseClassifier] = None) -> FastAPI:
    app = FastAPI(
        title="Civic Triage API",
        version=__version__,
        description="""
        Civic issue reporting backend with AI-assisted triage.

        - **Classify**: severity, department and priority for each reported issue
          (Gemini, OpenAI or Anthropic, with a deterministic fallback)
        - **Vote**: community votes raise an issue's priority
        - **Track**: status lifecycle, escalation of overdue issues and citizen feedback
        - **Transparency**: city, category and department level metrics
        """,
        openapi_tags=[
            {"name": "classification", "description": "Issue classification and priority scoring"},
            {"name": "issues", "description": "Issue submission, voting and lifecycle"},
            {"name": "transparency", "description": "Public accountability metrics"},
            {"name": "admin", "description": "Maintenance operations"},
            {"name": "monitoring", "description": "Health checks"},
        ],
    )

    state: Dict[str, Any] = {}
    state["api_key"] = os.getenv("CIVIC_API_KEY")

    settings = load_settings(settings_path)
    init_db(settings.app.database_path)
    seed_departments(settings.app.database_path, settings.app.departments)
    state["settings"] = settings
    # One classifier per app so its circuit breaker spans requests
    state["classifier"] = classifier or get_classifier(settings.app.llm)
    log.info("AI classification provider: %s", state["classifier"].provider)

    # Called directly from the browser client
    cors_origins = [o.strip() for o in (os.getenv("CORS_ORIGINS") or "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Client-Info", "Apikey", "X-API-Key"],
    )

    def get_settings_dep() -> Settings:
        return cast(Settings, state["settings"])

    def get_classifier_dep() -> BaseClassifier:
        return cast(BaseClassifier, state["classifier"])

    def require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
        expected = state["api_key"]
        if expected and (x_api_key or "") != expected:
            raise HTTPException(status_code=401, detail="Invalid API key")

    @app.exception_handler(IssueNotFoundError)
    async def not_found_handler(request: Request, exc: IssueNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(IssueValidationError)
    async def validation_handler(request: Request, exc: IssueValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"success": False, "error": str(exc), "fields": exc.fields})

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"success": False, "error": str(exc)})

    @app.exception_handler(FeedbackError)
    async def feedback_handler(request: Request, exc: FeedbackError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.post(
        "/classify-issue",
        tags=["classification"],
        summary="Classify an issue",
        description="""
        Assign severity, department and priority score to an existing issue.
        AI backend failures fall back to deterministic defaults and are never surfaced.
        """,
        response_model=ClassifyIssueResponse,
    )
    def classify_endpoint(
        body: ClassifyIssueRequest,
        settings: Settings = Depends(get_settings_dep),
        analyzer: BaseClassifier = Depends(get_classifier_dep),
    ) -> Dict[str, Any]:
        result = classify_issue(
            settings.app.database_path,
            body.issueId,
            title=body.title,
            description=body.description,
            category=body.category,
            classifier=analyzer,
            settings=settings,
        )
        return result.to_response()

    @app.post(
        "/issues",
        tags=["issues"],
        summary="Report an issue",
        description="Store a new issue and classify it before responding.",
        status_code=201,
        response_model=Dict[str, Any],
    )
    def submit_issue_endpoint(
        body: SubmitIssueRequest,
        settings: Settings = Depends(get_settings_dep),
        analyzer: BaseClassifier = Depends(get_classifier_dep),
    ) -> Dict[str, Any]:
        db_path = settings.app.database_path
        issue = submit_issue(
            db_path,
            IssueSubmission(
                title=body.title,
                description=body.description,
                category=body.category,
                latitude=body.latitude,
                longitude=body.longitude,
                submitted_by=body.submittedBy,
                location_address=body.locationAddress,
                ward=body.ward,
                city=body.city,
                photo_url=body.photoUrl,
            ),
            default_score=settings.app.scoring.default_score,
        )
        classify_issue(db_path, issue["id"], classifier=analyzer, settings=settings)
        return get_issue_detail(db_path, issue["id"], user_id=body.submittedBy)

    @app.get(
        "/issues",
        tags=["issues"],
        summary="List issues",
        description="Issues ordered by priority score, highest first.",
        response_model=List[Dict[str, Any]],
    )
    def list_issues_endpoint(
        status: Optional[IssueStatus] = Query(None, description="Filter by status"),
        category: Optional[str] = Query(None, description="Filter by citizen category"),
        department_id: Optional[str] = Query(None, description="Filter by assigned department"),
        search: Optional[str] = Query(None, max_length=200, description="Match title or description"),
        submitted_by: Optional[str] = Query(None, description="Only issues reported by this user"),
        user_id: Optional[str] = Query(None, description="Mark issues this user voted on"),
        limit: int = Query(100, ge=1, le=500),
        settings: Settings = Depends(get_settings_dep),
    ) -> List[Dict[str, Any]]:
        return list_issues_with_votes(
            settings.app.database_path,
            user_id=user_id,
            status=status.value if status else None,
            category=category,
            department_id=department_id,
            search=search,
            submitted_by=submitted_by,
            limit=limit,
        )

    @app.get(
        "/issues/nearby",
        tags=["issues"],
        summary="Issues near a location",
        description="Located issues within `radius_km` of a point, nearest first, each with `distance_km`.",
        response_model=List[Dict[str, Any]],
    )
    def nearby_issues_endpoint(
        lat: float = Query(..., ge=-90, le=90),
        lng: float = Query(..., ge=-180, le=180),
        radius_km: float = Query(5.0, gt=0, le=100),
        user_id: Optional[str] = Query(None, description="Mark issues this user voted on"),
        settings: Settings = Depends(get_settings_dep),
    ) -> List[Dict[str, Any]]:
        return list_issues_nearby(settings.app.database_path, lat, lng, radius_km=radius_km, user_id=user_id)

    @app.get(
        "/issues/{issue_id}",
        tags=["issues"],
        summary="Get an issue",
        response_model=Dict[str, Any],
    )
    def get_issue_endpoint(
        issue_id: str,
        user_id: Optional[str] = Query(None),
        settings: Settings = Depends(get_settings_dep),
    ) -> Dict[str, Any]:
        return get_issue_detail(settings.app.database_path, issue_id, user_id=user_id)

    @app.post(
        "/issues/{issue_id}/vote",
        tags=["issues"],
        summary="Toggle a vote",
        description="Vote for an issue, or withdraw an existing vote.",
        response_model=VoteResponse,
    )
    def vote_endpoint(
        issue_id: str,
        body: VoteRequest,
        settings: Settings = Depends(get_settings_dep),
    ) -> Dict[str, Any]:
        result = toggle_vote(
            settings.app.database_path,
            issue_id,
            body.userId,
            step=settings.app.voting.step,
            weights=settings.app.scoring,
        )
        return result.to_response()

    @app.patch(
        "/issues/{issue_id}/status",
        tags=["issues"],
        summary="Update issue status",
        response_model=Dict[str, Any],
    )
    def status_endpoint(
        issue_id: str,
        body: StatusUpdateRequest,
        settings: Settings = Depends(get_settings_dep),
    ) -> Dict[str, Any]:
        return update_status(
            settings.app.database_path,
            issue_id,
            body.status.value,
            notes=body.notes,
            updated_by=body.updatedBy,
        )

    @app.post(
        "/issues/{issue_id}/feedback",
        tags=["issues"],
        summary="Rate a resolved issue",
        status_code=201,
        response_model=Dict[str, str],
    )
    def feedback_endpoint(
        issue_id: str,
        body: FeedbackRequest,
        settings: Settings = Depends(get_settings_dep),
    ) -> Dict[str, str]:
        feedback_id = add_feedback(settings.app.database_path, issue_id, body.userId, body.rating, body.comment)
        return {"id": feedback_id}

    @app.get(
        "/departments",
        tags=["transparency"],
        summary="List departments",
        response_model=List[Dict[str, Any]],
    )
    def departments_endpoint(settings: Settings = Depends(get_settings_dep)) -> List[Dict[str, Any]]:
        return list_departments(settings.app.database_path)

    @app.get(
        "/transparency",
        tags=["transparency"],
        summary="Transparency metrics",
        description="City totals, per-category counts and per-department performance.",
        response_model=Dict[str, Any],
    )
    def transparency_endpoint(settings: Settings = Depends(get_settings_dep)) -> Dict[str, Any]:
        db_path = settings.app.database_path
        return {
            "city": compute_city_stats(db_path),
            "categories": compute_category_stats(db_path),
            "departments": compute_department_stats(db_path),
        }

    @app.get(
        "/transparency/areas",
        tags=["transparency"],
        summary="Heatmap areas",
        description="Issue counts grouped by location cell (coordinates rounded to 3 decimals).",
        response_model=List[Dict[str, Any]],
    )
    def areas_endpoint(settings: Settings = Depends(get_settings_dep)) -> List[Dict[str, Any]]:
        return cast(List[Dict[str, Any]], compute_area_stats(settings.app.database_path))

    @app.post(
        "/admin/escalate",
        tags=["admin"],
        summary="Escalate overdue issues",
        response_model=Dict[str, Any],
        dependencies=[Depends(require_api_key)],
    )
    def escalate_endpoint(settings: Settings = Depends(get_settings_dep)) -> Dict[str, Any]:
        ids = escalate_overdue(settings.app.database_path, settings.app.escalation.overdue_days)
        return {"escalated": len(ids), "issueIds": ids}

    @app.post(
        "/admin/reclassify",
        tags=["admin"],
        summary="Reclassify open issues",
        response_model=Dict[str, int],
        dependencies=[Depends(require_api_key)],
    )
    def reclassify_endpoint(
        settings: Settings = Depends(get_settings_dep),
        analyzer: BaseClassifier = Depends(get_classifier_dep),
    ) -> Dict[str, int]:
        count = reclassify_open_issues(settings.app.database_path, settings=settings, classifier=analyzer)
        return {"reclassified": count}

    @app.get(
        "/health",
        tags=["monitoring"],
        summary="Health check",
        response_model=Dict[str, Any],
    )
    def health_check(analyzer: BaseClassifier = Depends(get_classifier_dep)) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "version": __version__,
            "aiProvider": analyzer.provider,
            "aiEnabled": analyzer.enabled,
            "aiCircuitOpen": analyzer.breaker.is_open,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error("Unhandled exception: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred.",
                "path": str(request.url.path),
                "method": request.method,
            },
        )

    return app


def main() -> None:
    """Entry point for the civic-triage-api console script."""
    import argparse

    import uvicorn

    from .logger import configure_logging

    parser = argparse.ArgumentParser(description="Civic Triage API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--config", help="Path to settings.yaml")

    args = parser.parse_args()

    configure_logging()
    app = create_app(settings_path=args.config)
    uvicorn.run(app, host=args.host, port=args.port)
