"""FastAPI application for form submission intake and analytics."""
import json
import os
from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .access import AccessVerdict, SessionUser, authorize, compute_access_token, resolve_token_to_user
from .analytics_query import AnalyticsQueryService
from .analytics_store import AnalyticsStore, count_view
from .db import ensure_schema, get_db
from .errors import AccessDenied, AdminKeyRejected, IntakeError, NotFound, ValidationFailed
from .forms import FormDirectory
from .intake import SubmissionIntake
from .models import OwnerAccount, SubmissionRecord
from .plan_limits import PlanLimitGuard
from .schemas import (
    FormInfoResponse,
    FormStats,
    GlobalAnalyticsResponse,
    SeedFormRequest,
    SeedOwnerRequest,
    SeedOwnerResponse,
    SubmissionCreate,
    SubmissionResponse,
    ViewRecorded,
)
from .settings import ADMIN_KEY, RESPONSES_PER_FORM_LIMIT, VIEW_RETRY_ATTEMPTS
from .submission_store import SubmissionRecordStore

# Create or verify tables on startup
ensure_schema()

app = FastAPI(title="Form Intake & Analytics API", version="0.1.0")

# CORS configuration
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS")
if _allowed_origins_env:
    allowed_origins = [origin.strip() for origin in _allowed_origins_env.split(",")]
else:
    allowed_origins = ["http://localhost:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IntakeError)
async def handle_intake_error(request: Request, exc: IntakeError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message},
    )


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_failed",
            "message": "Malformed request payload",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def get_plan_guard() -> PlanLimitGuard:
    """Dependency that provides the quota guard with the configured limit."""
    return PlanLimitGuard(RESPONSES_PER_FORM_LIMIT)


def get_session_user(t: Optional[str] = None, db: Session = Depends(get_db)) -> Optional[SessionUser]:
    """Dependency that resolves the ``t`` access token to its owner."""
    return resolve_token_to_user(t, db)


def require_access(owner_id: str, user: Optional[SessionUser]) -> None:
    verdict = authorize(owner_id, user)
    if verdict is not AccessVerdict.ALLOWED:
        raise AccessDenied(verdict)


def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    if not ADMIN_KEY or x_admin_key != ADMIN_KEY:
        raise AdminKeyRejected("Invalid or missing admin key")


def _submission_response(record: SubmissionRecord) -> SubmissionResponse:
    return SubmissionResponse(
        submission_id=record.submission_id,
        form_id=record.form_id,
        answers=json.loads(record.answers_json),
        metadata=json.loads(record.metadata_json),
        status=record.status,
        completion_time_ms=record.completion_time_ms,
        created_at=record.created_ts_utc,
    )


def _owned_form(form_id: str, user: Optional[SessionUser], db: Session):
    """Resolve a form the session user may read, or raise."""
    if user is None:
        raise AccessDenied(AccessVerdict.UNAUTHORIZED)
    form = FormDirectory(db).resolve(form_id)
    if form is None:
        raise NotFound(f"Form {form_id!r} not found")
    require_access(form.owner_id, user)
    return form


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.post("/submissions", response_model=SubmissionResponse, status_code=201)
def create_submission(
    body: SubmissionCreate,
    db: Session = Depends(get_db),
    guard: PlanLimitGuard = Depends(get_plan_guard),
):
    """Accept a respondent's answers for a form."""
    record = SubmissionIntake(db, guard).submit(
        body.form_id,
        [answer.model_dump(by_alias=True) for answer in body.answers],
        body.metadata,
        completion_time_ms=body.completion_time_ms,
        started_at=body.started_at,
        idempotency_key=body.idempotency_key,
    )
    return _submission_response(record)


@app.post("/forms/{form_id}/views", response_model=ViewRecorded)
def record_form_view(form_id: str, db: Session = Depends(get_db)):
    """Count a render of the public form.

    Short ids are counted under the form's id.  Unknown ids are counted as
    given, since the view may arrive before the form is registered.
    """
    form = FormDirectory(db).resolve(form_id)
    count_view(db, form.form_id if form else form_id, VIEW_RETRY_ATTEMPTS)
    return ViewRecorded(success=True)


@app.get("/analytics", response_model=GlobalAnalyticsResponse)
def get_global_analytics(
    db: Session = Depends(get_db),
    user: Optional[SessionUser] = Depends(get_session_user),
):
    """Analytics across every form owned by the token's owner."""
    if user is None:
        raise AccessDenied(AccessVerdict.UNAUTHORIZED)
    require_access(user.owner_id, user)
    return AnalyticsQueryService(db).get_global_analytics(user.owner_id)


@app.get("/analytics/{form_id}", response_model=FormStats)
def get_form_analytics(
    form_id: str,
    db: Session = Depends(get_db),
    user: Optional[SessionUser] = Depends(get_session_user),
):
    """Analytics for a single owned form."""
    form = _owned_form(form_id, user, db)
    return AnalyticsQueryService(db).get_analytics(form.form_id)


@app.get("/forms/{form_id}/submissions", response_model=List[SubmissionResponse])
def list_form_submissions(
    form_id: str,
    status: Optional[Literal["partial", "completed"]] = None,
    device_type: Optional[str] = Query(None, alias="deviceType"),
    browser: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    user: Optional[SessionUser] = Depends(get_session_user),
):
    """Stored submissions for an owned form, newest first."""
    if limit < 1 or limit > 1000:
        raise ValidationFailed("limit must be between 1 and 1000")
    form = _owned_form(form_id, user, db)
    records = SubmissionRecordStore(db).list_for_form(
        form.form_id, status=status, device_type=device_type, browser=browser, limit=limit,
    )
    return [_submission_response(r) for r in records]


@app.get("/submissions/{submission_id}", response_model=SubmissionResponse)
def get_submission(
    submission_id: str,
    db: Session = Depends(get_db),
    user: Optional[SessionUser] = Depends(get_session_user),
):
    """A single stored submission of an owned form."""
    if user is None:
        raise AccessDenied(AccessVerdict.UNAUTHORIZED)
    record = SubmissionRecordStore(db).get(submission_id)
    if record is None:
        raise NotFound(f"Submission {submission_id!r} not found")
    _owned_form(record.form_id, user, db)
    return _submission_response(record)


# Admin Endpoints

@app.post("/admin/forms", response_model=FormInfoResponse, dependencies=[Depends(require_admin)])
def seed_form(body: SeedFormRequest, db: Session = Depends(get_db)):
    """Register (or update) form metadata published by the form editor.

    Requires X-ADMIN-KEY header matching the ADMIN_KEY env var.
    """
    info = FormDirectory(db).register(
        form_id=body.form_id,
        owner_id=body.owner_id,
        title=body.title,
        short_id=body.short_id,
        required_question_ids=body.required_question_ids,
    )
    return FormInfoResponse(
        form_id=info.form_id,
        owner_id=info.owner_id,
        title=info.title,
        short_id=info.short_id,
        required_question_ids=info.required_question_ids,
    )


@app.post("/admin/owners", response_model=SeedOwnerResponse, dependencies=[Depends(require_admin)])
def seed_owner(body: SeedOwnerRequest, db: Session = Depends(get_db)):
    """Register an owner's subscription state and return their access token.

    Upserts into OwnerAccount so billing sync can call it repeatedly.
    """
    period_end = body.current_period_end.isoformat() if body.current_period_end else None

    existing = db.query(OwnerAccount).filter(
        OwnerAccount.owner_id == body.owner_id
    ).first()

    if existing:
        existing.subscription_tier = body.subscription_tier
        existing.subscription_status = body.subscription_status
        existing.cancel_at_period_end = body.cancel_at_period_end
        existing.current_period_end = period_end
    else:
        db.add(OwnerAccount(
            owner_id=body.owner_id,
            subscription_tier=body.subscription_tier,
            subscription_status=body.subscription_status,
            cancel_at_period_end=body.cancel_at_period_end,
            current_period_end=period_end,
            created_ts_utc=datetime.now(timezone.utc).isoformat(),
        ))

    db.commit()

    return SeedOwnerResponse(
        owner_id=body.owner_id,
        access_token=compute_access_token(body.owner_id),
    )


@app.post(
    "/admin/forms/{form_id}/reconcile",
    response_model=FormStats,
    dependencies=[Depends(require_admin)],
)
def reconcile_form_analytics(form_id: str, db: Session = Depends(get_db)):
    """Rebuild a form's submission counters from its stored records."""
    form = FormDirectory(db).resolve(form_id)
    if form is None:
        raise NotFound(f"Form {form_id!r} not found")
    AnalyticsStore(db).rebuild(form.form_id)
    db.commit()
    return AnalyticsQueryService(db).get_analytics(form.form_id)
