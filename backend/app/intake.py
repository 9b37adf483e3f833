"""Submission intake: validate, classify, gate, persist and count a response."""
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .analytics_store import COMPLETED, PARTIAL, AnalyticsStore
from .errors import NotFound, QuotaExceeded, StorageUnavailable, ValidationFailed
from .forms import FormDirectory
from .models import SubmissionRecord
from .plan_limits import PlanLimitGuard
from .submission_store import SubmissionRecordStore

logger = logging.getLogger(__name__)

# Checked in order; Chrome's UA also mentions Safari, Edge's mentions Chrome.
BROWSER_SIGNATURES = [
    ("Firefox", "Firefox"),
    ("SamsungBrowser", "Samsung Internet"),
    ("Opera", "Opera"),
    ("OPR", "Opera"),
    ("Trident", "Internet Explorer"),
    ("Edge", "Edge"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
]


def detect_browser(user_agent: str) -> str:
    for marker, browser in BROWSER_SIGNATURES:
        if marker in user_agent:
            return browser
    return "unknown"


def refine_metadata(metadata: Mapping) -> Dict[str, Any]:
    """Pass metadata through, filling ``browser`` from the user agent when
    the client could not tell."""
    refined = dict(metadata)
    if refined.get("browser") in (None, "", "unknown"):
        refined["browser"] = detect_browser(refined.get("userAgent") or "")
    return refined


def is_answered(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def classify(answers: List[Dict[str, Any]], required_question_ids: List[str]) -> str:
    """``completed`` iff every required question has an answered entry."""
    answered = {a["questionId"] for a in answers if is_answered(a["value"])}
    if all(qid in answered for qid in required_question_ids):
        return COMPLETED
    return PARTIAL


def normalize_answers(answers: Any) -> List[Dict[str, Any]]:
    """Check the answers payload shape.  Values are checked for presence
    only, never against the question type."""
    if isinstance(answers, (str, bytes)) or not isinstance(answers, Sequence):
        raise ValidationFailed("answers must be a list")

    normalized = []
    for i, answer in enumerate(answers):
        if not isinstance(answer, Mapping):
            raise ValidationFailed(f"answers[{i}] must be an object")
        question_id = answer.get("questionId")
        if not question_id:
            raise ValidationFailed(f"answers[{i}] is missing questionId")
        if "value" not in answer:
            raise ValidationFailed(f"answers[{i}] is missing value")
        normalized.append({
            "questionId": str(question_id),
            "questionType": answer.get("questionType"),
            "value": answer["value"],
        })
    return normalized


def _parse_started_at(started_at: Union[str, datetime]) -> datetime:
    if isinstance(started_at, str):
        try:
            started_at = datetime.fromisoformat(started_at.replace('Z', '+00:00'))
        except ValueError as e:
            raise ValidationFailed("startedAt must be an ISO-8601 timestamp") from e
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return started_at


def compute_completion_time_ms(
    completion_time_ms: Optional[int] = None,
    started_at: Union[str, datetime, None] = None,
    now: Optional[datetime] = None,
) -> int:
    """Caller-supplied duration wins; otherwise derive it from ``started_at``
    on the server clock; otherwise 0."""
    if completion_time_ms is not None:
        if completion_time_ms < 0:
            raise ValidationFailed("completionTimeMs must be >= 0")
        return int(completion_time_ms)
    if started_at is not None:
        now = now or datetime.now(timezone.utc)
        elapsed = now - _parse_started_at(started_at)
        return max(0, int(elapsed.total_seconds() * 1000))
    return 0


class SubmissionIntake:
    """Accepts one respondent attempt for a form.

    The aggregate update and the record insert commit in a single
    transaction.  For completed submissions the aggregate update is the
    conditional ``completed_submissions < limit`` upsert, so the quota can
    not be overshot by concurrent submitters: whoever loses the race gets
    QuotaExceeded and nothing is stored.
    """

    def __init__(
        self,
        db: Session,
        guard: PlanLimitGuard,
        forms: Optional[FormDirectory] = None,
        analytics: Optional[AnalyticsStore] = None,
        records: Optional[SubmissionRecordStore] = None,
    ):
        self.db = db
        self.guard = guard
        self.forms = forms or FormDirectory(db)
        self.analytics = analytics or AnalyticsStore(db)
        self.records = records or SubmissionRecordStore(db)

    def submit(
        self,
        form_id: str,
        answers: Any,
        metadata: Optional[Mapping] = None,
        completion_time_ms: Optional[int] = None,
        started_at: Union[str, datetime, None] = None,
        idempotency_key: Optional[str] = None,
    ) -> SubmissionRecord:
        if not form_id or not str(form_id).strip():
            raise ValidationFailed("formId is required")
        answers = normalize_answers(answers)
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, Mapping):
            raise ValidationFailed("metadata must be an object")

        form = self.forms.resolve(form_id)
        if form is None:
            raise NotFound(f"Form {form_id!r} not found")
        form_id = form.form_id

        if idempotency_key:
            existing = self.records.find_by_idempotency_key(form_id, idempotency_key)
            if existing:
                logger.info(
                    "Replayed submission %s for form %s (idempotency key)",
                    existing.submission_id, form_id,
                )
                return existing

        status = classify(answers, form.required_question_ids)
        elapsed_ms = None
        limit = None
        if status == COMPLETED:
            elapsed_ms = compute_completion_time_ms(completion_time_ms, started_at)
            aggregate = self.analytics.get_aggregate(form_id)
            decision = self.guard.check_quota(form_id, aggregate.completed_submissions)
            if not decision.allowed:
                logger.info(
                    "Rejected completed submission for form %s: %s (%d/%d)",
                    form_id, decision.reason, aggregate.completed_submissions, self.guard.limit,
                )
                raise QuotaExceeded(form_id, self.guard.limit)
            limit = self.guard.limit

        try:
            counted = self.analytics.record_submission(form_id, status, elapsed_ms, limit=limit)
            if counted:
                record = self.records.save(
                    form_id,
                    answers,
                    refine_metadata(metadata),
                    status,
                    completion_time_ms=elapsed_ms,
                    idempotency_key=idempotency_key,
                )
                self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = None
            if idempotency_key:
                existing = self.records.find_by_idempotency_key(form_id, idempotency_key)
            if existing is None:
                raise
            logger.info(
                "Concurrent duplicate of submission %s for form %s discarded",
                existing.submission_id, form_id,
            )
            return existing
        except StorageUnavailable:
            self.db.rollback()
            logger.exception("Failed to store submission for form %s", form_id)
            raise
        except OperationalError as e:
            self.db.rollback()
            logger.exception("Failed to commit submission for form %s", form_id)
            raise StorageUnavailable("Submission storage is unavailable") from e

        if not counted:
            self.db.rollback()
            logger.warning(
                "Completed submission for form %s lost the race for the last quota slot",
                form_id,
            )
            raise QuotaExceeded(form_id, self.guard.limit)

        logger.info(
            "Stored %s submission %s for form %s",
            status, record.submission_id, form_id,
        )
        return record
