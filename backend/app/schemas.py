"""Pydantic schemas for request/response validation.

Field names are snake_case in Python and camelCase on the wire.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnswerIn(CamelModel):
    """One answer entry.  ``value`` must be present but may be any JSON."""
    question_id: str = Field(..., min_length=1)
    question_type: Optional[str] = None
    value: Any


class SubmissionCreate(CamelModel):
    """Schema for POST /submissions."""
    form_id: str
    answers: List[AnswerIn]
    metadata: Dict[str, Any] = Field(default_factory=dict)  # opaque pass-through
    completion_time_ms: Optional[int] = Field(None, ge=0)
    started_at: Optional[datetime] = None  # server derives duration when completionTimeMs is absent
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=128)


class SubmissionResponse(CamelModel):
    """A stored submission record."""
    submission_id: str
    form_id: str
    answers: List[Dict[str, Any]]
    metadata: Dict[str, Any]
    status: Literal["partial", "completed"]
    completion_time_ms: Optional[int] = None
    created_at: str


class ViewRecorded(CamelModel):
    success: bool


class ErrorResponse(CamelModel):
    error: str
    message: str


class TimelinePoint(CamelModel):
    date: str  # YYYY-MM-DD (UTC)
    count: int


class FormStats(CamelModel):
    """Display-ready analytics for a single form."""
    form_id: str
    title: str
    short_id: str
    views: int
    submissions: int
    completed_submissions: int
    partial_submissions: int
    completion_rate: float  # completed / submissions
    average_completion_time_ms: float
    conversion_rate: float  # completed / views
    timeline: List[TimelinePoint] = Field(default_factory=list)


class AggregatedAnalytics(CamelModel):
    """Owner-level rollup across all owned forms."""
    views: int
    total_submissions: int
    completed_submissions: int
    partial_submissions: int
    completion_rate: float
    average_completion_time_ms: float
    timeline: List[TimelinePoint] = Field(default_factory=list)


class GlobalAnalyticsResponse(CamelModel):
    owner_id: str
    total_forms: int
    aggregated: AggregatedAnalytics
    forms_with_stats: List[FormStats]


class SeedFormRequest(CamelModel):
    """Register form metadata published by the form editor."""
    form_id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    title: str
    short_id: str = Field(..., min_length=1)
    required_question_ids: List[str] = Field(default_factory=list)


class FormInfoResponse(CamelModel):
    form_id: str
    owner_id: str
    title: str
    short_id: str
    required_question_ids: List[str]


class SeedOwnerRequest(CamelModel):
    """Register an owner's subscription state."""
    owner_id: str = Field(..., min_length=1)
    subscription_tier: Optional[str] = None
    subscription_status: Optional[Literal["active", "trialing", "past_due", "canceled"]] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None


class SeedOwnerResponse(CamelModel):
    owner_id: str
    access_token: str
