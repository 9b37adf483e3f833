"""SQLAlchemy ORM models."""
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base


class FormRecord(Base):
    """Form metadata registered by the form editor. Read-only to intake."""
    __tablename__ = "forms"

    id = Column(Integer, primary_key=True, index=True)
    form_id = Column(String, unique=True, index=True, nullable=False)
    owner_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    short_id = Column(String, unique=True, index=True, nullable=False)
    required_question_ids_json = Column(Text, nullable=False, default="[]")
    created_ts_utc = Column(String, nullable=False)


class OwnerAccount(Base):
    """Subscription state of a form owner, consulted by the access gate."""
    __tablename__ = "owner_accounts"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String, unique=True, index=True, nullable=False)
    subscription_tier = Column(String, nullable=True)  # "pro" or None
    subscription_status = Column(String, nullable=True)  # active, trialing, past_due, canceled
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    current_period_end = Column(String, nullable=True)  # ISO-8601
    created_ts_utc = Column(String, nullable=False)


class FormAnalytics(Base):
    """Per-form aggregate counters. Only mutated through atomic upserts."""
    __tablename__ = "form_analytics"
    __table_args__ = (
        CheckConstraint("views >= 0", name="ck_form_analytics_views"),
        CheckConstraint(
            "completed_submissions + partial_submissions = total_submissions",
            name="ck_form_analytics_totals",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    form_id = Column(String, unique=True, index=True, nullable=False)
    views = Column(Integer, nullable=False, default=0)
    total_submissions = Column(Integer, nullable=False, default=0)
    completed_submissions = Column(Integer, nullable=False, default=0)
    partial_submissions = Column(Integer, nullable=False, default=0)
    completion_rate = Column(Float, nullable=False, default=0.0)
    average_completion_time_ms = Column(Float, nullable=False, default=0.0)
    updated_ts_utc = Column(String, nullable=False)


class SubmissionTimeline(Base):
    """Count of stored submissions per form per UTC day."""
    __tablename__ = "submission_timeline"
    __table_args__ = (
        UniqueConstraint("form_id", "day", name="uq_submission_timeline_form_day"),
    )

    id = Column(Integer, primary_key=True, index=True)
    form_id = Column(String, index=True, nullable=False)
    day = Column(String, nullable=False)  # YYYY-MM-DD
    count = Column(Integer, nullable=False, default=0)


class SubmissionRecord(Base):
    """One respondent attempt. Never updated after insert."""
    __tablename__ = "submissions"
    __table_args__ = (
        UniqueConstraint("form_id", "idempotency_key", name="uq_submissions_form_idempotency"),
    )

    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(String, unique=True, index=True, nullable=False)
    form_id = Column(String, index=True, nullable=False)
    answers_json = Column(Text, nullable=False)
    metadata_json = Column(Text, nullable=False)
    status = Column(String, index=True, nullable=False)  # "partial" or "completed"
    completion_time_ms = Column(Integer, nullable=True)
    idempotency_key = Column(String, nullable=True)
    created_ts_utc = Column(String, index=True, nullable=False)
