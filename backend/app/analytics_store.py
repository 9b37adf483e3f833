"""Per-form aggregate counters with atomic upsert-and-increment semantics.

Every mutation is one ``INSERT ... ON CONFLICT (form_id) DO UPDATE``
statement whose SET clause is evaluated by the database against the stored
row.  Concurrent writers (threads, processes or machines sharing the
database) therefore never lose increments, and no application-level lock is
taken.

``average_completion_time_ms`` is updated inside the same statement as the
``completed_submissions`` increment, using the incremental mean

    new_avg = old_avg + (t - old_avg) / (old_completed + 1)

All SET expressions see the pre-update row, so ``old_completed + 1`` is the
post-increment count.  ``completion_rate`` is likewise recomputed from the
post-update counters in that statement and is never incremented on its own.

The store never commits; the caller owns the transaction.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import Float, case, cast, delete, func, insert, literal, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import StorageUnavailable
from .models import FormAnalytics, SubmissionRecord, SubmissionTimeline

logger = logging.getLogger(__name__)

COMPLETED = "completed"
PARTIAL = "partial"
STATUSES = (PARTIAL, COMPLETED)

_analytics = FormAnalytics.__table__
_timeline = SubmissionTimeline.__table__
_submissions = SubmissionRecord.__table__


@dataclass
class FormAggregate:
    """Read-side snapshot of a form's counters."""
    form_id: str
    views: int = 0
    total_submissions: int = 0
    completed_submissions: int = 0
    partial_submissions: int = 0
    completion_rate: float = 0.0
    average_completion_time_ms: float = 0.0
    timeline: List[Tuple[str, int]] = field(default_factory=list)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _upsert_for(db: Session, table):
    """Dialect-specific INSERT that supports ON CONFLICT."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)


class AnalyticsStore:
    """Owns the ``form_analytics`` and ``submission_timeline`` rows."""

    def __init__(self, db: Session):
        self.db = db

    def _execute(self, stmt):
        try:
            return self.db.execute(stmt)
        except OperationalError as e:
            logger.error("Analytics storage failure: %s", e)
            raise StorageUnavailable("Analytics storage is unavailable") from e

    def _zeroed_row(self, form_id: str, ts: str, **overrides) -> dict:
        row = {
            "form_id": form_id,
            "views": 0,
            "total_submissions": 0,
            "completed_submissions": 0,
            "partial_submissions": 0,
            "completion_rate": 0.0,
            "average_completion_time_ms": 0.0,
            "updated_ts_utc": ts,
        }
        row.update(overrides)
        return row

    def record_view(self, form_id: str) -> None:
        """``views += 1``, creating the zeroed aggregate on first call."""
        stmt = _upsert_for(self.db, _analytics).values(
            self._zeroed_row(form_id, _now(), views=1)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["form_id"],
            set_={
                "views": _analytics.c.views + 1,
                "updated_ts_utc": stmt.excluded.updated_ts_utc,
            },
        )
        self._execute(stmt)

    def record_submission(
        self,
        form_id: str,
        status: str,
        completion_time_ms: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> bool:
        """Count one stored submission against the form's aggregate.

        When ``limit`` is given for a completed submission the increment is
        conditional on ``completed_submissions < limit`` at write time.
        Returns False (and writes nothing) when that condition failed.
        """
        if status not in STATUSES:
            raise ValueError(f"Unknown submission status: {status!r}")

        completed = status == COMPLETED
        if completed and limit is not None and limit <= 0:
            return False

        ts = _now()
        c = _analytics.c
        new_total = c.total_submissions + 1

        if completed:
            t = float(completion_time_ms or 0)
            new_completed = c.completed_submissions + 1
            inserted = self._zeroed_row(
                form_id, ts,
                total_submissions=1,
                completed_submissions=1,
                completion_rate=1.0,
                average_completion_time_ms=t,
            )
            set_ = {
                "completed_submissions": new_completed,
                "average_completion_time_ms": c.average_completion_time_ms
                + (t - c.average_completion_time_ms) / cast(new_completed, Float),
            }
        else:
            new_completed = c.completed_submissions
            inserted = self._zeroed_row(
                form_id, ts, total_submissions=1, partial_submissions=1,
            )
            set_ = {"partial_submissions": c.partial_submissions + 1}

        set_.update({
            "total_submissions": new_total,
            "completion_rate": cast(new_completed, Float) / cast(new_total, Float),
            "updated_ts_utc": ts,
        })

        stmt = _upsert_for(self.db, _analytics).values(inserted)
        if completed and limit is not None:
            stmt = stmt.on_conflict_do_update(
                index_elements=["form_id"],
                set_=set_,
                where=c.completed_submissions < limit,
            )
        else:
            stmt = stmt.on_conflict_do_update(index_elements=["form_id"], set_=set_)

        result = self._execute(stmt)
        if result.rowcount == 0:
            return False

        self._bump_timeline(form_id, ts[:10])
        return True

    def _bump_timeline(self, form_id: str, day: str) -> None:
        stmt = _upsert_for(self.db, _timeline).values(form_id=form_id, day=day, count=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=["form_id", "day"],
            set_={"count": _timeline.c.count + 1},
        )
        self._execute(stmt)

    def get_aggregate(self, form_id: str) -> FormAggregate:
        """Pure read.  A form with no activity yields a zeroed aggregate."""
        return self.get_aggregates([form_id])[form_id]

    def get_aggregates(self, form_ids: Iterable[str]) -> Dict[str, FormAggregate]:
        """Batched read; every requested id is present in the result."""
        form_ids = list(form_ids)
        result = {form_id: FormAggregate(form_id=form_id) for form_id in form_ids}
        if not form_ids:
            return result

        rows = self._execute(
            select(_analytics).where(_analytics.c.form_id.in_(form_ids))
        ).all()
        for row in rows:
            result[row.form_id] = FormAggregate(
                form_id=row.form_id,
                views=row.views,
                total_submissions=row.total_submissions,
                completed_submissions=row.completed_submissions,
                partial_submissions=row.partial_submissions,
                completion_rate=row.completion_rate,
                average_completion_time_ms=row.average_completion_time_ms,
            )

        timeline_rows = self._execute(
            select(_timeline.c.form_id, _timeline.c.day, _timeline.c.count)
            .where(_timeline.c.form_id.in_(form_ids))
            .order_by(_timeline.c.day)
        ).all()
        for row_form_id, day, count in timeline_rows:
            result[row_form_id].timeline.append((day, count))

        return result

    def rebuild(self, form_id: str) -> FormAggregate:
        """Recompute submission counters and timeline from stored records.

        Repair path for aggregates that drifted from the submission records.
        ``views`` is preserved since views leave no records behind.  The
        counters are rewritten by a single UPDATE so they stay mutually
        consistent even while intake keeps writing.
        """
        ts = _now()
        s = _submissions.c
        for_form = s.form_id == form_id

        stmt = _upsert_for(self.db, _analytics).values(self._zeroed_row(form_id, ts))
        self._execute(stmt.on_conflict_do_nothing(index_elements=["form_id"]))

        total_q = select(func.count(s.id)).where(for_form).scalar_subquery()
        completed_q = (
            select(func.count(s.id))
            .where(for_form, s.status == COMPLETED)
            .scalar_subquery()
        )
        average_q = (
            select(func.coalesce(func.avg(s.completion_time_ms), 0.0))
            .where(for_form, s.status == COMPLETED)
            .scalar_subquery()
        )
        self._execute(
            update(_analytics)
            .where(_analytics.c.form_id == form_id)
            .values(
                total_submissions=total_q,
                completed_submissions=completed_q,
                partial_submissions=total_q - completed_q,
                completion_rate=case(
                    (total_q > 0, cast(completed_q, Float) / cast(total_q, Float)),
                    else_=0.0,
                ),
                average_completion_time_ms=average_q,
                updated_ts_utc=ts,
            )
        )

        day = func.substr(s.created_ts_utc, 1, 10)
        self._execute(delete(_timeline).where(_timeline.c.form_id == form_id))
        self._execute(
            insert(_timeline).from_select(
                ["form_id", "day", "count"],
                select(literal(form_id), day, func.count(s.id))
                .where(for_form)
                .group_by(day),
            )
        )

        logger.info("Rebuilt analytics for form %s", form_id)
        return self.get_aggregate(form_id)


def count_view(db: Session, form_id: str, attempts: int = 3) -> None:
    """Record and commit one view, retrying transient storage failures.

    Only views are retried; submission writes never are.
    """
    store = AnalyticsStore(db)
    retrying = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        retry=retry_if_exception_type(StorageUnavailable),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            try:
                store.record_view(form_id)
                db.commit()
            except StorageUnavailable:
                db.rollback()
                raise
            except OperationalError as e:
                db.rollback()
                raise StorageUnavailable("Analytics storage is unavailable") from e
