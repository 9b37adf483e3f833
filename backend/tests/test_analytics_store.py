"""Tests for the atomic per-form aggregate store."""
import itertools

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.db import Base
from backend.app.analytics_store import AnalyticsStore, COMPLETED, PARTIAL
from backend.app.models import FormAnalytics, SubmissionTimeline
from backend.app.submission_store import SubmissionRecordStore


@pytest.fixture
def db():
    """Fresh in-memory database session for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def store(db):
    return AnalyticsStore(db)


def assert_consistent(aggregate):
    """Counter invariants that must hold at every observed point."""
    assert aggregate.completed_submissions + aggregate.partial_submissions == aggregate.total_submissions
    assert 0 <= aggregate.completed_submissions <= aggregate.total_submissions
    if aggregate.total_submissions:
        assert aggregate.completion_rate == pytest.approx(
            aggregate.completed_submissions / aggregate.total_submissions
        )
    else:
        assert aggregate.completion_rate == 0
    assert 0 <= aggregate.completion_rate <= 1


class TestRecordView:

    def test_first_view_creates_zeroed_aggregate(self, db, store):
        store.record_view("f1")
        db.commit()

        aggregate = store.get_aggregate("f1")
        assert aggregate.views == 1
        assert aggregate.total_submissions == 0
        assert aggregate.completion_rate == 0

    def test_views_count_every_call(self, db, store):
        for _ in range(7):
            store.record_view("f1")
        db.commit()

        assert store.get_aggregate("f1").views == 7

    def test_views_do_not_touch_completion_rate(self, db, store):
        store.record_submission("f1", COMPLETED, 100)
        store.record_view("f1")
        store.record_view("f1")
        db.commit()

        aggregate = store.get_aggregate("f1")
        assert aggregate.views == 2
        assert aggregate.completion_rate == 1.0


class TestRecordSubmission:

    def test_fresh_form_scenario(self, db, store):
        """One view, one partial, one completed (500ms) on a new form."""
        store.record_view("f1")
        store.record_submission("f1", PARTIAL)
        store.record_submission("f1", COMPLETED, 500)
        db.commit()

        aggregate = store.get_aggregate("f1")
        assert aggregate.views == 1
        assert aggregate.total_submissions == 2
        assert aggregate.completed_submissions == 1
        assert aggregate.partial_submissions == 1
        assert aggregate.completion_rate == 0.5
        assert aggregate.average_completion_time_ms == 500

    @pytest.mark.parametrize("order", list(itertools.permutations([1000, 2000, 3000])))
    def test_average_completion_time_any_arrival_order(self, db, store, order):
        for ms in order:
            store.record_submission("f1", COMPLETED, ms)
        db.commit()

        aggregate = store.get_aggregate("f1")
        assert aggregate.completed_submissions == 3
        assert aggregate.average_completion_time_ms == pytest.approx(2000)

    def test_partial_submissions_do_not_move_average(self, db, store):
        store.record_submission("f1", COMPLETED, 800)
        store.record_submission("f1", PARTIAL)
        store.record_submission("f1", PARTIAL)
        db.commit()

        aggregate = store.get_aggregate("f1")
        assert aggregate.average_completion_time_ms == 800
        assert aggregate.partial_submissions == 2
        assert aggregate.completion_rate == pytest.approx(1 / 3)

    def test_missing_completion_time_counts_as_zero(self, db, store):
        store.record_submission("f1", COMPLETED, 1000)
        store.record_submission("f1", COMPLETED, None)
        db.commit()

        assert store.get_aggregate("f1").average_completion_time_ms == 500

    def test_invariants_hold_after_every_write(self, db, store):
        statuses = [PARTIAL, COMPLETED, COMPLETED, PARTIAL, COMPLETED, PARTIAL, PARTIAL]
        for i, status in enumerate(statuses):
            store.record_submission("f1", status, 100 * i if status == COMPLETED else None)
            db.flush()
            assert_consistent(store.get_aggregate("f1"))

    def test_unknown_status_rejected(self, store):
        with pytest.raises(ValueError):
            store.record_submission("f1", "abandoned")

    def test_forms_are_independent(self, db, store):
        store.record_submission("f1", COMPLETED, 100)
        store.record_submission("f2", PARTIAL)
        db.commit()

        assert store.get_aggregate("f1").completed_submissions == 1
        assert store.get_aggregate("f1").partial_submissions == 0
        assert store.get_aggregate("f2").partial_submissions == 1
        assert store.get_aggregate("f2").completed_submissions == 0


class TestConditionalIncrement:

    def test_increment_applies_below_limit(self, db, store):
        assert store.record_submission("f1", COMPLETED, 100, limit=2) is True
        assert store.record_submission("f1", COMPLETED, 100, limit=2) is True
        db.commit()
        assert store.get_aggregate("f1").completed_submissions == 2

    def test_increment_refused_at_limit(self, db, store):
        store.record_submission("f1", COMPLETED, 100, limit=2)
        store.record_submission("f1", COMPLETED, 300, limit=2)

        assert store.record_submission("f1", COMPLETED, 999, limit=2) is False
        db.commit()

        aggregate = store.get_aggregate("f1")
        assert aggregate.completed_submissions == 2
        assert aggregate.total_submissions == 2
        assert aggregate.average_completion_time_ms == 200

    def test_zero_limit_never_creates_aggregate(self, db, store):
        assert store.record_submission("f1", COMPLETED, 100, limit=0) is False
        db.commit()
        assert db.query(FormAnalytics).count() == 0

    def test_partial_ignores_limit(self, db, store):
        store.record_submission("f1", COMPLETED, 100, limit=1)
        assert store.record_submission("f1", PARTIAL, limit=1) is True
        db.commit()
        assert store.get_aggregate("f1").total_submissions == 2


class TestGetAggregate:

    def test_unknown_form_returns_zeroed_shape_without_creating_row(self, db, store):
        aggregate = store.get_aggregate("never-seen")

        assert aggregate.form_id == "never-seen"
        assert aggregate.views == 0
        assert aggregate.total_submissions == 0
        assert aggregate.average_completion_time_ms == 0
        assert db.query(FormAnalytics).count() == 0

    def test_reads_have_no_side_effects(self, db, store):
        store.record_view("f1")
        store.record_submission("f1", COMPLETED, 1200)
        db.commit()

        first = store.get_aggregate("f1")
        for _ in range(5):
            store.get_aggregate("f1")
        db.commit()

        assert store.get_aggregate("f1") == first

    def test_batched_read_includes_missing_forms(self, db, store):
        store.record_view("f1")
        db.commit()

        aggregates = store.get_aggregates(["f1", "f2"])
        assert aggregates["f1"].views == 1
        assert aggregates["f2"].views == 0


class TestTimeline:

    def test_each_counted_submission_lands_in_todays_bucket(self, db, store):
        store.record_submission("f1", PARTIAL)
        store.record_submission("f1", COMPLETED, 100)
        db.commit()

        timeline = store.get_aggregate("f1").timeline
        assert len(timeline) == 1
        day, count = timeline[0]
        assert len(day) == 10
        assert count == 2

    def test_views_and_refused_increments_leave_timeline_alone(self, db, store):
        store.record_view("f1")
        store.record_submission("f1", COMPLETED, 100, limit=1)
        store.record_submission("f1", COMPLETED, 100, limit=1)
        db.commit()

        assert db.query(SubmissionTimeline).one().count == 1


class TestRebuild:

    def test_rebuild_restores_counters_from_records(self, db, store):
        records = SubmissionRecordStore(db)
        records.save("f1", [], {}, COMPLETED, completion_time_ms=1000)
        records.save("f1", [], {}, COMPLETED, completion_time_ms=3000)
        records.save("f1", [], {}, PARTIAL)
        store.record_view("f1")
        store.record_view("f1")
        db.commit()

        aggregate = store.rebuild("f1")
        db.commit()

        assert aggregate.views == 2
        assert aggregate.total_submissions == 3
        assert aggregate.completed_submissions == 2
        assert aggregate.partial_submissions == 1
        assert aggregate.completion_rate == pytest.approx(2 / 3)
        assert aggregate.average_completion_time_ms == 2000
        assert sum(count for _, count in aggregate.timeline) == 3

    def test_rebuild_corrects_drifted_aggregate(self, db, store):
        records = SubmissionRecordStore(db)
        records.save("f1", [], {}, COMPLETED, completion_time_ms=400)
        # Counted twice, as a crashed-and-retried writer would
        store.record_submission("f1", COMPLETED, 400)
        store.record_submission("f1", COMPLETED, 400)
        db.commit()
        assert store.get_aggregate("f1").completed_submissions == 2

        store.rebuild("f1")
        db.commit()

        aggregate = store.get_aggregate("f1")
        assert aggregate.completed_submissions == 1
        assert aggregate.total_submissions == 1
        assert aggregate.timeline[0][1] == 1

    def test_rebuild_with_no_records_zeroes_submissions(self, db, store):
        store.record_view("f1")
        db.commit()

        aggregate = store.rebuild("f1")
        db.commit()

        assert aggregate.views == 1
        assert aggregate.total_submissions == 0
        assert aggregate.completion_rate == 0
        assert aggregate.timeline == []
