"""Read-side analytics views for form owners."""
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from .analytics_store import AnalyticsStore, FormAggregate
from .errors import NotFound
from .forms import FormDirectory, FormInfo
from .schemas import AggregatedAnalytics, FormStats, GlobalAnalyticsResponse, TimelinePoint


def _timeline(points) -> List[TimelinePoint]:
    return [TimelinePoint(date=day, count=count) for day, count in points]


def build_form_stats(form: FormInfo, aggregate: FormAggregate) -> FormStats:
    views = aggregate.views
    completed = aggregate.completed_submissions
    return FormStats(
        form_id=form.form_id,
        title=form.title,
        short_id=form.short_id,
        views=views,
        submissions=aggregate.total_submissions,
        completed_submissions=completed,
        partial_submissions=aggregate.partial_submissions,
        completion_rate=aggregate.completion_rate,
        average_completion_time_ms=aggregate.average_completion_time_ms,
        conversion_rate=completed / views if views > 0 else 0.0,
        timeline=_timeline(aggregate.timeline),
    )


def aggregate_analytics(aggregates: List[FormAggregate]) -> AggregatedAnalytics:
    """Owner-level rollup.

    The completion rate is blended from the summed counters rather than
    averaged across forms, and the average completion time is weighted by
    each form's completed count.
    """
    views = sum(a.views for a in aggregates)
    total = sum(a.total_submissions for a in aggregates)
    completed = sum(a.completed_submissions for a in aggregates)
    partial = sum(a.partial_submissions for a in aggregates)
    total_time = sum(a.average_completion_time_ms * a.completed_submissions for a in aggregates)

    by_day: Dict[str, int] = defaultdict(int)
    for a in aggregates:
        for day, count in a.timeline:
            by_day[day] += count

    return AggregatedAnalytics(
        views=views,
        total_submissions=total,
        completed_submissions=completed,
        partial_submissions=partial,
        completion_rate=completed / total if total > 0 else 0.0,
        average_completion_time_ms=total_time / completed if completed > 0 else 0.0,
        timeline=_timeline(sorted(by_day.items())),
    )


class AnalyticsQueryService:
    """Joins aggregates with form metadata.  Performs no authorization;
    callers must have passed the access gate."""

    def __init__(
        self,
        db: Session,
        forms: Optional[FormDirectory] = None,
        analytics: Optional[AnalyticsStore] = None,
    ):
        self.forms = forms or FormDirectory(db)
        self.analytics = analytics or AnalyticsStore(db)

    def get_analytics(self, form_id: str) -> FormStats:
        form = self.forms.resolve(form_id)
        if form is None:
            raise NotFound(f"Form {form_id!r} not found")
        return build_form_stats(form, self.analytics.get_aggregate(form.form_id))

    def get_global_analytics(self, owner_id: str) -> GlobalAnalyticsResponse:
        forms = self.forms.list_owned(owner_id)
        aggregates = self.analytics.get_aggregates(f.form_id for f in forms)

        forms_with_stats = sorted(
            (build_form_stats(f, aggregates[f.form_id]) for f in forms),
            key=lambda s: s.completed_submissions,
            reverse=True,
        )

        return GlobalAnalyticsResponse(
            owner_id=owner_id,
            total_forms=len(forms),
            aggregated=aggregate_analytics(list(aggregates.values())),
            forms_with_stats=forms_with_stats,
        )
