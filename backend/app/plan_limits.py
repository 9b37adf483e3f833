"""Per-form response quota policy."""
from dataclasses import dataclass
from typing import Optional

QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None


ALLOW = QuotaDecision(allowed=True)


class PlanLimitGuard:
    """Decides whether a form may accept another completed submission.

    The ceiling is a single value shared by every paid plan and is injected
    here rather than read from settings, so callers (and tests) choose it.
    Partial submissions are never gated; callers only consult the guard for
    completed ones.
    """

    def __init__(self, limit: int):
        self.limit = limit

    def check_quota(self, form_id: str, current_completed_count: int) -> QuotaDecision:
        """Allow iff ``current_completed_count < limit``.

        ``current_completed_count`` must come from the form's aggregate,
        read before the aggregate is mutated.
        """
        if current_completed_count < self.limit:
            return ALLOW
        return QuotaDecision(allowed=False, reason=QUOTA_EXCEEDED)
