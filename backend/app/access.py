"""Owner access tokens and the analytics access gate."""
import enum
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from .settings import ACCESS_TOKEN_SALT


class AccessVerdict(str, enum.Enum):
    ALLOWED = "allowed"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"


@dataclass(frozen=True)
class SessionUser:
    """The authenticated owner behind a request, with subscription state."""
    owner_id: str
    subscription_tier: Optional[str] = None
    subscription_status: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[str] = None


def compute_access_token(owner_id: str) -> str:
    """Compute an owner's access token.

    Returns: sha256(owner_id + ACCESS_TOKEN_SALT)[:24]
    """
    hash_input = f"{owner_id}{ACCESS_TOKEN_SALT}".encode('utf-8')
    hash_digest = hashlib.sha256(hash_input).hexdigest()
    return hash_digest[:24]


def resolve_token_to_user(token: Optional[str], db: Session) -> Optional[SessionUser]:
    """Resolve an access token to the registered owner it was issued for.

    Computes the expected token for every registered owner and returns the
    matching owner's SessionUser, or None.
    """
    from .models import OwnerAccount

    if not token:
        return None

    for account in db.query(OwnerAccount).all():
        if compute_access_token(account.owner_id) == token:
            return SessionUser(
                owner_id=account.owner_id,
                subscription_tier=account.subscription_tier,
                subscription_status=account.subscription_status,
                cancel_at_period_end=bool(account.cancel_at_period_end),
                current_period_end=account.current_period_end,
            )
    return None


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def has_active_pro_access(user: SessionUser, now: Optional[datetime] = None) -> bool:
    """Whether the user may use paid features right now.

    - no "pro" tier -> no access
    - active and not cancelling -> access
    - trialing -> access
    - cancelling -> access until current_period_end
    - past_due -> access while payment is retried
    """
    if user.subscription_tier != "pro":
        return False

    if user.subscription_status == "active" and not user.cancel_at_period_end:
        return True

    if user.subscription_status == "trialing":
        return True

    if user.cancel_at_period_end and user.current_period_end:
        now = now or datetime.now(timezone.utc)
        return now < _parse_ts(user.current_period_end)

    if user.subscription_status == "past_due":
        return True

    return False


def authorize(
    owner_id: str,
    session_user: Optional[SessionUser],
    now: Optional[datetime] = None,
) -> AccessVerdict:
    """Ownership check followed by the active-subscription check."""
    if session_user is None:
        return AccessVerdict.UNAUTHORIZED
    if session_user.owner_id != owner_id:
        return AccessVerdict.FORBIDDEN
    if not has_active_pro_access(session_user, now):
        return AccessVerdict.SUBSCRIPTION_INACTIVE
    return AccessVerdict.ALLOWED
