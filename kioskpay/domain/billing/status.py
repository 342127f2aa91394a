"""
Subscription status reconciliation

Maps provider statuses onto the local status enum and decides whether a kiosk
may keep taking donations. A subscription the merchant has canceled stays
usable until the end of the period already paid for.
"""

import math
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ...utils import from_unix_timestamp, isoformat, parse_datetime, utcnow


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"
    DEACTIVATED = "deactivated"
    PENDING = "pending"


SQUARE_STATUS_MAP = {
    "ACTIVE": SubscriptionStatus.ACTIVE,
    "CANCELED": SubscriptionStatus.CANCELED,
    "DEACTIVATED": SubscriptionStatus.DEACTIVATED,
    "PAUSED": SubscriptionStatus.PAUSED,
    "PENDING": SubscriptionStatus.PENDING,
}

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAUSED,
    "unpaid": SubscriptionStatus.DEACTIVATED,
    "incomplete_expired": SubscriptionStatus.DEACTIVATED,
    "incomplete": SubscriptionStatus.PENDING,
}

# (analysis, can_use_kiosk) per status once cancellation has been ruled out
STATUS_OUTCOMES = {
    SubscriptionStatus.ACTIVE: ("fully_active", True),
    SubscriptionStatus.TRIALING: ("trial_active", True),
    SubscriptionStatus.PAST_DUE: ("payment_past_due", True),
    SubscriptionStatus.PAUSED: ("subscription_paused", False),
    SubscriptionStatus.DEACTIVATED: ("subscription_deactivated", False),
    SubscriptionStatus.PENDING: ("payment_pending", False),
}


def map_square_status(status: Optional[str]) -> SubscriptionStatus:
    return SQUARE_STATUS_MAP.get((status or "").upper(), SubscriptionStatus.PENDING)


def map_stripe_status(status: Optional[str]) -> SubscriptionStatus:
    return STRIPE_STATUS_MAP.get((status or "").lower(), SubscriptionStatus.PENDING)


def local_status(status: Optional[str]) -> SubscriptionStatus:
    """Status stored on a local row, tolerant of legacy values"""
    try:
        return SubscriptionStatus(status)
    except ValueError:
        return SubscriptionStatus.PENDING


def detect_square_pending_cancellation(remote: Optional[dict]) -> tuple[bool, Optional[datetime]]:
    """
    Square keeps a canceled subscription ACTIVE until the paid-through date and
    only sets canceled_date. Returns (pending, service_ends_at).
    """
    if not remote or remote.get("status") != "ACTIVE" or not remote.get("canceled_date"):
        return False, None
    ends_at = parse_datetime(remote.get("charged_through_date")) or parse_datetime(remote.get("canceled_date"))
    return True, ends_at


def _stripe_time(value) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return from_unix_timestamp(value)
    return parse_datetime(value)


def detect_stripe_pending_cancellation(remote: Optional[dict]) -> tuple[bool, Optional[datetime]]:
    """Stripe marks a scheduled cancellation with cancel_at_period_end or cancel_at"""
    if not remote or remote.get("status") not in ("active", "trialing"):
        return False, None
    if not remote.get("cancel_at_period_end") and not remote.get("cancel_at"):
        return False, None
    ends_at = _stripe_time(remote.get("cancel_at")) or _stripe_time(remote.get("current_period_end"))
    return True, ends_at


@dataclass
class SubscriptionAnalysis:
    status: str
    analysis: str
    can_use_kiosk: bool
    service_ends_at: Optional[datetime] = None
    days_remaining: Optional[int] = None
    grace_message: Optional[dict] = None
    pending_cancellation: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["service_ends_at"] = isoformat(self.service_ends_at)
        return data


def days_until(end: Optional[datetime], now: datetime) -> Optional[int]:
    if end is None:
        return None
    return math.ceil((end - now).total_seconds() / 86400)


def grace_message(days_remaining: Optional[int], end: Optional[datetime]) -> Optional[dict]:
    """Banner shown on the kiosk while a canceled subscription runs out"""
    if end is None or days_remaining is None:
        return None

    end_label = end.strftime("%A, %B %d, %Y")
    if days_remaining <= 0:
        return {
            "message": "Your subscription has expired. Resubscribe now to restore access to your donation kiosk.",
            "urgency_level": "critical",
        }
    if days_remaining <= 3:
        plural = "" if days_remaining == 1 else "s"
        return {
            "message": (
                f"Your cancelled subscription ends in {days_remaining} day{plural}. "
                "Reactivate now to avoid service interruption."
            ),
            "urgency_level": "critical",
        }
    if days_remaining <= 7:
        return {
            "message": (
                f"Your cancelled subscription ends in {days_remaining} days on {end_label}. "
                "Reactivate to continue your service."
            ),
            "urgency_level": "warning",
        }
    return {
        "message": (
            f"Your subscription was cancelled and will end on {end_label}. "
            "You can reactivate anytime before then."
        ),
        "urgency_level": "warning",
    }


def classify(
    status: SubscriptionStatus,
    pending_cancellation: bool,
    service_ends_at: Optional[datetime],
    now: datetime,
) -> SubscriptionAnalysis:
    """Apply the kiosk-access rules to an already reconciled status"""
    days_remaining = days_until(service_ends_at, now)
    expired = service_ends_at is not None and now > service_ends_at

    if status == SubscriptionStatus.CANCELED or pending_cancellation:
        if service_ends_at is None:
            analysis, usable = "canceled_immediate", False
        elif expired:
            analysis, usable = "subscription_expired", False
        elif pending_cancellation:
            analysis, usable = "pending_cancellation", True
        else:
            analysis, usable = "canceled_but_active", True
        return SubscriptionAnalysis(
            status=status.value,
            analysis=analysis,
            can_use_kiosk=usable,
            service_ends_at=service_ends_at,
            days_remaining=days_remaining,
            grace_message=grace_message(days_remaining, service_ends_at) if usable else None,
            pending_cancellation=pending_cancellation,
        )

    analysis, usable = STATUS_OUTCOMES[status]
    return SubscriptionAnalysis(
        status=status.value,
        analysis=analysis,
        can_use_kiosk=usable,
        service_ends_at=service_ends_at,
        days_remaining=days_remaining,
    )


def analyze_free_subscription(local, now: datetime) -> SubscriptionAnalysis:
    trial_end = local.trial_end_date
    if local.status == SubscriptionStatus.ACTIVE.value and (trial_end is None or trial_end > now):
        return SubscriptionAnalysis(
            status=local.status,
            analysis="free_active",
            can_use_kiosk=True,
            service_ends_at=trial_end,
            days_remaining=days_until(trial_end, now),
        )
    return SubscriptionAnalysis(
        status=local.status,
        analysis="free_expired",
        can_use_kiosk=False,
        service_ends_at=trial_end or local.canceled_at,
        grace_message={
            "message": "Your free subscription has ended. Upgrade to a paid plan to continue using the kiosk.",
            "urgency_level": "warning",
        },
    )


def analyze_subscription(local, remote: Optional[dict] = None, now: Optional[datetime] = None) -> SubscriptionAnalysis:
    """
    Reconcile a local Square subscription row with the remote Square object.

    When remote is None (Square unreachable) the local row is analyzed alone.
    """
    now = now or utcnow()
    if local.is_free:
        return analyze_free_subscription(local, now)

    status = map_square_status(remote.get("status")) if remote else local_status(local.status)
    pending, _ = detect_square_pending_cancellation(remote)
    if not remote and status == SubscriptionStatus.ACTIVE and local.canceled_at is not None:
        pending = True

    remote = remote or {}
    service_ends_at = (
        parse_datetime(remote.get("charged_through_date"))
        or parse_datetime(remote.get("canceled_date"))
        or local.current_period_end
        or local.canceled_at
    )
    return classify(status, pending, service_ends_at, now)


def analyze_stripe_subscription(row, now: Optional[datetime] = None) -> SubscriptionAnalysis:
    """Kiosk access for a locally stored Stripe subscription row"""
    now = now or utcnow()
    status = map_stripe_status(row.status)
    pending = status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING) and bool(
        row.cancel_at_period_end or row.cancel_at
    )
    if status == SubscriptionStatus.TRIALING and not pending:
        service_ends_at = row.trial_end or row.current_period_end
    else:
        service_ends_at = row.cancel_at or row.current_period_end or row.canceled_at
    return classify(status, pending, service_ends_at, now)
