"""
Donation status state machine.

This module is the only place that decides whether a status change is legal.
Services ask ``next_status`` for the target status and then apply it with a
guarded update (see DonationRepository.compare_and_set).
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from donation_service.core.errors import StateError
from donation_service.models.donation import Donation, DonationStatus


class DonationEvent(str, Enum):
    GATEWAY_SUCCESS = "gateway_success"
    GATEWAY_FAILURE = "gateway_failure"
    RETRY = "retry"
    ADMIN_EXPIRE = "admin_expire"


TRANSITIONS = {
    (DonationStatus.PENDING, DonationEvent.GATEWAY_SUCCESS): DonationStatus.COMPLETED,
    (DonationStatus.FAILED, DonationEvent.GATEWAY_SUCCESS): DonationStatus.COMPLETED,
    (DonationStatus.PENDING, DonationEvent.GATEWAY_FAILURE): DonationStatus.FAILED,
    (DonationStatus.PENDING, DonationEvent.RETRY): DonationStatus.PENDING,
    (DonationStatus.FAILED, DonationEvent.RETRY): DonationStatus.PENDING,
    (DonationStatus.PENDING, DonationEvent.ADMIN_EXPIRE): DonationStatus.EXPIRED,
    (DonationStatus.FAILED, DonationEvent.ADMIN_EXPIRE): DonationStatus.EXPIRED,
}

TERMINAL_STATUSES = frozenset({
    DonationStatus.COMPLETED,
    DonationStatus.EXPIRED,
    DonationStatus.REFUNDED,
})


def can_apply(current: DonationStatus, event: DonationEvent) -> bool:
    return (current, event) in TRANSITIONS


def next_status(current: DonationStatus, event: DonationEvent) -> DonationStatus:
    """Return the status ``event`` leads to from ``current`` or raise StateError"""
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise StateError(
            f"Cannot apply {event.value} to a donation in status {current.value}",
            details={"status": current.value, "event": event.value}
        )


def is_terminal(status: DonationStatus) -> bool:
    return status in TERMINAL_STATUSES


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_stale(donation: Donation, now: Optional[datetime] = None, stale_after: timedelta = timedelta(hours=24)) -> bool:
    """A donation is stale when it is still pending more than ``stale_after`` after creation"""
    if donation.payment_status != DonationStatus.PENDING or donation.created_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return _as_utc(now) - _as_utc(donation.created_at) > stale_after
