"""Follow-up scheduling, overdue math and archive routing for repair orders."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Tuple

from .models import DashboardStats, RepairOrder

LOGGER = logging.getLogger(__name__)

NET_TERMS_PATTERN = re.compile(r"net[\s-]*(\d+)", re.IGNORECASE)
SECONDS_PER_DAY = 24 * 60 * 60

# Follow-up interval in days per status; None means no follow-up.
FOLLOW_UP_DAYS = {
    "TO SEND": 3,
    "WAITING QUOTE": 14,
    "APPROVED": 7,
    "BEING REPAIRED": 10,
    "CURRENTLY BEING SHIPPED": 5,
    "RECEIVED": 3,
    "SHIPPING": 3,
    "PAYMENT SENT": None,
    "BER": None,
}
DEFAULT_FOLLOW_UP_DAYS = 7
PAID_STATUSES = ("PAID", "PAID >>>>")


@dataclass(frozen=True)
class ArchiveSheet:
    sheet_name: str
    table_name: str
    description: str


ARCHIVE_PAID = ArchiveSheet("Paid", "Approved_Paid", "Paid ROs that have been received")
ARCHIVE_NET = ArchiveSheet("NET", "Approved_Net", "NET ROs that have been received")
ARCHIVE_RETURNS = ArchiveSheet(
    "Returns", "Approved_Cancel", "Cancelled/BER/RAI ROs that have been received"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _as_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def is_terminal_status(status: str) -> bool:
    upper = (status or "").upper()
    return "PAID" in upper or "SHIPPING" in upper


def extract_net_days(terms: Optional[str]) -> Optional[int]:
    """``"NET 30"``, ``"net30"``, ``"Net-45"`` -> the day count."""

    if not terms:
        return None
    match = NET_TERMS_PATTERN.search(terms)
    if not match:
        return None
    days = int(match.group(1))
    return days if days > 0 else None


def _paid_follow_up(terms: Optional[str]) -> Optional[int]:
    if not terms:
        return None
    upper = terms.upper().strip()
    if "NET" in upper:
        match = re.search(r"NET\s*(\d+)", upper)
        if match:
            return int(match.group(1))
    if "COD" in upper or "PREPAID" in upper or "C.O.D." in upper:
        return None
    if "WIRE" in upper or "XFER" in upper:
        return 3
    if "CREDIT CARD" in upper:
        return None
    LOGGER.debug("PAID with unrecognised terms %r; defaulting to 30 days", terms)
    return 30


def calculate_next_update_date(
    status: str, status_date: datetime, payment_terms: Optional[str] = None
) -> Optional[datetime]:
    """Date of the next follow-up for ``status``, counted from the start of ``status_date``."""

    normalized = (status or "").upper().strip()
    base = _start_of_day(status_date)

    if normalized in PAID_STATUSES:
        days = _paid_follow_up(payment_terms)
    else:
        days = FOLLOW_UP_DAYS.get(normalized, DEFAULT_FOLLOW_UP_DAYS)

    if days is None:
        return None
    return base + timedelta(days=days)


def compute_overdue(
    next_update: Optional[datetime], now: Optional[datetime] = None
) -> Tuple[int, bool]:
    """Return ``(days_overdue, is_overdue)``; partial days round up."""

    if next_update is None:
        return 0, False
    now = now or _utcnow()
    elapsed = (now - next_update).total_seconds()
    if elapsed <= 0:
        return 0, False
    return math.ceil(elapsed / SECONDS_PER_DAY), True


def days_in_status(status_date: datetime, now: Optional[datetime] = None) -> int:
    now = now or _utcnow()
    return max(0, (_as_date(now) - _as_date(status_date)).days)


def is_due_today(next_update: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if next_update is None:
        return False
    now = now or _utcnow()
    return _as_date(next_update) == _as_date(now)


def is_due_within_days(
    next_update: Optional[datetime], days: int, now: Optional[datetime] = None
) -> bool:
    if next_update is None:
        return False
    now = now or _utcnow()
    remaining = (_as_date(next_update) - _as_date(now)).days
    return 0 <= remaining <= days


def is_on_track(next_update: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """More than three days of slack, or nothing left to follow up."""

    if next_update is None:
        return True
    now = now or _utcnow()
    return (_as_date(next_update) - _as_date(now)).days > 3


def archive_sheet_for_status(status: str) -> Optional[ArchiveSheet]:
    upper = (status or "").upper()
    if "PAID" in upper:
        return ARCHIVE_PAID
    if "NET" in upper:
        return ARCHIVE_NET
    if upper in ("BER", "RAI") or "CANCEL" in upper:
        return ARCHIVE_RETURNS
    return None


def add_business_days(start: datetime, days: int) -> datetime:
    result = start
    added = 0
    while added < days:
        result += timedelta(days=1)
        if result.weekday() < 5:
            added += 1
    return result


def dashboard_stats(
    repair_orders: Iterable[RepairOrder], now: Optional[datetime] = None
) -> DashboardStats:
    now = now or _utcnow()
    stats = DashboardStats()
    for ro in repair_orders:
        status = ro.current_status
        if status not in ("PAID >>>>", "BER"):
            stats.total_active += 1
        if ro.is_overdue:
            stats.overdue += 1
            if ro.days_overdue > 30:
                stats.overdue_30_plus += 1
        if "WAITING QUOTE" in status:
            stats.waiting_quote += 1
        if "APPROVED" in status:
            stats.approved += 1
        if "BEING REPAIRED" in status:
            stats.being_repaired += 1
        if "SHIPPING" in status:
            stats.shipping += 1
        stats.total_final_value += ro.final_cost or 0
        stats.total_estimated_value += ro.estimated_cost or 0
        if is_due_today(ro.next_date_to_update, now):
            stats.due_today += 1
        if not ro.is_overdue and is_on_track(ro.next_date_to_update, now):
            stats.on_track += 1
    stats.total_value = stats.total_final_value
    return stats
