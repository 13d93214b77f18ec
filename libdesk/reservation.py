from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, List, Optional

PENDING = "pending"
APPROVED = "approved"
ISSUED = "issued"
OVERDUE = "overdue"
RETURNED = "returned"
CANCELLED = "cancelled"
EXPIRED = "expired"

RESERVATION_STATUSES = (PENDING, APPROVED, ISSUED, OVERDUE, RETURNED, CANCELLED, EXPIRED)

# Allowed moves of the reservation state machine.
TRANSITIONS: Dict[str, tuple] = {
    PENDING: (APPROVED, CANCELLED),
    APPROVED: (ISSUED, CANCELLED, EXPIRED),
    ISSUED: (RETURNED, OVERDUE),
    OVERDUE: (RETURNED,),
    RETURNED: (),
    CANCELLED: (),
    EXPIRED: (),
}

# Overdue stays active: the copy is still out and counts toward the reader's limit.
STATUS_GROUPS: Dict[str, tuple] = {
    "active": (PENDING, APPROVED, ISSUED, OVERDUE),
    "returned": (RETURNED,),
    "cancelled": (CANCELLED, EXPIRED),
}

# Reservations in these states let the reader see where the book stands.
SHELF_ACCESS_STATUSES = (APPROVED, ISSUED, OVERDUE)

# Statuses that keep a physical copy away from the shelf.
HOLDING_STATUSES = (APPROVED, ISSUED, OVERDUE)

FINE_TYPES = ("Overdue", "Damage", "Lost", "Other")


class Reservation:
    def __init__(self, user_id: str, book_id: str, reservation_date: str, expiration_date: str,
                 id: str | None = None, book_instance_id: str | None = None,
                 actual_return_date: str | None = None, status: str = PENDING, notes: str | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.user_id = user_id
        self.book_id = book_id
        self.book_instance_id = book_instance_id
        self.reservation_date = reservation_date
        self.expiration_date = expiration_date
        self.actual_return_date = actual_return_date
        self.status = status
        self.notes = notes
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def is_active(self) -> bool:
        return self.status in STATUS_GROUPS["active"]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "book_instance_id": self.book_instance_id,
            "reservation_date": self.reservation_date,
            "expiration_date": self.expiration_date,
            "actual_return_date": self.actual_return_date,
            "status": self.status,
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Reservation":
        return Reservation(
            id=data.get("id"),
            user_id=data["user_id"],
            book_id=data["book_id"],
            book_instance_id=data.get("book_instance_id"),
            reservation_date=data["reservation_date"],
            expiration_date=data["expiration_date"],
            actual_return_date=data.get("actual_return_date"),
            status=data.get("status") or PENDING,
            notes=data.get("notes"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class Fine:
    def __init__(self, user_id: str, amount: float, reason: str, id: str | None = None,
                 reservation_id: str | None = None, fine_type: str = "Other", notes: str | None = None,
                 overdue_days: int | None = None, is_paid: bool = False, paid_at: str | None = None,
                 created_at: str | None = None) -> None:
        self.id = id
        self.user_id = user_id
        self.reservation_id = reservation_id
        self.amount = float(amount)
        self.reason = reason
        self.fine_type = fine_type
        self.notes = notes
        self.overdue_days = overdue_days
        self.is_paid = bool(is_paid)
        self.paid_at = paid_at
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "reservation_id": self.reservation_id,
            "amount": self.amount,
            "reason": self.reason,
            "fine_type": self.fine_type,
            "notes": self.notes,
            "overdue_days": self.overdue_days,
            "is_paid": self.is_paid,
            "paid_at": self.paid_at,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Fine":
        return Fine(
            id=data.get("id"),
            user_id=data["user_id"],
            reservation_id=data.get("reservation_id"),
            amount=data["amount"],
            reason=data["reason"],
            fine_type=data.get("fine_type") or "Other",
            notes=data.get("notes"),
            overdue_days=data.get("overdue_days"),
            is_paid=bool(data.get("is_paid", False)),
            paid_at=data.get("paid_at"),
            created_at=data.get("created_at"),
        )


# ------------------------- Status helpers ------------------------- #
def parse_datetime(value: str) -> datetime:
    """Parse the ISO timestamps stored in the database (date-only values too).

    Values with a UTC offset are converted to naive local time.
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    if " " in value and "T" not in value:
        value = value.replace(" ", "T", 1)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def get_status_info(status: str) -> dict:
    """Display group and shelf access for a reservation status."""
    s = (status or "").lower()
    if s in STATUS_GROUPS["active"]:
        return {"group": "active", "label": "Active", "color": "green",
                "allows_shelf_access": s in SHELF_ACCESS_STATUSES}
    if s in STATUS_GROUPS["returned"]:
        return {"group": "returned", "label": "Returned", "color": "blue", "allows_shelf_access": False}
    if s in STATUS_GROUPS["cancelled"]:
        return {"group": "cancelled", "label": "Cancelled", "color": "red", "allows_shelf_access": False}
    return {"group": "unknown", "label": "Unknown", "color": "gray", "allows_shelf_access": False}


def group_by_status(reservations: List[Reservation]) -> Dict[str, List[Reservation]]:
    grouped: Dict[str, List[Reservation]] = {"active": [], "returned": [], "cancelled": []}
    for reservation in reservations:
        group = get_status_info(reservation.status)["group"]
        if group != "unknown":
            grouped[group].append(reservation)
    return grouped


def days_until(expiration_date: str, now: Optional[datetime] = None) -> int:
    """Whole days left until expiration, rounded up like the reader UI shows it."""
    now = now or datetime.now()
    delta = parse_datetime(expiration_date) - now
    return math.ceil(delta.total_seconds() / 86400)


def is_expiring_soon(expiration_date: str, days_threshold: int = 3, now: Optional[datetime] = None) -> bool:
    diff_days = days_until(expiration_date, now)
    return 0 < diff_days <= days_threshold


def overdue_days(expiration_date: str, now: Optional[datetime] = None) -> int:
    """Days past expiration, 0 when not late."""
    return max(0, -days_until(expiration_date, now))
