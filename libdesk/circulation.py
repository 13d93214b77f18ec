import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from libdesk.config import settings
from libdesk.database import get_db_connection, initialize_database, timestamp
from libdesk.library import Library
from libdesk.notifications import Notification, NotificationCenter
from libdesk.reservation import (
    APPROVED, CANCELLED, EXPIRED, FINE_TYPES, HOLDING_STATUSES, ISSUED, OVERDUE, PENDING,
    RESERVATION_STATUSES, RETURNED, SHELF_ACCESS_STATUSES, STATUS_GROUPS, TRANSITIONS,
    Fine, Reservation, get_status_info, group_by_status, is_expiring_soon, parse_datetime,
)
from libdesk.reservation import overdue_days as days_overdue

logger = logging.getLogger(__name__)

ACTIVE = STATUS_GROUPS["active"]


def _in(values) -> str:
    return ",".join("?" * len(values))


def _normalize_date(value: Optional[str], default: datetime) -> str:
    if not value:
        return default.isoformat(timespec="seconds")
    try:
        return parse_datetime(value).isoformat(timespec="seconds")
    except ValueError as e:
        raise ValueError(f"Invalid date: {value}") from e


class Circulation:
    """Reservations, the wait list and fines.

    Notifications created along the way are collected in ``pending_notifications``
    so the caller can push them to connected readers.
    """

    # reader helpers
    group_by_status = staticmethod(group_by_status)
    is_expiring_soon = staticmethod(is_expiring_soon)
    get_status_info = staticmethod(get_status_info)

    def __init__(self, db_file: Optional[str] = None, library: Optional[Library] = None,
                 notifications: Optional[NotificationCenter] = None) -> None:
        self.db_file = db_file
        initialize_database(db_file)
        self.library = library or Library(db_file)
        self.notifications = notifications or NotificationCenter(db_file)
        self.pending_notifications: List[Notification] = []

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    def _notify(self, user_id: str, title: str, message: str, type: str, priority: str = "Normal",
                book_id: Optional[str] = None, reservation_id: Optional[str] = None) -> None:
        self.pending_notifications.append(
            self.notifications.send(user_id, title, message, type=type, priority=priority,
                                    book_id=book_id, reservation_id=reservation_id)
        )

    def drain_notifications(self) -> List[Notification]:
        drained, self.pending_notifications = self.pending_notifications, []
        return drained

    def _user_row(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise LookupError(f"User {user_id} not found.")
        return row

    # ------------------------- Reservations ------------------------- #
    def create_reservation(self, user_id: str, book_id: str, reservation_date: Optional[str] = None,
                           expiration_date: Optional[str] = None, notes: Optional[str] = None) -> Reservation:
        book = self.library.get_book(book_id)
        if not book:
            raise LookupError(f"Book {book_id} not found.")
        conn = self._connect()
        try:
            user = self._user_row(conn, user_id)
            if not user["is_active"]:
                raise ValueError("Account is blocked.")
            duplicate = conn.execute(
                f"SELECT 1 FROM reservations WHERE user_id = ? AND book_id = ? AND status IN ({_in(ACTIVE)})",
                (user_id, book_id, *ACTIVE),
            ).fetchone()
            if duplicate:
                raise ValueError("You already have an active reservation for this book.")
            active = conn.execute(
                f"SELECT COUNT(*) FROM reservations WHERE user_id = ? AND status IN ({_in(ACTIVE)})",
                (user_id, *ACTIVE),
            ).fetchone()[0]
            if active >= user["max_books_allowed"]:
                raise ValueError(f"Limit of {user['max_books_allowed']} active reservations reached.")

            start = _normalize_date(reservation_date, datetime.now())
            end = _normalize_date(
                expiration_date, parse_datetime(start) + timedelta(days=user["loan_period_days"])
            )
            if parse_datetime(end) <= parse_datetime(start):
                raise ValueError("Expiration date must be after the reservation date.")

            reservation = Reservation(
                id=str(uuid.uuid4()), user_id=user_id, book_id=book_id, reservation_date=start,
                expiration_date=end, status=PENDING, notes=notes, created_at=timestamp(),
            )
            conn.execute(
                """INSERT INTO reservations (id, user_id, book_id, reservation_date, expiration_date,
                       status, notes, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (reservation.id, user_id, book_id, start, end, PENDING, notes, reservation.created_at),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Reservation %s created for book %s by %s", reservation.id, book_id, user_id)
        self._notify(user_id, "Book reserved", f"Your reservation of \"{book.title}\" is being processed.",
                     "BookReserved", book_id=book_id, reservation_id=reservation.id)
        return reservation

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM reservations WHERE id = ?", (reservation_id,)).fetchone()
            return Reservation.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def _require_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.get_reservation(reservation_id)
        if not reservation:
            raise LookupError(f"Reservation {reservation_id} not found.")
        return reservation

    def _save(self, reservation: Reservation) -> None:
        reservation.updated_at = timestamp()
        conn = self._connect()
        try:
            conn.execute(
                """UPDATE reservations SET book_instance_id = ?, reservation_date = ?, expiration_date = ?,
                       actual_return_date = ?, status = ?, notes = ?, updated_at = ? WHERE id = ?""",
                (reservation.book_instance_id, reservation.reservation_date, reservation.expiration_date,
                 reservation.actual_return_date, reservation.status, reservation.notes,
                 reservation.updated_at, reservation.id),
            )
            conn.commit()
        finally:
            conn.close()

    def _set_instance_status(self, instance_id: Optional[str], status: str) -> None:
        if instance_id and self.library.get_instance(instance_id):
            self.library.update_instance_status(instance_id, status)

    def _book_title(self, book_id: str) -> str:
        book = self.library.get_book(book_id)
        return book.title if book else book_id

    def change_status(self, reservation_id: str, status: str) -> Reservation:
        """Move a reservation through its state machine and apply the side effects."""
        reservation = self._require_reservation(reservation_id)
        if status not in RESERVATION_STATUSES:
            raise ValueError(f"Unknown reservation status: {status}")
        if status not in TRANSITIONS[reservation.status]:
            raise ValueError(f"Cannot change status from {reservation.status} to {status}.")
        previous = reservation.status

        if status == APPROVED:
            instance = self.library.get_best_available_instance(reservation.book_id)
            if not instance:
                raise ValueError("No available copy of this book.")
            self.library.update_instance_status(instance.id, "reserved")
            reservation.book_instance_id = instance.id
        elif status == ISSUED:
            self._set_instance_status(reservation.book_instance_id, "borrowed")
            conn = self._connect()
            try:
                loan_days = self._user_row(conn, reservation.user_id)["loan_period_days"]
            finally:
                conn.close()
            reservation.expiration_date = (datetime.now() + timedelta(days=loan_days)).isoformat(timespec="seconds")
        elif status == RETURNED:
            self._set_instance_status(reservation.book_instance_id, "available")
            reservation.actual_return_date = timestamp()
        elif status in (CANCELLED, EXPIRED):
            self._set_instance_status(reservation.book_instance_id, "available")

        reservation.status = status
        self._save(reservation)
        logger.info("Reservation %s: %s -> %s", reservation_id, previous, status)

        if status == RETURNED:
            self._after_return(reservation)
        elif status == EXPIRED:
            self._notify(reservation.user_id, "Reservation expired",
                         f"Your reservation of \"{self._book_title(reservation.book_id)}\" has expired.",
                         "ReservationExpired", book_id=reservation.book_id, reservation_id=reservation.id)
        return reservation

    def _after_return(self, reservation: Reservation) -> None:
        title = self._book_title(reservation.book_id)
        days = days_overdue(reservation.expiration_date, parse_datetime(reservation.actual_return_date))
        if days > 0 and settings.auto_overdue_fines:
            self.create_fine(reservation.user_id, fine_type="Overdue", reservation_id=reservation.id,
                             overdue_days=days, reason=f"Late return of \"{title}\" ({days} day(s))")
        self._notify(reservation.user_id, "Book returned", f"Thank you for returning \"{title}\".",
                     "BookReturned", book_id=reservation.book_id, reservation_id=reservation.id)

        conn = self._connect()
        try:
            entry = conn.execute(
                "SELECT * FROM queue_entries WHERE book_id = ? AND status = 'waiting' ORDER BY created_at, id LIMIT 1",
                (reservation.book_id,),
            ).fetchone()
            if entry:
                conn.execute("UPDATE queue_entries SET status = 'notified', notified_at = ? WHERE id = ?",
                             (timestamp(), entry["id"]))
                conn.commit()
        finally:
            conn.close()
        if entry:
            self._notify(entry["user_id"], "Book available", f"\"{title}\" is back on the shelf.",
                         "NewBookAvailable", priority="High", book_id=reservation.book_id)

    def update_reservation(self, reservation_id: str, notes: Optional[str] = None,
                           reservation_date: Optional[str] = None, expiration_date: Optional[str] = None,
                           status: Optional[str] = None) -> Reservation:
        reservation = self._require_reservation(reservation_id)
        start = _normalize_date(reservation_date, datetime.now()) if reservation_date else None
        end = _normalize_date(expiration_date, datetime.now()) if expiration_date else None
        if start or end:
            new_start = parse_datetime(start or reservation.reservation_date)
            if parse_datetime(end or reservation.expiration_date) <= new_start:
                raise ValueError("Expiration date must be after the reservation date.")

        if status and status != reservation.status:
            reservation = self.change_status(reservation_id, status)
        if notes is None and start is None and end is None:
            return reservation
        if notes is not None:
            reservation.notes = notes
        if start:
            reservation.reservation_date = start
        if end:
            reservation.expiration_date = end
        if parse_datetime(reservation.expiration_date) <= parse_datetime(reservation.reservation_date):
            raise ValueError("Expiration date must be after the reservation date.")
        self._save(reservation)
        return reservation

    def delete_reservation(self, reservation_id: str) -> bool:
        reservation = self.get_reservation(reservation_id)
        if not reservation:
            return False
        if reservation.status in HOLDING_STATUSES:
            self._set_instance_status(reservation.book_instance_id, "available")
        conn = self._connect()
        try:
            conn.execute("DELETE FROM reservations WHERE id = ?", (reservation_id,))
            conn.commit()
        finally:
            conn.close()
        return True

    def _filters(self, status, user_id, book_id, q):
        clauses, params = [], []
        if status:
            clauses.append("r.status = ?")
            params.append(status)
        if user_id:
            clauses.append("r.user_id = ?")
            params.append(user_id)
        if book_id:
            clauses.append("r.book_id = ?")
            params.append(book_id)
        if q:
            like = f"%{q.strip()}%"
            clauses.append("(b.title LIKE ? OR u.full_name LIKE ? OR u.email LIKE ? OR r.notes LIKE ?)")
            params.extend([like] * 4)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    _JOINS = "FROM reservations r JOIN books b ON b.id = r.book_id JOIN users u ON u.id = r.user_id"

    def list_reservations(self, status: Optional[str] = None, user_id: Optional[str] = None,
                          book_id: Optional[str] = None, q: Optional[str] = None,
                          limit: Optional[int] = None, offset: int = 0) -> List[Reservation]:
        where, params = self._filters(status, user_id, book_id, q)
        sql = f"SELECT r.* {self._JOINS} {where} ORDER BY r.reservation_date DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        conn = self._connect()
        try:
            return [Reservation.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def count_reservations(self, status: Optional[str] = None, user_id: Optional[str] = None,
                           book_id: Optional[str] = None, q: Optional[str] = None) -> int:
        where, params = self._filters(status, user_id, book_id, q)
        conn = self._connect()
        try:
            return conn.execute(f"SELECT COUNT(*) {self._JOINS} {where}", params).fetchone()[0]
        finally:
            conn.close()

    def search_reservations(self, q: str) -> List[Reservation]:
        if not q or not q.strip():
            return []
        return self.list_reservations(q=q)

    def reservations_for_user(self, user_id: str, active_only: bool = False,
                              overdue_only: bool = False) -> List[Reservation]:
        reservations = self.list_reservations(user_id=user_id)
        if overdue_only:
            return [r for r in reservations if r.status == OVERDUE]
        if active_only:
            return [r for r in reservations if r.is_active]
        return reservations

    def get_reservation_dates(self, book_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Occupied date ranges of active reservations, for the calendar view."""
        sql = f"SELECT id, book_id, user_id, reservation_date, expiration_date, status FROM reservations WHERE status IN ({_in(ACTIVE)})"
        params: list = list(ACTIVE)
        if book_id:
            sql += " AND book_id = ?"
            params.append(book_id)
        conn = self._connect()
        try:
            rows = conn.execute(sql + " ORDER BY reservation_date", params).fetchall()
        finally:
            conn.close()
        return [
            {"reservation_id": row["id"], "book_id": row["book_id"], "user_id": row["user_id"],
             "start": row["reservation_date"], "end": row["expiration_date"], "status": row["status"]}
            for row in rows
        ]

    def get_overdue_reservations(self) -> List[Reservation]:
        now = datetime.now()
        return [
            r for r in self.list_reservations()
            if r.status == OVERDUE or (r.status == ISSUED and parse_datetime(r.expiration_date) < now)
        ]

    def bulk_update_reservations(self, reservation_ids: List[str], status: str) -> List[Dict[str, Any]]:
        results = []
        for reservation_id in reservation_ids:
            try:
                self.change_status(reservation_id, status)
                results.append({"id": reservation_id, "success": True})
            except (ValueError, LookupError) as e:
                results.append({"id": reservation_id, "success": False, "error": str(e)})
        return results

    def get_reservation_statistics(self) -> Dict[str, Any]:
        conn = self._connect()
        try:
            by_status = {status: 0 for status in RESERVATION_STATUSES}
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM reservations GROUP BY status"):
                by_status[row["status"]] = row["n"]
            monthly = {
                row["month"]: row["n"]
                for row in conn.execute(
                    "SELECT substr(reservation_date, 1, 7) AS month, COUNT(*) AS n FROM reservations GROUP BY month"
                )
            }
        finally:
            conn.close()

        months = []
        cursor = datetime.now().replace(day=1)
        for _ in range(6):
            months.append(cursor.strftime("%Y-%m"))
            cursor = (cursor - timedelta(days=1)).replace(day=1)
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_group": {group: sum(by_status[s] for s in statuses) for group, statuses in STATUS_GROUPS.items()},
            "overdue": len(self.get_overdue_reservations()),
            "per_month": {month: monthly.get(month, 0) for month in reversed(months)},
        }

    def mark_overdue(self) -> List[Reservation]:
        """Flag issued reservations past their expiration date as overdue."""
        now = datetime.now()
        changed = []
        for reservation in self.list_reservations(status=ISSUED):
            if parse_datetime(reservation.expiration_date) < now:
                changed.append(self.change_status(reservation.id, OVERDUE))
        if changed:
            logger.info("Marked %d reservations overdue", len(changed))
        return changed

    def has_book_access(self, book_id: str, user_id: str) -> bool:
        """Whether the reader may see where the book is shelved."""
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT 1 FROM reservations WHERE book_id = ? AND user_id = ? AND status IN ({_in(SHELF_ACCESS_STATUSES)})",
                (book_id, user_id, *SHELF_ACCESS_STATUSES),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    # ------------------------- Queue ------------------------- #
    def join_queue(self, user_id: str, book_id: str) -> Dict[str, Any]:
        if not self.library.get_book(book_id):
            raise LookupError(f"Book {book_id} not found.")
        conn = self._connect()
        try:
            self._user_row(conn, user_id)
            if conn.execute("SELECT 1 FROM queue_entries WHERE user_id = ? AND book_id = ? AND status = 'waiting'",
                            (user_id, book_id)).fetchone():
                raise ValueError("You are already in the queue for this book.")
            cursor = conn.execute("INSERT INTO queue_entries (book_id, user_id, created_at) VALUES (?, ?, ?)",
                                  (book_id, user_id, timestamp()))
            conn.commit()
            entry_id = cursor.lastrowid
        finally:
            conn.close()
        return next(e for e in self.queue_for_book(book_id) if e["id"] == entry_id)

    def leave_queue(self, entry_id: int) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM queue_entries WHERE id = ?", (entry_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def queue_for_book(self, book_id: str) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """SELECT q.*, u.full_name FROM queue_entries q JOIN users u ON u.id = q.user_id
                   WHERE q.book_id = ? AND q.status = 'waiting' ORDER BY q.created_at, q.id""",
                (book_id,),
            ).fetchall()
        finally:
            conn.close()
        return [{**dict(row), "position": index} for index, row in enumerate(rows, 1)]

    def queue_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            book_ids = [row[0] for row in conn.execute(
                "SELECT DISTINCT book_id FROM queue_entries WHERE user_id = ? AND status = 'waiting'", (user_id,)
            )]
        finally:
            conn.close()
        return [entry for book_id in book_ids for entry in self.queue_for_book(book_id) if entry["user_id"] == user_id]

    # ------------------------- Fines ------------------------- #
    def create_fine(self, user_id: str, amount: Optional[float] = None, reason: Optional[str] = None,
                    fine_type: str = "Other", notes: Optional[str] = None,
                    reservation_id: Optional[str] = None, overdue_days: Optional[int] = None) -> Fine:
        if fine_type not in FINE_TYPES:
            raise ValueError(f"Unknown fine type: {fine_type}")
        reservation = self._require_reservation(reservation_id) if reservation_id else None
        if fine_type == "Overdue":
            if overdue_days is None:
                if not reservation:
                    raise ValueError("Overdue fines need a reservation or the number of overdue days.")
                end = parse_datetime(reservation.actual_return_date) if reservation.actual_return_date else None
                overdue_days = days_overdue(reservation.expiration_date, end)
            if overdue_days < 0:
                raise ValueError("overdue_days cannot be negative.")
            if amount is None:
                amount = overdue_days * settings.overdue_fine_per_day
            reason = reason or f"Overdue by {overdue_days} day(s)"
        if amount is None:
            raise ValueError("Fine amount is required.")
        if amount < 0:
            raise ValueError("Fine amount cannot be negative.")
        if not reason or not reason.strip():
            raise ValueError("Fine reason is required.")

        fine = Fine(
            id=str(uuid.uuid4()), user_id=user_id, reservation_id=reservation_id, amount=round(amount, 2),
            reason=reason.strip(), fine_type=fine_type, notes=notes, overdue_days=overdue_days,
            created_at=timestamp(),
        )
        conn = self._connect()
        try:
            self._user_row(conn, user_id)
            conn.execute(
                """INSERT INTO fines (id, user_id, reservation_id, amount, reason, fine_type, notes,
                       overdue_days, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (fine.id, user_id, reservation_id, fine.amount, fine.reason, fine_type, notes,
                 overdue_days, fine.created_at),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Fine %.2f (%s) created for user %s", fine.amount, fine_type, user_id)
        self._notify(user_id, "Fine added", f"A fine of {fine.amount:.2f} was added: {fine.reason}.",
                     "FineAdded", priority="High",
                     book_id=reservation.book_id if reservation else None, reservation_id=reservation_id)
        return fine

    def get_fine(self, fine_id: str) -> Optional[Fine]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM fines WHERE id = ?", (fine_id,)).fetchone()
            return Fine.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_fines(self, user_id: Optional[str] = None, unpaid_only: bool = False) -> List[Fine]:
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if unpaid_only:
            clauses.append("is_paid = 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(f"SELECT * FROM fines {where} ORDER BY created_at DESC", params).fetchall()
            return [Fine.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def pay_fine(self, fine_id: str) -> Fine:
        fine = self.get_fine(fine_id)
        if not fine:
            raise LookupError(f"Fine {fine_id} not found.")
        if fine.is_paid:
            raise ValueError("Fine is already paid.")
        fine.is_paid, fine.paid_at = True, timestamp()
        conn = self._connect()
        try:
            conn.execute("UPDATE fines SET is_paid = 1, paid_at = ? WHERE id = ?", (fine.paid_at, fine_id))
            conn.commit()
        finally:
            conn.close()
        return fine

    def user_fine_total(self, user_id: str) -> float:
        conn = self._connect()
        try:
            total = conn.execute("SELECT COALESCE(SUM(amount), 0) FROM fines WHERE user_id = ? AND is_paid = 0",
                                 (user_id,)).fetchone()[0]
            return round(float(total), 2)
        finally:
            conn.close()
