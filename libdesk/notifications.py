import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from libdesk.config import settings
from libdesk.database import get_db_connection, initialize_database, timestamp
from libdesk.reservation import is_expiring_soon, overdue_days
from libdesk.services.mailer import Mailer

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = (
    "BookDueSoon", "BookOverdue", "FineAdded", "FineIncreased", "BookReturned", "BookReserved",
    "ReservationExpired", "NewBookAvailable", "AccountBlocked", "AccountUnblocked",
    "SystemMaintenance", "GeneralInfo",
)
PRIORITIES = ("Low", "Normal", "High", "Critical")


class Notification:
    def __init__(self, user_id: str, title: str, message: str, id: str | None = None,
                 type: str = "GeneralInfo", priority: str = "Normal", is_read: bool = False,
                 read_at: str | None = None, book_id: str | None = None, reservation_id: str | None = None,
                 created_at: str | None = None) -> None:
        self.id = id
        self.user_id = user_id
        self.title = title
        self.message = message
        self.type = type
        self.priority = priority
        self.is_read = bool(is_read)
        self.read_at = read_at
        self.book_id = book_id
        self.reservation_id = reservation_id
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "priority": self.priority,
            "is_read": self.is_read,
            "read_at": self.read_at,
            "book_id": self.book_id,
            "reservation_id": self.reservation_id,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Notification":
        return Notification(**{k: data.get(k) for k in (
            "id", "user_id", "title", "message", "type", "priority", "is_read", "read_at",
            "book_id", "reservation_id", "created_at",
        )})


class NotificationCenter:
    """Stored notifications for readers plus the periodic reminder sweeps."""

    def __init__(self, db_file: Optional[str] = None, mailer: Optional[Mailer] = None) -> None:
        self.db_file = db_file
        self.mailer = mailer or Mailer()
        initialize_database(db_file)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- Sending ------------------------- #
    def send(self, user_id: str, title: str, message: str, type: str = "GeneralInfo",
             priority: str = "Normal", book_id: Optional[str] = None,
             reservation_id: Optional[str] = None) -> Notification:
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")
        if priority not in PRIORITIES:
            raise ValueError(f"Unknown priority: {priority}")
        if not title.strip() or not message.strip():
            raise ValueError("Title and message are required.")
        notification = Notification(
            id=str(uuid.uuid4()), user_id=user_id, title=title.strip(), message=message.strip(),
            type=type, priority=priority, book_id=book_id, reservation_id=reservation_id,
            created_at=timestamp(),
        )
        conn = self._connect()
        try:
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
                raise LookupError(f"User {user_id} not found.")
            conn.execute(
                """INSERT INTO notifications (id, user_id, title, message, type, priority, book_id,
                       reservation_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (notification.id, user_id, notification.title, notification.message, type, priority,
                 book_id, reservation_id, notification.created_at),
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug("Notification %s sent to %s", type, user_id)
        return notification

    def send_bulk(self, user_ids: List[str], title: str, message: str, type: str = "GeneralInfo",
                  priority: str = "Normal") -> List[Notification]:
        sent = []
        for user_id in dict.fromkeys(user_ids):
            try:
                sent.append(self.send(user_id, title, message, type, priority))
            except LookupError:
                logger.warning("Skipping unknown user %s in bulk notification", user_id)
        return sent

    # ------------------------- Reading ------------------------- #
    def get(self, notification_id: str) -> Optional[Notification]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
            return Notification.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def _page(self, where: str, params: list, page: int, page_size: int) -> Tuple[List[Notification], int]:
        page = max(1, page)
        page_size = max(1, min(page_size, settings.max_page_size))
        conn = self._connect()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM notifications {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM notifications {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (*params, page_size, (page - 1) * page_size),
            ).fetchall()
        finally:
            conn.close()
        return [Notification.from_dict(dict(row)) for row in rows], total

    def list_for_user(self, user_id: str, is_read: Optional[bool] = None, page: int = 1,
                      page_size: int = 20) -> Tuple[List[Notification], int]:
        where, params = "WHERE user_id = ?", [user_id]
        if is_read is not None:
            where += " AND is_read = ?"
            params.append(int(is_read))
        return self._page(where, params, page, page_size)

    def list_all(self, page: int = 1, page_size: int = 20,
                 type: Optional[str] = None) -> Tuple[List[Notification], int]:
        if type:
            return self._page("WHERE type = ?", [type], page, page_size)
        return self._page("", [], page, page_size)

    def unread_count(self, user_id: str) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0",
                                (user_id,)).fetchone()[0]
        finally:
            conn.close()

    def mark_read(self, notification_id: str) -> Notification:
        notification = self.get(notification_id)
        if not notification:
            raise LookupError(f"Notification {notification_id} not found.")
        if not notification.is_read:
            notification.is_read, notification.read_at = True, timestamp()
            conn = self._connect()
            try:
                conn.execute("UPDATE notifications SET is_read = 1, read_at = ? WHERE id = ?",
                             (notification.read_at, notification_id))
                conn.commit()
            finally:
                conn.close()
        return notification

    def mark_many_read(self, notification_ids: List[str]) -> int:
        if not notification_ids:
            return 0
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"""UPDATE notifications SET is_read = 1, read_at = ?
                    WHERE is_read = 0 AND id IN ({','.join('?' * len(notification_ids))})""",
                (timestamp(), *notification_ids),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def mark_all_read(self, user_id: str) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute("UPDATE notifications SET is_read = 1, read_at = ? WHERE user_id = ? AND is_read = 0",
                                  (timestamp(), user_id))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def delete(self, notification_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM notifications WHERE id = ?", (notification_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def _grouped(self, column: str, where: str = "", params: tuple = ()) -> Dict[str, int]:
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT {column} AS k, COUNT(*) AS n FROM notifications {where} GROUP BY {column}", params
            ).fetchall()
            return {row["k"]: row["n"] for row in rows}
        finally:
            conn.close()

    def stats_for_user(self, user_id: str) -> Dict[str, Any]:
        by_type = self._grouped("type", "WHERE user_id = ?", (user_id,))
        return {
            "total": sum(by_type.values()),
            "unread": self.unread_count(user_id),
            "by_type": by_type,
            "by_priority": self._grouped("priority", "WHERE user_id = ?", (user_id,)),
        }

    def admin_stats(self) -> Dict[str, Any]:
        week_ago = (datetime.now() - timedelta(days=7)).isoformat(timespec="seconds")
        by_type = self._grouped("type")
        conn = self._connect()
        try:
            unread = conn.execute("SELECT COUNT(*) FROM notifications WHERE is_read = 0").fetchone()[0]
            last_week = conn.execute("SELECT COUNT(*) FROM notifications WHERE created_at >= ?",
                                     (week_ago,)).fetchone()[0]
        finally:
            conn.close()
        total = sum(by_type.values())
        return {
            "total": total,
            "unread": unread,
            "read_rate": round((total - unread) / total * 100, 1) if total else 0.0,
            "last_7_days": last_week,
            "by_type": by_type,
            "by_priority": self._grouped("priority"),
        }

    # ------------------------- Sweeps ------------------------- #
    def _sent_today(self, type: str, user_id: str, reservation_id: Optional[str] = None) -> bool:
        today = datetime.now().strftime("%Y-%m-%d")
        sql = "SELECT 1 FROM notifications WHERE type = ? AND user_id = ? AND substr(created_at, 1, 10) = ?"
        params: list = [type, user_id, today]
        if reservation_id:
            sql += " AND reservation_id = ?"
            params.append(reservation_id)
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchone() is not None
        finally:
            conn.close()

    def _issued_rows(self, status: str) -> List[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(
                """SELECT r.id, r.user_id, r.book_id, r.expiration_date, b.title, u.full_name, u.email
                   FROM reservations r JOIN books b ON b.id = r.book_id JOIN users u ON u.id = r.user_id
                   WHERE r.status = ?""",
                (status,),
            ).fetchall()
        finally:
            conn.close()

    def send_due_reminders(self, days: Optional[int] = None) -> List[Notification]:
        """Remind readers whose issued books are due within ``days``; once per reservation per day."""
        days = days or settings.due_reminder_days
        sent = []
        for row in self._issued_rows("issued"):
            if not is_expiring_soon(row["expiration_date"], days):
                continue
            if self._sent_today("BookDueSoon", row["user_id"], row["id"]):
                continue
            due_date = row["expiration_date"][:10]
            sent.append(self.send(
                row["user_id"], "Book due soon",
                f"\"{row['title']}\" is due on {due_date}.",
                type="BookDueSoon", book_id=row["book_id"], reservation_id=row["id"],
            ))
            self.mailer.send_template(row["email"], "due_reminder", name=row["full_name"],
                                      title=row["title"], due_date=due_date)
        logger.info("Due reminders sent: %d", len(sent))
        return sent

    def send_overdue_notifications(self) -> List[Notification]:
        from libdesk.circulation import Circulation

        Circulation(self.db_file, notifications=self).mark_overdue()
        sent = []
        for row in self._issued_rows("overdue"):
            if self._sent_today("BookOverdue", row["user_id"], row["id"]):
                continue
            days = overdue_days(row["expiration_date"])
            due_date = row["expiration_date"][:10]
            sent.append(self.send(
                row["user_id"], "Book overdue",
                f"\"{row['title']}\" was due on {due_date} ({days} day(s) ago). Please return it.",
                type="BookOverdue", priority="High", book_id=row["book_id"], reservation_id=row["id"],
            ))
            self.mailer.send_template(row["email"], "overdue", name=row["full_name"], title=row["title"],
                                      due_date=due_date, days=days, rate=settings.overdue_fine_per_day)
        logger.info("Overdue notifications sent: %d", len(sent))
        return sent

    def send_fine_notifications(self) -> List[Notification]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """SELECT u.id, u.full_name, u.email, SUM(f.amount) AS total FROM fines f
                   JOIN users u ON u.id = f.user_id WHERE f.is_paid = 0 GROUP BY u.id"""
            ).fetchall()
        finally:
            conn.close()
        sent = []
        for row in rows:
            if self._sent_today("FineAdded", row["id"]):
                continue
            amount = f"{row['total']:.2f}"
            sent.append(self.send(row["id"], "Unpaid fines", f"You have unpaid fines totalling {amount}.",
                                  type="FineAdded", priority="High"))
            self.mailer.send_template(row["email"], "fine", name=row["full_name"], amount=amount)
        logger.info("Fine notifications sent: %d", len(sent))
        return sent
