import logging
import secrets
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import bcrypt
import jwt

from libdesk.book import Book
from libdesk.config import settings
from libdesk.database import DEFAULT_ROLES, get_db_connection, initialize_database, timestamp
from libdesk.user import Role, User
from libdesk.validators import TextValidator

logger = logging.getLogger(__name__)

USER_FIELDS = ("full_name", "email", "phone", "is_active", "max_books_allowed", "loan_period_days")
BUILTIN_ROLES = tuple(name for name, _ in DEFAULT_ROLES)
DEFAULT_ROLE = "reader"

_USER_SELECT = """
    SELECT u.*, GROUP_CONCAT(r.name) AS roles
    FROM users u
    LEFT JOIN user_roles ur ON ur.user_id = u.id
    LEFT JOIN roles r ON r.id = ur.role_id
"""


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class Accounts:
    """Users, roles, passwords and access tokens."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        initialize_database(db_file)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- Users ------------------------- #
    def create_user(self, full_name: str, email: str, password: str, phone: Optional[str] = None,
                    roles: Optional[List[str]] = None, max_books_allowed: Optional[int] = None,
                    loan_period_days: Optional[int] = None) -> User:
        if not full_name or not full_name.strip():
            raise ValueError("Full name is required.")
        if not TextValidator.validate_email(email):
            raise ValueError("Invalid e-mail address.")
        if not TextValidator.validate_password(password):
            raise ValueError("Password must be at least 8 characters long.")

        user = User(
            id=str(uuid.uuid4()),
            full_name=TextValidator.sanitize_text(full_name),
            email=email,
            phone=phone,
            max_books_allowed=max_books_allowed or settings.default_max_books,
            loan_period_days=loan_period_days or settings.default_loan_days,
            created_at=timestamp(),
        )
        conn = self._connect()
        try:
            conn.execute(
                """INSERT INTO users (id, full_name, email, password_hash, phone, max_books_allowed,
                       loan_period_days, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (user.id, user.full_name, user.email, hash_password(password), user.phone,
                 user.max_books_allowed, user.loan_period_days, user.created_at),
            )
            for role_name in roles or [DEFAULT_ROLE]:
                role = conn.execute("SELECT id FROM roles WHERE name = ?", (role_name,)).fetchone()
                if not role:
                    raise LookupError(f"Role {role_name} not found.")
                conn.execute("INSERT INTO user_roles (user_id, role_id) VALUES (?, ?)", (user.id, role["id"]))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"User with e-mail {user.email} already exists.") from e
        finally:
            conn.close()
        user.roles = list(roles or [DEFAULT_ROLE])
        logger.info("User created: %s", user.email)
        return user

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        conn = self._connect()
        try:
            row = conn.execute(f"{_USER_SELECT} WHERE {where} GROUP BY u.id", params).fetchone()
            return User.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("u.id = ?", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("u.email = ?", (email.strip().lower(),))

    def _require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if not user:
            raise LookupError(f"User {user_id} not found.")
        return user

    def list_users(self, q: Optional[str] = None, limit: Optional[int] = None, offset: int = 0) -> List[User]:
        sql, params = _USER_SELECT, []
        if q:
            like = f"%{q.strip()}%"
            sql += " WHERE u.full_name LIKE ? OR u.email LIKE ? OR u.phone LIKE ?"
            params.extend([like, like, like])
        sql += " GROUP BY u.id ORDER BY u.full_name"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        conn = self._connect()
        try:
            return [User.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def count_users(self, q: Optional[str] = None) -> int:
        sql, params = "SELECT COUNT(*) FROM users", []
        if q:
            like = f"%{q.strip()}%"
            sql += " WHERE full_name LIKE ? OR email LIKE ? OR phone LIKE ?"
            params.extend([like, like, like])
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchone()[0]
        finally:
            conn.close()

    def search_users(self, q: str) -> List[User]:
        if not q or not q.strip():
            return []
        return self.list_users(q=q)

    def update_user(self, user_id: str, **changes: Any) -> User:
        self._require_user(user_id)
        changes = {k: v for k, v in changes.items() if k in USER_FIELDS and v is not None}
        if not changes:
            raise ValueError("Nothing to update.")
        if "email" in changes:
            if not TextValidator.validate_email(changes["email"]):
                raise ValueError("Invalid e-mail address.")
            changes["email"] = changes["email"].strip().lower()
        if "full_name" in changes:
            if not changes["full_name"].strip():
                raise ValueError("Full name is required.")
            changes["full_name"] = TextValidator.sanitize_text(changes["full_name"])
        for key in ("max_books_allowed", "loan_period_days"):
            if key in changes and changes[key] < 1:
                raise ValueError(f"{key} must be positive.")
        if "is_active" in changes:
            changes["is_active"] = int(bool(changes["is_active"]))

        assignments = ", ".join(f"{key} = ?" for key in changes)
        conn = self._connect()
        try:
            conn.execute(f"UPDATE users SET {assignments} WHERE id = ?", (*changes.values(), user_id))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"User with e-mail {changes.get('email')} already exists.") from e
        finally:
            conn.close()
        return self._require_user(user_id)

    def set_active(self, user_id: str, is_active: bool) -> User:
        return self.update_user(user_id, is_active=is_active)

    def delete_user(self, user_id: str) -> bool:
        conn = self._connect()
        try:
            holding = conn.execute(
                "SELECT COUNT(*) FROM reservations WHERE user_id = ? AND status IN ('issued', 'overdue')",
                (user_id,),
            ).fetchone()[0]
            if holding:
                raise ValueError("User still has issued books.")
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # ------------------------- Passwords & tokens ------------------------- #
    def _password_hash(self, user_id: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user_id,)).fetchone()
            return row["password_hash"] if row else None
        finally:
            conn.close()

    def _store_password(self, user_id: str, password: str, must_change: bool) -> None:
        conn = self._connect()
        try:
            conn.execute("UPDATE users SET password_hash = ?, must_change_password = ? WHERE id = ?",
                         (hash_password(password), int(must_change), user_id))
            conn.commit()
        finally:
            conn.close()

    def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        current = self._password_hash(user_id)
        if current is None:
            raise LookupError(f"User {user_id} not found.")
        if not verify_password(old_password, current):
            raise PermissionError("Current password is incorrect.")
        if not TextValidator.validate_password(new_password):
            raise ValueError("Password must be at least 8 characters long.")
        self._store_password(user_id, new_password, must_change=False)
        logger.info("Password changed for user %s", user_id)

    def reset_password(self, user_id: str) -> str:
        """Set a random temporary password that must be changed on next login."""
        self._require_user(user_id)
        temporary = secrets.token_urlsafe(9)
        self._store_password(user_id, temporary, must_change=True)
        logger.info("Password reset for user %s", user_id)
        return temporary

    def authenticate(self, email: str, password: str) -> User:
        user = self.get_user_by_email(email)
        if not user or not verify_password(password, self._password_hash(user.id) or ""):
            raise PermissionError("Invalid e-mail or password.")
        if not user.is_active:
            raise PermissionError("Account is blocked.")
        user.last_login = timestamp()
        conn = self._connect()
        try:
            conn.execute("UPDATE users SET last_login = ? WHERE id = ?", (user.last_login, user.id))
            conn.commit()
        finally:
            conn.close()
        return user

    @staticmethod
    def issue_token(user: User) -> str:
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
        payload = {"sub": user.id, "email": user.email, "roles": user.roles, "exp": expires}
        return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

    @staticmethod
    def decode_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        except jwt.PyJWTError as e:
            raise PermissionError("Invalid or expired token.") from e

    # ------------------------- Roles ------------------------- #
    def list_roles(self) -> List[Role]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """SELECT r.*, COUNT(ur.user_id) AS users_count FROM roles r
                   LEFT JOIN user_roles ur ON ur.role_id = r.id GROUP BY r.id ORDER BY r.id"""
            ).fetchall()
            return [Role.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def get_role(self, role_id: int) -> Optional[Role]:
        return next((role for role in self.list_roles() if role.id == role_id), None)

    def _require_role(self, role_id: int) -> Role:
        role = self.get_role(role_id)
        if not role:
            raise LookupError(f"Role {role_id} not found.")
        return role

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        if not name or not name.strip():
            raise ValueError("Role name is required.")
        conn = self._connect()
        try:
            cursor = conn.execute("INSERT INTO roles (name, description) VALUES (?, ?)",
                                  (name.strip(), description))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Role {name} already exists.") from e
        finally:
            conn.close()
        return Role(id=cursor.lastrowid, name=name, description=description)

    def update_role(self, role_id: int, name: Optional[str] = None, description: Optional[str] = None) -> Role:
        role = self._require_role(role_id)
        if name is not None:
            if role.name in BUILTIN_ROLES and name.strip() != role.name:
                raise ValueError(f"Built-in role {role.name} cannot be renamed.")
            role.name = name.strip()
        if description is not None:
            role.description = description
        conn = self._connect()
        try:
            conn.execute("UPDATE roles SET name = ?, description = ? WHERE id = ?",
                         (role.name, role.description, role_id))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Role {role.name} already exists.") from e
        finally:
            conn.close()
        return role

    def delete_role(self, role_id: int) -> bool:
        role = self.get_role(role_id)
        if not role:
            return False
        if role.name in BUILTIN_ROLES:
            raise ValueError(f"Built-in role {role.name} cannot be deleted.")
        conn = self._connect()
        try:
            conn.execute("DELETE FROM roles WHERE id = ?", (role_id,))
            conn.commit()
        finally:
            conn.close()
        return True

    def assign_role(self, user_id: str, role_id: int) -> None:
        self._require_user(user_id)
        self._require_role(role_id)
        conn = self._connect()
        try:
            conn.execute("INSERT OR IGNORE INTO user_roles (user_id, role_id) VALUES (?, ?)", (user_id, role_id))
            conn.commit()
        finally:
            conn.close()

    def remove_role(self, user_id: str, role_id: int) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM user_roles WHERE user_id = ? AND role_id = ?", (user_id, role_id))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def assign_role_to_many(self, user_ids: List[str], role_id: int) -> Dict[str, Any]:
        return self._apply_to_many(user_ids, lambda uid: self.assign_role(uid, role_id))

    def remove_role_from_many(self, user_ids: List[str], role_id: int) -> Dict[str, Any]:
        return self._apply_to_many(user_ids, lambda uid: self.remove_role(uid, role_id))

    @staticmethod
    def _apply_to_many(user_ids: List[str], action) -> Dict[str, Any]:
        done, failed = [], []
        for user_id in user_ids:
            try:
                action(user_id)
                done.append(user_id)
            except LookupError as e:
                failed.append({"user_id": user_id, "error": str(e)})
        return {"success": done, "failed": failed}

    def set_user_role(self, user_id: str, role_id: int) -> User:
        """Replace all roles of the user with a single one."""
        self._require_user(user_id)
        self._require_role(role_id)
        conn = self._connect()
        try:
            conn.execute("DELETE FROM user_roles WHERE user_id = ?", (user_id,))
            conn.execute("INSERT INTO user_roles (user_id, role_id) VALUES (?, ?)", (user_id, role_id))
            conn.commit()
        finally:
            conn.close()
        return self._require_user(user_id)

    def user_has_role(self, user_id: str, role_name: str) -> bool:
        user = self.get_user(user_id)
        return bool(user and role_name in user.roles)

    # ------------------------- Queries ------------------------- #
    def users_with_books(self) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """SELECT u.id, u.full_name, u.email, COUNT(r.id) AS books_count,
                          SUM(CASE WHEN r.status = 'overdue' THEN 1 ELSE 0 END) AS overdue_count
                   FROM users u JOIN reservations r ON r.user_id = u.id
                   WHERE r.status IN ('issued', 'overdue')
                   GROUP BY u.id ORDER BY books_count DESC, u.full_name"""
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def users_with_fines(self) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """SELECT u.id, u.full_name, u.email, COUNT(f.id) AS fines_count, SUM(f.amount) AS total_amount
                   FROM users u JOIN fines f ON f.user_id = u.id
                   WHERE f.is_paid = 0
                   GROUP BY u.id ORDER BY total_amount DESC"""
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def get_user_statistics(self) -> Dict[str, Any]:
        month_start = datetime.now().replace(day=1).strftime("%Y-%m-%d")
        conn = self._connect()
        try:
            cursor = conn.cursor()
            total = cursor.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            active = cursor.execute("SELECT COUNT(*) FROM users WHERE is_active = 1").fetchone()[0]
            new_this_month = cursor.execute("SELECT COUNT(*) FROM users WHERE created_at >= ?",
                                            (month_start,)).fetchone()[0]
            by_role = {
                row["name"]: row["n"]
                for row in cursor.execute(
                    """SELECT r.name, COUNT(ur.user_id) AS n FROM roles r
                       LEFT JOIN user_roles ur ON ur.role_id = r.id GROUP BY r.id"""
                )
            }
        finally:
            conn.close()
        return {
            "total_users": total,
            "active_users": active,
            "blocked_users": total - active,
            "new_this_month": new_this_month,
            "users_with_books": len(self.users_with_books()),
            "users_with_fines": len(self.users_with_fines()),
            "by_role": by_role,
        }

    def get_recommendations(self, user_id: str, limit: int = 10) -> List[Book]:
        """Popular books from the genres the user reserves or favorites."""
        self._require_user(user_id)
        conn = self._connect()
        try:
            seen = {
                row[0] for row in conn.execute(
                    "SELECT book_id FROM reservations WHERE user_id = ? UNION SELECT book_id FROM favorites WHERE user_id = ?",
                    (user_id, user_id),
                )
            }
            genres = [
                row[0] for row in conn.execute(
                    """SELECT b.genre FROM books b WHERE b.genre IS NOT NULL AND b.id IN (
                           SELECT book_id FROM reservations WHERE user_id = ?
                           UNION SELECT book_id FROM favorites WHERE user_id = ?)
                       GROUP BY b.genre ORDER BY COUNT(*) DESC""",
                    (user_id, user_id),
                )
            ]
            popularity_sql = """SELECT b.*, COUNT(r.id) AS popularity FROM books b
                                LEFT JOIN reservations r ON r.book_id = b.id {where}
                                GROUP BY b.id ORDER BY popularity DESC, b.title"""
            candidates = []
            if genres:
                where = f"WHERE b.genre IN ({','.join('?' * len(genres))})"
                candidates = conn.execute(popularity_sql.format(where=where), genres).fetchall()
            fallback = conn.execute(popularity_sql.format(where="")).fetchall()
        finally:
            conn.close()

        result: List[Book] = []
        for row in list(candidates) + list(fallback):
            data = dict(row)
            data.pop("popularity", None)
            if data["id"] in seen or any(b.id == data["id"] for b in result):
                continue
            result.append(Book.from_dict(data))
            if len(result) >= limit:
                break
        return result
