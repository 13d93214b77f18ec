from __future__ import annotations


class User:
    """A library account. Password hashes never leave the accounts module."""

    def __init__(self, full_name: str, email: str, id: str | None = None, phone: str | None = None,
                 is_active: bool = True, max_books_allowed: int = 5, loan_period_days: int = 14,
                 must_change_password: bool = False, roles: list | None = None,
                 created_at: str | None = None, last_login: str | None = None) -> None:
        self.id = id
        self.full_name = full_name.strip()
        self.email = email.strip().lower()
        self.phone = phone
        self.is_active = bool(is_active)
        self.max_books_allowed = max_books_allowed
        self.loan_period_days = loan_period_days
        self.must_change_password = bool(must_change_password)
        self.roles = roles or []
        self.created_at = created_at
        self.last_login = last_login

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.full_name} <{self.email}>"

    def has_any_role(self, names) -> bool:
        return any(role in self.roles for role in names)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "is_active": self.is_active,
            "max_books_allowed": self.max_books_allowed,
            "loan_period_days": self.loan_period_days,
            "must_change_password": self.must_change_password,
            "roles": list(self.roles),
            "created_at": self.created_at,
            "last_login": self.last_login,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        roles = data.get("roles")
        if isinstance(roles, str):
            roles = [r for r in roles.split(",") if r]
        return User(
            id=data.get("id"),
            full_name=data["full_name"],
            email=data["email"],
            phone=data.get("phone"),
            is_active=bool(data.get("is_active", True)),
            max_books_allowed=data.get("max_books_allowed") or 5,
            loan_period_days=data.get("loan_period_days") or 14,
            must_change_password=bool(data.get("must_change_password", False)),
            roles=roles,
            created_at=data.get("created_at"),
            last_login=data.get("last_login"),
        )


class Role:
    def __init__(self, name: str, id: int | None = None, description: str | None = None,
                 users_count: int = 0) -> None:
        self.id = id
        self.name = name.strip()
        self.description = description
        self.users_count = users_count

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "users_count": self.users_count,
        }

    @staticmethod
    def from_dict(data: dict) -> "Role":
        return Role(
            id=data.get("id"),
            name=data["name"],
            description=data.get("description"),
            users_count=data.get("users_count") or 0,
        )
