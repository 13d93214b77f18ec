import re
from typing import Optional

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


class ISBNValidator:
    """ISBN-10 and ISBN-13 checks used before a book is stored or imported."""

    @staticmethod
    def normalize_isbn(raw: str) -> str:
        if raw is None:
            return ""
        return re.sub(r"[^0-9Xx]", "", raw).upper()

    @staticmethod
    def is_valid_isbn(isbn: str) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            if not s[:-1].isdigit():
                return False
            total = sum(i * int(ch) for i, ch in enumerate(s[:-1], 1))
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + 10 * check_val) % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum((1 if i % 2 == 0 else 3) * int(ch) for i, ch in enumerate(s[:-1]))
            return (10 - total % 10) % 10 == int(s[-1])
        return False


class ISSNValidator:
    """ISSN checks for journals (8 characters, mod-11 check digit)."""

    @staticmethod
    def normalize_issn(raw: str) -> str:
        s = ISBNValidator.normalize_isbn(raw)
        return f"{s[:4]}-{s[4:]}" if len(s) == 8 else s

    @staticmethod
    def is_valid_issn(issn: str) -> bool:
        s = ISBNValidator.normalize_isbn(issn)
        if len(s) != 8 or not s[:-1].isdigit():
            return False
        total = sum(weight * int(ch) for weight, ch in zip(range(8, 1, -1), s[:-1]))
        check = (11 - total % 11) % 11
        return s[-1] == ("X" if check == 10 else str(check))


class TextValidator:
    """Text checks and sanitization for catalog fields and accounts."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None or not title.strip():
            return False
        # purely numeric titles are almost always a data entry mistake
        return any(c.isalpha() for c in title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        if author is None:
            return False
        t = author.strip()
        return bool(t) and not t.isdigit()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        cleaned = re.sub(r"<[^>]*>", "", text)
        cleaned = re.sub(r"(?i)javascript:|onerror=|onload=", "", cleaned)
        return cleaned.strip()

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        return bool(email) and EMAIL_RE.match(email.strip()) is not None

    @staticmethod
    def validate_password(password: Optional[str]) -> bool:
        return password is not None and len(password) >= MIN_PASSWORD_LENGTH
