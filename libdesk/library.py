import logging
import sqlite3
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from libdesk.book import INSTANCE_CONDITIONS, INSTANCE_STATUSES, Book, BookInstance
from libdesk.config import settings
from libdesk.database import get_db_connection, initialize_database, timestamp
from libdesk.errors import ExternalServiceError
from libdesk.reservation import STATUS_GROUPS, Reservation
from libdesk.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

BOOK_FIELDS = (
    "title", "authors", "isbn", "genre", "categorization", "udk", "bbk", "edition",
    "description", "publication_year", "publisher", "page_count", "language", "cover",
    "available_copies",
)
SORTABLE_FIELDS = ("title", "authors", "publication_year", "created_at", "available_copies", "genre")
INSTANCE_FIELDS = (
    "instance_code", "status", "condition", "purchase_price", "date_acquired", "notes",
    "shelf_id", "position", "location", "is_active",
)
DEFAULT_LOCATION = "main stock"
MAX_BATCH_INSTANCES = 100


class Library:
    """Catalog of books and their physical copies."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        initialize_database(db_file)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- Books ------------------------- #
    def create_book(self, title: str, authors: str, **fields: Any) -> Book:
        if not TextValidator.validate_title(title):
            raise ValueError("Title must contain letters.")
        if not TextValidator.validate_author(authors):
            raise ValueError("Authors cannot be empty or numeric.")
        isbn = fields.get("isbn")
        if isbn:
            isbn = ISBNValidator.normalize_isbn(isbn)
            if not ISBNValidator.is_valid_isbn(isbn):
                raise ValueError("Invalid ISBN format.")
            if self.find_by_isbn(isbn):
                raise ValueError(f"Book with ISBN {isbn} already exists.")
            fields["isbn"] = isbn
        if (fields.get("available_copies") or 0) < 0:
            raise ValueError("available_copies cannot be negative.")

        book = Book(
            id=str(uuid.uuid4()),
            title=TextValidator.sanitize_text(title),
            authors=TextValidator.sanitize_text(authors),
            created_at=timestamp(),
            **{k: v for k, v in fields.items() if k in BOOK_FIELDS},
        )
        conn = self._connect()
        try:
            conn.execute(
                """INSERT INTO books (id, title, authors, isbn, genre, categorization, udk, bbk, edition,
                       description, publication_year, publisher, page_count, language, cover,
                       available_copies, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (book.id, book.title, book.authors, book.isbn, book.genre, book.categorization,
                 book.udk, book.bbk, book.edition, book.description, book.publication_year,
                 book.publisher, book.page_count, book.language, book.cover,
                 book.available_copies, book.created_at),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Book created: %s (%s)", book.title, book.id)
        return book

    def get_book(self, book_id: str) -> Optional[Book]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def _require_book(self, book_id: str) -> Book:
        book = self.get_book(book_id)
        if not book:
            raise LookupError(f"Book {book_id} not found.")
        return book

    def find_by_isbn(self, isbn: str) -> Optional[Book]:
        norm = ISBNValidator.normalize_isbn(isbn)
        if not norm:
            return None
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM books WHERE isbn = ?", (norm,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def update_book(self, book_id: str, **changes: Any) -> Book:
        """Partial update; unknown keys and None values are ignored."""
        book = self._require_book(book_id)
        changes = {k: v for k, v in changes.items() if k in BOOK_FIELDS and v is not None}
        if not changes:
            raise ValueError("Nothing to update.")
        if "title" in changes and not TextValidator.validate_title(changes["title"]):
            raise ValueError("Title must contain letters.")
        if "authors" in changes and not TextValidator.validate_author(changes["authors"]):
            raise ValueError("Authors cannot be empty or numeric.")
        if "isbn" in changes:
            isbn = ISBNValidator.normalize_isbn(changes["isbn"])
            if not ISBNValidator.is_valid_isbn(isbn):
                raise ValueError("Invalid ISBN format.")
            other = self.find_by_isbn(isbn)
            if other and other.id != book_id:
                raise ValueError(f"Book with ISBN {isbn} already exists.")
            changes["isbn"] = isbn
        if changes.get("available_copies", 0) < 0:
            raise ValueError("available_copies cannot be negative.")
        for key in ("title", "authors", "description"):
            if key in changes:
                changes[key] = TextValidator.sanitize_text(changes[key])

        changes["updated_at"] = timestamp()
        assignments = ", ".join(f"{key} = ?" for key in changes)
        conn = self._connect()
        try:
            conn.execute(f"UPDATE books SET {assignments} WHERE id = ?", (*changes.values(), book_id))
            conn.commit()
        finally:
            conn.close()
        for key, value in changes.items():
            setattr(book, key, value)
        return book

    def delete_book(self, book_id: str) -> bool:
        """Delete a book; instances, favorites and queue entries go with it.

        Refused while the book has active reservations.
        """
        active = STATUS_GROUPS["active"]
        conn = self._connect()
        try:
            held = conn.execute(
                f"SELECT COUNT(*) FROM reservations WHERE book_id = ? AND status IN ({','.join('?' * len(active))})",
                (book_id, *active),
            ).fetchone()[0]
            if held:
                raise ValueError(f"Book has {held} active reservation(s) and cannot be deleted.")
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            conn.commit()
            deleted = cursor.rowcount > 0
        finally:
            conn.close()
        if deleted:
            logger.info("Book deleted: %s", book_id)
        return deleted

    def _book_filters(self, q: Optional[str], genre: Optional[str]):
        clauses, params = [], []
        if q:
            like = f"%{q.strip()}%"
            clauses.append("(title LIKE ? OR authors LIKE ? OR isbn LIKE ? OR genre LIKE ? OR publisher LIKE ?)")
            params.extend([like] * 5)
        if genre:
            clauses.append("genre = ?")
            params.append(genre)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_books(self, q: Optional[str] = None, genre: Optional[str] = None, sort_by: str = "title",
                   order: str = "asc", limit: Optional[int] = None, offset: int = 0) -> List[Book]:
        if sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort by {sort_by}.")
        direction = "DESC" if order.lower() == "desc" else "ASC"
        where, params = self._book_filters(q, genre)
        sql = f"SELECT * FROM books {where} ORDER BY {sort_by} {direction}, title ASC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        conn = self._connect()
        try:
            return [Book.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def count_books(self, q: Optional[str] = None, genre: Optional[str] = None) -> int:
        where, params = self._book_filters(q, genre)
        conn = self._connect()
        try:
            return conn.execute(f"SELECT COUNT(*) FROM books {where}", params).fetchone()[0]
        finally:
            conn.close()

    def search_books(self, query: str) -> List[Book]:
        """Search by title, authors, ISBN, genre or publisher."""
        if not query or not query.strip():
            return []
        return self.list_books(q=query)

    def update_genre(self, book_id: str, genre: str) -> Book:
        return self.update_book(book_id, genre=genre.strip())

    def update_categorization(self, book_id: str, categorization: str) -> Book:
        return self.update_book(book_id, categorization=categorization.strip())

    def set_position(self, book_id: str, shelf_id: int, position: int) -> Book:
        from libdesk.shelves import ShelfLayout

        book = self._require_book(book_id)
        ShelfLayout(self.db_file).validate_slot(shelf_id, position, book_id=book_id)
        conn = self._connect()
        try:
            conn.execute(
                "UPDATE books SET shelf_id = ?, position = ?, updated_at = ? WHERE id = ?",
                (shelf_id, position, timestamp(), book_id),
            )
            conn.commit()
        finally:
            conn.close()
        book.shelf_id, book.position = shelf_id, position
        return book

    def clear_position(self, book_id: str) -> Book:
        book = self._require_book(book_id)
        conn = self._connect()
        try:
            conn.execute("UPDATE books SET shelf_id = NULL, position = NULL, updated_at = ? WHERE id = ?",
                         (timestamp(), book_id))
            conn.commit()
        finally:
            conn.close()
        book.shelf_id = book.position = None
        return book

    # ------------------------- Open Library import ------------------------- #
    def import_by_isbn(self, isbn: str) -> Book:
        """Fetch metadata from Open Library by ISBN and create the book."""
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not isbn:
            raise ValueError("ISBN cannot be empty.")
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValueError("Invalid ISBN format.")
        if self.find_by_isbn(isbn):
            raise ValueError(f"Book with ISBN {isbn} already exists.")

        book_json = self._fetch_book_json(isbn)
        if not book_json or not book_json.get("title"):
            raise LookupError("Book not found.")

        author_names: List[str] = []
        for item in book_json.get("authors") or []:
            if not isinstance(item, dict):
                continue
            if item.get("name"):
                author_names.append(item["name"])
            elif item.get("key"):
                name = self._fetch_author_name(item["key"])
                if name:
                    author_names.append(name)

        publish_year = None
        try:
            publish_year = int(str(book_json.get("publish_date", ""))[-4:])
        except ValueError:
            pass
        publishers = [p.get("name") for p in book_json.get("publishers") or [] if p.get("name")]
        subjects = [s.get("name") for s in book_json.get("subjects") or [] if s.get("name")]
        description = book_json.get("description")
        if isinstance(description, dict):
            description = description.get("value")

        return self.create_book(
            title=book_json["title"],
            authors=", ".join(author_names) if author_names else "Unknown Author",
            isbn=isbn,
            genre=subjects[0] if subjects else None,
            description=description,
            publication_year=publish_year,
            publisher=publishers[0] if publishers else None,
            page_count=book_json.get("number_of_pages"),
            cover=f"/api/covers/{isbn}",
        )

    def _fetch_book_json(self, isbn: str) -> Optional[dict]:
        url = f"https://openlibrary.org/api/books?bibkeys=ISBN:{isbn}&format=json&jscmd=data"
        resp = self._http_get_with_retry(url, timeout=settings.openlibrary_timeout)
        if resp is None:
            raise ExternalServiceError("Open Library unreachable")
        if resp.status_code == 200:
            return resp.json().get(f"ISBN:{isbn}")
        return None

    def _fetch_author_name(self, author_key: str) -> Optional[str]:
        resp = self._http_get_with_retry(f"https://openlibrary.org{author_key}.json",
                                         timeout=settings.openlibrary_timeout)
        if resp is not None and resp.status_code == 200:
            return resp.json().get("name")
        return None

    def _http_get_with_retry(self, url: str, timeout: float, retries: int = 3,
                             backoff: float = 0.5) -> Optional[httpx.Response]:
        for attempt in range(retries):
            try:
                return httpx.get(url, timeout=timeout)
            except httpx.RequestError as e:
                if attempt < retries - 1:
                    time.sleep(backoff * (2 ** attempt))
                else:
                    logger.warning("Open Library request failed: %s", e)
        return None

    # ------------------------- Favorites ------------------------- #
    def add_favorite(self, user_id: str, book_id: str) -> None:
        self._require_book(book_id)
        conn = self._connect()
        try:
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
                raise LookupError(f"User {user_id} not found.")
            conn.execute("INSERT INTO favorites (user_id, book_id) VALUES (?, ?)", (user_id, book_id))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError("Book is already in favorites.") from e
        finally:
            conn.close()

    def remove_favorite(self, user_id: str, book_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM favorites WHERE user_id = ? AND book_id = ?", (user_id, book_id))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def list_favorites(self, user_id: str) -> List[Book]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """SELECT b.* FROM favorites f JOIN books b ON b.id = f.book_id
                   WHERE f.user_id = ? ORDER BY f.created_at DESC, b.title""",
                (user_id,),
            ).fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    # ------------------------- Availability & stats ------------------------- #
    def get_availability(self, book_id: str) -> Dict[str, Any]:
        book = self._require_book(book_id)
        conn = self._connect()
        try:
            counts = {status: 0 for status in INSTANCE_STATUSES}
            for row in conn.execute(
                "SELECT status, COUNT(*) AS n FROM book_instances WHERE book_id = ? AND is_active = 1 GROUP BY status",
                (book_id,),
            ):
                counts[row["status"]] = row["n"]
            next_return = conn.execute(
                "SELECT MIN(expiration_date) FROM reservations WHERE book_id = ? AND status IN ('issued', 'overdue')",
                (book_id,),
            ).fetchone()[0]
        finally:
            conn.close()
        return {
            "book_id": book_id,
            "available_copies": book.available_copies,
            "is_available": book.available_copies > 0,
            "instances": counts,
            "total_instances": sum(counts.values()),
            "next_return_date": next_return,
        }

    def get_book_statistics(self) -> Dict[str, Any]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            total_books = cursor.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            unique_authors = cursor.execute("SELECT COUNT(DISTINCT authors) FROM books").fetchone()[0]
            available = cursor.execute("SELECT COALESCE(SUM(available_copies), 0) FROM books").fetchone()[0]
            unshelved = cursor.execute("SELECT COUNT(*) FROM books WHERE shelf_id IS NULL").fetchone()[0]
            genres = {
                row["genre"] or "Unspecified": row["n"]
                for row in cursor.execute("SELECT genre, COUNT(*) AS n FROM books GROUP BY genre ORDER BY n DESC")
            }
            by_status = {status: 0 for status in INSTANCE_STATUSES}
            for row in cursor.execute("SELECT status, COUNT(*) AS n FROM book_instances GROUP BY status"):
                by_status[row["status"]] = row["n"]
        finally:
            conn.close()
        return {
            "total_books": total_books,
            "unique_authors": unique_authors,
            "total_available_copies": available,
            "total_instances": sum(by_status.values()),
            "instances_by_status": by_status,
            "genres": genres,
            "unshelved_books": unshelved,
        }

    def get_top_popular_books(self, limit: int = 10) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """SELECT b.*, COUNT(r.id) AS reservation_count
                   FROM books b JOIN reservations r ON r.book_id = b.id
                   GROUP BY b.id ORDER BY reservation_count DESC, b.title LIMIT ?""",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        result = []
        for row in rows:
            data = dict(row)
            count = data.pop("reservation_count")
            result.append({**Book.from_dict(data).to_dict(), "reservation_count": count})
        return result

    # ------------------------- Instances ------------------------- #
    @staticmethod
    def _check_instance_values(values: Dict[str, Any]) -> None:
        if "status" in values and values["status"] not in INSTANCE_STATUSES:
            raise ValueError(f"Unknown instance status: {values['status']}")
        if "condition" in values and values["condition"] not in INSTANCE_CONDITIONS:
            raise ValueError(f"Unknown instance condition: {values['condition']}")
        if "instance_code" in values and not str(values["instance_code"]).strip():
            raise ValueError("Instance code is required.")
        if (values.get("purchase_price") or 0) < 0:
            raise ValueError("purchase_price cannot be negative.")

    def _code_prefix(self, book: Book) -> str:
        return book.isbn or book.id.replace("-", "")[-6:].upper()

    def _next_code_number(self, conn: sqlite3.Connection, prefix: str) -> int:
        rows = conn.execute("SELECT instance_code FROM book_instances WHERE instance_code LIKE ?",
                            (f"{prefix}-%",)).fetchall()
        numbers = [int(suffix) for suffix in (row[0][len(prefix) + 1:] for row in rows) if suffix.isdigit()]
        return max(numbers, default=0) + 1

    def create_instance(self, book_id: str, instance_code: Optional[str] = None, status: str = "available",
                        condition: str = "good", location: Optional[str] = DEFAULT_LOCATION,
                        **fields: Any) -> BookInstance:
        book = self._require_book(book_id)
        conn = self._connect()
        try:
            if not instance_code:
                prefix = self._code_prefix(book)
                instance_code = f"{prefix}-{self._next_code_number(conn, prefix):03d}"
            instance = self._insert_instance(conn, book_id, instance_code, status, condition, location, fields)
            conn.commit()
        finally:
            conn.close()
        self.recalculate_available_copies(book_id)
        return instance

    def _insert_instance(self, conn: sqlite3.Connection, book_id: str, instance_code: str, status: str,
                         condition: str, location: Optional[str], fields: Dict[str, Any]) -> BookInstance:
        values = {k: v for k, v in fields.items() if k in INSTANCE_FIELDS}
        values.update(instance_code=instance_code, status=status, condition=condition)
        self._check_instance_values(values)
        if values.get("shelf_id") is not None:
            if not conn.execute("SELECT 1 FROM shelves WHERE id = ?", (values["shelf_id"],)).fetchone():
                raise LookupError(f"Shelf {values['shelf_id']} not found.")
        instance = BookInstance(
            id=str(uuid.uuid4()), book_id=book_id, location=location or DEFAULT_LOCATION,
            created_at=timestamp(), **values,
        )
        try:
            conn.execute(
                """INSERT INTO book_instances (id, book_id, instance_code, status, condition, purchase_price,
                       date_acquired, notes, shelf_id, position, location, is_active, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (instance.id, book_id, instance.instance_code, instance.status, instance.condition,
                 instance.purchase_price, instance.date_acquired, instance.notes, instance.shelf_id,
                 instance.position, instance.location, int(instance.is_active), instance.created_at),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Instance code {instance.instance_code} already exists.") from e
        return instance

    def get_instance(self, instance_id: str) -> Optional[BookInstance]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM book_instances WHERE id = ?", (instance_id,)).fetchone()
            return BookInstance.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def _require_instance(self, instance_id: str) -> BookInstance:
        instance = self.get_instance(instance_id)
        if not instance:
            raise LookupError(f"Book instance {instance_id} not found.")
        return instance

    def list_instances(self, status: Optional[str] = None, book_id: Optional[str] = None) -> List[BookInstance]:
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if book_id:
            clauses.append("book_id = ?")
            params.append(book_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(f"SELECT * FROM book_instances {where} ORDER BY instance_code", params).fetchall()
            return [BookInstance.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def list_instances_for_book(self, book_id: str) -> List[BookInstance]:
        self._require_book(book_id)
        return self.list_instances(book_id=book_id)

    def update_instance(self, instance_id: str, **changes: Any) -> BookInstance:
        instance = self._require_instance(instance_id)
        changes = {k: v for k, v in changes.items() if k in INSTANCE_FIELDS and v is not None}
        if not changes:
            raise ValueError("Nothing to update.")
        self._check_instance_values(changes)
        if "is_active" in changes:
            changes["is_active"] = int(bool(changes["is_active"]))
        assignments = ", ".join(f"{key} = ?" for key in changes)
        conn = self._connect()
        try:
            conn.execute(f"UPDATE book_instances SET {assignments} WHERE id = ?", (*changes.values(), instance_id))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Instance code {changes.get('instance_code')} already exists.") from e
        finally:
            conn.close()
        self.recalculate_available_copies(instance.book_id)
        return self._require_instance(instance_id)

    def update_instance_status(self, instance_id: str, status: str) -> BookInstance:
        return self.update_instance(instance_id, status=status)

    def delete_instance(self, instance_id: str) -> bool:
        instance = self.get_instance(instance_id)
        if not instance:
            return False
        if self.get_instance_reservation(instance_id):
            raise ValueError("Instance is held by an active reservation.")
        conn = self._connect()
        try:
            conn.execute("DELETE FROM book_instances WHERE id = ?", (instance_id,))
            conn.commit()
        finally:
            conn.close()
        self.recalculate_available_copies(instance.book_id)
        return True

    def create_multiple_instances(self, book_id: str, count: int, **defaults: Any) -> List[BookInstance]:
        """Create `count` copies with generated codes `<prefix>-NNN`."""
        if not 1 <= count <= MAX_BATCH_INSTANCES:
            raise ValueError(f"count must be between 1 and {MAX_BATCH_INSTANCES}.")
        book = self._require_book(book_id)
        status = defaults.pop("status", "available")
        condition = defaults.pop("condition", "good")
        location = defaults.pop("location", DEFAULT_LOCATION)
        created = []
        conn = self._connect()
        try:
            prefix = self._code_prefix(book)
            start = self._next_code_number(conn, prefix)
            for n in range(start, start + count):
                code = f"{prefix}-{n:03d}"
                created.append(self._insert_instance(conn, book_id, code, status, condition, location, defaults))
            conn.commit()
        finally:
            conn.close()
        self.recalculate_available_copies(book_id)
        logger.info("Created %d instances for book %s", len(created), book_id)
        return created

    def auto_create_instances(self, book_id: str) -> List[BookInstance]:
        """Top the number of copies up to the book's available_copies."""
        book = self._require_book(book_id)
        existing = len(self.list_instances(book_id=book_id))
        missing = book.available_copies - existing
        if missing <= 0:
            return []
        return self.create_multiple_instances(book_id, missing)

    def bulk_create_instances(self, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        created, errors = [], []
        for index, item in enumerate(items):
            data = dict(item)
            try:
                book_id = data.pop("book_id")
                created.append(self.create_instance(book_id, **data))
            except (KeyError, ValueError, LookupError) as e:
                errors.append({"index": index, "error": str(e)})
        return {"created": created, "errors": errors}

    def bulk_update_instance_statuses(self, instance_ids: List[str], status: str) -> List[Dict[str, Any]]:
        if status not in INSTANCE_STATUSES:
            raise ValueError(f"Unknown instance status: {status}")
        results = []
        for instance_id in instance_ids:
            try:
                self.update_instance_status(instance_id, status)
                results.append({"id": instance_id, "success": True})
            except (ValueError, LookupError) as e:
                results.append({"id": instance_id, "success": False, "error": str(e)})
        return results

    def recalculate_available_copies(self, book_id: str) -> Optional[int]:
        """Sync available_copies with available active copies; None when the book has none on record."""
        conn = self._connect()
        try:
            total = conn.execute("SELECT COUNT(*) FROM book_instances WHERE book_id = ?", (book_id,)).fetchone()[0]
            if not total:
                return None
            available = conn.execute(
                "SELECT COUNT(*) FROM book_instances WHERE book_id = ? AND status = 'available' AND is_active = 1",
                (book_id,),
            ).fetchone()[0]
            conn.execute("UPDATE books SET available_copies = ?, updated_at = ? WHERE id = ?",
                         (available, timestamp(), book_id))
            conn.commit()
            return available
        finally:
            conn.close()

    def get_best_available_instance(self, book_id: str) -> Optional[BookInstance]:
        candidates = [i for i in self.list_instances(status="available", book_id=book_id) if i.is_active]
        if not candidates:
            return None
        candidates.sort(key=lambda i: (
            INSTANCE_CONDITIONS.index(i.condition) if i.condition in INSTANCE_CONDITIONS else len(INSTANCE_CONDITIONS),
            i.shelf_id is None,
            i.date_acquired is None,
            i.date_acquired or "",
            i.created_at or "",
        ))
        return candidates[0]

    def get_instance_stats(self) -> Dict[str, Any]:
        conn = self._connect()
        try:
            by_status = {status: 0 for status in INSTANCE_STATUSES}
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM book_instances GROUP BY status"):
                by_status[row["status"]] = row["n"]
            by_condition = {condition: 0 for condition in INSTANCE_CONDITIONS}
            for row in conn.execute("SELECT condition, COUNT(*) AS n FROM book_instances GROUP BY condition"):
                by_condition[row["condition"]] = row["n"]
            active = conn.execute("SELECT COUNT(*) FROM book_instances WHERE is_active = 1").fetchone()[0]
        finally:
            conn.close()
        total = sum(by_status.values())
        return {
            "total": total,
            "active": active,
            "inactive": total - active,
            "by_status": by_status,
            "by_condition": by_condition,
        }

    def get_instance_status_summary(self, book_id: str) -> Dict[str, Any]:
        instances = self.list_instances_for_book(book_id)
        summary = {status: 0 for status in INSTANCE_STATUSES}
        for instance in instances:
            summary[instance.status] = summary.get(instance.status, 0) + 1
        return {"book_id": book_id, "total": len(instances), "by_status": summary}

    def get_instance_reservation(self, instance_id: str) -> Optional[Reservation]:
        statuses = STATUS_GROUPS["active"]
        conn = self._connect()
        try:
            row = conn.execute(
                f"""SELECT * FROM reservations WHERE book_instance_id = ?
                    AND status IN ({','.join('?' * len(statuses))})
                    ORDER BY created_at DESC LIMIT 1""",
                (instance_id, *statuses),
            ).fetchone()
            return Reservation.from_dict(dict(row)) if row else None
        finally:
            conn.close()
