from __future__ import annotations

INSTANCE_STATUSES = ("available", "reserved", "borrowed", "maintenance", "lost")
# Best first; used when picking the copy to hand out.
INSTANCE_CONDITIONS = ("new", "excellent", "good", "fair", "poor", "damaged")


class Book:
    """A title in the catalog. Physical copies are BookInstance records."""

    def __init__(self, title: str, authors: str, id: str | None = None, isbn: str | None = None,
                 genre: str | None = None, categorization: str | None = None,
                 udk: str | None = None, bbk: str | None = None, edition: str | None = None,
                 description: str | None = None, publication_year: int | None = None,
                 publisher: str | None = None, page_count: int | None = None, language: str | None = None,
                 cover: str | None = None, available_copies: int = 0,
                 shelf_id: int | None = None, position: int | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.authors = authors.strip()
        self.isbn = isbn.strip() if isbn else None
        self.genre = genre
        self.categorization = categorization
        self.udk = udk
        self.bbk = bbk
        self.edition = edition
        self.description = description
        self.publication_year = publication_year
        self.publisher = publisher
        self.page_count = page_count
        self.language = language
        self.cover = cover
        self.available_copies = available_copies or 0
        self.shelf_id = shelf_id
        self.position = position
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.authors}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "authors": self.authors,
            "isbn": self.isbn,
            "genre": self.genre,
            "categorization": self.categorization,
            "udk": self.udk,
            "bbk": self.bbk,
            "edition": self.edition,
            "description": self.description,
            "publication_year": self.publication_year,
            "publisher": self.publisher,
            "page_count": self.page_count,
            "language": self.language,
            "cover": self.cover,
            "available_copies": self.available_copies,
            "shelf_id": self.shelf_id,
            "position": self.position,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            authors=data["authors"],
            isbn=data.get("isbn"),
            genre=data.get("genre"),
            categorization=data.get("categorization"),
            udk=data.get("udk"),
            bbk=data.get("bbk"),
            edition=data.get("edition"),
            description=data.get("description"),
            publication_year=data.get("publication_year"),
            publisher=data.get("publisher"),
            page_count=data.get("page_count"),
            language=data.get("language"),
            cover=data.get("cover"),
            available_copies=data.get("available_copies") or 0,
            shelf_id=data.get("shelf_id"),
            position=data.get("position"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class BookInstance:
    """A physical copy of a book."""

    def __init__(self, book_id: str, instance_code: str, id: str | None = None,
                 status: str = "available", condition: str = "good",
                 purchase_price: float | None = None, date_acquired: str | None = None,
                 notes: str | None = None, shelf_id: int | None = None, position: int | None = None,
                 location: str | None = None, is_active: bool = True, created_at: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.instance_code = instance_code.strip()
        self.status = status
        self.condition = condition
        self.purchase_price = purchase_price
        self.date_acquired = date_acquired
        self.notes = notes
        self.shelf_id = shelf_id
        self.position = position
        self.location = location
        self.is_active = bool(is_active)
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "instance_code": self.instance_code,
            "status": self.status,
            "condition": self.condition,
            "purchase_price": self.purchase_price,
            "date_acquired": self.date_acquired,
            "notes": self.notes,
            "shelf_id": self.shelf_id,
            "position": self.position,
            "location": self.location,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "BookInstance":
        return BookInstance(
            id=data.get("id"),
            book_id=data["book_id"],
            instance_code=data["instance_code"],
            status=data.get("status") or "available",
            condition=data.get("condition") or "good",
            purchase_price=data.get("purchase_price"),
            date_acquired=data.get("date_acquired"),
            notes=data.get("notes"),
            shelf_id=data.get("shelf_id"),
            position=data.get("position"),
            location=data.get("location"),
            is_active=bool(data.get("is_active", True)),
            created_at=data.get("created_at"),
        )


class Shelf:
    """A shelf on the reading-room floor plan."""

    def __init__(self, category: str, capacity: int, shelf_number: int, id: int | None = None,
                 pos_x: int = 0, pos_y: int = 0, last_reorganized: str | None = None) -> None:
        self.id = id
        self.category = category.strip()
        self.capacity = capacity
        self.shelf_number = shelf_number
        self.pos_x = pos_x
        self.pos_y = pos_y
        self.last_reorganized = last_reorganized

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "capacity": self.capacity,
            "shelf_number": self.shelf_number,
            "pos_x": self.pos_x,
            "pos_y": self.pos_y,
            "last_reorganized": self.last_reorganized,
        }

    @staticmethod
    def from_dict(data: dict) -> "Shelf":
        return Shelf(
            id=data.get("id"),
            category=data["category"],
            capacity=data["capacity"],
            shelf_number=data["shelf_number"],
            pos_x=data.get("pos_x") or 0,
            pos_y=data.get("pos_y") or 0,
            last_reorganized=data.get("last_reorganized"),
        )
