import logging
import sqlite3
from typing import Any, Dict, List, Optional

from libdesk.book import Book, Shelf
from libdesk.config import settings
from libdesk.database import get_db_connection, initialize_database, timestamp

logger = logging.getLogger(__name__)


class ShelfLayout:
    """Shelves of the reading room and the book slots on them.

    Positions are 1-based and a slot holds at most one book. New shelves are
    laid out on a grid of ``settings.shelf_grid_columns`` columns.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        initialize_database(db_file)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- CRUD ------------------------- #
    def create_shelf(self, category: str, capacity: int, shelf_number: int,
                     pos_x: int = 0, pos_y: int = 0) -> Shelf:
        if not category or not category.strip():
            raise ValueError("Shelf category is required.")
        if capacity < 1:
            raise ValueError("Capacity must be at least 1.")
        conn = self._connect()
        try:
            cursor = conn.execute(
                "INSERT INTO shelves (category, capacity, shelf_number, pos_x, pos_y) VALUES (?, ?, ?, ?, ?)",
                (category.strip(), capacity, shelf_number, pos_x, pos_y),
            )
            conn.commit()
            shelf_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Shelf number {shelf_number} is already taken.") from e
        finally:
            conn.close()
        logger.info("Shelf %s created at (%s, %s)", shelf_number, pos_x, pos_y)
        return Shelf(id=shelf_id, category=category, capacity=capacity, shelf_number=shelf_number,
                     pos_x=pos_x, pos_y=pos_y)

    def get_shelf(self, shelf_id: int) -> Optional[Shelf]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM shelves WHERE id = ?", (shelf_id,)).fetchone()
            return Shelf.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def _require_shelf(self, shelf_id: int) -> Shelf:
        shelf = self.get_shelf(shelf_id)
        if not shelf:
            raise LookupError(f"Shelf {shelf_id} not found.")
        return shelf

    def list_shelves(self) -> List[Shelf]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM shelves ORDER BY shelf_number").fetchall()
            return [Shelf.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def update_shelf(self, shelf_id: int, category: Optional[str] = None, capacity: Optional[int] = None,
                     shelf_number: Optional[int] = None, pos_x: Optional[int] = None,
                     pos_y: Optional[int] = None) -> Shelf:
        shelf = self._require_shelf(shelf_id)
        if category is not None:
            if not category.strip():
                raise ValueError("Shelf category is required.")
            shelf.category = category.strip()
        if capacity is not None:
            if capacity < 1:
                raise ValueError("Capacity must be at least 1.")
            highest = self._highest_position(shelf_id)
            if capacity < highest:
                raise ValueError(f"Capacity cannot be lower than occupied position {highest}.")
            shelf.capacity = capacity
        if shelf_number is not None:
            shelf.shelf_number = shelf_number
        if pos_x is not None:
            shelf.pos_x = pos_x
        if pos_y is not None:
            shelf.pos_y = pos_y

        conn = self._connect()
        try:
            conn.execute(
                "UPDATE shelves SET category = ?, capacity = ?, shelf_number = ?, pos_x = ?, pos_y = ? WHERE id = ?",
                (shelf.category, shelf.capacity, shelf.shelf_number, shelf.pos_x, shelf.pos_y, shelf_id),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Shelf number {shelf.shelf_number} is already taken.") from e
        finally:
            conn.close()
        return shelf

    def delete_shelf(self, shelf_id: int) -> bool:
        """Delete a shelf; its books become unplaced."""
        conn = self._connect()
        try:
            conn.execute("UPDATE books SET shelf_id = NULL, position = NULL WHERE shelf_id = ?", (shelf_id,))
            cursor = conn.execute("DELETE FROM shelves WHERE id = ?", (shelf_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def move_shelf(self, shelf_id: int, pos_x: int, pos_y: int) -> Shelf:
        return self.update_shelf(shelf_id, pos_x=pos_x, pos_y=pos_y)

    def auto_position_shelf(self, category: str, capacity: int, shelf_number: int) -> Shelf:
        """Create a shelf in the first free cell of the floor grid."""
        taken = {(s.pos_x, s.pos_y) for s in self.list_shelves()}
        columns = max(1, settings.shelf_grid_columns)
        index = 0
        while True:
            cell = ((index % columns) * settings.shelf_spacing_x, (index // columns) * settings.shelf_spacing_y)
            if cell not in taken:
                break
            index += 1
        return self.create_shelf(category, capacity, shelf_number, pos_x=cell[0], pos_y=cell[1])

    # ------------------------- Slots ------------------------- #
    def _highest_position(self, shelf_id: int) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COALESCE(MAX(position), 0) FROM books WHERE shelf_id = ?",
                                (shelf_id,)).fetchone()[0]
        finally:
            conn.close()

    def _occupied(self, shelf_id: int) -> Dict[int, Book]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM books WHERE shelf_id = ? AND position IS NOT NULL", (shelf_id,)
            ).fetchall()
            return {row["position"]: Book.from_dict(dict(row)) for row in rows}
        finally:
            conn.close()

    def validate_slot(self, shelf_id: int, position: int, book_id: Optional[str] = None) -> None:
        """Raise unless the slot exists and is free (or already held by ``book_id``)."""
        shelf = self._require_shelf(shelf_id)
        if not 1 <= position <= shelf.capacity:
            raise ValueError(f"Position must be between 1 and {shelf.capacity}.")
        holder = self._occupied(shelf_id).get(position)
        if holder and holder.id != book_id:
            raise ValueError(f"Position {position} on shelf {shelf.shelf_number} is taken by '{holder.title}'.")

    def get_layout(self, shelf_id: int) -> Dict[str, Any]:
        shelf = self._require_shelf(shelf_id)
        occupied = self._occupied(shelf_id)
        slots = []
        for position in range(1, shelf.capacity + 1):
            book = occupied.get(position)
            slots.append({
                "position": position,
                "book_id": book.id if book else None,
                "title": book.title if book else None,
                "authors": book.authors if book else None,
            })
        return {
            "shelf": shelf.to_dict(),
            "slots": slots,
            "occupied": len(occupied),
            "free": shelf.capacity - len(occupied),
        }

    def auto_arrange(self, book_ids: Optional[List[str]] = None, dry_run: bool = False) -> List[Dict[str, Any]]:
        """Place unplaced books, preferring shelves whose category matches the book.

        Returns the arrangements; they are written unless ``dry_run``.
        """
        shelves = self.list_shelves()
        if not shelves:
            return []
        occupied = {shelf.id: set(self._occupied(shelf.id)) for shelf in shelves}

        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM books WHERE shelf_id IS NULL ORDER BY genre, authors, title").fetchall()
        finally:
            conn.close()
        books = [Book.from_dict(dict(row)) for row in rows]
        if book_ids is not None:
            wanted = set(book_ids)
            books = [b for b in books if b.id in wanted]

        arrangements = []
        for book in books:
            labels = {v.strip().lower() for v in (book.genre, book.categorization) if v}
            matching = [s for s in shelves if s.category.lower() in labels]
            others = [s for s in shelves if s not in matching]
            for shelf in matching + others:
                position = 1
                while position <= shelf.capacity and position in occupied[shelf.id]:
                    position += 1
                if position > shelf.capacity:
                    continue
                occupied[shelf.id].add(position)
                arrangements.append({
                    "book_id": book.id,
                    "title": book.title,
                    "shelf_id": shelf.id,
                    "shelf_number": shelf.shelf_number,
                    "position": position,
                    "reason": "category match" if shelf in matching else "free slot",
                })
                break

        if arrangements and not dry_run:
            now = timestamp()
            conn = self._connect()
            try:
                for item in arrangements:
                    conn.execute("UPDATE books SET shelf_id = ?, position = ?, updated_at = ? WHERE id = ?",
                                 (item["shelf_id"], item["position"], now, item["book_id"]))
                for shelf_id in {item["shelf_id"] for item in arrangements}:
                    conn.execute("UPDATE shelves SET last_reorganized = ? WHERE id = ?", (now, shelf_id))
                conn.commit()
            finally:
                conn.close()
            logger.info("Auto-arranged %d books", len(arrangements))
        return arrangements
