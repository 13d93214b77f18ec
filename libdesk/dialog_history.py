import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from libdesk.database import get_db_connection, initialize_database, timestamp

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system", "tool")


class DialogHistory:
    """Stored assistant conversations."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        initialize_database(db_file)

    def add_message(self, conversation_id: str, role: str, content: str,
                    tool_name: Optional[str] = None) -> Dict[str, Any]:
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role}")
        if not conversation_id or not content:
            raise ValueError("conversation_id and content are required.")
        created_at = timestamp()
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                "INSERT INTO dialog_history (conversation_id, role, content, tool_name, created_at) VALUES (?, ?, ?, ?, ?)",
                (conversation_id, role, content, tool_name, created_at),
            )
            conn.commit()
            message_id = cursor.lastrowid
        finally:
            conn.close()
        return {"id": message_id, "conversation_id": conversation_id, "role": role, "content": content,
                "tool_name": tool_name, "created_at": created_at}

    def _query(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        conn = get_db_connection(self.db_file)
        try:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def list_all(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self._query("SELECT * FROM dialog_history ORDER BY created_at DESC, id DESC LIMIT ?", (limit,))

    def by_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        return self._query("SELECT * FROM dialog_history WHERE conversation_id = ? ORDER BY id", (conversation_id,))

    def search(self, q: str) -> List[Dict[str, Any]]:
        if not q or not q.strip():
            return []
        like = f"%{q.strip()}%"
        return self._query(
            "SELECT * FROM dialog_history WHERE content LIKE ? OR tool_name LIKE ? ORDER BY created_at DESC, id DESC",
            (like, like),
        )

    def delete_older_than(self, days: int) -> int:
        if days < 0:
            raise ValueError("days cannot be negative.")
        cutoff = (datetime.now() - timedelta(days=days)).isoformat(timespec="seconds")
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute("DELETE FROM dialog_history WHERE created_at < ?", (cutoff,))
            conn.commit()
            deleted = cursor.rowcount
        finally:
            conn.close()
        logger.info("Deleted %d dialog messages older than %d days", deleted, days)
        return deleted
