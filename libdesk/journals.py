import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from libdesk.database import get_db_connection, initialize_database, timestamp
from libdesk.journal import (
    ARTICLE_FIELDS, ARTICLE_TYPES, ISSUE_FIELDS, JOURNAL_CATEGORIES, JOURNAL_FIELDS, JOURNAL_FORMATS,
    JOURNAL_PERIODICITIES, Article, Issue, Journal,
)
from libdesk.reservation import parse_datetime
from libdesk.validators import ISSNValidator, TextValidator

logger = logging.getLogger(__name__)

MAX_JOURNAL_TITLE = 200


class Journals:
    """Periodicals: journals, their issues and the articles printed in them.

    Deleting a journal removes its issues, and deleting an issue removes its articles.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        initialize_database(db_file)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- Journals ------------------------- #
    def _check_journal(self, title: str, values: Dict[str, Any]) -> None:
        if not TextValidator.validate_title(title):
            raise ValueError("Journal title is required.")
        if len(title.strip()) > MAX_JOURNAL_TITLE:
            raise ValueError(f"Journal title is longer than {MAX_JOURNAL_TITLE} characters.")
        if values.get("issn"):
            if not ISSNValidator.is_valid_issn(values["issn"]):
                raise ValueError(f"Invalid ISSN: {values['issn']}")
            values["issn"] = ISSNValidator.normalize_issn(values["issn"])
        for name, allowed in (("format", JOURNAL_FORMATS), ("periodicity", JOURNAL_PERIODICITIES),
                              ("category", JOURNAL_CATEGORIES)):
            if name in values and values[name] not in allowed:
                raise ValueError(f"Unknown {name}: {values[name]}")
        for name in ("pages_per_issue", "circulation"):
            if (values.get(name) or 0) < 0:
                raise ValueError(f"{name} cannot be negative.")
        if values.get("foundation_date"):
            values["foundation_date"] = self._date(values["foundation_date"])

    @staticmethod
    def _date(value: str) -> str:
        try:
            return parse_datetime(value).date().isoformat()
        except ValueError as e:
            raise ValueError(f"Invalid date: {value}") from e

    def create_journal(self, title: str, **fields: Any) -> Journal:
        values = {k: v for k, v in fields.items() if k in JOURNAL_FIELDS and v is not None}
        self._check_journal(title, values)
        journal = Journal(title=title, created_at=timestamp(), **values)
        row = {k: getattr(journal, k) for k in JOURNAL_FIELDS}
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"INSERT INTO journals (title, {', '.join(row)}, created_at) "
                f"VALUES (?, {', '.join('?' * len(row))}, ?)",
                (journal.title, *row.values(), journal.created_at),
            )
            conn.commit()
            journal.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"A journal with ISSN {journal.issn} already exists.") from e
        finally:
            conn.close()
        logger.info("Journal created: %s", journal.title)
        return journal

    def get_journal(self, journal_id: int) -> Optional[Journal]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM journals WHERE id = ?", (journal_id,)).fetchone()
            return Journal.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def _require_journal(self, journal_id: int) -> Journal:
        journal = self.get_journal(journal_id)
        if not journal:
            raise LookupError(f"Journal {journal_id} not found.")
        return journal

    def journal_details(self, journal_id: int) -> Dict[str, Any]:
        """Journal fields plus a short list of its issues."""
        data = self._require_journal(journal_id).to_dict()
        data["issues"] = [
            {"id": i.id, "volume_number": i.volume_number, "issue_number": i.issue_number,
             "publication_date": i.publication_date}
            for i in self.list_issues(journal_id)
        ]
        return data

    def list_journals(self, q: Optional[str] = None, category: Optional[str] = None) -> List[Journal]:
        clauses, params = [], []
        if q:
            like = f"%{q.strip()}%"
            clauses.append("(title LIKE ? OR issn LIKE ? OR publisher LIKE ?)")
            params.extend([like] * 3)
        if category:
            clauses.append("category = ?")
            params.append(category)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(f"SELECT * FROM journals {where} ORDER BY title", params).fetchall()
            return [Journal.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def update_journal(self, journal_id: int, **changes: Any) -> Journal:
        journal = self._require_journal(journal_id)
        title = changes.pop("title", None) or journal.title
        values = {k: v for k, v in changes.items() if k in JOURNAL_FIELDS and v is not None}
        self._check_journal(title, values)
        journal.title = title.strip()
        for key, value in values.items():
            setattr(journal, key, value)
        journal.updated_at = timestamp()

        row = {k: getattr(journal, k) for k in JOURNAL_FIELDS}
        assignments = ", ".join(f"{k} = ?" for k in row)
        conn = self._connect()
        try:
            conn.execute(f"UPDATE journals SET title = ?, {assignments}, updated_at = ? WHERE id = ?",
                         (journal.title, *row.values(), journal.updated_at, journal_id))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"A journal with ISSN {journal.issn} already exists.") from e
        finally:
            conn.close()
        return journal

    def delete_journal(self, journal_id: int) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM journals WHERE id = ?", (journal_id,))
            conn.commit()
            deleted = cursor.rowcount > 0
        finally:
            conn.close()
        if deleted:
            logger.info("Journal deleted: %s", journal_id)
        return deleted

    # ------------------------- Issues ------------------------- #
    def _check_issue(self, conn: sqlite3.Connection, issue: Issue) -> None:
        for name in ("volume_number", "issue_number", "page_count"):
            value = getattr(issue, name)
            if not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive number.")
        if issue.circulation is not None and issue.circulation < 1:
            raise ValueError("circulation must be a positive number.")
        issue.publication_date = self._date(issue.publication_date)
        if issue.shelf_id is not None:
            if not conn.execute("SELECT 1 FROM shelves WHERE id = ?", (issue.shelf_id,)).fetchone():
                raise LookupError(f"Shelf {issue.shelf_id} not found.")

    def create_issue(self, journal_id: int, volume_number: int, issue_number: int, publication_date: str,
                     page_count: int, **fields: Any) -> Issue:
        self._require_journal(journal_id)
        values = {k: v for k, v in fields.items() if k in ISSUE_FIELDS}
        issue = Issue(journal_id=journal_id, volume_number=volume_number, issue_number=issue_number,
                      publication_date=publication_date, page_count=page_count, created_at=timestamp(), **values)
        conn = self._connect()
        try:
            self._check_issue(conn, issue)
            row = {k: getattr(issue, k) for k in ISSUE_FIELDS}
            cursor = conn.execute(
                f"INSERT INTO journal_issues (journal_id, {', '.join(row)}, created_at) "
                f"VALUES (?, {', '.join('?' * len(row))}, ?)",
                (journal_id, *row.values(), issue.created_at),
            )
            conn.commit()
            issue.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Volume {volume_number}, issue {issue_number} already exists.") from e
        finally:
            conn.close()
        return issue

    def get_issue(self, issue_id: int) -> Optional[Issue]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM journal_issues WHERE id = ?", (issue_id,)).fetchone()
            return Issue.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def _require_issue(self, issue_id: int) -> Issue:
        issue = self.get_issue(issue_id)
        if not issue:
            raise LookupError(f"Issue {issue_id} not found.")
        return issue

    def issue_details(self, issue_id: int) -> Dict[str, Any]:
        """Issue fields with the journal title and a short list of its articles."""
        issue = self._require_issue(issue_id)
        data = issue.to_dict()
        data["journal_title"] = self._require_journal(issue.journal_id).title
        data["articles"] = [
            {"id": a.id, "title": a.title, "authors": a.authors, "start_page": a.start_page,
             "end_page": a.end_page, "doi": a.doi}
            for a in self.list_articles(issue_id)
        ]
        return data

    def list_issues(self, journal_id: Optional[int] = None) -> List[Issue]:
        sql = "SELECT * FROM journal_issues"
        params: list = []
        if journal_id is not None:
            sql += " WHERE journal_id = ?"
            params.append(journal_id)
        conn = self._connect()
        try:
            rows = conn.execute(sql + " ORDER BY volume_number, issue_number", params).fetchall()
            return [Issue.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def update_issue(self, issue_id: int, **changes: Any) -> Issue:
        issue = self._require_issue(issue_id)
        for key, value in changes.items():
            if key in ISSUE_FIELDS and value is not None:
                setattr(issue, key, value)
        conn = self._connect()
        try:
            self._check_issue(conn, issue)
            row = {k: getattr(issue, k) for k in ISSUE_FIELDS}
            assignments = ", ".join(f"{k} = ?" for k in row)
            conn.execute(f"UPDATE journal_issues SET {assignments} WHERE id = ?", (*row.values(), issue_id))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Volume {issue.volume_number}, issue {issue.issue_number} already exists.") from e
        finally:
            conn.close()
        return issue

    def delete_issue(self, issue_id: int) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM journal_issues WHERE id = ?", (issue_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # ------------------------- Articles ------------------------- #
    def _check_article(self, article: Article, page_count: int) -> None:
        if not article.title:
            raise ValueError("Article title is required.")
        article.authors = [a.strip() for a in article.authors or [] if a and a.strip()]
        if not article.authors:
            raise ValueError("At least one author is required.")
        if article.type not in ARTICLE_TYPES:
            raise ValueError(f"Unknown article type: {article.type}")
        if article.start_page < 1 or article.end_page < 1:
            raise ValueError("Pages must be positive numbers.")
        if article.end_page < article.start_page:
            raise ValueError("End page cannot be before the start page.")
        if article.end_page > page_count:
            raise ValueError(f"The issue has only {page_count} pages.")

    def _article_row(self, article: Article) -> Dict[str, Any]:
        row = {k: getattr(article, k) for k in ARTICLE_FIELDS}
        row["authors"] = json.dumps(article.authors, ensure_ascii=False)
        row["keywords"] = json.dumps(article.keywords, ensure_ascii=False)
        return row

    def create_article(self, issue_id: int, title: str, authors: List[str], start_page: int, end_page: int,
                       **fields: Any) -> Article:
        issue = self._require_issue(issue_id)
        values = {k: v for k, v in fields.items() if k in ARTICLE_FIELDS and v is not None}
        article = Article(issue_id=issue_id, title=title, authors=authors, start_page=start_page,
                          end_page=end_page, created_at=timestamp(), **values)
        self._check_article(article, issue.page_count)
        row = self._article_row(article)
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"INSERT INTO articles (issue_id, {', '.join(row)}, created_at) "
                f"VALUES (?, {', '.join('?' * len(row))}, ?)",
                (issue_id, *row.values(), article.created_at),
            )
            conn.commit()
            article.id = cursor.lastrowid
        finally:
            conn.close()
        return article

    def get_article(self, article_id: int) -> Optional[Article]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM articles WHERE id = ?", (article_id,)).fetchone()
            return Article.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_articles(self, issue_id: Optional[int] = None) -> List[Article]:
        sql = "SELECT * FROM articles"
        params: list = []
        if issue_id is not None:
            sql += " WHERE issue_id = ?"
            params.append(issue_id)
        conn = self._connect()
        try:
            rows = conn.execute(sql + " ORDER BY start_page, id", params).fetchall()
            return [Article.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def search_articles(self, q: str) -> List[Article]:
        if not q or not q.strip():
            return []
        like = f"%{q.strip()}%"
        conn = self._connect()
        try:
            rows = conn.execute(
                """SELECT * FROM articles WHERE title LIKE ? OR authors LIKE ? OR keywords LIKE ?
                       OR doi LIKE ? OR abstract LIKE ? ORDER BY title""",
                (like,) * 5,
            ).fetchall()
            return [Article.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def update_article(self, article_id: int, **changes: Any) -> Article:
        article = self.get_article(article_id)
        if not article:
            raise LookupError(f"Article {article_id} not found.")
        for key, value in changes.items():
            if key in ARTICLE_FIELDS and value is not None:
                setattr(article, key, value.strip() if key == "title" else value)
        self._check_article(article, self._require_issue(article.issue_id).page_count)
        row = self._article_row(article)
        assignments = ", ".join(f"{k} = ?" for k in row)
        conn = self._connect()
        try:
            conn.execute(f"UPDATE articles SET {assignments} WHERE id = ?", (*row.values(), article_id))
            conn.commit()
        finally:
            conn.close()
        return article

    def delete_article(self, article_id: int) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM articles WHERE id = ?", (article_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def get_statistics(self) -> Dict[str, Any]:
        conn = self._connect()
        try:
            by_category = {
                row["category"]: row["n"]
                for row in conn.execute("SELECT category, COUNT(*) AS n FROM journals GROUP BY category")
            }
            return {
                "journals": conn.execute("SELECT COUNT(*) FROM journals").fetchone()[0],
                "issues": conn.execute("SELECT COUNT(*) FROM journal_issues").fetchone()[0],
                "articles": conn.execute("SELECT COUNT(*) FROM articles").fetchone()[0],
                "peer_reviewed": conn.execute("SELECT COUNT(*) FROM journals WHERE is_peer_reviewed = 1")
                .fetchone()[0],
                "by_category": by_category,
            }
        finally:
            conn.close()
