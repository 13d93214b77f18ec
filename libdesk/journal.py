from __future__ import annotations

import json

JOURNAL_FORMATS = ("Print", "Electronic", "Mixed")
JOURNAL_PERIODICITIES = ("Weekly", "BiWeekly", "Monthly", "Quarterly", "BiAnnually", "Annually")
JOURNAL_CATEGORIES = ("Scientific", "Popular", "Entertainment", "Professional", "Educational", "Literary", "News")
ARTICLE_TYPES = ("Research", "Review", "CaseStudy", "ShortCommunication", "Editorial", "Commentary",
                 "Letter", "Other")


def _json_list(value) -> list:
    if not value:
        return []
    if isinstance(value, list):
        return value
    return json.loads(value)


class Journal:
    """A periodical title; its numbers are Issue records."""

    def __init__(self, title: str, id: int | None = None, issn: str | None = None,
                 registration_number: str | None = None, format: str = "Print", periodicity: str = "Monthly",
                 pages_per_issue: int = 0, description: str | None = None, publisher: str | None = None,
                 foundation_date: str | None = None, circulation: int = 0, is_open_access: bool = False,
                 category: str = "Scientific", target_audience: str | None = None,
                 is_peer_reviewed: bool = False, is_indexed_in_rints: bool = False,
                 is_indexed_in_scopus: bool = False, is_indexed_in_web_of_science: bool = False,
                 cover: str | None = None, created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.issn = issn
        self.registration_number = registration_number
        self.format = format
        self.periodicity = periodicity
        self.pages_per_issue = pages_per_issue or 0
        self.description = description
        self.publisher = publisher
        self.foundation_date = foundation_date
        self.circulation = circulation or 0
        self.is_open_access = bool(is_open_access)
        self.category = category
        self.target_audience = target_audience
        self.is_peer_reviewed = bool(is_peer_reviewed)
        self.is_indexed_in_rints = bool(is_indexed_in_rints)
        self.is_indexed_in_scopus = bool(is_indexed_in_scopus)
        self.is_indexed_in_web_of_science = bool(is_indexed_in_web_of_science)
        self.cover = cover
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @staticmethod
    def from_dict(data: dict) -> "Journal":
        fields = {k: data[k] for k in JOURNAL_FIELDS if data.get(k) is not None}
        return Journal(title=data["title"], id=data.get("id"), created_at=data.get("created_at"),
                       updated_at=data.get("updated_at"), **fields)


class Issue:
    """One number of a journal, optionally placed on a shelf."""

    def __init__(self, journal_id: int, volume_number: int, issue_number: int, publication_date: str,
                 page_count: int, id: int | None = None, cover: str | None = None,
                 circulation: int | None = None, special_theme: str | None = None,
                 shelf_id: int | None = None, position: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.journal_id = journal_id
        self.volume_number = volume_number
        self.issue_number = issue_number
        self.publication_date = publication_date
        self.page_count = page_count
        self.cover = cover
        self.circulation = circulation
        self.special_theme = special_theme
        self.shelf_id = shelf_id
        self.position = position
        self.created_at = created_at

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @staticmethod
    def from_dict(data: dict) -> "Issue":
        return Issue(
            id=data.get("id"),
            journal_id=data["journal_id"],
            volume_number=data["volume_number"],
            issue_number=data["issue_number"],
            publication_date=data["publication_date"],
            page_count=data["page_count"],
            cover=data.get("cover"),
            circulation=data.get("circulation"),
            special_theme=data.get("special_theme"),
            shelf_id=data.get("shelf_id"),
            position=data.get("position"),
            created_at=data.get("created_at"),
        )


class Article:
    """An article printed in an issue. Authors and keywords are stored as JSON arrays."""

    def __init__(self, issue_id: int, title: str, authors: list, start_page: int, end_page: int,
                 id: int | None = None, abstract: str | None = None, keywords: list | None = None,
                 doi: str | None = None, type: str = "Research", full_text: str | None = None,
                 created_at: str | None = None) -> None:
        self.id = id
        self.issue_id = issue_id
        self.title = title.strip()
        self.authors = authors
        self.abstract = abstract
        self.start_page = start_page
        self.end_page = end_page
        self.keywords = keywords or []
        self.doi = doi
        self.type = type
        self.full_text = full_text
        self.created_at = created_at

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @staticmethod
    def from_dict(data: dict) -> "Article":
        return Article(
            id=data.get("id"),
            issue_id=data["issue_id"],
            title=data["title"],
            authors=_json_list(data.get("authors")),
            abstract=data.get("abstract"),
            start_page=data["start_page"],
            end_page=data["end_page"],
            keywords=_json_list(data.get("keywords")),
            doi=data.get("doi"),
            type=data.get("type") or "Research",
            full_text=data.get("full_text"),
            created_at=data.get("created_at"),
        )


JOURNAL_FIELDS = (
    "issn", "registration_number", "format", "periodicity", "pages_per_issue", "description", "publisher",
    "foundation_date", "circulation", "is_open_access", "category", "target_audience", "is_peer_reviewed",
    "is_indexed_in_rints", "is_indexed_in_scopus", "is_indexed_in_web_of_science", "cover",
)
ISSUE_FIELDS = ("volume_number", "issue_number", "publication_date", "page_count", "cover", "circulation",
                "special_theme", "shelf_id", "position")
ARTICLE_FIELDS = ("title", "authors", "abstract", "start_page", "end_page", "keywords", "doi", "type", "full_text")
