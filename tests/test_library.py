import httpx
import pytest

from libdesk.errors import ExternalServiceError


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def json(self):
        return self._payload


def test_create_and_get_book(lib):
    book = lib.create_book("The Hobbit", "J.R.R. Tolkien", isbn="978-0-262-03384-8", genre="Fantasy")
    assert book.id
    stored = lib.get_book(book.id)
    assert stored.title == "The Hobbit"
    assert stored.isbn == "9780262033848"
    assert stored.available_copies == 0


def test_create_book_rejects_bad_input(lib):
    with pytest.raises(ValueError):
        lib.create_book("12345", "Someone")
    with pytest.raises(ValueError):
        lib.create_book("Title", "   ")
    with pytest.raises(ValueError):
        lib.create_book("Title", "Author", isbn="1234567890")


def test_duplicate_isbn_rejected(lib):
    lib.create_book("First", "Author", isbn="9780306406157")
    with pytest.raises(ValueError, match="already exists"):
        lib.create_book("Second", "Author", isbn="978-0-306-40615-7")


def test_html_is_stripped_from_titles(lib):
    book = lib.create_book("<b>Bold</b> Title", "Author <script>x</script>")
    assert book.title == "Bold Title"
    assert "<" not in book.authors


def test_list_books_sorting_and_paging(lib):
    for title, year in (("Beta", 2001), ("Alpha", 1999), ("Gamma", 2010)):
        lib.create_book(title, "Writer", publication_year=year)

    assert [b.title for b in lib.list_books()] == ["Alpha", "Beta", "Gamma"]
    newest = lib.list_books(sort_by="publication_year", order="desc", limit=2)
    assert [b.title for b in newest] == ["Gamma", "Beta"]
    assert [b.title for b in lib.list_books(limit=2, offset=2)] == ["Gamma"]
    assert lib.count_books() == 3
    assert lib.count_books(q="amm") == 1


def test_list_books_unknown_sort_field(lib):
    with pytest.raises(ValueError):
        lib.list_books(sort_by="password_hash")


def test_search_and_genre_filter(lib):
    lib.create_book("Dune", "Frank Herbert", genre="Science Fiction")
    lib.create_book("Emma", "Jane Austen", genre="Romance")
    assert [b.title for b in lib.search_books("herbert")] == ["Dune"]
    assert [b.title for b in lib.list_books(genre="Romance")] == ["Emma"]
    assert lib.search_books("   ") == []


def test_update_book(lib):
    book = lib.create_book("Old", "Author")
    updated = lib.update_book(book.id, title="New", genre="Poetry", not_a_field="x")
    assert updated.title == "New"
    assert lib.get_book(book.id).genre == "Poetry"
    assert lib.get_book(book.id).updated_at is not None

    with pytest.raises(ValueError):
        lib.update_book(book.id)
    with pytest.raises(LookupError):
        lib.update_book("missing", title="X")


def test_genre_and_categorization_shortcuts(lib):
    book = lib.create_book("Dune", "Frank Herbert")
    assert lib.update_genre(book.id, " Sci-Fi ").genre == "Sci-Fi"
    assert lib.update_categorization(book.id, "84(7)").categorization == "84(7)"


def test_delete_book(lib, book):
    assert lib.delete_book(book.id) is True
    assert lib.get_book(book.id) is None
    assert lib.list_instances(book_id=book.id) == []
    assert lib.delete_book(book.id) is False


def test_instances_keep_available_copies_in_sync(lib):
    book = lib.create_book("Dune", "Frank Herbert", isbn="9780306406157")
    created = lib.create_multiple_instances(book.id, 3)
    assert [i.instance_code for i in created] == ["9780306406157-001", "9780306406157-002", "9780306406157-003"]
    assert lib.get_book(book.id).available_copies == 3

    lib.update_instance_status(created[0].id, "maintenance")
    assert lib.get_book(book.id).available_copies == 2

    lib.update_instance(created[1].id, is_active=False)
    assert lib.get_book(book.id).available_copies == 1

    lib.delete_instance(created[2].id)
    assert lib.get_book(book.id).available_copies == 0


def test_instance_codes_continue_after_delete(lib):
    book = lib.create_book("Dune", "Frank Herbert", isbn="9780306406157")
    first, _, _ = lib.create_multiple_instances(book.id, 3)
    lib.delete_instance(first.id)

    assert lib.create_instance(book.id).instance_code == "9780306406157-004"
    more = lib.create_multiple_instances(book.id, 2)
    assert [i.instance_code for i in more] == ["9780306406157-005", "9780306406157-006"]
    assert len(lib.list_instances_for_book(book.id)) == 5


def test_instance_validation(lib, book):
    instance = lib.list_instances_for_book(book.id)[0]
    with pytest.raises(ValueError):
        lib.update_instance_status(instance.id, "stolen")
    with pytest.raises(ValueError):
        lib.create_instance(book.id, condition="shiny")
    with pytest.raises(ValueError, match="already exists"):
        lib.create_instance(book.id, instance_code=instance.instance_code)
    with pytest.raises(LookupError):
        lib.create_instance("missing")
    with pytest.raises(ValueError):
        lib.create_multiple_instances(book.id, 0)


def test_best_available_instance_prefers_condition(lib):
    book = lib.create_book("Dune", "Frank Herbert")
    lib.create_instance(book.id, condition="poor")
    best = lib.create_instance(book.id, condition="new")
    lib.create_instance(book.id, condition="excellent", status="borrowed")
    assert lib.get_best_available_instance(book.id).id == best.id


def test_auto_create_instances_tops_up(lib):
    book = lib.create_book("Dune", "Frank Herbert", available_copies=2)
    assert len(lib.auto_create_instances(book.id)) == 2
    assert lib.auto_create_instances(book.id) == []


def test_bulk_instance_operations(lib, book):
    result = lib.bulk_create_instances([
        {"book_id": book.id, "condition": "new"},
        {"book_id": "missing"},
        {"condition": "good"},
    ])
    assert len(result["created"]) == 1
    assert [e["index"] for e in result["errors"]] == [1, 2]

    ids = [result["created"][0].id, "missing"]
    statuses = lib.bulk_update_instance_statuses(ids, "lost")
    assert statuses[0]["success"] is True
    assert statuses[1]["success"] is False
    with pytest.raises(ValueError):
        lib.bulk_update_instance_statuses(ids, "burnt")


def test_instance_stats_and_summary(lib, book):
    instance = lib.list_instances_for_book(book.id)[0]
    lib.update_instance_status(instance.id, "maintenance")
    stats = lib.get_instance_stats()
    assert stats["total"] == 2
    assert stats["by_status"]["maintenance"] == 1
    summary = lib.get_instance_status_summary(book.id)
    assert summary["by_status"] == {"available": 1, "reserved": 0, "borrowed": 0, "maintenance": 1, "lost": 0}


def test_availability(lib, book):
    availability = lib.get_availability(book.id)
    assert availability["is_available"] is True
    assert availability["instances"]["available"] == 2
    assert availability["next_return_date"] is None


def test_favorites(lib, accounts, book):
    user = accounts.create_user("Fan", "fan@example.com", "password1")
    lib.add_favorite(user.id, book.id)
    assert [b.id for b in lib.list_favorites(user.id)] == [book.id]
    with pytest.raises(ValueError):
        lib.add_favorite(user.id, book.id)
    assert lib.remove_favorite(user.id, book.id) is True
    assert lib.remove_favorite(user.id, book.id) is False
    with pytest.raises(LookupError):
        lib.add_favorite("ghost", book.id)


def test_book_statistics(lib, book):
    lib.create_book("Emma", "Jane Austen", genre="Romance")
    stats = lib.get_book_statistics()
    assert stats["total_books"] == 2
    assert stats["total_instances"] == 2
    assert stats["genres"]["Romance"] == 1
    assert stats["unshelved_books"] == 2


def test_import_by_isbn(lib, monkeypatch):
    payloads = {
        "https://openlibrary.org/api/books?bibkeys=ISBN:9780306406157&format=json&jscmd=data": {
            "ISBN:9780306406157": {
                "title": "Dune",
                "authors": [{"key": "/authors/OL1A"}],
                "publish_date": "August 1965",
                "publishers": [{"name": "Chilton"}],
                "subjects": [{"name": "Science Fiction"}],
                "number_of_pages": 412,
            }
        },
        "https://openlibrary.org/authors/OL1A.json": {"name": "Frank Herbert"},
    }
    monkeypatch.setattr("libdesk.library.httpx.get", lambda url, timeout: FakeResponse(200, payloads[url]))

    book = lib.import_by_isbn("978-0-306-40615-7")
    assert book.title == "Dune"
    assert book.authors == "Frank Herbert"
    assert book.publication_year == 1965
    assert book.publisher == "Chilton"
    assert book.genre == "Science Fiction"
    assert book.cover == "/api/covers/9780306406157"

    with pytest.raises(ValueError, match="already exists"):
        lib.import_by_isbn("9780306406157")


def test_import_by_isbn_not_found(lib, monkeypatch):
    monkeypatch.setattr("libdesk.library.httpx.get", lambda url, timeout: FakeResponse(200, {}))
    with pytest.raises(LookupError):
        lib.import_by_isbn("9780262033848")


def test_import_by_isbn_invalid(lib):
    with pytest.raises(ValueError):
        lib.import_by_isbn("")
    with pytest.raises(ValueError):
        lib.import_by_isbn("12345")


def test_import_by_isbn_network_failure(lib, monkeypatch):
    def boom(url, timeout):
        raise httpx.ConnectError("no route")

    monkeypatch.setattr("libdesk.library.httpx.get", boom)
    monkeypatch.setattr("libdesk.library.time.sleep", lambda seconds: None)
    with pytest.raises(ExternalServiceError):
        lib.import_by_isbn("9780262033848")
