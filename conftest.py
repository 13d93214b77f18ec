import pytest

from libdesk import database
from libdesk.accounts import Accounts
from libdesk.assistant.tool_selection import clear_caches
from libdesk.circulation import Circulation
from libdesk.journals import Journals
from libdesk.library import Library
from libdesk.notifications import NotificationCenter
from libdesk.services.cache_manager import cache_manager
from libdesk.services.mailer import Mailer
from libdesk.shelves import ShelfLayout


@pytest.fixture
def db_file(tmp_path, request, monkeypatch):
    # A separate database file for every test
    path = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    monkeypatch.setenv("LIBRARY_DB_FILE", path)
    return path


@pytest.fixture(autouse=True)
def _fresh_caches():
    clear_caches()
    cache_manager.clear()
    yield
    clear_caches()


@pytest.fixture
def lib(db_file):
    return Library(db_file=db_file)


@pytest.fixture
def shelves(db_file):
    return ShelfLayout(db_file=db_file)


@pytest.fixture
def accounts(db_file):
    return Accounts(db_file=db_file)


@pytest.fixture
def notifications(db_file):
    return NotificationCenter(db_file=db_file, mailer=Mailer(enabled=False))


@pytest.fixture
def circulation(db_file, lib, notifications):
    return Circulation(db_file=db_file, library=lib, notifications=notifications)


@pytest.fixture
def reader(accounts):
    return accounts.create_user("Anna Reader", "anna@example.com", "secret-pass", max_books_allowed=2)


@pytest.fixture
def book(lib):
    created = lib.create_book("Dune", "Frank Herbert", isbn="9780306406157", genre="Science Fiction")
    lib.create_multiple_instances(created.id, 2)
    return lib.get_book(created.id)


@pytest.fixture
def journals(db_file):
    return Journals(db_file=db_file)
