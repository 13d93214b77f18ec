from unittest.mock import MagicMock

from typer.testing import CliRunner

from libdesk import cli
from libdesk.book import Book
from libdesk.cli import app
from libdesk.library import Library

runner = CliRunner()


def _invoke(db_file, *args):
    return runner.invoke(app, ["--db", db_file, *args])


def test_init_db(db_file):
    result = _invoke(db_file, "init-db")
    assert result.exit_code == 0
    assert "Database ready" in result.stdout


def test_books_empty(db_file):
    result = _invoke(db_file, "books")
    assert result.exit_code == 0
    assert "No books found." in result.stdout


def test_books_table(db_file, lib):
    lib.create_book("Dune", "Frank Herbert", genre="SF")
    result = _invoke(db_file, "books")
    assert result.exit_code == 0
    assert "Catalog" in result.stdout
    assert "Dune" in result.stdout

    filtered = _invoke(db_file, "books", "--genre", "Poetry")
    assert "No books found." in filtered.stdout


def test_import_isbn(db_file, monkeypatch):
    import_mock = MagicMock(side_effect=[
        Book(title="Dune", authors="Frank Herbert", isbn="9780306406157"),
        LookupError("No Open Library record for ISBN 9780262033848."),
    ])
    monkeypatch.setattr(Library, "import_by_isbn", import_mock)

    result = _invoke(db_file, "import-isbn", "9780306406157", "9780262033848")
    assert result.exit_code == 0
    assert "Added: Dune by Frank Herbert" in result.stdout
    assert "Not found: 9780262033848" in result.stdout
    assert "Imported 1 of 2" in result.stdout
    assert import_mock.call_count == 2


def test_create_admin(db_file, accounts):
    result = _invoke(db_file, "create-admin", "--email", "root@example.com", "--password", "admin-pass")
    assert result.exit_code == 0
    assert "Admin created: root@example.com" in result.stdout
    assert accounts.get_user_by_email("root@example.com").roles == ["admin"]

    again = _invoke(db_file, "create-admin", "--email", "root@example.com", "--password", "admin-pass")
    assert again.exit_code == 1
    assert "Error" in again.stdout


def test_send_reminders(db_file):
    result = _invoke(db_file, "send-reminders")
    assert result.exit_code == 0
    assert "Notifications sent" in result.stdout
    assert "Due soon: 0" in result.stdout


def test_select_tools(db_file):
    result = _invoke(db_file, "select-tools", "сменить пароль пользователя")
    assert result.exit_code == 0
    assert "changeUserPassword" in result.stdout


def test_stats(db_file, lib):
    lib.create_book("Dune", "Frank Herbert")
    result = _invoke(db_file, "stats")
    assert result.exit_code == 0
    assert "books.total_books" in result.stdout


def test_serve_runs_uvicorn(db_file, monkeypatch):
    run_mock = MagicMock()
    monkeypatch.setattr(cli.subprocess, "run", run_mock)
    result = _invoke(db_file, "serve", "--reload")
    assert result.exit_code == 0
    args = run_mock.call_args.args[0]
    assert "libdesk.api:app" in args
    assert args[-1] == "--reload"
    assert run_mock.call_args.kwargs["env"]["LIBRARY_DB_FILE"] == db_file
