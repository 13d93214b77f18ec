import pytest

from libdesk import database
from libdesk.dialog_history import DialogHistory


@pytest.fixture
def history(db_file):
    return DialogHistory(db_file=db_file)


def test_add_and_read_conversation(history):
    history.add_message("c1", "user", "Find books by Tolkien")
    history.add_message("c1", "tool", "3 results", tool_name="searchBooks")
    history.add_message("c2", "user", "Hello")

    messages = history.by_conversation("c1")
    assert [m["role"] for m in messages] == ["user", "tool"]
    assert messages[1]["tool_name"] == "searchBooks"
    assert len(history.list_all(limit=2)) == 2


def test_add_message_validation(history):
    with pytest.raises(ValueError):
        history.add_message("c1", "robot", "beep")
    with pytest.raises(ValueError):
        history.add_message("", "user", "hello")


def test_search(history):
    history.add_message("c1", "user", "Reserve Dune please")
    history.add_message("c1", "tool", "done", tool_name="createReservation")
    assert len(history.search("dune")) == 1
    assert len(history.search("reserv")) == 2
    assert history.search("  ") == []


def test_delete_older_than(history, db_file):
    history.add_message("c1", "user", "old question")
    history.add_message("c1", "user", "new question")
    conn = database.get_db_connection(db_file)
    conn.execute("UPDATE dialog_history SET created_at = '2020-01-01T00:00:00' WHERE content = 'old question'")
    conn.commit()
    conn.close()

    assert history.delete_older_than(30) == 1
    assert [m["content"] for m in history.by_conversation("c1")] == ["new question"]
    with pytest.raises(ValueError):
        history.delete_older_than(-1)
