import importlib
import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from starlette.websockets import WebSocketDisconnect

from libdesk.assistant.tool_catalog import ALL_TOOLS
from libdesk.config import settings

STAFF = {"X-API-Key": settings.api_key}


@pytest.fixture
def api_module(db_file):
    from libdesk import api

    # Reload api so its module level services use the test database
    return importlib.reload(api)


@pytest.fixture
def client(api_module):
    with TestClient(api_module.app) as test_client:
        yield test_client


def _register(client, email="anna@example.com", password="secret-pass"):
    response = client.post("/api/auth/register",
                           json={"full_name": "Anna Reader", "email": email, "password": password})
    assert response.status_code == 201
    login = client.post("/api/auth/login", json={"email": email, "password": password})
    assert login.status_code == 200
    return response.json(), {"Authorization": f"Bearer {login.json()['access_token']}"}


def _book(client, title="Dune", copies=0):
    response = client.post("/api/books", headers=STAFF, json={"title": title, "authors": "Frank Herbert"})
    assert response.status_code == 201
    book = response.json()
    if copies:
        client.post(f"/api/books/{book['id']}/instances/multiple", headers=STAFF, json={"count": copies})
    return book


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["total_books"] == 0
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_get_books_empty(client):
    response = client.get("/api/books")
    assert response.status_code == 200
    assert response.json() == []
    assert response.headers["X-Total-Count"] == "0"


def test_add_book_requires_staff(client):
    payload = {"title": "Dune", "authors": "Frank Herbert"}
    assert client.post("/api/books", json=payload).status_code == 401
    assert client.post("/api/books", headers={"X-API-Key": "invalid-key"}, json=payload).status_code == 403

    _, reader = _register(client)
    assert client.post("/api/books", headers=reader, json=payload).status_code == 403

    response = client.post("/api/books", headers=STAFF, json=payload)
    assert response.status_code == 201
    assert response.json()["title"] == "Dune"


def test_book_validation_and_missing(client):
    response = client.post("/api/books", headers=STAFF, json={"title": "12345", "authors": "Someone"})
    assert response.status_code == 400
    assert client.get("/api/books/missing").status_code == 404
    assert client.delete("/api/books/missing", headers=STAFF).status_code == 404


def test_book_crud(client):
    book = _book(client)
    updated = client.put(f"/api/books/{book['id']}", headers=STAFF, json={"genre": "Science Fiction"})
    assert updated.status_code == 200
    assert updated.json()["genre"] == "Science Fiction"
    # the list is not served from a stale cache after an update
    assert client.get("/api/books").json()[0]["genre"] == "Science Fiction"

    assert client.delete(f"/api/books/{book['id']}", headers=STAFF).status_code == 204
    assert client.get(f"/api/books/{book['id']}").status_code == 404


def test_pagination_headers(client):
    for title in ("Alpha", "Beta", "Gamma"):
        _book(client, title)

    first = client.get("/api/books?limit=2")
    assert first.headers["X-Total-Count"] == "3"
    assert [b["title"] for b in first.json()] == ["Alpha", "Beta"]
    assert 'rel="next"' in first.headers["Link"]
    assert 'rel="prev"' not in first.headers["Link"]

    last = client.get("/api/books?limit=2&offset=2")
    assert [b["title"] for b in last.json()] == ["Gamma"]
    assert 'rel="prev"' in last.headers["Link"]
    assert 'rel="next"' not in last.headers["Link"]


def test_register_login_and_me(client):
    user, reader = _register(client)
    assert user["roles"] == ["reader"]
    assert "password_hash" not in user

    me = client.get("/api/auth/me", headers=reader)
    assert me.status_code == 200
    assert me.json()["email"] == "anna@example.com"

    duplicate = client.post("/api/auth/register",
                            json={"full_name": "Anna", "email": "anna@example.com", "password": "secret-pass"})
    assert duplicate.status_code == 400
    bad_login = client.post("/api/auth/login", json={"email": "anna@example.com", "password": "wrong-pass"})
    assert bad_login.status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer nonsense"}).status_code == 401


def test_change_own_password(client):
    _, reader = _register(client)
    response = client.post("/api/auth/change-password", headers=reader,
                           json={"old_password": "secret-pass", "new_password": "another-pass"})
    assert response.status_code == 204
    login = client.post("/api/auth/login", json={"email": "anna@example.com", "password": "another-pass"})
    assert login.status_code == 200


def test_readers_only_see_themselves(client):
    anna, anna_headers = _register(client)
    boris, _ = _register(client, "boris@example.com")
    assert client.get(f"/api/users/{anna['id']}", headers=anna_headers).status_code == 200
    assert client.get(f"/api/users/{boris['id']}", headers=anna_headers).status_code == 403
    assert client.get("/api/users", headers=anna_headers).status_code == 403

    listed = client.get("/api/users", headers=STAFF)
    assert listed.status_code == 200
    assert listed.headers["X-Total-Count"] == "2"


def test_reservation_flow(client):
    reader, headers = _register(client)
    other, _ = _register(client, "boris@example.com")
    book = _book(client, copies=1)

    forbidden = client.post("/api/reservations", headers=headers, json={"user_id": other["id"], "book_id": book["id"]})
    assert forbidden.status_code == 403

    created = client.post("/api/reservations", headers=headers, json={"user_id": reader["id"], "book_id": book["id"]})
    assert created.status_code == 201
    reservation = created.json()
    assert reservation["status"] == "pending"

    status_url = f"/api/reservations/{reservation['id']}/status"
    assert client.put(status_url, headers=headers, json={"status": "approved"}).status_code == 403
    approved = client.put(status_url, headers=STAFF, json={"status": "approved"})
    assert approved.status_code == 200
    assert approved.json()["book_instance_id"]

    detail = client.get(f"/api/reservations/{reservation['id']}", headers=headers).json()
    assert detail["status_info"]["allows_shelf_access"] is True
    access = client.get(f"/api/books/{book['id']}/access", headers=headers).json()
    assert access["has_access"] is True

    assert client.get(f"/api/books/{book['id']}").json()["available_copies"] == 0
    cancelled = client.put(status_url, headers=headers, json={"status": "cancelled"})
    assert cancelled.status_code == 200
    assert client.get(f"/api/books/{book['id']}").json()["available_copies"] == 1

    invalid = client.put(status_url, headers=STAFF, json={"status": "issued"})
    assert invalid.status_code == 400


def test_reader_notifications(client):
    reader, headers = _register(client)
    book = _book(client, copies=1)
    client.post("/api/reservations", headers=headers, json={"user_id": reader["id"], "book_id": book["id"]})

    count = client.get(f"/api/users/{reader['id']}/notifications/unread-count", headers=headers)
    assert count.json() == {"unread": 1}
    listed = client.get(f"/api/users/{reader['id']}/notifications", headers=headers)
    assert listed.headers["X-Total-Count"] == "1"
    assert listed.json()[0]["type"] == "BookReserved"

    assert client.put(f"/api/users/{reader['id']}/notifications/read-all", headers=headers).status_code == 200
    count = client.get(f"/api/users/{reader['id']}/notifications/unread-count", headers=headers)
    assert count.json() == {"unread": 0}


def test_send_notification_unknown_user(client):
    response = client.post("/api/notifications", headers=STAFF,
                           json={"user_id": "ghost", "title": "Hi", "message": "There"})
    assert response.status_code == 404


def test_notification_hub(client):
    _, headers = _register(client)
    token = headers["Authorization"].split(" ", 1)[1]
    with client.websocket_connect(f"/hubs/notifications?token={token}") as ws:
        assert ws.receive_json() == {"type": "unread_count", "data": 0}
        ws.send_text("ping")
        assert ws.receive_json() == {"type": "pong"}

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/hubs/notifications?token=bad") as ws:
            ws.receive_json()


def test_fines(client):
    reader, headers = _register(client)
    created = client.post("/api/fines", headers=STAFF,
                          json={"user_id": reader["id"], "amount": 7.5, "reason": "Coffee stain", "fine_type": "Damage"})
    assert created.status_code == 201
    fine_id = created.json()["id"]

    own = client.get(f"/api/users/{reader['id']}/fines", headers=headers).json()
    assert own["unpaid_total"] == 7.5
    assert client.post(f"/api/fines/{fine_id}/pay", headers=STAFF).status_code == 200
    assert client.post(f"/api/fines/{fine_id}/pay", headers=STAFF).status_code == 400


def test_select_tools_endpoint(client):
    response = client.post("/api/assistant/select-tools", headers=STAFF,
                           json={"query": "сменить пароль пользователя Ивана"})
    assert response.status_code == 200
    body = response.json()
    assert "changeUserPassword" in body["tools"]
    assert body["stats"]["total_tools"] == len(ALL_TOOLS)
    assert body["analysis"]["has_password_mention"] is True

    suggestions = client.get("/api/assistant/suggestions", headers=STAFF, params={"q": "создать", "limit": 2})
    assert suggestions.json() == ["создать пользователя", "создать книгу"]
    assert client.get("/api/assistant/categories?user_level=1", headers=STAFF).status_code == 200


def test_assistant_chat_without_key(client, api_module, monkeypatch):
    monkeypatch.setattr(api_module.assistant, "api_key", None)
    response = client.post("/api/assistant/chat", headers=STAFF, json={"message": "покажи все книги"})
    assert response.status_code == 502


def test_cover_placeholder(client, api_module, monkeypatch):
    async def no_cover(isbn, size="L"):
        return None

    monkeypatch.setattr(api_module, "fetch_cover", no_cover)
    response = client.get("/api/covers/9780306406157")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("image/svg+xml")
    assert response.headers["Cache-Control"] == "public, max-age=86400"


def test_cover_upload(client, tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "covers_dir", str(tmp_path / "covers"))
    book = _book(client)
    image = io.BytesIO()
    Image.new("RGBA", (1200, 1800), (200, 30, 30, 255)).save(image, format="PNG")

    response = client.post(f"/api/books/{book['id']}/cover", headers=STAFF, content=image.getvalue())
    assert response.status_code == 200
    cover = response.json()["cover"]
    assert cover == f"/covers/{book['id']}.jpg"

    stored = client.get(cover)
    assert stored.status_code == 200
    assert Image.open(io.BytesIO(stored.content)).width == settings.cover_max_width

    not_an_image = client.post(f"/api/books/{book['id']}/cover", headers=STAFF, content=b"plain text")
    assert not_an_image.status_code == 400


def test_journal_issue_article_endpoints(client):
    payload = {"title": "Hearing Research", "issn": "03785955", "is_peer_reviewed": True}
    assert client.post("/api/journals", json=payload).status_code == 401

    created = client.post("/api/journals", headers=STAFF, json=payload)
    assert created.status_code == 201
    journal = created.json()
    assert journal["issn"] == "0378-5955"

    bad = client.post("/api/journals", headers=STAFF, json={"title": "Broken", "issn": "0378-5956"})
    assert bad.status_code == 400
    assert "Invalid ISSN" in bad.json()["detail"]

    issue = client.post("/api/issues", headers=STAFF, json={
        "journal_id": journal["id"], "volume_number": 12, "issue_number": 3,
        "publication_date": "2024-03-15", "page_count": 120,
    })
    assert issue.status_code == 201
    issue_id = issue.json()["id"]

    article = client.post("/api/articles", headers=STAFF, json={
        "issue_id": issue_id, "title": "Cochlear signals", "authors": ["A. Smith"],
        "start_page": 1, "end_page": 12, "keywords": ["cochlea"],
    })
    assert article.status_code == 201
    article_id = article.json()["id"]
    too_long = client.post("/api/articles", headers=STAFF, json={
        "issue_id": issue_id, "title": "Too long", "authors": ["A. Smith"], "start_page": 1, "end_page": 500,
    })
    assert too_long.status_code == 400

    details = client.get(f"/api/journals/{journal['id']}").json()
    assert details["issues"][0]["id"] == issue_id
    assert [i["id"] for i in client.get(f"/api/journals/{journal['id']}/issues").json()] == [issue_id]
    assert client.get(f"/api/issues/{issue_id}").json()["articles"][0]["title"] == "Cochlear signals"
    assert [a["id"] for a in client.get("/api/articles", params={"q": "cochlea"}).json()] == [article_id]
    assert [a["id"] for a in client.get("/api/articles", params={"issue_id": issue_id}).json()] == [article_id]

    updated = client.put(f"/api/journals/{journal['id']}", headers=STAFF, json={"publisher": "Elsevier"})
    assert updated.json()["publisher"] == "Elsevier"
    assert client.put(f"/api/articles/{article_id}", headers=STAFF,
                      json={"doi": "10.1016/x"}).json()["doi"] == "10.1016/x"

    stats = client.get("/api/journals/statistics", headers=STAFF).json()
    assert (stats["journals"], stats["issues"], stats["articles"]) == (1, 1, 1)
    assert client.get("/api/stats", headers=STAFF).json()["journals"]["peer_reviewed"] == 1

    assert client.delete(f"/api/articles/{article_id}", headers=STAFF).status_code == 204
    assert client.get(f"/api/articles/{article_id}").status_code == 404
    assert client.delete(f"/api/journals/{journal['id']}", headers=STAFF).status_code == 204
    assert client.get(f"/api/issues/{issue_id}").status_code == 404
    assert client.delete(f"/api/journals/{journal['id']}", headers=STAFF).status_code == 404
    assert client.get("/api/journals/999/issues").status_code == 404
