from conftest import register, auth_headers


def test_create_conversation_defaults(client, headers):
    r = client.post("/api/conversations", headers=headers, json={})
    assert r.status_code == 201
    conv = r.json()
    assert conv["title"] == "New Conversation"
    assert conv["lastMessage"] == "Start chatting..."
    assert conv["timestamp"]


def test_create_conversation_without_body(client, headers):
    r = client.post("/api/conversations", headers=headers)
    assert r.status_code == 201
    assert r.json()["title"] == "New Conversation"


def test_create_conversation_with_title(client, headers):
    r = client.post("/api/conversations", headers=headers, json={"title": "Budget Planning"})
    assert r.json()["title"] == "Budget Planning"


def test_list_is_newest_first_and_scoped_to_user(client, headers):
    first = client.post("/api/conversations", headers=headers, json={"title": "Venue"}).json()
    second = client.post("/api/conversations", headers=headers, json={"title": "Guests"}).json()
    other = register(client, email="b@x.com").json()
    client.post("/api/conversations", headers=auth_headers(other["token"]), json={"title": "Theirs"})

    convs = client.get("/api/conversations", headers=headers).json()
    assert [c["id"] for c in convs] == [second["id"], first["id"]]


def test_activity_moves_conversation_to_top(client, headers, fake_completion):
    first = client.post("/api/conversations", headers=headers, json={"title": "Venue"}).json()
    client.post("/api/conversations", headers=headers, json={"title": "Guests"})
    client.post(f"/api/conversations/{first['id']}/messages", headers=headers, json={"text": "Hello"})

    convs = client.get("/api/conversations", headers=headers).json()
    assert convs[0]["id"] == first["id"]
    assert convs[0]["lastMessage"] == fake_completion.reply


def test_rename_conversation(client, headers):
    conv = client.post("/api/conversations", headers=headers).json()
    r = client.patch(f"/api/conversations/{conv['id']}", headers=headers, json={"title": "  Florists "})
    assert r.status_code == 200
    assert r.json()["title"] == "Florists"
    assert client.patch(f"/api/conversations/{conv['id']}", headers=headers, json={"title": " "}).status_code == 400


def test_archive_hides_conversation(client, headers):
    conv = client.post("/api/conversations", headers=headers).json()
    r = client.post(f"/api/conversations/{conv['id']}/archive", headers=headers)
    assert r.status_code == 200
    assert client.get("/api/conversations", headers=headers).json() == []
    assert client.get(f"/api/conversations/{conv['id']}/messages", headers=headers).status_code == 404
    assert client.post(f"/api/conversations/{conv['id']}/archive", headers=headers).status_code == 404


def test_other_user_cannot_touch_conversation(client, headers, fake_completion):
    conv = client.post("/api/conversations", headers=headers).json()
    other = auth_headers(register(client, email="b@x.com").json()["token"])
    cid = conv["id"]

    assert client.get(f"/api/conversations/{cid}/messages", headers=other).status_code == 404
    r = client.post(f"/api/conversations/{cid}/messages", headers=other, json={"text": "hi"})
    assert r.status_code == 404
    assert client.patch(f"/api/conversations/{cid}", headers=other, json={"title": "x"}).status_code == 404
    assert client.post(f"/api/conversations/{cid}/archive", headers=other).status_code == 404
    assert fake_completion.calls == []


def test_unknown_conversation_is_not_found(client, headers):
    assert client.get("/api/conversations/999/messages", headers=headers).status_code == 404


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["now"]


def test_check_db_lists_tables():
    from check_db import list_tables

    assert {"users", "conversations", "messages"} <= set(list_tables())


def test_health_now_carries_offset(client):
    from datetime import datetime

    now = client.get("/api/health").json()["now"]
    assert datetime.fromisoformat(now).tzinfo is not None


def test_unexpected_error_is_logged_and_hidden(headers, monkeypatch, caplog):
    import logging

    from fastapi.testclient import TestClient

    import app as app_module

    def explode(user_id):
        raise RuntimeError("db exploded at 10.0.0.5")

    monkeypatch.setattr(app_module.memory, "get_all_conversations", explode)
    with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
        with TestClient(app_module.app, raise_server_exceptions=False) as c:
            r = c.get("/api/conversations", headers=headers)

    assert r.status_code == 500
    assert r.json() == {"error": "server error"}
    records = [rec for rec in caplog.records if rec.name == "uvicorn.error" and rec.levelno == logging.ERROR]
    assert records
    assert records[0].exc_info is not None
    assert "GET /api/conversations" in records[0].getMessage()
