"""
Tests for the HTTP API.
The app is driven through httpx.ASGITransport with the store and backend
globals swapped for a temp store and a mocked Ollama.
"""

import json
import uuid

import httpx
import pytest

from chatline import main
from chatline.backends.ollama import OllamaBackend
from chatline.storage.models import Message
from chatline.storage.session_store import SessionStore


def _ollama_reply(*words):
    lines = [json.dumps({"message": {"content": w}}, ensure_ascii=False) for w in words]
    return "\n".join(lines + ['{"done":true}']) + "\n"


@pytest.fixture
def upstream():
    """Requests seen by the mocked Ollama, and how it should answer."""
    state = {"requests": [], "response": lambda: httpx.Response(200, content=_ollama_reply("Hel", "lo"))}

    def handler(request):
        state["requests"].append(request)
        return state["response"]()

    state["transport"] = httpx.MockTransport(handler)
    return state


@pytest.fixture
def store(tmp_path, monkeypatch, upstream):
    s = SessionStore(tmp_path / "chats")
    monkeypatch.setattr(main, "store", s)
    monkeypatch.setattr(main, "backend", OllamaBackend(url="http://ollama.test", transport=upstream["transport"]))
    monkeypatch.setattr(main, "default_model", "llama3.2")
    return s


@pytest.fixture
def client(store):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=main.app), base_url="http://chatline")


# ---------------------------------------------------------------------------
# /api/chat
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_chat_streams_plain_text(client, upstream):
    async with client:
        resp = await client.post("/api/chat", json={
            "model": "llama3.2",
            "messages": [{"role": "user", "content": "hi"}],
            "options": {"temperature": 0.7},
        })
    assert resp.status_code == 200
    assert resp.text == "Hello"
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.headers["cache-control"] == "no-store"
    sent = json.loads(upstream["requests"][0].content)
    assert sent["stream"] is True
    assert sent["options"] == {"temperature": 0.7}


@pytest.mark.asyncio
async def test_chat_preserves_unicode(client, upstream):
    upstream["response"] = lambda: httpx.Response(200, content=_ollama_reply("こんにちは", " ☕"))
    async with client:
        resp = await client.post("/api/chat", json={"model": "m", "messages": []})
    assert resp.content.decode("utf-8") == "こんにちは ☕"


@pytest.mark.asyncio
async def test_chat_default_model(client, upstream):
    async with client:
        await client.post("/api/chat", json={"messages": []})
    assert json.loads(upstream["requests"][0].content)["model"] == "llama3.2"


@pytest.mark.asyncio
async def test_chat_upstream_error_inline(client, upstream):
    upstream["response"] = lambda: httpx.Response(200, content='{"error":"boom"}\n')
    async with client:
        resp = await client.post("/api/chat", json={"model": "m", "messages": []})
    assert resp.status_code == 200
    assert "boom" in resp.text
    assert resp.text.startswith("⚠️")


@pytest.mark.asyncio
async def test_chat_bad_json_is_400(client, upstream):
    async with client:
        resp = await client.post(
            "/api/chat", content=b"{nope", headers={"content-type": "application/json"},
        )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request"
    assert upstream["requests"] == []


@pytest.mark.asyncio
async def test_chat_invalid_messages_is_400(client, upstream):
    async with client:
        resp = await client.post("/api/chat", json={"model": "m", "messages": "hi"})
    assert resp.status_code == 400
    assert upstream["requests"] == []


@pytest.mark.asyncio
async def test_chat_backend_down_is_502(client, upstream):
    upstream["response"] = lambda: httpx.Response(500, text="out of memory")
    async with client:
        resp = await client.post("/api/chat", json={"model": "m", "messages": []})
    assert resp.status_code == 502
    body = resp.json()
    assert body["error"] == "Could not connect to the model backend"
    assert "out of memory" in body["detail"]


# ---------------------------------------------------------------------------
# /api/chats
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_and_list(client):
    async with client:
        created = (await client.post("/api/chats", json={"name": "Plans"})).json()
        listed = (await client.get("/api/chats")).json()
    assert created["name"] == "Plans"
    assert listed == [{"id": created["id"], "name": "Plans"}]


@pytest.mark.asyncio
async def test_create_with_bad_body_uses_default_name(client):
    async with client:
        resp = await client.post("/api/chats", content=b"garbage")
    assert resp.json()["name"] == "New chat"


@pytest.mark.asyncio
async def test_get_chat(client, store):
    conv = store.create("Mine")
    store.save_messages(conv.id, [Message(role="user", content="hi")])
    async with client:
        resp = await client.get(f"/api/chats/{conv.id}")
    assert resp.json() == {
        "id": conv.id,
        "name": "Mine",
        "messages": [{"role": "user", "content": "hi"}],
    }


@pytest.mark.asyncio
async def test_get_missing_chat_is_404(client):
    async with client:
        resp = await client.get(f"/api/chats/{uuid.uuid4()}")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Not found"}


@pytest.mark.asyncio
async def test_rename_chat(client, store):
    conv = store.create()
    async with client:
        resp = await client.post(f"/api/chats/{conv.id}", json={"name": "Renamed"})
        listed = (await client.get("/api/chats")).json()
    assert resp.json() == {"ok": True}
    assert store.get(conv.id).name == "Renamed"
    assert listed[0]["name"] == "Renamed"


@pytest.mark.asyncio
async def test_rename_without_name_is_ok(client, store):
    conv = store.create("Same")
    async with client:
        resp = await client.post(f"/api/chats/{conv.id}", json={})
    assert resp.json() == {"ok": True}
    assert store.get(conv.id).name == "Same"


@pytest.mark.asyncio
async def test_rename_missing_is_404(client):
    async with client:
        resp = await client.post(f"/api/chats/{uuid.uuid4()}", json={"name": "X"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_delete_chat(client, store):
    conv = store.create()
    async with client:
        first = await client.delete(f"/api/chats/{conv.id}")
        again = await client.delete(f"/api/chats/{conv.id}")
        listed = (await client.get("/api/chats")).json()
    assert first.json() == {"ok": True}
    assert again.json() == {"ok": True}
    assert listed == []


# ---------------------------------------------------------------------------
# /api/chats/{id}/messages
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_messages_round_trip(client, store):
    conv = store.create()
    messages = [
        {"role": "user", "content": "hi", "timestamp": "2026-01-01T00:00:00+00:00"},
        {"role": "assistant", "content": "hello", "timestamp": "2026-01-01T00:00:01+00:00",
         "latencyMeta": {"timeToFirstByteMs": 120, "totalMs": 800}},
    ]
    async with client:
        saved = await client.post(f"/api/chats/{conv.id}/messages", json={"messages": messages})
        loaded = (await client.get(f"/api/chats/{conv.id}/messages")).json()
    assert saved.json() == {"ok": True}
    assert loaded == messages


@pytest.mark.asyncio
async def test_messages_missing_is_empty(client):
    async with client:
        resp = await client.get(f"/api/chats/{uuid.uuid4()}/messages")
    assert resp.status_code == 200
    assert resp.json() == []


@pytest.mark.asyncio
async def test_save_non_list_stores_empty(client, store):
    conv = store.create()
    store.save_messages(conv.id, [Message(role="user", content="old")])
    async with client:
        await client.post(f"/api/chats/{conv.id}/messages", json={"messages": "oops"})
    assert store.get_messages(conv.id) == []


@pytest.mark.asyncio
async def test_save_malformed_id_is_400(client):
    async with client:
        resp = await client.post("/api/chats/not-an-id/messages", json={"messages": []})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_save_write_failure_is_500(client, store, monkeypatch):
    def fail(conv_id, messages):
        raise OSError("disk full")

    monkeypatch.setattr(store, "save_messages", fail)
    async with client:
        resp = await client.post(f"/api/chats/{uuid.uuid4()}/messages", json={"messages": []})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Cannot write"}


# ---------------------------------------------------------------------------
# Health / models
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health(client, upstream):
    upstream["response"] = lambda: httpx.Response(200, json={"models": []})
    async with client:
        body = (await client.get("/api/health")).json()
    assert body["status"] == "ok"
    assert body["backend"] == {"url": "http://ollama.test", "reachable": True}


@pytest.mark.asyncio
async def test_models(client, upstream):
    upstream["response"] = lambda: httpx.Response(200, json={"models": [{"name": "llama3.2"}]})
    async with client:
        body = (await client.get("/api/models")).json()
    assert body == {"models": ["llama3.2"], "default": "llama3.2"}
