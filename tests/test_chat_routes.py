from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from Sparrow.app import app
from Sparrow.auth import get_current_user
from Sparrow.crud import chat as chat_crud
from Sparrow.models.chat_models import Chat, Turn
from Sparrow.services.admission import AdmissionController
from Sparrow.services.chat_service import ChatService, get_chat_service
from Sparrow.services.chat_session import ChatSessionManager
from Sparrow.services.conversation_assembler import ConversationAssembler
from Sparrow.services.image_generation import GeneratedImage
from Sparrow.services.turn_writer import TurnWriter


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeStream:
    def __init__(self, pieces):
        self.pieces = pieces

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for piece in self.pieces:
            yield _chunk(piece)

    async def close(self):
        pass


class FakeProvider:
    """Records every provider selection and completion request it serves."""

    def __init__(self, pieces=("Hello", " world")):
        self.pieces = list(pieces)
        self.selections = []
        self.requests = []

    def __call__(self, selection):
        self.selections.append(selection)
        client = MagicMock()

        async def create(**kwargs):
            self.requests.append(kwargs)
            return FakeStream(self.pieces)

        client.chat.completions.create = create
        client.close = AsyncMock()
        return client


class FakeFetcher:
    def __init__(self, files=None):
        self.files = files or {}

    async def fetch_bytes(self, url, kind="file"):
        return self.files[url]

    async def fetch_text(self, url, kind="text file"):
        return self.files[url].decode("utf-8")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def image_generator():
    generator = MagicMock()
    generator.generate = AsyncMock(return_value=GeneratedImage(url="http://testserver/files/img.png", response_id="resp_9"))
    return generator


@pytest.fixture
def current_user(alice):
    return {"user": alice}


@pytest.fixture
def client(db, session_factory, fake_limiter, provider, image_generator, current_user):
    fetcher = FakeFetcher({"https://files/doc.pdf": b"%PDF-1.4"})

    def _service():
        return ChatService(
            db,
            admission=AdmissionController(limiter=fake_limiter),
            session_manager=ChatSessionManager(session_factory, title_generator=AsyncMock(return_value="Greeting")),
            assembler=ConversationAssembler(fetcher=fetcher),
            writer=TurnWriter(session_factory),
            search=SimpleNamespace(search=AsyncMock(return_value=None)),
            client_factory=provider,
            image_generator=image_generator,
            session_factory=session_factory,
        )

    app.dependency_overrides[get_chat_service] = _service
    app.dependency_overrides[get_current_user] = lambda: current_user["user"]
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _seed(session_factory, chat_id, user_id, pairs=(), title="Seeded"):
    session = session_factory()
    try:
        chat_crud.create_chat_if_absent(session, chat_id, title, user_id)
        chat_crud.insert_turns(session, chat_id, [{"user_message": q, "bot_response": a} for q, a in pairs])
        session.commit()
    finally:
        session.close()


def _turns(session_factory, chat_id, user_id="user-alice"):
    session = session_factory()
    try:
        return [(t.user_message, t.bot_response) for t in chat_crud.list_turns(session, chat_id, user_id)]
    finally:
        session.close()


def test_new_chat_streams_and_persists(client, session_factory, db):
    response = client.post("/api/openai", json={"message": "Hi there", "model": "openai/gpt-4o-mini"}, headers={"X-Chat-ID": "c-new"})

    assert response.status_code == 200
    assert response.text == "Hello world"
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["x-title"] == "Greeting"
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-ratelimit-remaining"] == "29"
    assert "x-new-chat-id" not in response.headers

    assert db.get(Chat, "c-new").user_id == "user-alice"
    assert _turns(session_factory, "c-new") == [("Hi there", "Hello world")]


def test_missing_chat_id_is_rejected_before_any_work(client, provider, fake_limiter):
    response = client.post("/api/openai", json={"message": "Hi"})
    assert response.status_code == 400
    assert response.json() == {"detail": "Missing X-Chat-ID header"}
    assert provider.selections == []
    assert fake_limiter.calls == []


def test_message_validation(client):
    empty = client.post("/api/openai", json={"message": "   "}, headers={"X-Chat-ID": "c1"})
    assert empty.status_code == 400
    assert empty.json()["detail"] == "Message content is required"

    too_long = client.post("/api/openai", json={"message": "x" * 3001}, headers={"X-Chat-ID": "c1"})
    assert too_long.status_code == 400
    assert too_long.json()["detail"] == "Message too long. Please shorten your message."


def test_malformed_body_maps_to_400(client):
    response = client.post("/api/openai", json=["not", "an", "object"], headers={"X-Chat-ID": "c1"})
    assert response.status_code == 400


def test_existing_chat_sends_history(client, session_factory, provider):
    _seed(session_factory, "c1", "user-alice", [("What is 2+2?", "4")])
    history = [{"role": "user", "content": "What is 2+2?"}, {"role": "assistant", "content": "4"}]

    response = client.post(
        "/api/openai",
        json={"message": "And 3+3?", "previous_conversations": history, "model": "openai/gpt-4o-mini"},
        headers={"X-Chat-ID": "c1"},
    )

    assert response.status_code == 200
    assert response.headers["x-title"] == "Seeded"
    sent = provider.requests[0]["messages"]
    assert [m["role"] for m in sent] == ["system", "user", "assistant", "user"]
    assert sent[-1] == {"role": "user", "content": "And 3+3?"}
    assert _turns(session_factory, "c1") == [("What is 2+2?", "4"), ("And 3+3?", "Hello world")]


def test_new_chat_ignores_client_history(client, provider):
    history = [{"role": "user", "content": "stale"}, {"role": "assistant", "content": "stale answer"}]
    client.post("/api/openai", json={"message": "fresh", "previous_conversations": history}, headers={"X-Chat-ID": "c-fresh"})
    assert [m["role"] for m in provider.requests[0]["messages"]] == ["system", "user"]


def test_foreign_chat_is_forbidden(client, session_factory, provider, db):
    _seed(session_factory, "bobs", "user-bob", [("secret", "answer")])

    response = client.post("/api/openai", json={"message": "let me in"}, headers={"X-Chat-ID": "bobs"})

    assert response.status_code == 403
    assert provider.requests == []
    assert db.query(Turn).filter(Turn.chat_id == "bobs").count() == 1


def test_edited_message_replaces_chat(client, session_factory):
    _seed(session_factory, "c1", "user-alice", [("q1", "a1"), ("q2", "a2"), ("q3", "a3")])
    history = [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a1"},
    ]

    response = client.post(
        "/api/openai?editedMessage=true",
        json={"message": "q2 edited", "previous_conversations": history},
        headers={"X-Chat-ID": "c1"},
    )

    assert response.status_code == 200
    assert _turns(session_factory, "c1") == [("q1", "a1"), ("q2 edited", "Hello world")]


def test_shared_continuation_reports_new_chat(client, session_factory, current_user, bob):
    _seed(session_factory, "orig", "user-alice", [("q", "a")], title="Recipes")
    session = session_factory()
    shared_id = chat_crud.share_chat(session, session.get(Chat, "orig"))
    session.commit()
    session.close()

    current_user["user"] = bob
    response = client.post(
        "/api/openai?shared=true",
        json={"message": "tell me more", "previous_conversations": [{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}]},
        headers={"X-Chat-ID": shared_id},
    )

    assert response.status_code == 200
    new_id = response.headers["x-new-chat-id"]
    assert new_id not in (shared_id, "orig")
    assert response.headers["x-converted-from-shared"] == "true"
    assert response.headers["x-title"] == "Recipes"
    assert _turns(session_factory, new_id, "user-bob") == [("q", "a"), ("tell me more", "Hello world")]


def test_shared_flag_on_own_chat_does_not_duplicate_history(client, session_factory):
    _seed(session_factory, "mine", "user-alice", [("q", "a")])
    history = [{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}]

    response = client.post("/api/openai?shared=true", json={"message": "again", "previous_conversations": history}, headers={"X-Chat-ID": "mine"})

    assert "x-new-chat-id" not in response.headers
    assert _turns(session_factory, "mine") == [("q", "a"), ("again", "Hello world")]


def test_anonymous_premium_is_denied(client, current_user, guest, fake_limiter, provider):
    current_user["user"] = guest
    response = client.post("/api/openai", json={"message": "hi", "model": "openai/gpt-4.1"}, headers={"X-Chat-ID": "g1"})

    assert response.status_code == 403
    assert "signed-in account" in response.json()["detail"]
    assert fake_limiter.calls == []
    assert provider.requests == []


def test_quota_exhaustion_returns_429(client, current_user, guest):
    current_user["user"] = guest
    for i in range(10):
        ok = client.post("/api/openai", json={"message": f"m{i}", "model": "openai/gpt-4o-mini"}, headers={"X-Chat-ID": f"g{i}"})
        assert ok.status_code == 200

    denied = client.post("/api/openai", json={"message": "one more", "model": "openai/gpt-4o-mini"}, headers={"X-Chat-ID": "g-last"})
    assert denied.status_code == 429


def test_own_key_bypasses_quota(client, fake_limiter, provider):
    response = client.post(
        "/api/openai",
        json={"message": "hi", "model": "anthropic/claude-sonnet-4", "anthropic_api_key": "ant-key"},
        headers={"X-Chat-ID": "byok"},
    )
    assert response.status_code == 200
    assert "x-ratelimit-remaining" not in response.headers
    assert fake_limiter.calls == []
    assert provider.selections[0].provider == "anthropic"
    assert provider.requests[0]["model"] == "claude-sonnet-4-20250514"


def test_pdf_on_default_provider_adds_parser_plugin(client, provider):
    client.post(
        "/api/openai",
        json={"message": "summarize", "fileUrl": "https://files/doc.pdf", "fileType": "application/pdf", "fileName": "doc.pdf"},
        headers={"X-Chat-ID": "pdf"},
    )
    request = provider.requests[0]
    assert request["extra_body"] == {"plugins": [{"id": "file-parser", "pdf": {"engine": "pdf-text"}}]}
    assert request["messages"][-1]["content"][1]["type"] == "file"


def test_generate_image_records_turn(client, session_factory, image_generator):
    response = client.post(
        "/api/generate-image",
        json={"messages": [{"role": "user", "content": "a red fox in the snow"}]},
        headers={"X-Chat-ID": "img1"},
    )

    assert response.status_code == 200
    assert response.json() == {"url": "http://testserver/files/img.png", "response_id": "resp_9"}
    assert response.headers["x-title"] == "Image: a red fox in the snow"
    assert _turns(session_factory, "img1") == [("a red fox in the snow", "![Generated Image](http://testserver/files/img.png)")]


def test_generate_image_threads_previous_response(client, session_factory, image_generator):
    _seed(session_factory, "img2", "user-alice", [("a fox", "![Generated Image](u)")])
    messages = [
        {"role": "user", "content": "a fox"},
        {"role": "assistant", "content": "![Generated Image](u)", "imageResponseId": "resp_1"},
        {"role": "user", "content": "make it blue"},
    ]
    client.post("/api/generate-image", json={"messages": messages}, headers={"X-Chat-ID": "img2"})
    assert image_generator.generate.await_args.kwargs["previous_response_id"] == "resp_1"


def test_generate_image_failure_creates_no_chat(client, image_generator, db):
    image_generator.generate.side_effect = RuntimeError("no image")
    response = client.post("/api/generate-image", json={"messages": [{"role": "user", "content": "x"}]}, headers={"X-Chat-ID": "img3"})
    assert response.status_code == 500
    assert db.get(Chat, "img3") is None


def test_list_chats_and_messages(client, session_factory):
    _seed(session_factory, "c1", "user-alice", [("hello", "hi")], title="Python tips")
    _seed(session_factory, "c2", "user-alice", [], title="Cooking")
    _seed(session_factory, "c3", "user-bob", [], title="Python tips")

    listing = client.get("/api/chats", params={"search": "python", "limit": "abc"}).json()
    assert [c["id"] for c in listing["chats"]] == ["c1"]
    assert listing["pagination"] == {"currentPage": 1, "pageSize": 15, "totalChats": 1, "totalPages": 1, "searchTerm": "python"}

    messages = client.get("/api/messages", params={"chatId": "c1"}).json()
    assert [(m["role"], m["content"]) for m in messages] == [("user", "hello"), ("assistant", "hi")]

    assert client.get("/api/messages").status_code == 400


def test_rename_and_delete_chat(client, session_factory, db):
    _seed(session_factory, "c1", "user-alice", [("q", "a")])
    _seed(session_factory, "bobs", "user-bob")

    assert client.patch("/api/chat/c1", json={"title": "x" * 201}).status_code == 400
    renamed = client.patch("/api/chat/c1", json={"title": "  Renamed  "})
    assert renamed.json() == {"message": "Chat title updated successfully", "title": "Renamed"}

    assert client.delete("/api/chat/missing").status_code == 404
    assert client.delete("/api/chat/bobs").status_code == 403
    assert client.delete("/api/chat/c1").status_code == 200
    assert db.get(Chat, "c1") is None
    assert db.query(Turn).filter(Turn.chat_id == "c1").count() == 0


def test_share_and_list_shared(client, session_factory):
    _seed(session_factory, "c1", "user-alice", [("q", "a")], title="Worth sharing")

    shared = client.post("/api/share-chat", json={"chatId": "c1"})
    assert shared.status_code == 200
    shared_id = shared.json()["sharedChatId"]

    listing = client.get("/api/share-chat").json()
    assert listing["count"] == 1
    assert listing["chats"][0]["id"] == shared_id
    assert listing["chats"][0]["chatId"] == "c1"

    snapshot = client.get("/api/messages", params={"chatId": shared_id, "shared": "true"}).json()
    assert [m["content"] for m in snapshot] == ["q", "a"]


def test_branch_chat(client, session_factory):
    body = {
        "chatId": "branch-1",
        "title": "Branch",
        "messages": [
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
        ],
    }
    response = client.post("/api/branch", json=body)
    assert response.status_code == 201
    assert response.json()["messageCount"] == 1
    assert _turns(session_factory, "branch-1") == [("q1", "a1")]

    bad = client.post("/api/branch", json={"chatId": "b2", "title": "T", "messages": [{"role": "tool", "content": "x"}]})
    assert bad.status_code == 400


def test_missing_bearer_token_is_401(monkeypatch):
    monkeypatch.setenv("AUTH_JWKS_URL", "https://auth.example.com/.well-known/jwks.json")
    app.dependency_overrides.clear()
    response = TestClient(app).get("/api/chats")
    assert response.status_code == 401
