import json

import httpx
import pytest

import main
from chat import (
    GROQ_API_URL, GROQ_MODEL, INVALID_KEY_REPLY, MISSING_KEY_REPLY, RATE_LIMIT_REPLY,
    ChatAssistant, build_system_prompt,
)
from uploads import UploadError, upload_image

BOOKS = [{"title": "Nhà giả kim", "author": "Paulo Coelho", "category": "Tiểu thuyết",
          "description": "Hành trình của Santiago", "price": 79000, "rating": 4.5, "quantity": 12}]


def assistant_with(handler, api_key="gsk_test"):
    return ChatAssistant(api_key=api_key, client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_request_shape():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "  Nên đọc Nhà giả kim.  "}}]})

    reply = assistant_with(handler).ask("Gợi ý sách?", BOOKS)

    assert reply == "Nên đọc Nhà giả kim."
    assert seen["url"] == GROQ_API_URL
    assert seen["auth"] == "Bearer gsk_test"
    body = seen["body"]
    assert body["model"] == GROQ_MODEL
    assert body["temperature"] == 0.7
    assert body["max_tokens"] == 800
    assert [m["role"] for m in body["messages"]] == ["system", "user"]
    assert body["messages"][1]["content"] == "Gợi ý sách?"
    assert "Nhà giả kim" in body["messages"][0]["content"]


def test_system_prompt_lists_catalog():
    prompt = build_system_prompt(BOOKS)
    assert "1. Title: Nhà giả kim" in prompt
    assert "Price: 79.000 ₫" in prompt
    assert "Rating: 4.5/5.0" in prompt


@pytest.mark.parametrize("status,expected", [(401, INVALID_KEY_REPLY), (429, RATE_LIMIT_REPLY)])
def test_known_error_statuses(status, expected):
    assert assistant_with(lambda r: httpx.Response(status, text="nope")).ask("hi", BOOKS) == expected


def test_other_error_truncates_body():
    reply = assistant_with(lambda r: httpx.Response(500, text="x" * 300)).ask("hi", BOOKS)
    assert reply == "Error 500: " + "x" * 100


def test_connection_error():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    assert assistant_with(handler).ask("hi", BOOKS) == "Connection error: boom"


def test_missing_key_needs_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    assert assistant_with(handler, api_key="").ask("hi", BOOKS) == MISSING_KEY_REPLY


def test_chat_route(client, make_book):
    make_book("Nhà giả kim")
    prompts = []

    def handler(request):
        prompts.append(json.loads(request.content)["messages"][0]["content"])
        return httpx.Response(200, json={"choices": [{"message": {"content": "Xin chào"}}]})

    main.app.dependency_overrides[main.get_assistant] = lambda: assistant_with(handler)
    res = client.post("/api/chat", json={"question": "Có sách gì hay?"})
    assert res.json() == {"answer": "Xin chào"}
    assert "Nhà giả kim" in prompts[0]


def test_upload_returns_secure_url():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(200, json={"secure_url": "https://res.cloudinary.com/demo/cover.jpg"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    url = upload_image(b"\x89PNG", "cover.png", "image/png", cloud_name="demo", upload_preset="unsigned", client=client)

    assert url == "https://res.cloudinary.com/demo/cover.jpg"
    assert seen["url"] == "https://api.cloudinary.com/v1_1/demo/image/upload"
    assert b'name="upload_preset"' in seen["body"]
    assert b'filename="cover.png"' in seen["body"]


def test_upload_failure_raises():
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(400, text="bad preset")))
    with pytest.raises(UploadError):
        upload_image(b"img", cloud_name="demo", upload_preset="unsigned", client=client)


def test_upload_requires_configuration(monkeypatch):
    monkeypatch.delenv("CLOUDINARY_CLOUD_NAME", raising=False)
    monkeypatch.delenv("CLOUDINARY_UPLOAD_PRESET", raising=False)
    with pytest.raises(UploadError):
        upload_image(b"img")


def test_upload_route(client, admin_headers, monkeypatch):
    monkeypatch.setattr(main, "upload_image", lambda content, filename, content_type: f"https://cdn/{filename}")
    res = client.post("/api/uploads", files={"file": ("cover.jpg", b"data", "image/jpeg")}, headers=admin_headers)
    assert res.json() == {"secure_url": "https://cdn/cover.jpg"}


def test_upload_route_maps_errors(client, admin_headers, monkeypatch):
    def failing(content, filename, content_type):
        raise UploadError("Image upload failed: 500")

    monkeypatch.setattr(main, "upload_image", failing)
    res = client.post("/api/uploads", files={"file": ("cover.jpg", b"data", "image/jpeg")}, headers=admin_headers)
    assert res.status_code == 502


@pytest.fixture
def opened_clients(monkeypatch):
    """Route clients built without an injected one through a mock transport and keep them."""
    real_client = httpx.Client
    opened = []

    def handler(request):
        if "cloudinary" in request.url.host:
            return httpx.Response(200, json={"secure_url": "https://res.cloudinary.com/demo/x.jpg"})
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    def factory(**kwargs):
        c = real_client(transport=httpx.MockTransport(handler), **kwargs)
        opened.append(c)
        return c

    monkeypatch.setattr(httpx, "Client", factory)
    return opened


def test_ask_closes_its_own_client(opened_clients):
    assert ChatAssistant(api_key="gsk_test").ask("hi", BOOKS) == "ok"
    assert len(opened_clients) == 1
    assert opened_clients[0].is_closed


def test_ask_leaves_injected_client_open():
    client = httpx.Client(transport=httpx.MockTransport(
        lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})))
    ChatAssistant(api_key="gsk_test", client=client).ask("hi", BOOKS)
    assert not client.is_closed
    client.close()


def test_default_assistant_holds_no_client():
    assert main.get_assistant().client is None


def test_upload_closes_its_own_client(opened_clients):
    url = upload_image(b"img", cloud_name="demo", upload_preset="unsigned")
    assert url == "https://res.cloudinary.com/demo/x.jpg"
    assert len(opened_clients) == 1
    assert opened_clients[0].is_closed
