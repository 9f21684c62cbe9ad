import httpx
import orjson
import pytest
from fastapi.testclient import TestClient

from config import Settings
from server import VISION_OPTIONS, ChatRequest, create_app

from helpers import ARTICLE, DDG_HTML, answer, ndjson, tool_turn


class Upstream:
    """Scripted model host plus relay proxies behind one MockTransport."""

    def __init__(self, chat=(), status=200, proxy=None):
        self.chat = list(chat)
        self.status = status
        self.proxy = proxy
        self.chat_bodies = []
        self.proxied = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "ollama.test":
            if request.url.path == "/api/tags":
                return httpx.Response(200, json={"models": [{"name": "gpt-oss:120b"}]})
            self.chat_bodies.append(orjson.loads(request.content))
            if self.status >= 400:
                return httpx.Response(self.status, text="unauthorized")
            return httpx.Response(200, content=self.chat.pop(0))
        self.proxied.append(str(request.url))
        if self.proxy is None:
            return httpx.Response(500)
        return self.proxy(request)


def _client(upstream, **settings):
    settings.setdefault("ollama_host", "https://ollama.test")
    settings.setdefault("api_key", "test-key")
    return TestClient(create_app(Settings(**settings), httpx.MockTransport(upstream)))


def _frames(text):
    out = []
    for block in text.split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        out.append(None if data == "[DONE]" else orjson.loads(data))
    return out


def test_streaming_direct_answer():
    upstream = Upstream(chat=[answer("AI adalah ", "kecerdasan buatan.")])
    with _client(upstream) as client:
        r = client.post("/api/chat", json={"prompt": "Jelaskan AI", "model": "gpt-oss:120b"})

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["cache-control"] == "no-cache"
    assert _frames(r.text) == [
        {"type": "content", "content": "AI adalah "},
        {"type": "content", "content": "kecerdasan buatan."},
        None,
    ]
    assert len(upstream.chat_bodies) == 1
    sent = upstream.chat_bodies[0]
    assert sent["model"] == "gpt-oss:120b-cloud"
    assert sent["stream"] is True
    assert "tools" not in sent
    assert sent["messages"] == [{"role": "user", "content": "Jelaskan AI"}]


def test_upstream_rejection_is_json_with_status():
    with _client(Upstream(status=401)) as client:
        r = client.post("/api/chat", json={"prompt": "hi"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid API key. Check OLLAMA_API_KEY.", "details": "unauthorized"}


def test_missing_api_key():
    upstream = Upstream(chat=[answer("x")])
    with _client(upstream, api_key=None) as client:
        r = client.post("/api/chat", json={"prompt": "hi"})
    assert r.status_code == 500
    assert r.json() == {"error": "Ollama API key not configured"}
    assert upstream.chat_bodies == []


@pytest.mark.parametrize("body", [b"", b"   ", b"{oops", b"[1, 2]", b'{"messages": []}', b'{"prompt": "  "}'])
def test_bad_requests_are_400(body):
    with _client(Upstream()) as client:
        r = client.post("/api/chat", content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert "error" in r.json()


def test_non_streaming_response():
    upstream = Upstream(chat=[answer("Halo", " dunia", thinking=["hmm"])])
    with _client(upstream) as client:
        r = client.post("/api/chat", json={"prompt": "hi", "stream": False})
    assert r.status_code == 200
    assert r.json() == {"response": "Halo dunia"}


def test_error_line_mid_stream_becomes_error_event():
    body = ndjson({"message": {"content": "partial"}, "done": False}, {"error": "model overloaded"})
    with _client(Upstream(chat=[body])) as client:
        r = client.post("/api/chat", json={"prompt": "hi"})
    assert r.status_code == 200
    assert _frames(r.text) == [
        {"type": "content", "content": "partial"},
        {"type": "error", "content": "model overloaded"},
        None,
    ]


def test_model_without_tool_support_gets_note_instead_of_tools():
    upstream = Upstream(chat=[answer("ok")])
    with _client(upstream, non_tool_models=frozenset({"gemma3:4b"})) as client:
        r = client.post("/api/chat", json={"prompt": "cuaca?", "model": "gemma3:4b", "useTools": True})
    assert r.status_code == 200
    sent = upstream.chat_bodies[0]
    assert "tools" not in sent
    assert sent["messages"][-1]["role"] == "system"
    assert "does not support tool calling" in sent["messages"][-1]["content"]


def test_tool_loop_end_to_end_with_citation():
    url = "https://example.com/ai"
    upstream = Upstream(
        chat=[tool_turn({"name": "webFetch", "arguments": {"url": url}}), answer("Ringkasan halaman.")],
        proxy=lambda request: httpx.Response(200, text=ARTICLE),
    )
    with _client(upstream) as client:
        r = client.post("/api/chat", json={"prompt": f"Ringkas {url}", "model": "gpt-oss:120b", "useTools": True})

    frames = _frames(r.text)
    assert frames[0] == {"type": "tool_call", "function": "webFetch", "arguments": {"url": url}}
    assert frames[-1] is None
    content = "".join(f["content"] for f in frames[1:-1] if f["type"] == "content")
    assert content == "Ringkasan halaman.\n\n---\n**Sources:**\n1. " + url + "\n"

    first, second = upstream.chat_bodies
    assert "tools" in first and "tools" in second
    assert first["messages"][0]["role"] == "system"
    result = orjson.loads(second["messages"][-1]["content"])
    assert result["ok"] is True
    assert "Kecerdasan buatan" in result["payload"]["content"]
    # first relay proxy already returned a usable page
    assert len(upstream.proxied) == 1


def test_context_turn_disables_tools():
    upstream = Upstream(chat=[answer("ok")])
    body = {
        "prompt": "Apa isinya?",
        "useTools": True,
        "webContext": {"url": "https://example.com", "content": "x" * 9000},
    }
    with _client(upstream) as client:
        client.post("/api/chat", json=body)
    sent = upstream.chat_bodies[0]
    assert "tools" not in sent
    assert sent["messages"][0]["role"] == "system"
    assert "x" * 8000 in sent["messages"][0]["content"]
    assert "x" * 8001 not in sent["messages"][0]["content"]


def test_vision_request_routes_to_vision_model():
    upstream = Upstream(chat=[answer("Seekor kucing.")])
    body = {"prompt": "Apa ini?", "model": "gpt-oss:120b", "image": "data:image/png;base64,AAAA"}
    with _client(upstream) as client:
        r = client.post("/api/chat", json=body)
    assert r.json() == {"response": "Seekor kucing."}
    sent = upstream.chat_bodies[0]
    assert sent["model"] == "qwen3-vl:235b-cloud"
    assert sent["options"] == VISION_OPTIONS
    assert sent["messages"][-1]["images"] == ["AAAA"]


def test_chat_request_does_not_duplicate_prompt():
    req = ChatRequest.from_body(
        {"prompt": "hi", "messages": [{"role": "assistant", "content": "hello"}, {"role": "user", "content": "hi"}]},
        Settings(),
    )
    assert [m.role for m in req.messages] == ["assistant", "user"]
    assert req.model == "FireFlies:latest"
    assert req.use_tools is False


def test_get_models_action():
    with _client(Upstream()) as client:
        r = client.post("/api/chat", json={"action": "get_models"})
        assert r.json() == {"models": [{"name": "gpt-oss:120b"}]}
        assert client.get("/api/models").json() == {"models": [{"name": "gpt-oss:120b"}]}


def test_search_action_falls_back_to_generic_links():
    upstream = Upstream()
    with _client(upstream) as client:
        r = client.post("/api/chat", json={"action": "search", "prompt": "cuaca Jakarta"})
    results = r.json()["results"]
    assert len(results) == 4
    assert results[0]["url"] == "https://id.wikipedia.org/wiki/cuaca_Jakarta"
    assert len(upstream.proxied) == 3


def test_web_action():
    upstream = Upstream(proxy=lambda request: httpx.Response(200, text=ARTICLE))
    with _client(upstream) as client:
        ok = client.post("/api/chat", json={"action": "web", "url": "https://example.com"}).json()
        missing = client.post("/api/chat", json={"action": "web"})
    assert ok["url"] == "https://example.com"
    assert ok["title"] == "Contoh Halaman"
    assert "Kecerdasan buatan" in ok["content"]
    assert missing.status_code == 400


def test_web_action_failure_is_empty_content():
    with _client(Upstream()) as client:
        r = client.post("/api/chat", json={"action": "web", "url": "https://example.com"})
    assert r.status_code == 200
    assert r.json() == {"url": "https://example.com", "content": "", "error": "No meaningful content extracted from webpage"}


def test_unknown_action_is_400():
    with _client(Upstream()) as client:
        r = client.post("/api/chat", json={"action": "dance"})
    assert r.status_code == 400
    assert r.json() == {"error": "Unknown action: dance"}


def _allorigins(request: httpx.Request) -> httpx.Response:
    target = request.url.params.get("url")
    page = DDG_HTML if "duckduckgo" in target else ARTICLE
    return httpx.Response(200, content=orjson.dumps({"contents": page}))


def test_scrape_endpoint():
    upstream = Upstream(proxy=_allorigins)
    with _client(upstream) as client:
        found = client.post("/api/scrape", json={"action": "search", "query": "cuaca Jakarta"}).json()
        page = client.post("/api/scrape", json={"action": "fetch", "url": "https://example.com"}).json()
        both = client.post("/api/scrape", json={"action": "searchAndFetch", "query": "cuaca Jakarta"}).json()
        bad = client.post("/api/scrape", json={"action": "crawl"})

    assert found == {"urls": ["https://www.bmkg.go.id/cuaca", "https://weather.com/jakarta"]}
    assert "Kecerdasan buatan" in page["content"]
    assert [r["url"] for r in both["results"]] == found["urls"]
    assert bad.status_code == 400
    assert all(u.startswith("https://api.allorigins.win/get?url=") for u in upstream.proxied)


def test_health():
    with _client(Upstream()) as client:
        body = client.get("/api/health").json()
    assert body == {"ok": True, "ollama": "https://ollama.test", "model": "FireFlies:latest"}


def test_scrape_rejects_short_raw_page():
    short_page = "<p>" + "Kalimat yang cukup panjang untuk lolos. " * 2 + "</p>"
    upstream = Upstream(proxy=lambda request: httpx.Response(200, content=orjson.dumps({"contents": short_page})))
    with _client(upstream) as client:
        r = client.post("/api/scrape", json={"action": "fetch", "url": "https://example.com"})
    assert r.status_code == 200
    assert r.json() == {"content": None}


def test_non_numeric_max_results_is_400():
    with _client(Upstream()) as client:
        r = client.post("/api/chat", json={"action": "webSearch", "prompt": "cuaca", "max_results": "banyak"})
    assert r.status_code == 400
    assert r.json() == {"error": "max_results must be an integer"}


def test_generate_action_streams_by_default():
    upstream = Upstream(chat=[answer("Halo")])
    with _client(upstream) as client:
        r = client.post("/api/chat", json={"action": "generate", "prompt": "hi"})
    assert r.headers["content-type"].startswith("text/event-stream")
    assert _frames(r.text) == [{"type": "content", "content": "Halo"}, None]
