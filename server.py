# server.py
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import orjson
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import Settings, load_settings
from errors import ChatProxyError, MalformedRequest
from events import emit, prepend
from gateway import OllamaGateway
from models import ChatTurn
from orchestrator import ToolLoop, answer_once, collect
from tools import FetchChain, WebToolbox, fallback_results


logger = logging.getLogger(__name__)

VISION_OPTIONS = {"temperature": 0.1, "top_p": 0.9}
SEARCH_CONTEXT_CHARS = 3000
WEB_CONTEXT_CHARS = 8000
STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Content-Type-Options": "nosniff", "X-Accel-Buffering": "no"}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# -------- Request parsing --------

def _context_turn(search_context: Any, web_context: Any) -> Optional[ChatTurn]:
    parts: List[str] = []
    if isinstance(search_context, list):
        for i, item in enumerate(search_context, 1):
            if not isinstance(item, dict):
                continue
            content = str(item.get("content") or "")[:SEARCH_CONTEXT_CHARS]
            if content:
                parts.append(f"Source {i} ({item.get('url') or 'unknown'}):\n{content}")
    if isinstance(web_context, dict):
        content = str(web_context.get("content") or "")[:WEB_CONTEXT_CHARS]
        if content:
            parts.append(f"Web page ({web_context.get('url') or 'unknown'}):\n{content}")
    if not parts:
        return None
    return ChatTurn(
        role="system",
        content=(
            "Answer the user's question using the reference material below. "
            "If it does not contain the answer, say so instead of guessing.\n\n" + "\n\n".join(parts)
        ),
    )


@dataclass
class ChatRequest:
    model: str
    messages: List[ChatTurn]
    use_tools: bool = False
    stream: bool = True
    image: Optional[str] = None
    has_context: bool = False

    @classmethod
    def from_body(cls, body: Dict[str, Any], settings: Settings) -> "ChatRequest":
        prompt = body.get("prompt")
        if prompt is not None and not isinstance(prompt, str):
            raise MalformedRequest("prompt must be a string")
        raw_msgs = body.get("messages") or body.get("history") or []
        if not isinstance(raw_msgs, list):
            raise MalformedRequest("messages must be a list")
        messages = [ChatTurn.from_dict(m) for m in raw_msgs]

        prompt = (prompt or "").strip()
        last = messages[-1] if messages else None
        if prompt and not (last and last.role == "user" and last.content.strip() == prompt):
            messages.append(ChatTurn(role="user", content=prompt))
        if not any(m.role == "user" for m in messages):
            raise MalformedRequest("Prompt is required")

        model = body.get("model") or settings.default_model
        if not isinstance(model, str):
            raise MalformedRequest("model must be a string")

        context = _context_turn(body.get("searchContext"), body.get("webContext"))
        if context:
            messages.insert(0, context)

        image = body.get("image") or None
        if image is not None:
            if not isinstance(image, str):
                raise MalformedRequest("image must be a base64 string")
            # Accept data URLs as well as bare base64
            image = image.split(",", 1)[1] if "," in image else image
            for turn in reversed(messages):
                if turn.role == "user":
                    turn.images = [image]
                    break

        return cls(
            model=model,
            messages=messages,
            use_tools=bool(body.get("useTools", False)),
            stream=bool(body.get("stream", image is None)),
            image=image,
            has_context=context is not None,
        )


async def _read_json(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw or not raw.strip():
        raise MalformedRequest("Empty request body")
    try:
        body = orjson.loads(raw)
    except orjson.JSONDecodeError:
        raise MalformedRequest("Invalid JSON in request body") from None
    if not isinstance(body, dict):
        raise MalformedRequest("Request body must be a JSON object")
    return body


def _require(body: Dict[str, Any], key: str, message: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedRequest(message)
    return value.strip()


def _max_results(raw: Any, default: int = 3) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise MalformedRequest("max_results must be an integer") from None


# -------- Wiring --------

def _gateway(request: Request) -> OllamaGateway:
    return OllamaGateway(request.app.state.client, request.app.state.settings)


def _events_for(req: ChatRequest, request: Request):
    settings: Settings = request.app.state.settings
    gateway = _gateway(request)
    if req.image:
        logger.info("vision request routed to %s", settings.vision_model)
        return answer_once(gateway, settings.vision_model, req.messages, options=VISION_OPTIONS)
    if req.use_tools and not req.has_context:
        if settings.model_supports_tools(req.model):
            chain = FetchChain(request.app.state.client, settings.fetch)
            toolbox = WebToolbox(chain, settings.loop.search_max_results)
            return ToolLoop(gateway, toolbox, settings.loop, req.model).run(req.messages)
        req.messages.append(ChatTurn(
            role="system",
            content="Current model does not support tool calling. Respond directly using the conversation and any provided context.",
        ))
    return answer_once(gateway, req.model, req.messages)


router = APIRouter()


@router.get("/api/health")
async def health(request: Request):
    settings: Settings = request.app.state.settings
    ok = await _gateway(request).health()
    return {"ok": ok, "ollama": settings.ollama_host, "model": settings.default_model}


@router.get("/api/models")
async def list_models(request: Request):
    return {"models": await _gateway(request).list_models()}


@router.post("/api/chat")
async def chat(request: Request):
    body = await _read_json(request)
    action = body.get("action")
    if action and action != "generate":
        return await _run_action(action, body, request)

    req = ChatRequest.from_body(body, request.app.state.settings)
    events = _events_for(req, request)

    if not req.stream:
        result = await collect(events)
        return JSONResponse(result, status_code=502 if "error" in result else 200)

    # Pull the first event before committing to a stream so that failures
    # on the first upstream call still surface as a JSON error with status.
    try:
        first = await events.__anext__()
    except StopAsyncIteration:
        return StreamingResponse(emit(_nothing()), media_type="text/event-stream", headers=STREAM_HEADERS)
    return StreamingResponse(emit(prepend(first, events)), media_type="text/event-stream", headers=STREAM_HEADERS)


async def _nothing():
    return
    yield


async def _run_action(action: str, body: Dict[str, Any], request: Request):
    settings: Settings = request.app.state.settings
    gateway = _gateway(request)
    chain = FetchChain(request.app.state.client, settings.fetch)

    if action == "get_models":
        try:
            return {"models": await gateway.list_models()}
        except ChatProxyError as e:
            logger.error("models fetch failed: %s", e.message)
            return {"models": [], "error": "Failed to fetch models from Ollama Cloud"}

    if action == "search":
        query = _require(body, "prompt", "Prompt is required")
        results = await chain.search(query, 4)
        if not results:
            logger.info("search fell back to generic links for %r", query)
            results = fallback_results(query)
        return {"results": results}

    if action == "web":
        url = _require(body, "url", "URL is required for web scraping")
        page = await chain.fetch_page(url)
        if not page:
            return {"url": url, "content": "", "error": "No meaningful content extracted from webpage"}
        return {"url": url, "content": page["content"], "title": page["title"]}

    if action == "webSearch":
        query = _require(body, "prompt", "Prompt is required")
        return await gateway.web_search(query, _max_results(body.get("max_results")))

    if action == "webFetch":
        url = _require(body, "url", "URL is required for web fetch")
        return await gateway.web_fetch(url)

    raise MalformedRequest(f"Unknown action: {action}")


@router.post("/api/scrape")
async def scrape(request: Request):
    body = await _read_json(request)
    settings: Settings = request.app.state.settings
    chain = FetchChain(request.app.state.client, settings.scraper)
    action = body.get("action")

    async def fetch_content(url: str) -> Optional[str]:
        page = await chain.fetch_page(url, settings.scraper.extract_max_chars)
        return page["content"] if page else None

    if action == "search":
        query = _require(body, "query", "query is required")
        return {"urls": [r["url"] for r in await chain.search(query, 3)]}

    if action == "fetch":
        url = _require(body, "url", "url is required")
        return {"content": await fetch_content(url)}

    if action == "searchAndFetch":
        query = _require(body, "query", "query is required")
        urls = [r["url"] for r in await chain.search(query, 3)]
        contents = await asyncio.gather(*(fetch_content(u) for u in urls))
        return {"results": [{"url": u, "content": c} for u, c in zip(urls, contents) if c]}

    raise MalformedRequest("Invalid action")


async def _proxy_error(request: Request, exc: ChatProxyError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def create_app(settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        app.state.settings = settings or load_settings()
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=20)
        app.state.client = httpx.AsyncClient(http2=transport is None, limits=limits, transport=transport)
        yield
        # Shutdown
        await app.state.client.aclose()

    app = FastAPI(title="Ollama Cloud Chat Proxy", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatProxyError, _proxy_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    configure_logging(load_settings().log_level)
    uvicorn.run(
        "server:app",  # module_name:app_instance
        host="127.0.0.1",
        port=8000,
        reload=True,   # optional: auto-reload on file changes
    )
