# gateway.py
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx
import orjson

from config import Settings
from errors import MissingApiKey, UpstreamError, UpstreamUnavailable
from models import ChatTurn
from stream import summarize
from tools import TOOLS


logger = logging.getLogger(__name__)


class OllamaGateway:
    """Thin client for the hosted Ollama chat API.

    Holds no state between calls beyond the shared httpx client.
    """

    def __init__(self, client: httpx.AsyncClient, settings: Settings, tools: Optional[List[Dict[str, Any]]] = None):
        self.client = client
        self.settings = settings
        self.host = settings.ollama_host.rstrip("/")
        self.tools = TOOLS if tools is None else tools

    def _headers(self) -> Dict[str, str]:
        if not self.settings.api_key:
            raise MissingApiKey()
        return {"Authorization": f"Bearer {self.settings.api_key}", "Content-Type": "application/json"}

    def cloud_model(self, model: str) -> str:
        suffix = self.settings.cloud_suffix
        if suffix and not model.endswith(suffix):
            logger.info("model name adjusted for cloud: %s -> %s%s", model, model, suffix)
            return f"{model}{suffix}"
        return model

    def build_request(
        self,
        model: str,
        messages: Sequence[ChatTurn],
        with_tools: bool = False,
        stream: bool = True,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        req: Dict[str, Any] = {
            "model": self.cloud_model(model),
            "messages": [m.to_dict() for m in messages],
            "stream": stream,
        }
        if with_tools:
            req["tools"] = self.tools
        if options:
            req["options"] = options
        return req

    @asynccontextmanager
    async def open_stream(
        self,
        model: str,
        messages: Sequence[ChatTurn],
        with_tools: bool = False,
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """POST /api/chat with stream=true and yield the raw byte iterator."""
        req = self.build_request(model, messages, with_tools=with_tools, stream=True, options=options)
        headers = self._headers()
        logger.info("chat request: model=%s messages=%d tools=%s", req["model"], len(req["messages"]), with_tools)
        try:
            async with self.client.stream("POST", f"{self.host}/api/chat", json=req, headers=headers, timeout=None) as resp:
                if resp.status_code >= 400:
                    raw = await resp.aread()
                    text = raw.decode("utf-8", "ignore").strip()
                    logger.error("model host returned HTTP %s: %s", resp.status_code, text[:500])
                    raise UpstreamError(resp.status_code, text, model=req["model"])
                yield resp.aiter_bytes()
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Failed to connect to Ollama: {e}") from e

    async def complete(self, model: str, messages: Sequence[ChatTurn], options: Optional[Dict[str, Any]] = None) -> str:
        req = self.build_request(model, messages, stream=False, options=options)
        try:
            r = await self.client.post(f"{self.host}/api/chat", json=req, headers=self._headers(), timeout=None)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Failed to connect to Ollama: {e}") from e
        if r.status_code >= 400:
            raise UpstreamError(r.status_code, r.text.strip(), model=req["model"])
        try:
            data = orjson.loads(r.content)
        except orjson.JSONDecodeError:
            return r.text
        return summarize(data) if isinstance(data, dict) else ""

    async def list_models(self) -> List[Dict[str, Any]]:
        # /api/tags does not require authentication
        try:
            r = await self.client.get(f"{self.host}/api/tags", timeout=10.0)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Failed to fetch models: {e}") from e
        if r.status_code >= 400:
            raise UpstreamError(r.status_code, r.text.strip())
        models = orjson.loads(r.content).get("models") or []
        logger.info("models available upstream: %d", len(models))
        return models

    async def health(self) -> bool:
        try:
            r = await self.client.get(f"{self.host}/api/tags", timeout=3.0)
        except httpx.HTTPError:
            return False
        return r.status_code == 200

    async def _post_web(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            r = await self.client.post(f"{self.host}{path}", json=body, headers=self._headers(), timeout=30.0)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"{path} failed: {e}") from e
        if r.status_code >= 400:
            raise UpstreamError(r.status_code, r.text.strip())
        return orjson.loads(r.content)

    async def web_search(self, query: str, max_results: int = 3) -> Dict[str, Any]:
        """Native Ollama web search."""
        return await self._post_web("/api/web/search", {"query": query, "max_results": max_results})

    async def web_fetch(self, url: str) -> Dict[str, Any]:
        """Native Ollama web fetch."""
        return await self._post_web("/api/web/fetch", {"url": url})
