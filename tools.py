# tools.py
import re
import asyncio
import logging
import urllib.parse
from typing import Any, Dict, List, Optional, Tuple

import httpx
import orjson
from bs4 import BeautifulSoup, Comment

from config import FetchChainConfig
from models import ToolResult


logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; EdgeFunction/1.0)"
SEARCH_URL = "https://html.duckduckgo.com/html/?q="
NOISE_TAGS = ["script", "style", "nav", "header", "footer", "aside"]


# Tool definitions offered to the model while tools are available
TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "webSearch",
            "description": (
                "Search the web for recent or factual information. Returns a list of results with title, url and snippet. "
                "Call webFetch on the most relevant url when the snippet is not enough."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query"},
                    "max_results": {
                        "type": "integer",
                        "description": "Number of results",
                        "default": 3,
                        "minimum": 1,
                        "maximum": 10,
                    },
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "webFetch",
            "description": "Open a URL and return its readable text content and title.",
            "parameters": {
                "type": "object",
                "properties": {
                    "url": {"type": "string", "description": "The URL to fetch"},
                },
                "required": ["url"],
            },
        },
    },
]


# ----------------- Helpers -----------------

def _clean_text(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip()


def _is_http_url(url: str) -> bool:
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _ok(payload: Any = None) -> ToolResult:
    """Wrap a payload as a success."""
    return ToolResult(ok=True, payload=payload)


def _err(msg: str) -> ToolResult:
    """Standardized error shape."""
    return ToolResult(ok=False, error=str(msg))


def extract_text(html: str, max_chars: int) -> Tuple[str, str]:
    """Return (title, text) with noise elements and comments removed."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(" ", strip=True) if soup.title else ""
    for tag in soup(NOISE_TAGS):
        tag.decompose()
    for c in soup.find_all(string=lambda s: isinstance(s, Comment)):
        c.extract()
    text = _clean_text(soup.get_text(" "))
    return title, text[:max_chars]


def parse_ddg_results(html: str, k: int) -> List[Dict[str, str]]:
    """Parse DuckDuckGo's HTML results into [{title,url,snippet}, ...]."""
    soup = BeautifulSoup(html, "html.parser")
    items: List[Dict[str, str]] = []
    for res in soup.select("div.result"):
        if len(items) >= k:
            break
        a = res.select_one("a.result__a") or res.find("a", href=True)
        if not a:
            continue
        href = a.get("href", "")
        if "uddg=" not in href:
            continue
        # Unwrap DDG redirect
        qs = urllib.parse.parse_qs(urllib.parse.urlsplit(urllib.parse.urljoin("https://duckduckgo.com", href)).query)
        url = qs.get("uddg", [""])[0]
        if not _is_http_url(url):
            continue
        snippet_el = res.select_one(".result__snippet")
        items.append({
            "title": a.get_text(" ", strip=True) or "No title",
            "url": url,
            "snippet": snippet_el.get_text(" ", strip=True) if snippet_el else "No description",
        })
    return items


# ----------------- Fallback fetch chain -----------------

class FetchChain:
    """Fetch a target through an ordered list of CORS relay proxies.

    Each proxy is tried once; the first response that passes `accept` wins.
    Exhaustion returns None and never raises.
    """

    def __init__(self, client: httpx.AsyncClient, config: FetchChainConfig):
        self.client = client
        self.config = config

    def proxied(self, proxy: str, target: str) -> str:
        return proxy + urllib.parse.quote(target, safe="")

    async def _get(self, proxy: str, target: str) -> httpx.Response:
        return await self.client.get(
            self.proxied(proxy, target),
            headers={"User-Agent": USER_AGENT},
            timeout=self.config.timeout,
            follow_redirects=True,
        )

    async def _attempt(self, proxy: str, target: str) -> Optional[str]:
        # httpx timeouts are per phase; the deadline covers the whole attempt
        try:
            r = await asyncio.wait_for(self._get(proxy, target), self.config.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.info("proxy timed out: %s", proxy)
            return None
        except httpx.HTTPError as e:
            logger.info("proxy failed: %s %s", proxy, e)
            return None
        if not r.is_success:
            logger.info("proxy returned HTTP %s: %s", r.status_code, proxy)
            return None
        if "allorigins" in proxy:
            try:
                body = orjson.loads(r.content).get("contents") or ""
            except (orjson.JSONDecodeError, AttributeError):
                body = ""
        else:
            body = r.text
        if not body:
            logger.info("proxy returned no content: %s", proxy)
            return None
        return body

    async def run(self, target: str, accept) -> Optional[Any]:
        for proxy in self.config.proxy_order:
            body = await self._attempt(proxy, target)
            if body is None:
                continue
            result = accept(body)
            if result:
                logger.info("proxy succeeded: %s", proxy)
                return result
            logger.info("proxy content rejected: %s", proxy)
        logger.warning("all proxies exhausted for %s", target)
        return None

    async def fetch_page(self, url: str, max_chars: Optional[int] = None) -> Optional[Dict[str, str]]:
        """Return {url, title, content} or None."""
        cap = max_chars or self.config.page_max_chars

        def accept(body: str) -> Optional[Dict[str, str]]:
            if len(body) < self.config.min_raw_length:
                return None
            title, text = extract_text(body, cap)
            if len(text) < self.config.min_content_length:
                return None
            return {"url": url, "title": title, "content": text}

        return await self.run(url, accept)

    async def search(self, query: str, k: int = 3) -> List[Dict[str, str]]:
        target = SEARCH_URL + urllib.parse.quote(query, safe="")
        return await self.run(target, lambda body: parse_ddg_results(body, k)) or []


# ----------------- Tools -----------------

class WebToolbox:
    """webSearch / webFetch backed by the fallback fetch chain."""

    def __init__(self, chain: FetchChain, default_max_results: int = 3):
        self.chain = chain
        self.default_max_results = default_max_results

    async def web_search(self, query: str, max_results: Optional[int] = None) -> ToolResult:
        query = (query or "").strip()
        if not query:
            return _err("query is required")
        k = int(max_results or self.default_max_results)
        k = max(1, min(10, k))
        results = await self.chain.search(query, k)
        if not results:
            return _err(f"no search results for {query!r}")
        return _ok(results)

    async def web_fetch(self, url: str) -> ToolResult:
        url = (url or "").strip()
        if not _is_http_url(url):
            return _err(f"invalid url: {url!r}")
        page = await self.chain.fetch_page(url)
        if not page:
            return _err("No meaningful content extracted from webpage")
        return _ok(page)


# ----------------- Fallback search links -----------------

def fallback_results(query: str) -> List[Dict[str, str]]:
    """Generic links returned when every search proxy fails."""
    q = urllib.parse.quote(query, safe="")
    return [
        {
            "title": f"{query} - Wikipedia",
            "snippet": f"Encyclopedia article about {query}.",
            "url": "https://id.wikipedia.org/wiki/" + urllib.parse.quote(re.sub(r"\s+", "_", query), safe=""),
        },
        {
            "title": f"{query} - Google Search",
            "snippet": f"Latest search results for {query}.",
            "url": f"https://www.google.com/search?q={q}",
        },
        {
            "title": f"{query} - DuckDuckGo",
            "snippet": f"Information about {query} from across the web.",
            "url": f"https://duckduckgo.com/?q={q}",
        },
        {
            "title": f"{query} - Bing Search",
            "snippet": f"Find recent information about {query} on Bing.",
            "url": f"https://www.bing.com/search?q={q}",
        },
    ]
