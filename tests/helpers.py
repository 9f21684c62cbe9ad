from contextlib import asynccontextmanager
from typing import Any, Dict, List, Sequence

import orjson

from models import ToolResult


ARTICLE = (
    "<html><head><title>Contoh Halaman</title><style>body{color:red}</style></head><body>"
    "<header>Site header</header><nav>Menu Home About</nav>"
    "<!-- tracking comment -->"
    "<main><h1>Judul</h1><p>Kecerdasan buatan adalah cabang ilmu komputer yang mempelajari mesin cerdas.</p></main>"
    "<aside>Related links</aside><footer>Copyright</footer>"
    "<script>var x = 1;</script></body></html>"
)

DDG_HTML = """
<div class="result results_links"><div class="links_main">
  <a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fwww.bmkg.go.id%2Fcuaca&amp;rut=abc">Cuaca <b>Jakarta</b> - BMKG</a>
  <a class="result__snippet" href="#">Prakiraan cuaca Jakarta hari ini.</a>
</div></div>
<div class="result results_links"><div class="links_main">
  <a class="result__a" href="//duckduckgo.com/l/?uddg=javascript%3Aalert(1)">Bad</a>
</div></div>
<div class="result results_links"><div class="links_main">
  <a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fweather.com%2Fjakarta">Jakarta Weather</a>
</div></div>
"""


def ndjson(*objs: Dict[str, Any]) -> bytes:
    return b"".join(orjson.dumps(o) + b"\n" for o in objs)


def answer(*parts: str, thinking: Sequence[str] = ()) -> bytes:
    lines = [{"message": {"role": "assistant", "thinking": t, "content": ""}, "done": False} for t in thinking]
    lines += [{"message": {"role": "assistant", "content": p}, "done": False} for p in parts]
    lines.append({"message": {"role": "assistant", "content": ""}, "done": True})
    return ndjson(*lines)


def tool_turn(*calls: Dict[str, Any]) -> bytes:
    return ndjson(
        {
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": c["name"], "arguments": c.get("arguments", {})}} for c in calls],
            },
            "done": False,
        },
        {"message": {"role": "assistant", "content": ""}, "done": True},
    )


class FakeGateway:
    """Replays one scripted byte stream per open_stream call."""

    def __init__(self, turns: List[Any]):
        self.turns = list(turns)
        self.calls: List[Dict[str, Any]] = []

    @asynccontextmanager
    async def open_stream(self, model, messages, with_tools=False, options=None):
        self.calls.append({
            "model": model,
            "with_tools": with_tools,
            "messages": [m.to_dict() for m in messages],
        })
        turn = self.turns.pop(0) if self.turns else answer("")
        chunks = turn if isinstance(turn, list) else [turn]

        async def gen():
            for c in chunks:
                yield c

        yield gen()


class FakeToolbox:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[tuple] = []

    async def web_search(self, query, max_results=None):
        self.calls.append(("webSearch", query))
        if self.fail:
            raise RuntimeError("search backend down")
        return ToolResult(ok=True, payload=[{"title": f"About {query}", "url": f"https://example.org/{len(self.calls)}", "snippet": query}])

    async def web_fetch(self, url):
        self.calls.append(("webFetch", url))
        if self.fail:
            raise RuntimeError("fetch backend down")
        return ToolResult(ok=True, payload={"url": url, "title": "Example", "content": "page text " * 10})


async def drain(agen) -> List[Any]:
    return [x async for x in agen]
