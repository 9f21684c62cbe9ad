# stream.py
"""
Re-assemble Ollama's newline-delimited JSON chat stream.

Each complete line is classified into exactly one LineKind before anything
else looks at it, then `read_turn` turns the classified lines of one upstream
turn into thinking/content events and an AssistantTurn.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, List

import orjson

from errors import UpstreamStreamError
from events import StreamEvent
from models import AssistantTurn, ToolCall


logger = logging.getLogger(__name__)


class LineKind(enum.Enum):
    ERROR = "error"
    TOOL_CALLS = "tool_calls"
    DELTA = "delta"
    DONE = "done"
    NOOP = "noop"
    INVALID = "invalid"


@dataclass
class UpstreamLine:
    kind: LineKind
    thinking: str = ""
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    error: str = ""
    done: bool = False


def classify(data: Any) -> UpstreamLine:
    if not isinstance(data, dict):
        return UpstreamLine(LineKind.NOOP)
    done = bool(data.get("done"))
    if data.get("error"):
        return UpstreamLine(LineKind.ERROR, error=str(data["error"]), done=True)

    msg = data.get("message")
    msg = msg if isinstance(msg, dict) else {}
    calls = msg.get("tool_calls")
    thinking = msg.get("thinking") or msg.get("reasoning") or ""
    content = msg.get("content") or ""
    if not isinstance(thinking, str):
        thinking = ""
    if not isinstance(content, str):
        content = ""

    if isinstance(calls, list) and calls:
        return UpstreamLine(
            LineKind.TOOL_CALLS,
            thinking=thinking,
            content=content,
            tool_calls=[ToolCall.from_upstream(c) for c in calls],
            done=done,
        )
    if thinking or content:
        return UpstreamLine(LineKind.DELTA, thinking=thinking, content=content, done=done)
    if done:
        return UpstreamLine(LineKind.DONE, done=True)
    return UpstreamLine(LineKind.NOOP)


def parse_line(line: bytes) -> UpstreamLine:
    line = line.strip()
    if line.lower().startswith(b"data:"):
        line = line.split(b":", 1)[1].strip()
    if line == b"[DONE]":
        return UpstreamLine(LineKind.DONE, done=True)
    try:
        data = orjson.loads(line)
    except orjson.JSONDecodeError:
        logger.debug("dropping unparseable line (%d bytes)", len(line))
        return UpstreamLine(LineKind.INVALID)
    return classify(data)


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[UpstreamLine]:
    """Split a byte stream on newlines and classify each complete line.

    Splitting happens on bytes, so a UTF-8 sequence cut across two chunks is
    only decoded once its line is complete. A final line without a trailing
    newline is parsed when the stream ends.
    """
    buffer = b""
    async for chunk in chunks:
        if not chunk:
            continue
        buffer += chunk
        while b"\n" in buffer:
            line, buffer = buffer.split(b"\n", 1)
            if not line.strip():
                continue
            yield parse_line(line)
    if buffer.strip():
        yield parse_line(buffer)


async def read_turn(chunks: AsyncIterable[bytes], turn: AssistantTurn) -> AsyncIterator[StreamEvent]:
    async for line in iter_lines(chunks):
        kind = line.kind
        if kind in (LineKind.INVALID, LineKind.NOOP):
            continue
        if kind is LineKind.ERROR:
            raise UpstreamStreamError(line.error)
        if line.thinking:
            turn.thinking += line.thinking
            yield StreamEvent.thinking(line.thinking)
        if line.content:
            turn.content += line.content
            yield StreamEvent.text(line.content)
        if kind is LineKind.TOOL_CALLS:
            turn.tool_calls.extend(line.tool_calls)
        if line.done:
            turn.done = True
            return


def summarize(data: Dict[str, Any]) -> str:
    """Collect the text of a non-streamed /api/chat response."""
    msg = data.get("message")
    if isinstance(msg, dict):
        content = msg.get("content")
        if isinstance(content, list):
            parts = [it.get("text", "") for it in content if isinstance(it, dict) and it.get("type") == "text"]
            return "\n\n".join(filter(None, parts))
        if isinstance(content, str):
            return content
    return data.get("response") or ""
