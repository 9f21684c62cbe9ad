# events.py
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional

import orjson


logger = logging.getLogger(__name__)

DATA = b"data: "
END = b"\n\n"
DONE_FRAME = DATA + b"[DONE]" + END


@dataclass(frozen=True)
class StreamEvent:
    type: str
    content: str = ""
    function: Optional[str] = None
    arguments: Optional[Dict[str, Any]] = None

    @classmethod
    def thinking(cls, text: str) -> "StreamEvent":
        return cls("thinking", text)

    @classmethod
    def text(cls, text: str) -> "StreamEvent":
        return cls("content", text)

    @classmethod
    def tool_call(cls, name: str, arguments: Dict[str, Any]) -> "StreamEvent":
        return cls("tool_call", function=name, arguments=dict(arguments))

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls("error", message)

    def to_dict(self) -> Dict[str, Any]:
        if self.type == "tool_call":
            return {"type": self.type, "function": self.function, "arguments": self.arguments or {}}
        return {"type": self.type, "content": self.content}


def encode(event: StreamEvent) -> bytes:
    return DATA + orjson.dumps(event.to_dict()) + END


def _describe(exc: BaseException) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message or exc.__class__.__name__


async def emit(events: AsyncIterable[StreamEvent]) -> AsyncIterator[bytes]:
    """Serialize events as SSE frames and close with the [DONE] sentinel.

    A failure raised by the producer after streaming began becomes a trailing
    error frame. Cancellation and generator close propagate without [DONE].
    """
    async with aclosing(events.__aiter__()) as it:
        try:
            async for event in it:
                yield encode(event)
        except Exception as e:
            logger.warning("stream failed mid-response: %s", _describe(e))
            yield encode(StreamEvent.error(_describe(e)))
    yield DONE_FRAME


async def prepend(first: StreamEvent, rest: AsyncIterator[StreamEvent]) -> AsyncIterator[StreamEvent]:
    async with aclosing(rest) as it:
        yield first
        async for event in it:
            yield event


async def iter_stream_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[Optional[Dict[str, Any]]]:
    """Decode an outbound stream back into event dicts.

    Yields None once for the [DONE] sentinel. Comment lines and frames that
    fail to parse are skipped.
    """
    buffer = b""
    async for chunk in chunks:
        if not chunk:
            continue
        buffer += chunk
        while b"\n\n" in buffer:
            raw, buffer = buffer.split(b"\n\n", 1)
            for line in raw.split(b"\n"):
                if not line.startswith(DATA):
                    continue
                data = line[len(DATA):]
                if data == b"[DONE]":
                    yield None
                    continue
                try:
                    evt = orjson.loads(data)
                except orjson.JSONDecodeError:
                    continue
                if isinstance(evt, dict):
                    yield evt
