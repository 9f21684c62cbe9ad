# models.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import orjson

from errors import MalformedRequest


ROLES = ("user", "assistant", "system", "tool")


@dataclass
class ToolCall:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_upstream(cls, raw: Dict[str, Any]) -> "ToolCall":
        """Build from an Ollama `tool_calls` entry.

        Some models send `function.arguments` as a JSON string instead of an
        object; undecodable strings become an empty mapping.
        """
        fn = raw.get("function") if isinstance(raw, dict) else None
        fn = fn if isinstance(fn, dict) else {}
        args = fn.get("arguments") or {}
        if isinstance(args, (str, bytes)):
            try:
                args = orjson.loads(args)
            except orjson.JSONDecodeError:
                args = {}
        if not isinstance(args, dict):
            args = {}
        return cls(name=str(fn.get("name") or ""), arguments=args)

    def to_dict(self) -> Dict[str, Any]:
        return {"function": {"name": self.name, "arguments": self.arguments}}


@dataclass
class ToolResult:
    ok: bool
    payload: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok}
        if self.payload is not None:
            out["payload"] = self.payload
        if self.error:
            out["error"] = self.error
        return out

    def to_content(self) -> str:
        return orjson.dumps(self.to_dict()).decode()


@dataclass
class ChatTurn:
    role: str
    content: str = ""
    thinking: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    images: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "ChatTurn":
        if not isinstance(raw, dict):
            raise MalformedRequest("each message must be an object")
        role = raw.get("role")
        if role not in ROLES:
            raise MalformedRequest(f"invalid message role: {role!r}")
        content = raw.get("content", "")
        if content is None:
            content = ""
        if not isinstance(content, str):
            content = orjson.dumps(content).decode()
        calls = raw.get("tool_calls")
        images = raw.get("images")
        return cls(
            role=role,
            content=content,
            thinking=raw.get("thinking") or None,
            tool_calls=[ToolCall.from_upstream(c) for c in calls] if isinstance(calls, list) else None,
            images=[str(i) for i in images] if isinstance(images, list) and images else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.thinking:
            out["thinking"] = self.thinking
        if self.tool_calls:
            out["tool_calls"] = [c.to_dict() for c in self.tool_calls]
        if self.images:
            out["images"] = list(self.images)
        return out


@dataclass
class AssistantTurn:
    """Accumulates one upstream turn while it streams in."""

    content: str = ""
    thinking: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    done: bool = False

    def to_turn(self) -> ChatTurn:
        return ChatTurn(
            role="assistant",
            content=self.content,
            thinking=self.thinking or None,
            tool_calls=list(self.tool_calls) or None,
        )
