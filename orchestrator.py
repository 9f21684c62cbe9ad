# orchestrator.py
import enum
import logging
import datetime as _dt
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from config import LoopConfig
from events import StreamEvent
from models import AssistantTurn, ChatTurn, ToolCall, ToolResult
from stream import read_turn


logger = logging.getLogger(__name__)


def system_prompt(today: Optional[_dt.date] = None) -> str:
    today = today or _dt.date.today()
    return (
        "You are a helpful assistant with access to web tools.\n\n"
        f"TIME: Treat today as {today.strftime('%B %d, %Y')}.\n\n"
        "TOOLKIT: webSearch(query, max_results) finds pages; webFetch(url) reads one page.\n"
        "  • Use webSearch for recent events, prices, weather or anything you are unsure about.\n"
        "  • Call webFetch on the best result when snippets are not enough.\n"
        "  • A tool result with ok=false means the tool failed; try another query or url, or answer from what you have.\n\n"
        "OUTPUT: Answer in the user's language. Do not invent facts the tools did not return."
    )


def citation_block(urls: Sequence[str]) -> str:
    lines = "".join(f"{i}. {u}\n" for i, u in enumerate(urls, 1))
    return "\n\n---\n**Sources:**\n" + lines


class LoopState(enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    TERMINATED = "terminated"


@dataclass
class RunState:
    """Everything one orchestration run owns. Never shared between runs."""

    messages: List[ChatTurn]
    state: LoopState = LoopState.AWAITING_MODEL
    iteration: int = 0
    sources: List[str] = field(default_factory=list)

    def add_source(self, url: str) -> None:
        if url and url not in self.sources:
            self.sources.append(url)


class ToolLoop:
    """Bounded tool-calling loop around the gateway.

    Tool schemas are offered while `iteration <= tool_iterations`; the loop
    never calls the gateway more than `max_iterations` times.
    """

    def __init__(self, gateway, toolbox, config: LoopConfig, model: str, options: Optional[Dict[str, Any]] = None):
        self.gateway = gateway
        self.toolbox = toolbox
        self.config = config
        self.model = model
        self.options = options

    def seed(self, messages: Sequence[ChatTurn]) -> RunState:
        return RunState(messages=[ChatTurn(role="system", content=system_prompt())] + list(messages))

    async def run(self, messages: Sequence[ChatTurn], run: Optional[RunState] = None) -> AsyncIterator[StreamEvent]:
        run = run or self.seed(messages)
        cfg = self.config
        while run.iteration < cfg.max_iterations:
            run.iteration += 1
            run.state = LoopState.AWAITING_MODEL
            with_tools = run.iteration <= cfg.tool_iterations
            turn = AssistantTurn()
            async with self.gateway.open_stream(self.model, run.messages, with_tools=with_tools, options=self.options) as chunks:
                async for event in read_turn(chunks, turn):
                    yield event
            run.messages.append(turn.to_turn())

            if not turn.tool_calls:
                run.state = LoopState.TERMINATED
                logger.info("loop finished after %d iteration(s), %d source(s)", run.iteration, len(run.sources))
                if run.sources:
                    yield StreamEvent.text(citation_block(run.sources))
                return
            if run.iteration >= cfg.max_iterations:
                # no later model call would read these results
                logger.info("dropping %d tool call(s) on the final model call", len(turn.tool_calls))
                break

            run.state = LoopState.EXECUTING_TOOLS
            for call in turn.tool_calls:
                yield StreamEvent.tool_call(call.name, call.arguments)
                result = await self.execute(call, run)
                run.messages.append(ChatTurn(role="tool", content=result.to_content()))

        run.state = LoopState.TERMINATED
        logger.warning("tool-call limit (%d) reached without a final answer", cfg.max_iterations)
        if run.sources:
            yield StreamEvent.text(citation_block(run.sources))
        yield StreamEvent.error(
            f"Tool-call limit reached after {cfg.max_iterations} model calls without a final answer."
        )

    async def execute(self, call: ToolCall, run: RunState) -> ToolResult:
        args = call.arguments
        try:
            if call.name == "webSearch":
                result = await self.toolbox.web_search(str(args.get("query") or ""), args.get("max_results"))
            elif call.name == "webFetch":
                url = str(args.get("url") or "").strip()
                run.add_source(url)
                result = await self.toolbox.web_fetch(url)
            else:
                result = ToolResult(ok=False, error=f"Unknown tool {call.name}")
        except Exception as e:
            logger.exception("tool %s failed", call.name)
            result = ToolResult(ok=False, error=f"{type(e).__name__}: {e}")
        logger.info("tool %s ok=%s", call.name, result.ok)
        return result


async def answer_once(gateway, model: str, messages: Sequence[ChatTurn], options: Optional[Dict[str, Any]] = None) -> AsyncIterator[StreamEvent]:
    """Single gateway call without tool schemas."""
    turn = AssistantTurn()
    async with gateway.open_stream(model, messages, with_tools=False, options=options) as chunks:
        async for event in read_turn(chunks, turn):
            yield event


async def collect(events: AsyncIterator[StreamEvent]) -> Dict[str, str]:
    """Fold an event stream into the non-streaming response shape."""
    parts: List[str] = []
    async with aclosing(events) as it:
        async for event in it:
            if event.type == "content":
                parts.append(event.content)
            elif event.type == "error":
                return {"error": event.content}
    return {"response": "".join(parts)}
