#!/usr/bin/env python3
import asyncio
import os
import sys
from typing import Any, Dict, List, Optional, TextIO

import httpx
import orjson

from events import iter_stream_events


API_URL = os.getenv("CHAT_API", "http://127.0.0.1:8000/api/chat")


def render_event(evt: Optional[Dict[str, Any]], out: TextIO) -> None:
    if evt is None:
        out.write("\n")
        return
    etype = evt.get("type")
    if etype == "thinking":
        out.write(f"\033[2m{evt.get('content', '')}\033[0m")
    elif etype == "content":
        out.write(evt.get("content", ""))
    elif etype == "tool_call":
        out.write(f"\n[tool_call] {evt.get('function')} {orjson.dumps(evt.get('arguments') or {}).decode()}\n")
    elif etype == "error":
        out.write(f"\n[error] {evt.get('content')}\n")
    else:
        # Unknown events for debugging
        out.write(f"\n[event] {evt}\n")
    out.flush()


async def stream_chat(prompt: str, model: Optional[str] = None, use_tools: bool = True, history: Optional[List[Dict[str, Any]]] = None) -> None:
    payload: Dict[str, Any] = {
        "prompt": prompt,
        "messages": (history or []) + [{"role": "user", "content": prompt}],
        "useTools": use_tools,
        "stream": True,
    }
    if model:
        payload["model"] = model
    async with httpx.AsyncClient(timeout=None) as client:
        async with client.stream("POST", API_URL, json=payload) as resp:
            if resp.status_code != 200:
                print(f"HTTP {resp.status_code}: {(await resp.aread()).decode('utf-8', 'replace')}")
                return
            async for evt in iter_stream_events(resp.aiter_bytes()):
                render_event(evt, sys.stdout)


def main():
    if len(sys.argv) < 2:
        print("Usage: scripts/cli_chat.py 'your prompt here' [model] [--no-tools]")
        print("Example: scripts/cli_chat.py 'Cuaca Jakarta hari ini?' gpt-oss:120b")
        return
    args = [a for a in sys.argv[1:] if a != "--no-tools"]
    prompt = args[0]
    model = args[1] if len(args) > 1 else None
    asyncio.run(stream_chat(prompt, model=model, use_tools="--no-tools" not in sys.argv))


if __name__ == "__main__":
    main()
