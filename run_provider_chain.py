"""
run_provider_chain.py — End-to-end smoke test of the provider chain

Runs one prompt through the configured providers:
  1. Build the provider manager from .env
  2. Show registered providers and the fallback chain
  3. Stream a prompt through dispatch (failover included)
  4. Print per-provider attempts and circuit states

Usage:
    OPENAI_API_KEY=... ANTHROPIC_API_KEY=... python run_provider_chain.py "Why is the sky blue?"
"""

import asyncio
import json
import sys
import time

from llm_orchestrator.core.config import settings
from llm_orchestrator.core.logging import setup_logging
from llm_orchestrator.gateway.bootstrap import build_provider_manager
from llm_orchestrator.gateway.errors import ChainExhaustedError
from llm_orchestrator.gateway.types import (
    DispatchTrace,
    DoneEvent,
    ErrorEvent,
    GenerateRequest,
    Message,
    Role,
    TextEvent,
    ToolCallEvent,
)


def banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(f"  {title}")
    print("=" * 60)


async def main() -> int:
    setup_logging()
    prompt = " ".join(sys.argv[1:]) or "In one sentence: why is the sky blue?"

    # ── Step 1: Build manager ────────────────────────────────
    banner("Step 1: Providers")
    manager = build_provider_manager()
    providers = manager.list_providers()
    if not providers:
        print("  ✗ No providers configured. Set at least one *_API_KEY in .env")
        return 1
    for record in providers:
        print(f"  ✓ {record.provider_id:12s} priority={record.priority:<4d} model={manager.get_adapter(record.provider_id).model}")
    print(f"  Fallback chain: {manager.global_fallback_chain}")

    # ── Step 2: Dispatch ─────────────────────────────────────
    banner(f"Step 2: Dispatch via {settings.default_provider}")
    request = GenerateRequest(
        provider_id=settings.default_provider,
        conversation=[Message(Role.USER, prompt)],
    )
    trace = DispatchTrace()
    start = time.time()
    try:
        async for event in manager.dispatch(request, trace=trace):
            if isinstance(event, TextEvent):
                print(event.content, end="", flush=True)
            elif isinstance(event, ToolCallEvent):
                print(f"\n  [tool call] {event.name}({json.dumps(event.arguments)})")
            elif isinstance(event, ErrorEvent):
                print(f"\n  [error] {event.code.value}: {event.message}")
            elif isinstance(event, DoneEvent) and event.usage:
                print(f"\n\n  Tokens: in={event.usage.input_tokens} out={event.usage.output_tokens}")
    except ChainExhaustedError as e:
        print(f"\n  ✗ {e}")
    print(f"  Served by: {trace.provider_id or '-'} in {time.time() - start:.1f}s")

    # ── Step 3: Diagnostics ──────────────────────────────────
    banner("Step 3: Attempts and circuits")
    for attempt in trace.attempts:
        print(f"  {json.dumps(attempt.to_dict(), ensure_ascii=False)}")
    for circuit in manager.get_status()["circuits"]:
        print(f"  {circuit['provider']:12s} {circuit['state']}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
