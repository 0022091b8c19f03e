#!/usr/bin/env python3
"""Example runner for the Local Inference Router.

Sends a spread of coding-assistant style turns through the orchestrator
against a local Ollama server and shows, for each one, the complexity tier,
the model that served it and the perf trace.

Usage:
    python examples/run_example.py

The script:
1. Loads examples/config.yaml and warms the configured model
2. Streams each example turn and prints routing and perf details
3. Prints aggregate metrics at the end
"""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from local_inference_router.config import RouterConfig
from local_inference_router.orchestrator import ChatOptions, InferenceOrchestrator
from local_inference_router.router.types import DoneEvent, ErrorEvent, StartEvent

READ_FILE_TOOL = {
    "name": "read_file",
    "description": "Read a file from the workspace",
    "parameters": {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    },
}

EXAMPLE_TURNS = [
    {
        "name": "Greeting",
        "expected_tier": "simple",
        "messages": [{"role": "user", "content": "Hello! Can you help me today?"}],
        "max_tokens": 50,
    },
    {
        "name": "Definition lookup",
        "expected_tier": "simple",
        "messages": [{"role": "user", "content": "What is a Python decorator?"}],
        "max_tokens": 150,
    },
    {
        "name": "Function implementation",
        "expected_tier": "simple",
        "messages": [{"role": "user", "content": (
            "Write a Python function called `merge_sorted_lists` that takes "
            "two sorted lists of integers and returns a single sorted list. "
            "Use the merge step from merge sort."
        )}],
        "max_tokens": 300,
    },
    {
        "name": "Bug fix with history",
        "expected_tier": "moderate",
        "messages": [
            {"role": "user", "content": "I have a factorial function that misbehaves."},
            {"role": "assistant", "content": "Sure, please paste it."},
            {"role": "user", "content": (
                "This function is supposed to return the factorial of n but it "
                "returns 0 for all inputs. Please debug it:\n\n"
                "def factorial(n):\n"
                "    result = 0\n"
                "    for i in range(1, n + 1):\n"
                "        result *= i\n"
                "    return result\n"
            )},
        ],
        "max_tokens": 300,
    },
    {
        "name": "Agentic tool use",
        "expected_tier": "simple",
        "messages": [{"role": "user", "content": "Read the file src/main.py and tell me what it does."}],
        "tools": [READ_FILE_TOOL],
        "max_tokens": 200,
    },
    {
        "name": "Multi-step automation",
        "expected_tier": "moderate",
        "messages": [{"role": "user", "content": (
            "Automate our release process step by step: first bump the version "
            "in every package manifest, then regenerate the changelog from the "
            "commit history since the last tag, then build the wheels and "
            "source distributions for all supported interpreters, run the full "
            "test matrix against each artifact, and finally publish the "
            "artifacts and tag the repository. Describe each stage, the inputs "
            "it needs, what can fail, and how to roll back a partial release "
            "if publishing succeeds for some packages and fails for others. "
            "Include the exact commands and the checks to run between stages."
        )}],
        "max_tokens": 600,
    },
]

RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"


def _tier_color(tier: str) -> str:
    colors = {
        "simple": "\033[92m",        # Green
        "moderate": "\033[93m",      # Yellow
        "complex": "\033[91m",       # Red
        "very-complex": "\033[95m",  # Magenta
    }
    return colors.get(tier, RESET)


async def run_examples():
    """Run all example turns through the orchestrator."""
    print(f"\n{BOLD}{'='*70}")
    print("  Local Inference Router: Example Runner")
    print(f"{'='*70}{RESET}\n")

    config_path = Path(__file__).parent / "config.yaml"
    config = RouterConfig.from_yaml(str(config_path))
    orchestrator = InferenceOrchestrator(config)

    print(f"  Backend: {orchestrator.backend.base_url}")
    print(f"  Model:   {config.inference.model} ({orchestrator.stats['tier']} tier)")
    load_ms = await orchestrator.warm_up()
    print(f"  Warm-up: {'failed' if load_ms < 0 else f'{load_ms:.0f}ms'}")
    print(f"\n{'─'*70}\n")

    results = []
    total_start = time.monotonic()

    for i, turn in enumerate(EXAMPLE_TURNS, 1):
        expected = turn["expected_tier"]
        print(f"  [{i:2d}/{len(EXAMPLE_TURNS)}] {BOLD}{turn['name']}{RESET}")
        print(f"       Expected: {_tier_color(expected)}{expected}{RESET}")

        actual = "?"
        preview = ""
        status = "error"
        async for event in orchestrator.stream_chat(
            turn["messages"],
            tools=turn.get("tools"),
            options=ChatOptions(max_tokens=turn["max_tokens"]),
        ):
            if isinstance(event, StartEvent) and event.routing is not None:
                actual = event.routing.complexity.value
                color = _tier_color(actual)
                print(f"       Actual:   {color}{actual}{RESET} → {event.partial.model}")
                print(f"       Routing:  {DIM}{event.routing.reasoning}{RESET}")
            elif isinstance(event, DoneEvent):
                status = event.reason.value
                message = event.message
                preview = message.text or (
                    f"[tool_call: {message.tool_calls[0].name}]" if message.tool_calls else ""
                )
                if event.trace is not None:
                    t = event.trace
                    print(
                        f"       Perf:     load={t.model_load_ms}ms ttft={t.time_to_first_token_ms}ms "
                        f"tok/s={t.tokens_per_sec} ctx={t.num_ctx}"
                    )
            elif isinstance(event, ErrorEvent):
                preview = event.error_message

        preview = preview[:80].replace("\n", " ")
        if preview:
            print(f"       Response: {DIM}\"{preview}...\"{RESET}")
        print(f"       Result:   {'✓' if actual == expected else '≈'}")
        print()

        results.append({
            "name": turn["name"],
            "expected": expected,
            "actual": actual,
            "status": status,
        })

    total_elapsed = (time.monotonic() - total_start) * 1000
    await orchestrator.close()

    # ── Print summary ────────────────────────────────────────────
    print(f"\n{'='*70}")
    print(f"  {BOLD}RESULTS SUMMARY{RESET}")
    print(f"{'='*70}\n")

    metrics = orchestrator.metrics.get_summary()
    print(f"  Completed turns: {metrics['total_inferences']}")
    print(f"  Total time:      {total_elapsed:.0f}ms")
    if metrics["total_inferences"]:
        print(f"  Avg latency:     {metrics['latency']['mean_ms']:.0f}ms")
        print(f"  P50 latency:     {metrics['latency']['p50_ms']:.0f}ms")
        print(f"  Avg tok/s:       {metrics['avg_tokens_per_second']}")
        print(f"  Saved vs. {metrics['savings']['compared_to']}: {metrics['savings']['formatted']}")

        print(f"\n  Task distribution:")
        for task, count in metrics["task_distribution"].items():
            print(f"    {task:10s} {'█' * count} ({count})")

    print(f"\n  Prompt cache: {orchestrator.prompt_cache.stats}")

    correct = sum(1 for r in results if r["actual"] == r["expected"])
    print(f"\n  Tier accuracy: {correct}/{len(results)} ({correct/len(results)*100:.0f}%)")

    failed = [r for r in results if r["status"] == "error"]
    if failed:
        print(f"\n  ⚠ Failed turns ({len(failed)}):")
        for f in failed:
            print(f"    - {f['name']}")

    print(f"\n{'='*70}\n")


if __name__ == "__main__":
    asyncio.run(run_examples())
