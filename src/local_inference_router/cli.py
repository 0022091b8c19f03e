"""CLI entry point for the local-inference-router."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from contextlib import aclosing

from .config import ConfigurationError, RouterConfig
from .observability.logging import setup_logging
from .orchestrator import ChatOptions, InferenceOrchestrator
from .router.types import DoneEvent, ErrorEvent, StartEvent, TextDeltaEvent


async def _run_chat(orchestrator: InferenceOrchestrator, args: argparse.Namespace) -> int:
    options = ChatOptions(temperature=args.temperature, max_tokens=args.max_tokens)
    messages = [{"role": "user", "content": args.prompt}]
    try:
        async with aclosing(orchestrator.stream_chat(
            messages, system_prompt=args.system, options=options,
        )) as events:
            async for event in events:
                if isinstance(event, StartEvent) and args.verbose and event.routing:
                    print(f"[{event.partial.model}] {event.routing.reasoning}", file=sys.stderr)
                elif isinstance(event, TextDeltaEvent):
                    sys.stdout.write(event.delta)
                    sys.stdout.flush()
                elif isinstance(event, DoneEvent):
                    sys.stdout.write("\n")
                    if args.verbose and event.trace is not None:
                        print(
                            f"{event.trace.model}: {event.trace.tokens_per_sec} tok/s, "
                            f"ttft {event.trace.time_to_first_token_ms}ms",
                            file=sys.stderr,
                        )
                    return 0
                elif isinstance(event, ErrorEvent):
                    print(f"\nError: {event.error_message}", file=sys.stderr)
                    return 1
    finally:
        await orchestrator.close()
    return 1


async def _run_models(orchestrator: InferenceOrchestrator) -> int:
    try:
        await orchestrator.selector.refresh_if_needed()
        print(json.dumps(orchestrator.selector.state, indent=2))
    finally:
        await orchestrator.close()
    return 0


async def _run_warmup(orchestrator: InferenceOrchestrator) -> int:
    try:
        elapsed = await orchestrator.warm_up()
    finally:
        await orchestrator.close()
    if elapsed < 0:
        print(f"Warm-up of {orchestrator.config.inference.model} failed", file=sys.stderr)
        return 1
    print(f"{orchestrator.config.inference.model} ready ({elapsed:.0f}ms)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Local Inference Router: route and stream chat turns to a local model"
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to configuration YAML file (default: LIR_* environment variables)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the configured log level",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="Stream a single chat turn to stdout")
    chat.add_argument("prompt", help="User message")
    chat.add_argument("--system", default=None, help="System prompt")
    chat.add_argument("--temperature", type=float, default=None)
    chat.add_argument("--max-tokens", type=int, default=None)
    chat.add_argument("--verbose", "-v", action="store_true",
                      help="Print routing and perf details to stderr")

    sub.add_parser("models", help="Show models resident in the backend")
    sub.add_parser("warmup", help="Pre-load the configured model")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = RouterConfig.from_yaml(args.config) if args.config else RouterConfig.from_env()
    except FileNotFoundError:
        print(f"Config file not found: {args.config}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(
        level=args.log_level or config.observability.log_level,
        fmt=config.observability.log_format,
    )
    orchestrator = InferenceOrchestrator(config)

    if args.command == "chat":
        return asyncio.run(_run_chat(orchestrator, args))
    if args.command == "models":
        return asyncio.run(_run_models(orchestrator))
    return asyncio.run(_run_warmup(orchestrator))


if __name__ == "__main__":
    sys.exit(main())
