#!/usr/bin/env python3
"""
Event-log watcher CLI.

Usage:
    # Follow new logs until Ctrl-C
    python -m robust_logs.watch_main --rpc https://rpc.example.com \\
        --address 0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48 \\
        --topic 0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef

    # One-shot historical range, chunked
    python -m robust_logs.watch_main --rpc https://rpc.example.com \\
        --address 0x... --from-block 19000000 --to-block 19010000

Topics are position-ordered: "*" matches anything, "a|b" matches either.
Endpoints can also come from ROBUST_LOGS_RPC_URLS (comma-separated).
Each log is printed as one JSON line.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import structlog

from .config import ProviderConfig, rpc_urls_from_env
from .models import FilterDefinition, LogEntry, parse_quantity
from .provider import create_robust_provider

logger = structlog.get_logger()


def configure_logging(level: str = "info") -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def parse_args(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        description="Poll event logs without relying on server-side filters"
    )

    parser.add_argument(
        "--rpc",
        action="append",
        dest="rpcs",
        help="RPC endpoint URL (can be repeated)",
    )

    parser.add_argument(
        "--address",
        action="append",
        dest="addresses",
        help="Contract address to match (can be repeated)",
    )

    parser.add_argument(
        "--topic",
        action="append",
        dest="topics",
        default=[],
        help='Topic matcher by position: "*" for any, "a|b" for alternatives (can be repeated)',
    )

    parser.add_argument(
        "--from-block",
        help="Block number or tag; enables one-shot mode",
    )

    parser.add_argument(
        "--to-block",
        default="latest",
        help="Block number or tag for one-shot mode (default: latest)",
    )

    parser.add_argument(
        "--max-block-range",
        type=int,
        help="Blocks per eth_getLogs request (default: 2000)",
    )

    parser.add_argument(
        "--polling-interval",
        type=float,
        help="Seconds between listener polls (default: 4)",
    )

    parser.add_argument(
        "--log-level",
        default="info",
        help="Log level (default: info)",
    )

    return parser.parse_args(argv)


def parse_topics(raw_topics: list[str]) -> list:
    topics = []
    for raw in raw_topics:
        if raw in ("*", ""):
            topics.append(None)
        elif "|" in raw:
            topics.append([t for t in raw.split("|") if t])
        else:
            topics.append(raw)
    return topics


def parse_block(raw: str):
    """Numbers (decimal or hex) become ints; anything else is kept as a tag."""
    try:
        return parse_quantity(raw)
    except ValueError:
        return raw


def build_definition(args) -> FilterDefinition:
    address = None
    if args.addresses:
        address = args.addresses[0] if len(args.addresses) == 1 else args.addresses

    return FilterDefinition(
        address=address,
        topics=parse_topics(args.topics),
        from_block=parse_block(args.from_block) if args.from_block else None,
        to_block=parse_block(args.to_block) if args.from_block else None,
    )


def build_config(args) -> ProviderConfig:
    overrides = {}
    if args.max_block_range is not None:
        overrides["max_block_range"] = args.max_block_range
    if args.polling_interval is not None:
        overrides["polling_interval"] = args.polling_interval
    return ProviderConfig.from_env(**overrides)


def print_log(log: LogEntry) -> None:
    sys.stdout.write(log.to_json().decode() + "\n")
    sys.stdout.flush()


async def run(args) -> int:
    endpoints = args.rpcs or rpc_urls_from_env()
    if not endpoints:
        raise ValueError("No RPC endpoints provided. Use --rpc or ROBUST_LOGS_RPC_URLS")

    definition = build_definition(args)
    config = build_config(args)

    logger.info(
        "Starting log watcher",
        rpc_count=len(endpoints),
        address=definition.address,
        one_shot=definition.from_block is not None,
    )

    async with create_robust_provider(endpoints, config=config) as provider:
        if definition.from_block is not None:
            logs = await provider.get_logs(definition)
            for log in logs:
                print_log(log)
            logger.info("Fetched logs", count=len(logs))
            return 0

        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, shutdown.set)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(shutdown.set))

        cancel = provider.create_event_listener(definition, print_log)
        await shutdown.wait()
        logger.info("Shutdown signal received")
        cancel()

        stats = provider.get_stats()
        logger.info(
            "Watcher stats",
            rpc_calls=stats.rpc_calls,
            failed_attempts=stats.failed_attempts,
            skipped_chunks=stats.skipped_chunks,
        )

    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
