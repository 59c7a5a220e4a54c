"""Entry point for notifier processes: worker, retry promoter, producer and inspection commands."""

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from notifier.delivery import (
    BackoffPolicy,
    DeadLetterEscalator,
    IdempotencyGuard,
    NotificationWorker,
    Reclaimer,
    RetryPromoter,
    RetryScheduler,
    ensure_group,
)
from notifier.delivery.worker import Processor
from notifier.events import Event, StreamNames
from notifier.events.models import RESERVED_FIELDS
from notifier.logging_config import setup_logging
from notifier.producer import publish
from notifier.settings import get_setting, load_settings
from notifier.stores import Stores, open_redis_stores, open_sqlite_stores

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


async def log_notification(event: Event) -> None:
    """Default business processor: record the delivered notification."""
    logger.info(
        "Notification %s delivered: %s %s", event.event_id, event.event_type, event.payload
    )


async def open_stores(settings: dict[str, Any]) -> Stores:
    """Open the configured backend. Raises when it cannot be reached."""
    backend = get_setting(settings, "backend", "redis")
    if backend == "sqlite":
        db_path = _PROJECT_ROOT / get_setting(settings, "sqlite.db_path", "data/notifier.db")
        return open_sqlite_stores(
            db_path, busy_timeout=get_setting(settings, "sqlite.busy_timeout", 5000)
        )
    if backend == "redis":
        return await open_redis_stores(
            get_setting(settings, "redis.url", "redis://localhost:6379/0")
        )
    raise ValueError(f"unknown backend {backend!r} (expected 'redis' or 'sqlite')")


def consumer_name(settings: dict[str, Any], override: str | None = None) -> str:
    return (
        override
        or get_setting(settings, "stream.consumer")
        or f"{socket.gethostname()}-{os.getpid()}"
    )


def build_worker(
    stores: Stores,
    settings: dict[str, Any],
    processor: Processor = log_notification,
    consumer: str | None = None,
) -> NotificationWorker:
    stream = get_setting(settings, "stream.name", StreamNames.NOTIFICATIONS)
    group = get_setting(settings, "stream.group", StreamNames.GROUP)
    guard = IdempotencyGuard(
        stores.lock,
        lock_ttl=get_setting(settings, "idempotency.lock_ttl", 86400),
        processed_ttl=get_setting(settings, "idempotency.processed_ttl", 86400),
    )
    scheduler = RetryScheduler(
        stores.delay,
        get_setting(settings, "stream.retry_queue", StreamNames.RETRY_QUEUE),
        max_retries=get_setting(settings, "worker.max_retries", 3),
        backoff=BackoffPolicy(
            base_ms=get_setting(settings, "backoff.base_ms", 1000),
            cap_ms=get_setting(settings, "backoff.cap_ms", 60000),
            jitter=get_setting(settings, "backoff.jitter", 0.1),
        ),
    )
    escalator = DeadLetterEscalator(
        stores.log, get_setting(settings, "stream.dead_letter", StreamNames.DEAD_LETTER)
    )
    reclaimer = Reclaimer(
        stores.log,
        stream,
        group,
        min_idle_ms=get_setting(settings, "worker.min_idle_time_ms", 10000),
        batch_size=get_setting(settings, "worker.reclaim_batch_size", 10),
    )
    return NotificationWorker(
        log=stores.log,
        guard=guard,
        scheduler=scheduler,
        escalator=escalator,
        reclaimer=reclaimer,
        processor=processor,
        stream=stream,
        group=group,
        consumer=consumer_name(settings, consumer),
        read_batch_size=get_setting(settings, "worker.read_batch_size", 1),
        block_ms=get_setting(settings, "worker.block_ms", 5000),
    )


def build_promoter(stores: Stores, settings: dict[str, Any]) -> RetryPromoter:
    return RetryPromoter(
        stores.log,
        stores.delay,
        stream=get_setting(settings, "stream.name", StreamNames.NOTIFICATIONS),
        queue=get_setting(settings, "stream.retry_queue", StreamNames.RETRY_QUEUE),
        poll_interval=get_setting(settings, "promoter.poll_interval", 1.0),
        batch_size=get_setting(settings, "promoter.batch_size", 100),
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="notifier", description="At-least-once notification pipeline"
    )
    sub = p.add_subparsers(dest="command", required=True)
    worker = sub.add_parser("worker", help="Reclaim and consume notifications")
    worker.add_argument("--consumer", default=None, help="Consumer name (default: host-pid)")
    sub.add_parser("promoter", help="Move due retries back onto the notification stream")
    produce = sub.add_parser("produce", help="Publish one notification event")
    produce.add_argument("--type", required=True, dest="event_type", help="Event type")
    produce.add_argument(
        "--field",
        action="append",
        type=_payload_field,
        default=[],
        metavar="KEY=VALUE",
        help="Payload field (repeatable)",
    )
    sub.add_parser("pending", help="Show the consumer group's pending summary")
    sub.add_parser("init", help="Create the consumer group if missing")
    return p


def _payload_field(pair: str) -> tuple[str, str]:
    key, sep, value = pair.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"payload field must be KEY=VALUE, got {pair!r}")
    if key in RESERVED_FIELDS:
        raise argparse.ArgumentTypeError(f"{key!r} is a reserved event field")
    return key, value


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass  # not available on Windows


async def _run_command(args: argparse.Namespace, stores: Stores, settings: dict[str, Any]) -> int:
    stream = get_setting(settings, "stream.name", StreamNames.NOTIFICATIONS)
    group = get_setting(settings, "stream.group", StreamNames.GROUP)

    if args.command == "produce":
        entry_id, event = await publish(stores.log, stream, args.event_type, dict(args.field))
        print(f"{entry_id} {event.event_id}")
        return 0

    if args.command == "pending":
        summary = await stores.log.pending_summary(stream, group)
        print(f"pending={summary.count} min={summary.min_id} max={summary.max_id}")
        for name, count in sorted(summary.consumers.items()):
            print(f"  {name}: {count}")
        return 0

    if args.command == "promoter":
        stop = asyncio.Event()
        _install_signal_handlers(stop)
        await build_promoter(stores, settings).run(stop)
        return 0

    if args.command == "worker":
        stop = asyncio.Event()
        _install_signal_handlers(stop)
        await build_worker(stores, settings, consumer=args.consumer).run(stop)
        return 0

    return 0  # init: the group was ensured at startup


async def main_async(argv: list[str] | None = None, settings: dict[str, Any] | None = None) -> int:
    """Bootstrap: settings -> logging -> stores -> consumer group -> command. Returns exit status."""
    args = build_parser().parse_args(argv)
    if settings is None:
        settings = load_settings()
        setup_logging(_PROJECT_ROOT, settings)
    try:
        stores = await open_stores(settings)
    except Exception as e:
        logger.error("Cannot connect to %s backend: %s", get_setting(settings, "backend"), e)
        return 1
    try:
        if args.command in ("worker", "init"):
            try:
                await ensure_group(
                    stores.log,
                    get_setting(settings, "stream.name", StreamNames.NOTIFICATIONS),
                    get_setting(settings, "stream.group", StreamNames.GROUP),
                )
            except Exception as e:
                logger.error("Cannot create consumer group: %s", e)
                return 1
        return await _run_command(args, stores, settings)
    finally:
        await stores.close()


def main() -> None:
    """Synchronous entry for `python -m notifier`."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        code = asyncio.run(main_async())
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


__all__ = ["build_parser", "build_promoter", "build_worker", "main", "main_async", "open_stores"]
