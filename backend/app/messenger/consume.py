"""Standalone consumer: ``identity-consume [--queue NAME ...] [--once]``.

Runs the dispatcher outside the API process. SIGINT/SIGTERM stop the lanes
after any in-flight handler returns.
"""
import argparse
import signal
import threading
from typing import Optional, Sequence

from app.config import settings
from app.database import SessionLocal, engine
from app.messenger.handlers import default_registry
from app.messenger.notifier import create_channel
from app.messenger.store import QueueStore
from app.messenger.worker import Worker
from app.utils.logger import logger, setup_logging


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Consume queued identity-service messages")
    parser.add_argument(
        "--queue",
        dest="queues",
        action="append",
        help="Queue to consume (repeatable). Defaults to MESSENGER_QUEUES.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Drain every eligible message once, then exit",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between polls when no notification arrives",
    )
    parser.add_argument(
        "--notifier",
        choices=["auto", "postgres", "local", "polling"],
        default=None,
        help="Wake-up channel (defaults to MESSENGER_NOTIFIER)",
    )
    return parser.parse_args(argv)


def build_worker(args: argparse.Namespace) -> Worker:
    channel = create_channel(engine, args.notifier)
    return Worker(
        session_factory=SessionLocal,
        registry=default_registry(),
        store=QueueStore(channel=channel),
        channel=channel,
        queues=args.queues,
        poll_interval=args.poll_interval,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    args = _parse_args(argv)
    worker = build_worker(args)

    if args.once:
        delivered = sum(worker.run_once(queue_name) for queue_name in worker.queues)
        logger.info(f"Delivered {delivered} message(s)", extra={"action": "consume_once"})
        return 0

    stopped = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, stopping consumer", extra={"action": "consume_stop"})
        stopped.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    worker.start()
    try:
        stopped.wait()
    finally:
        worker.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
