"""
Linking CLI: run the linking engine outside the API.

Usage:
    python scripts/run_linking.py process-message <message_id>
    python scripts/run_linking.py process-unlinked --batch-size 50 --max-items 2000
    python scripts/run_linking.py backfill <shipment_id>
    python scripts/run_linking.py backfill-all --concurrency 8 --timeout 600
    python scripts/run_linking.py repair-cross-links --apply --start-offset 500

Ctrl+C stops batch jobs from scheduling new work; in-flight items finish
and the partial counts are printed. Output is JSON on stdout, logs on
stderr.
"""

import argparse
import json
import os
import signal
import sys
import threading

# Allow imports from the project root when running as a script
_backend_dir = os.path.join(os.path.dirname(__file__), "..")
sys.path.insert(0, _backend_dir)

from dotenv import load_dotenv
load_dotenv(os.path.join(_backend_dir, ".env"))

import structlog

from config import settings, configure_logging
from models.linking import BatchSummary
from services.backfill_service import get_backfill_service
from services.linking_service import get_linking_service
from exceptions import AppError

logger = structlog.get_logger(__name__)


def _cancel_on_interrupt() -> threading.Event:
    """Turn the first Ctrl+C into a cancel request instead of a crash."""
    cancel_event = threading.Event()

    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("cancel_requested", signal=signum)
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)
    return cancel_event


def _print(payload) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    print(json.dumps(payload, indent=2, default=str))


def cmd_process_message(args) -> None:
    _print(get_linking_service().process_message(args.message_id))


def cmd_process_unlinked(args) -> None:
    result = get_linking_service().process_unlinked_messages(
        batch_size=args.batch_size,
        max_messages=args.max_items,
        concurrency=args.concurrency,
        timeout_seconds=args.timeout,
        cancel_event=_cancel_on_interrupt(),
    )
    _print(BatchSummary.from_batch(result))


def cmd_backfill(args) -> None:
    _print(get_backfill_service().link_related_messages(args.shipment_id))


def cmd_backfill_all(args) -> None:
    result = get_backfill_service().backfill_all(
        batch_size=args.batch_size,
        max_items=args.max_items,
        concurrency=args.concurrency,
        timeout_seconds=args.timeout,
        cancel_event=_cancel_on_interrupt(),
    )
    _print(BatchSummary.from_backfill(result))


def cmd_repair_cross_links(args) -> None:
    result = get_backfill_service().repair_cross_links(
        dry_run=not args.apply,
        limit=args.max_items,
        batch_size=args.batch_size,
        start_offset=args.start_offset,
    )
    _print({
        **BatchSummary.from_repair(result).model_dump(mode="json"),
        "dry_run": result.dry_run,
        "cross_links": [c.model_dump(mode="json") for c in result.cross_links],
    })


def _add_batch_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.linking_batch_size,
        help=f"Rows fetched per page (default: {settings.linking_batch_size})",
    )
    parser.add_argument(
        "--max-items",
        type=int,
        default=settings.linking_max_messages,
        help=f"Upper bound on items processed (default: {settings.linking_max_messages})",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.linking_concurrency,
        help=f"Worker pool size (default: {settings.linking_concurrency})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.linking_timeout_seconds,
        help="Stop scheduling new work after this many seconds",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Link shipping correspondence to shipments."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("process-message", help="Link one message")
    p.add_argument("message_id")
    p.set_defaults(func=cmd_process_message)

    p = sub.add_parser("process-unlinked", help="Link every unlinked message")
    _add_batch_arguments(p)
    p.set_defaults(func=cmd_process_unlinked)

    p = sub.add_parser("backfill", help="Backfill one shipment")
    p.add_argument("shipment_id")
    p.set_defaults(func=cmd_backfill)

    p = sub.add_parser("backfill-all", help="Backfill every shipment with an identifier")
    _add_batch_arguments(p)
    p.set_defaults(func=cmd_backfill_all)

    p = sub.add_parser("repair-cross-links", help="Find (and optionally fix) cross-linked replies")
    _add_batch_arguments(p)
    p.add_argument(
        "--apply",
        action="store_true",
        help="Move cross-linked replies. Without it, only report them.",
    )
    p.add_argument(
        "--start-offset",
        type=int,
        default=0,
        help="Resume from the next_offset of a previous run",
    )
    p.set_defaults(func=cmd_repair_cross_links)

    return parser


def main() -> int:
    configure_logging()
    args = build_parser().parse_args()

    try:
        args.func(args)
    except AppError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
