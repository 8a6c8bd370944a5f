"""Command line interface: run the worker, queue files, inspect results."""

import argparse
import importlib
import json
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Optional

from .config import EngineConfig
from .engine import ExtractionEngine
from .errors import PartialEnqueueError, QueueError
from .models import RawInput
from .providers import LocalModel

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def load_local_model(target: str) -> LocalModel:
    """Import a local model given as "package.module:attribute".

    Classes and factory functions are called with no arguments to build
    the model; anything else is used as is.
    """
    module_name, _, attr = target.partition(":")
    if not attr:
        raise ValueError(f"Expected 'module:attribute', got '{target}'")
    obj = getattr(importlib.import_module(module_name), attr)
    if isinstance(obj, type) or not hasattr(obj, "availability"):
        obj = obj()
    return obj


def read_inputs(paths: list[str]) -> list[RawInput]:
    inputs = []
    for path in map(Path, paths):
        mime_type, _ = mimetypes.guess_type(path.name)
        inputs.append(RawInput(
            data=path.read_bytes(),
            name=path.name,
            mime_type=mime_type or "application/octet-stream",
        ))
    return inputs


def build_engine(args: argparse.Namespace) -> ExtractionEngine:
    config = EngineConfig.from_env()
    config.db_path = args.db or config.db_path
    if getattr(args, "poll_interval", None) is not None:
        config.poll_interval = args.poll_interval
    if getattr(args, "timeout", None) is not None:
        config.extraction_timeout = args.timeout

    local_model = None
    if getattr(args, "local_model", None):
        local_model = load_local_model(args.local_model)
    return ExtractionEngine(config, local_model=local_model)


def cmd_worker(args: argparse.Namespace) -> int:
    engine = build_engine(args)
    engine.init(start_workers=False)
    engine.processor.recover()
    if engine.retry_queue is not None:
        engine.retry_queue.start(engine.config.drain_interval)

    logger.info(
        f"Starting worker on {engine.config.db_path} "
        f"with the {engine.provider_status().provider} provider"
    )
    try:
        engine.processor.run()
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    finally:
        engine.shutdown()
    return 0


def cmd_enqueue(args: argparse.Namespace) -> int:
    engine = build_engine(args)
    engine.init(start_workers=False)
    try:
        ids = engine.enqueue(read_inputs(args.files))
        status = 0
    except PartialEnqueueError as e:
        ids = e.enqueued_ids
        for name, reason in e.failures:
            print(f"FAILED {name}: {reason}", file=sys.stderr)
        status = 1
    finally:
        engine.shutdown()

    for item_id in ids:
        print(item_id)
    return status


def cmd_status(args: argparse.Namespace) -> int:
    engine = build_engine(args)
    engine.init(start_workers=False)
    try:
        stats = engine.get_counts()
        items = engine.list_queue(status=args.status)
    finally:
        engine.shutdown()

    print("\n" + "=" * 80)
    print(f"{'ID':<34} {'File':<30} {'Status':<12}")
    print("=" * 80)
    for item in items:
        name = item.file_name[:27] + "..." if len(item.file_name) > 30 else item.file_name
        print(f"{item.id:<34} {name:<30} {item.status:<12}")
    print("=" * 80)
    print(
        f"\nTotal: {stats.total}  Pending: {stats.pending}  Processing: {stats.processing}  "
        f"Completed: {stats.completed}  Failed: {stats.failed}\n"
    )
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    engine = build_engine(args)
    engine.init(start_workers=False)
    try:
        item = engine.get_item(args.item_id)
    finally:
        engine.shutdown()

    print(json.dumps(item.to_dict(), indent=2, ensure_ascii=False))
    return 0


def cmd_provider(args: argparse.Namespace) -> int:
    engine = build_engine(args)
    engine.init(start_workers=False)
    try:
        if args.remote or args.local:
            engine.set_provider(args.remote, args.credential)
        status = engine.provider_status()
    finally:
        engine.shutdown()

    print(json.dumps(status.model_dump(), indent=2))
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    engine = build_engine(args)
    engine.init(start_workers=False)
    try:
        if args.clear_failures:
            print(f"Cleared {engine.clear_sync_failures()} permanent failures", file=sys.stderr)
        elif args.acknowledge is not None:
            engine.acknowledge_sync_failure(args.acknowledge)
        status = engine.sync_status()
    finally:
        engine.shutdown()

    print(json.dumps(status.model_dump(), indent=2, ensure_ascii=False))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(build_engine(args)), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Queue document images for AI data extraction"
    )
    parser.add_argument(
        "--db",
        default=None,
        help="Path to SQLite database (default: $EXTRACTION_QUEUE_DB_PATH or extraction_queue.db)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", help="Run the background processor")
    worker.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Polling interval in seconds"
    )
    worker.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-extraction timeout in seconds"
    )
    worker.add_argument(
        "--local-model",
        default=None,
        help="Local model to load, as 'package.module:attribute'"
    )
    worker.set_defaults(func=cmd_worker)

    enqueue = subparsers.add_parser("enqueue", help="Queue image files for extraction")
    enqueue.add_argument("files", nargs="+", help="Image files to queue")
    enqueue.set_defaults(func=cmd_enqueue)

    status = subparsers.add_parser("status", help="Show queue items and counts")
    status.add_argument(
        "--status",
        choices=["pending", "processing", "completed", "failed"],
        help="Only show items with this status"
    )
    status.set_defaults(func=cmd_status)

    show = subparsers.add_parser("show", help="Show one item and its result")
    show.add_argument("item_id", help="Queue item ID")
    show.set_defaults(func=cmd_show)

    provider = subparsers.add_parser("provider", help="Show or switch the extraction provider")
    choice = provider.add_mutually_exclusive_group()
    choice.add_argument("--remote", action="store_true", help="Use the remote model")
    choice.add_argument("--local", action="store_true", help="Use the local model")
    provider.add_argument("--credential", default=None, help="Remote model credential")
    provider.set_defaults(func=cmd_provider)

    sync = subparsers.add_parser("sync", help="Show backup retries and permanent failures")
    handled = sync.add_mutually_exclusive_group()
    handled.add_argument(
        "--acknowledge",
        type=int,
        default=None,
        metavar="FAILURE_ID",
        help="Drop one permanent failure after handling it"
    )
    handled.add_argument(
        "--clear-failures",
        action="store_true",
        help="Drop every permanent failure"
    )
    sync.set_defaults(func=cmd_sync)

    serve = subparsers.add_parser("serve", help="Run the HTTP API with workers")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument(
        "--local-model",
        default=None,
        help="Local model to load, as 'package.module:attribute'"
    )
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except QueueError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
