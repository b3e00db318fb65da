"""
Command-line entry point.

    mongotail tail --mongo-url mongodb://localhost:27017/?replicaSet=rs0 --filter 'product.*' --label simpleLogger
    mongotail status --filter 'product.*' --label simpleLogger
"""

import argparse
import json
import logging
import signal
import sys
from typing import List, Optional

from prometheus_client import start_http_server

from .oplog.checkpoint_store import create_checkpoint_store
from .oplog.errors import MongotailError, SourceUnavailableError
from .oplog.handlers import LoggingHandler
from .oplog.source import OpLogSource
from .oplog.tailer import OpLogTailer
from .settings import Settings, get_settings
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {number}")
    return number


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mongotail", description="Tail the MongoDB oplog")
    parser.add_argument(
        "--mongo-url",
        default=settings.mongo.url,
        help="The mongo URL to use for connections"
    )
    parser.add_argument(
        "--filter",
        dest="filter_regex",
        default=settings.tailer.filter_regex,
        help="Regex matched against oplog namespaces"
    )
    parser.add_argument(
        "--label",
        default=settings.tailer.label,
        help="Checkpoint lineage name"
    )
    parser.add_argument(
        "--checkpoint-backend",
        choices=["mongo", "sql"],
        default=settings.checkpoint.backend,
        help="Where checkpoints are stored"
    )
    parser.add_argument(
        "--database-url",
        default=settings.checkpoint.database_url,
        help="SQLAlchemy URL for the sql checkpoint backend"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    tail = subparsers.add_parser("tail", help="Tail the oplog and log every change")
    tail.add_argument(
        "--workers",
        type=_positive_int,
        default=settings.tailer.worker_count,
        help="Handler worker threads"
    )
    tail.add_argument(
        "--metrics-port",
        type=int,
        default=settings.metrics_port,
        help="Serve Prometheus metrics on this port"
    )

    subparsers.add_parser("status", help="Print the stored checkpoint")
    return parser


def _open(args, settings: Settings):
    source = OpLogSource.from_url(
        args.mongo_url,
        connect_timeout_ms=settings.mongo.connect_timeout * 1000,
        server_selection_timeout_ms=settings.mongo.server_selection_timeout * 1000
    )
    checkpoint_settings = settings.checkpoint.model_copy(update={
        "backend": args.checkpoint_backend,
        "database_url": args.database_url
    })
    try:
        store = create_checkpoint_store(checkpoint_settings, client=source.client)
    except MongotailError:
        source.close()
        raise
    return source, store


def run_tail(args, settings: Settings) -> int:
    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info(f"Serving metrics on port {args.metrics_port}")

    try:
        source, store = _open(args, settings)
    except MongotailError as e:
        logger.error(f"Failed to open checkpoint store: {e}")
        return 1

    try:
        source.ping()
        config = settings.tailer.model_copy(update={"worker_count": args.workers}).tailer_config()
        tailer = OpLogTailer(
            source=source,
            checkpoint_store=store,
            filter_regex=args.filter_regex,
            label=args.label,
            handler=LoggingHandler(),
            config=config
        )

        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}")
            tailer.stop()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        tailer.start()
        return 0
    except SourceUnavailableError as e:
        logger.error(f"{e}")
        return 2
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except MongotailError as e:
        logger.error(f"Tailer failed: {e}")
        return 1
    finally:
        store.close()
        source.close()


def run_status(args, settings: Settings) -> int:
    try:
        source, store = _open(args, settings)
    except MongotailError as e:
        logger.error(f"Failed to open checkpoint store: {e}")
        return 1

    try:
        checkpoint = store.load(args.filter_regex, args.label)
    except MongotailError as e:
        logger.error(f"Failed to read checkpoint: {e}")
        return 1
    finally:
        store.close()
        source.close()

    if checkpoint is None:
        print(f"No checkpoint for filter [{args.filter_regex}] and label [{args.label}]", file=sys.stderr)
        return 1
    print(json.dumps(checkpoint.describe(), indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    setup_logging(settings.logging.level, settings.logging.json_format)

    if args.command == "tail":
        return run_tail(args, settings)
    return run_status(args, settings)


if __name__ == "__main__":
    sys.exit(main())
