from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from .cache import CacheService
from .config import ConfigError, load_config
from .notifier import Notifier
from .pubsub import build_broker
from .storage import init_db
from .submissions import submit_url
from .utils import configure_logging, is_http_url, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("digestor.cli")


def _cmd_api(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    try:
        load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.config:
        # The app builds its services lazily and reads the path from the environment.
        os.environ["DG_CONFIG"] = args.config
    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("digestor.api:app", host=args.host, port=args.port, log_level="info")
    return 0


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    from .worker import build_context, run_loop, run_once

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    ctx = build_context(config, logging.getLogger("digestor.worker"))
    if args.once:
        processed = run_once(ctx, args.role, args.worker_id)
        log_event(logger, logging.INFO, "worker_once", role=args.role, processed=processed)
        return 0
    try:
        run_loop(ctx, args.role, args.worker_id)
    except KeyboardInterrupt:
        log_event(logger, logging.INFO, "worker_interrupted", role=args.role)
    return 0


def _cmd_submit(args: argparse.Namespace, logger: logging.Logger) -> int:
    if not is_http_url(args.url):
        log_event(logger, logging.ERROR, "submit_invalid_url", url=args.url)
        return 2
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    broker = build_broker()
    conn = init_db()
    try:
        document, existing = submit_url(
            conn,
            config,
            CacheService.from_config(config),
            Notifier(broker),
            args.url,
            owner_id=args.user_id,
            logger=logger,
        )
    finally:
        conn.close()
        broker.close()
    print(json.dumps({"id": document.id, "status": document.status, "existing": existing}))
    return 0


def _cmd_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn = init_db()
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", backend=conn.backend)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="digestor", description="Digestor CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to a YAML config file (defaults to DG_CONFIG)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    api_parser = subparsers.add_parser("api", help="Serve the HTTP API")
    api_parser.add_argument("--host", default=os.environ.get("DG_API_HOST", "0.0.0.0"))
    api_parser.add_argument("--port", type=int, default=int(os.environ.get("DG_API_PORT", "8000")))
    api_parser.set_defaults(func=_cmd_api)

    worker_parser = subparsers.add_parser("worker", help="Run an ingestion or summarization worker")
    worker_parser.add_argument("--role", required=True, choices=["ingest", "summarize"])
    worker_parser.add_argument("--once", action="store_true", help="Process at most one document and exit")
    worker_parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    worker_parser.set_defaults(func=_cmd_worker)

    submit_parser = subparsers.add_parser("submit", help="Queue a URL for summarization")
    submit_parser.add_argument("url", help="URL to summarize")
    submit_parser.add_argument("--user-id", default=None, help="Owner id recorded on the document")
    submit_parser.set_defaults(func=_cmd_submit)

    migrate_parser = subparsers.add_parser("migrate", help="Apply database migrations")
    migrate_parser.set_defaults(func=_cmd_migrate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    sys.exit(main())
