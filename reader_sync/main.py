"""Command-line entry point: sync Readwise Reader documents into the database."""

from __future__ import annotations

import argparse
import logging
import sqlite3

from reader_sync.core.checkpoint import CheckpointStore
from reader_sync.core.logging_config import setup_logging
from reader_sync.core.settings import ConfigError, Settings
from reader_sync.core.storage import init_db
from reader_sync.core.sync_job import SyncRunStore, run_sync
from reader_sync.providers.readwise import ReadwiseClient, ReadwiseError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reader-sync",
        description="Sync Readwise Reader documents to a local database",
    )
    parser.add_argument(
        "--full-sync",
        action="store_true",
        help="Bypass the checkpoint and re-sync everything from the beginning",
    )
    parser.add_argument(
        "--check-token",
        action="store_true",
        help="Validate the Readwise access token and exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    # Settings may not load yet, so start with the flag or the default
    setup_logging(args.log_level or "INFO")

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        logger.error(str(e))
        return 1
    setup_logging(args.log_level or settings.log_level)

    client = ReadwiseClient(
        settings.readwise_token,
        base_url=settings.readwise_base_url,
        timeout=settings.http_timeout,
    )
    with client:
        if args.check_token:
            try:
                client.validate_token()
            except ReadwiseError as e:
                logger.error(str(e))
                return 1
            logger.info("Readwise access token is valid")
            return 0

        try:
            db = init_db(settings)
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Database unavailable: {e}")
            return 1

        try:
            job = run_sync(
                client,
                db,
                CheckpointStore(db.conn),
                full_sync=args.full_sync,
                runs=SyncRunStore(db.conn),
            )
        except (ReadwiseError, sqlite3.Error, RuntimeError) as e:
            logger.error(f"Sync failed: {e}")
            return 1
        finally:
            db.conn.close()

    logger.info(
        f"Sync complete: {job.items_synced} saved, {job.items_failed} failed, "
        f"{job.pages} page(s)"
    )
    return 0
