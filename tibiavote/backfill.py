"""
Backfill images from legacy external URLs into storage and the media table.

Usage:
    backfill-images --table weapons --concurrency 6 --limit 1000 --resume
    backfill-images --table perks --concurrency 6 --limit 1000 --resume

Progress is checkpointed to a local JSON file after every row, so an
interrupted run can be resumed with ``--resume``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import httpx

from tibiavote.config import Settings, get_settings
from tibiavote.db import DbClient, PerkRecord, PostgresDbClient, WeaponRecord
from tibiavote.images import MediaKind
from tibiavote.media import MediaImporter
from tibiavote.retry import BACKOFF_FACTOR_SECONDS, run_with_retry
from tibiavote.storage import S3StorageClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABLES = ("weapons", "perks")
DEFAULT_CONCURRENCY = 6
DEFAULT_LIMIT = 100000
DEFAULT_DELAY_MS = 0
ATTRIBUTION = "Tibia Wiki (Fandom)"


class MissingCredentialsError(RuntimeError):
    """Raised when the elevated database/storage credentials are absent."""


@dataclass
class Checkpoint:
    """Set of row ids already processed, persisted as JSON."""

    path: Path
    processed_ids: dict[str, bool] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> "Checkpoint":
        path = Path(path)
        if not path.exists():
            return cls(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            processed = payload.get("processedIds") or {}
        except (OSError, ValueError, AttributeError) as exc:
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, exc)
            return cls(path)
        if not isinstance(processed, dict):
            logger.warning("Ignoring malformed checkpoint %s", path)
            return cls(path)
        return cls(path, {str(key): True for key, value in processed.items() if value})

    def is_processed(self, row_id: str) -> bool:
        return self.processed_ids.get(row_id, False)

    def mark(self, row_id: str) -> None:
        self.processed_ids[row_id] = True
        self.save()

    def save(self) -> None:
        self.path.write_text(
            json.dumps({"processedIds": self.processed_ids}, indent=2),
            encoding="utf-8",
        )


@dataclass
class BackfillReport:
    candidates: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0


async def run_queue(
    items: Sequence[T],
    concurrency: int,
    delay_ms: int,
    task: Callable[[T], Awaitable[Any]],
) -> int:
    """
    Run ``task`` over ``items`` with a fixed number of workers.

    Workers claim the next index from a shared cursor; a failing task is
    logged and does not stop its worker. Returns the number of failures.
    """
    cursor = 0
    failures = 0

    async def worker() -> None:
        nonlocal cursor, failures
        while True:
            index = cursor
            cursor += 1
            if index >= len(items):
                return
            item = items[index]
            try:
                if delay_ms > 0:
                    await asyncio.sleep(delay_ms / 1000)
                await task(item)
            except Exception:
                failures += 1
                logger.exception("Task failed for %s", getattr(item, "id", index))

    await asyncio.gather(*(worker() for _ in range(max(1, concurrency))))
    return failures


class Backfill:
    """Drives the importer over rows that still point at external images."""

    def __init__(
        self,
        db: DbClient,
        importer: MediaImporter,
        checkpoint: Checkpoint,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        delay_ms: int = DEFAULT_DELAY_MS,
        retry_factor: float = BACKOFF_FACTOR_SECONDS,
    ):
        self.db = db
        self.importer = importer
        self.checkpoint = checkpoint
        self.concurrency = concurrency
        self.delay_ms = delay_ms
        self.retry_factor = retry_factor
        self.report = BackfillReport()

    async def _import_and_link(
        self,
        url: str,
        kind: MediaKind,
        link: Callable[[str], None],
        slug_or_id: Optional[str] = None,
    ) -> None:
        async def attempt() -> None:
            result = await self.importer.import_image(
                url, kind, slug_or_id=slug_or_id, attribution=ATTRIBUTION
            )
            await asyncio.to_thread(link, result.id)

        await run_with_retry(attempt, factor=self.retry_factor)

    async def process_weapon(self, row: WeaponRecord) -> None:
        if not row.image_url:
            return
        await self._import_and_link(
            row.image_url,
            MediaKind.WEAPON,
            lambda media_id: self.db.set_weapon_media(row.id, media_id),
            slug_or_id=row.id,
        )

    async def process_perk(self, row: PerkRecord) -> None:
        if row.needs_main_media:
            await self._import_and_link(
                row.main_icon_url,
                MediaKind.PERK_MAIN,
                lambda media_id: self.db.set_perk_media(row.id, main_media_id=media_id),
            )
        if row.needs_type_media:
            await self._import_and_link(
                row.type_icon_url,
                MediaKind.PERK_TYPE,
                lambda media_id: self.db.set_perk_media(row.id, type_media_id=media_id),
            )

    async def run(self, table: str, limit: int = DEFAULT_LIMIT) -> BackfillReport:
        if table == "weapons":
            rows = await asyncio.to_thread(self.db.list_weapons_missing_media, limit)
            handler = self.process_weapon
        elif table == "perks":
            rows = await asyncio.to_thread(self.db.list_perks_missing_media, limit)
            handler = self.process_perk
        else:
            raise ValueError(f"--table must be one of {', '.join(TABLES)}")

        self.report.candidates = len(rows)
        logger.info("Backfilling %d %s rows", len(rows), table)

        async def task(row) -> None:
            if self.checkpoint.is_processed(row.id):
                self.report.skipped += 1
            else:
                await handler(row)
                self.report.processed += 1
            self.checkpoint.mark(row.id)

        self.report.failed = await run_queue(rows, self.concurrency, self.delay_ms, task)
        return self.report


def make_http_client() -> httpx.AsyncClient:
    # No fetch timeout for bulk runs; retries are bounded instead.
    return httpx.AsyncClient(timeout=None)


async def run_backfill(args: argparse.Namespace, settings: Settings) -> BackfillReport:
    if not settings.has_write_credentials:
        raise MissingCredentialsError(
            "Missing DATABASE_URL or storage credentials "
            "(STORAGE_ACCESS_KEY_ID / STORAGE_SECRET_ACCESS_KEY)"
        )

    db = PostgresDbClient(settings.database_url)
    storage = S3StorageClient.from_settings(settings)
    await asyncio.to_thread(storage.ensure_bucket)

    checkpoint_path = Path(args.checkpoint or settings.backfill_checkpoint_path)
    checkpoint = Checkpoint.load(checkpoint_path) if args.resume else Checkpoint(checkpoint_path)

    async with make_http_client() as http_client:
        importer = MediaImporter(db, storage, http_client, timeout=None)
        backfill = Backfill(
            db,
            importer,
            checkpoint,
            concurrency=args.concurrency,
            delay_ms=args.delay_ms,
        )
        return await backfill.run(args.table, args.limit)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Backfill images from external URLs into storage"
    )
    parser.add_argument(
        "--table",
        choices=TABLES,
        default="weapons",
        help="Which table to backfill",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help="Number of concurrent workers",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_LIMIT,
        help="Max number of rows to load",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Skip rows recorded in the checkpoint file",
    )
    parser.add_argument(
        "--delayMs",
        "--delay-ms",
        dest="delay_ms",
        type=int,
        default=DEFAULT_DELAY_MS,
        help="Delay before each task, in milliseconds",
    )
    parser.add_argument(
        "--checkpoint",
        default=None,
        help="Checkpoint file path (defaults to .backfill-progress.json)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")

    try:
        report = asyncio.run(run_backfill(args, get_settings()))
    except Exception:
        logger.exception("Backfill failed")
        return 1

    logger.info(
        "Backfill completed: %d candidates, %d processed, %d skipped, %d failed",
        report.candidates,
        report.processed,
        report.skipped,
        report.failed,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
