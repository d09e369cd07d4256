import asyncio
import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from tibiavote.backfill import (
    ATTRIBUTION,
    Backfill,
    Checkpoint,
    main,
    parse_args,
    run_queue,
)
from tibiavote.config import Settings
from tibiavote.db import InMemoryDbClient, PerkRecord, WeaponRecord
from tibiavote.media import MediaImporter
from tibiavote.storage import InMemoryStorageClient
from tibiavote.tests.testing_utils import FakeUpstream, make_png

WIKI = "https://static.wikia.nocookie.net/tibia/images"


class BackfillTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.checkpoint_path = Path(self.temp_dir) / ".backfill-progress.json"
        self.upstream = FakeUpstream()
        self.http_client = self.upstream.client()
        self.db = InMemoryDbClient()
        self.storage = InMemoryStorageClient()
        self.importer = MediaImporter(self.db, self.storage, self.http_client, timeout=None)

    async def asyncTearDown(self):
        await self.http_client.aclose()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def add_weapon(self, weapon_id: str, *, color=(0, 0, 0)) -> str:
        url = f"{WIKI}/{weapon_id}.png"
        self.upstream.add(url, make_png(color=color))
        self.db.add_weapon(WeaponRecord(id=weapon_id, name=weapon_id.title(), image_url=url))
        return url

    def make_backfill(self, checkpoint: Checkpoint, **kwargs) -> Backfill:
        kwargs.setdefault("retry_factor", 0)
        return Backfill(self.db, self.importer, checkpoint, **kwargs)

    async def test_weapons_are_imported_linked_and_checkpointed(self):
        self.add_weapon("sword", color=(1, 2, 3))
        self.add_weapon("axe", color=(4, 5, 6))
        self.db.add_weapon(WeaponRecord(id="club", name="Club", image_url=None))

        report = await self.make_backfill(Checkpoint(self.checkpoint_path)).run("weapons")

        self.assertEqual(report.candidates, 2)
        self.assertEqual(report.processed, 2)
        self.assertEqual(report.failed, 0)
        for weapon_id in ("sword", "axe"):
            weapon = self.db.get_weapon(weapon_id)
            media = self.db.get_media(weapon.image_media_id)
            self.assertTrue(media.storage_path.startswith(f"weapons/{weapon_id}/"))
            self.assertEqual(media.attribution, ATTRIBUTION)
        self.assertIsNone(self.db.get_weapon("club").image_media_id)

        saved = json.loads(self.checkpoint_path.read_text())
        self.assertEqual(saved, {"processedIds": {"sword": True, "axe": True}})

    async def test_resume_skips_checkpointed_rows(self):
        url_a = self.add_weapon("a", color=(10, 10, 10))
        url_b = self.add_weapon("b", color=(20, 20, 20))
        self.checkpoint_path.write_text(json.dumps({"processedIds": {"a": True}}))

        checkpoint = Checkpoint.load(self.checkpoint_path)
        report = await self.make_backfill(checkpoint).run("weapons")

        self.assertNotIn(url_a, self.upstream.requested_urls())
        self.assertIn(url_b, self.upstream.requested_urls())
        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.processed, 1)
        self.assertIsNone(self.db.get_weapon("a").image_media_id)
        self.assertIsNotNone(self.db.get_weapon("b").image_media_id)
        saved = json.loads(self.checkpoint_path.read_text())
        self.assertEqual(set(saved["processedIds"]), {"a", "b"})

    async def test_concurrency_bounds_in_flight_fetches(self):
        self.upstream.delay = 0.02
        for index in range(10):
            self.add_weapon(f"w{index}", color=(index, index, index))

        report = await self.make_backfill(
            Checkpoint(self.checkpoint_path), concurrency=3
        ).run("weapons")

        self.assertEqual(report.processed, 10)
        self.assertEqual(len(self.upstream.requests), 10)
        self.assertLessEqual(self.upstream.max_in_flight, 3)
        self.assertGreater(self.upstream.max_in_flight, 1)

    async def test_failing_row_does_not_abort_batch(self):
        self.add_weapon("good", color=(1, 1, 1))
        self.db.add_weapon(
            WeaponRecord(id="gone", name="Gone", image_url=f"{WIKI}/missing.png")
        )

        report = await self.make_backfill(Checkpoint(self.checkpoint_path)).run("weapons")

        self.assertEqual(report.failed, 1)
        self.assertEqual(report.processed, 1)
        # A 404 is permanent: one request, no retries.
        self.assertEqual(self.upstream.requested_urls().count(f"{WIKI}/missing.png"), 1)
        self.assertIsNotNone(self.db.get_weapon("good").image_media_id)
        saved = json.loads(self.checkpoint_path.read_text())
        self.assertEqual(saved["processedIds"], {"good": True})

    async def test_transient_server_error_is_retried(self):
        url = self.add_weapon("bow")
        self.upstream.fail_next(url, 503)

        report = await self.make_backfill(Checkpoint(self.checkpoint_path)).run("weapons")

        self.assertEqual(report.processed, 1)
        self.assertEqual(self.upstream.requested_urls().count(url), 2)

    async def test_perks_link_main_and_type_icons(self):
        main_url = f"{WIKI}/perk-main.png"
        type_url = f"{WIKI}/perk-type.png"
        self.upstream.add(main_url, make_png(color=(9, 9, 9)))
        self.upstream.add(type_url, make_png(color=(8, 8, 8)))
        self.db.add_perk(
            PerkRecord(
                id="p1",
                name="Critical",
                weapon_id="sword",
                main_icon_url=main_url,
                type_icon_url=type_url,
            )
        )
        self.db.add_perk(
            PerkRecord(
                id="p2",
                name="Linked",
                main_icon_url=main_url,
                main_media_id="already",
            )
        )

        report = await self.make_backfill(Checkpoint(self.checkpoint_path)).run("perks")

        self.assertEqual(report.candidates, 1)
        perk = self.db.get_perk("p1")
        self.assertTrue(self.db.get_media(perk.main_media_id).storage_path.startswith("perks/main/"))
        self.assertTrue(self.db.get_media(perk.type_media_id).storage_path.startswith("perks/type/"))

    async def test_delay_is_applied_per_task(self):
        self.add_weapon("mace")
        with patch("tibiavote.backfill.asyncio.sleep") as mock_sleep:
            await self.make_backfill(
                Checkpoint(self.checkpoint_path), delay_ms=250
            ).run("weapons")
        mock_sleep.assert_any_call(0.25)

    async def test_unknown_table(self):
        with self.assertRaises(ValueError):
            await self.make_backfill(Checkpoint(self.checkpoint_path)).run("creators")


class RunQueueTests(unittest.IsolatedAsyncioTestCase):
    async def test_every_item_claimed_once(self):
        seen = []

        async def task(item):
            await asyncio.sleep(0)
            seen.append(item)

        failures = await run_queue(list(range(25)), 4, 0, task)

        self.assertEqual(failures, 0)
        self.assertEqual(sorted(seen), list(range(25)))

    async def test_zero_concurrency_still_runs(self):
        seen = []

        async def task(item):
            seen.append(item)

        await run_queue(["a", "b"], 0, 0, task)
        self.assertEqual(seen, ["a", "b"])

    async def test_failures_are_counted(self):
        async def task(item):
            if item % 2:
                raise RuntimeError(item)

        failures = await run_queue(list(range(6)), 2, 0, task)
        self.assertEqual(failures, 3)


class CheckpointTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / "progress.json"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_file_is_empty(self):
        self.assertEqual(Checkpoint.load(self.path).processed_ids, {})

    def test_corrupt_file_is_empty(self):
        self.path.write_text("{not json")
        self.assertEqual(Checkpoint.load(self.path).processed_ids, {})

    def test_malformed_processed_ids_are_empty(self):
        for payload in ({"processedIds": ["a", "b"]}, {"processedIds": "x"}, ["a"]):
            self.path.write_text(json.dumps(payload))
            self.assertEqual(Checkpoint.load(self.path).processed_ids, {})

    def test_mark_writes_through(self):
        checkpoint = Checkpoint(self.path)
        checkpoint.mark("w1")
        reloaded = Checkpoint.load(self.path)
        self.assertTrue(reloaded.is_processed("w1"))
        self.assertFalse(reloaded.is_processed("w2"))


class BackfillCliTests(unittest.TestCase):
    def test_parse_args(self):
        args = parse_args(
            ["--table", "perks", "--concurrency", "3", "--limit", "10", "--resume", "--delayMs", "50"]
        )
        self.assertEqual(args.table, "perks")
        self.assertEqual(args.concurrency, 3)
        self.assertEqual(args.limit, 10)
        self.assertTrue(args.resume)
        self.assertEqual(args.delay_ms, 50)

    def test_defaults(self):
        args = parse_args([])
        self.assertEqual(args.table, "weapons")
        self.assertEqual(args.concurrency, 6)
        self.assertEqual(args.limit, 100000)
        self.assertFalse(args.resume)
        self.assertEqual(args.delay_ms, 0)

    def test_invalid_table_exits(self):
        with self.assertRaises(SystemExit):
            parse_args(["--table", "builds"])

    @patch("tibiavote.backfill.get_settings")
    def test_missing_credentials_exit_one(self, mock_settings):
        mock_settings.return_value = Settings(_env_file=None, database_url=None)
        self.assertEqual(main(["--table", "weapons"]), 1)


class BackfillMainTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.checkpoint_path = Path(self.temp_dir) / "progress.json"
        self.upstream = FakeUpstream()
        self.db = InMemoryDbClient()
        self.storage = InMemoryStorageClient()
        for weapon_id, color in (("sword", (1, 1, 1)), ("axe", (2, 2, 2))):
            url = f"{WIKI}/{weapon_id}.png"
            self.upstream.add(url, make_png(color=color))
            self.db.add_weapon(WeaponRecord(id=weapon_id, name=weapon_id, image_url=url))
        self.checkpoint_path.write_text(json.dumps({"processedIds": {"sword": True}}))

        settings = Settings(
            _env_file=None,
            database_url="postgresql://localhost/tibiavote",
            storage_access_key_id="key",
            storage_secret_access_key="secret",
        )
        patchers = [
            patch("tibiavote.backfill.get_settings", return_value=settings),
            patch("tibiavote.backfill.PostgresDbClient", return_value=self.db),
            patch("tibiavote.backfill.make_http_client", side_effect=self.upstream.client),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)
        storage_patcher = patch("tibiavote.backfill.S3StorageClient")
        storage_cls = storage_patcher.start()
        self.addCleanup(storage_patcher.stop)
        storage_cls.from_settings.return_value = self.storage

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_main(self, *extra):
        return main(["--table", "weapons", "--checkpoint", str(self.checkpoint_path), *extra])

    def test_resume_loads_checkpoint(self):
        self.assertEqual(self.run_main("--resume"), 0)

        self.assertEqual(self.upstream.requested_urls(), [f"{WIKI}/axe.png"])
        self.assertIsNone(self.db.get_weapon("sword").image_media_id)
        self.assertIsNotNone(self.db.get_weapon("axe").image_media_id)
        saved = json.loads(self.checkpoint_path.read_text())
        self.assertEqual(saved["processedIds"], {"sword": True, "axe": True})

    def test_without_resume_starts_fresh(self):
        self.assertEqual(self.run_main(), 0)

        self.assertEqual(
            sorted(self.upstream.requested_urls()),
            [f"{WIKI}/axe.png", f"{WIKI}/sword.png"],
        )
        self.assertIsNotNone(self.db.get_weapon("sword").image_media_id)


if __name__ == "__main__":
    unittest.main()
