import asyncio
import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bot import twitch_store
from bot.errors import MonitorValidationError
from bot.twitch_store import (
    GuildMonitorConfig,
    MonitorStore,
    PersistentStore,
    StreamerRecord,
    validate_guild_id,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class GuildIdValidationTests(unittest.TestCase):
    def test_accepts_snowflakes_as_int_or_str(self) -> None:
        self.assertEqual(validate_guild_id(123456789012345678), "123456789012345678")
        self.assertEqual(validate_guild_id("42"), "42")

    def test_rejects_reserved_and_malformed_ids(self) -> None:
        for bad in ["__proto__", "constructor", "prototype", "__class__", "", "a b", "x" * 65, None, True]:
            with self.subTest(guild_id=bad):
                with self.assertRaises(MonitorValidationError) as ctx:
                    validate_guild_id(bad)
                self.assertEqual(ctx.exception.code, "invalid_guild")


class PersistentStoreLoadTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.path = self.dir / "twitch_data.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_missing_file_yields_empty_store_with_warning(self) -> None:
        store = PersistentStore(self.path)
        with self.assertLogs(twitch_store.logger, level="WARNING"):
            data = store.load()
        self.assertEqual(data.guilds, {})

    def test_unparsable_file_yields_empty_store_with_warning(self) -> None:
        self.path.write_text("{not json", encoding="utf-8")
        store = PersistentStore(self.path)
        with self.assertLogs(twitch_store.logger, level="WARNING"):
            data = store.load()
        self.assertEqual(data.guilds, {})

    def test_wrong_shape_yields_empty_store(self) -> None:
        self.path.write_text(json.dumps(["not", "an", "object"]), encoding="utf-8")
        store = PersistentStore(self.path)
        with self.assertLogs(twitch_store.logger, level="WARNING"):
            data = store.load()
        self.assertEqual(data.guilds, {})

    def test_reserved_guild_keys_are_dropped(self) -> None:
        document = {
            "guilds": {
                "__proto__": {"streamers": [], "notificationChannelId": "1"},
                "111": {"streamers": [{"username": "ninja"}], "notificationChannelId": 222},
            }
        }
        self.path.write_text(json.dumps(document), encoding="utf-8")
        store = PersistentStore(self.path)
        with self.assertLogs(twitch_store.logger, level="WARNING"):
            data = store.load()
        self.assertEqual(list(data.guilds), ["111"])
        self.assertEqual(data.guilds["111"].notification_channel_id, "222")
        self.assertEqual(data.guilds["111"].streamers[0].username, "ninja")

    def test_camel_case_fields_are_read(self) -> None:
        document = {
            "guilds": {
                "1": {
                    "streamers": [
                        {
                            "id": "abc",
                            "username": "shroud",
                            "displayName": "Shroud",
                            "addedBy": "99",
                            "addedAt": "2024-01-01T00:00:00Z",
                            "isLive": True,
                            "lastChecked": "2024-01-01T01:00:00Z",
                            "lastStreamTitle": "Valorant",
                            "lastGameName": "VALORANT",
                        }
                    ],
                    "notificationChannelId": "5",
                }
            }
        }
        self.path.write_text(json.dumps(document), encoding="utf-8")
        record = PersistentStore(self.path).load().guilds["1"].streamers[0]
        self.assertEqual(record.display_name, "Shroud")
        self.assertTrue(record.is_live)
        self.assertEqual(record.last_game_name, "VALORANT")
        self.assertIsNotNone(record.last_checked)


class PersistentStoreSaveTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.path = self.dir / "data" / "twitch_data.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _populated(self, guilds: int) -> MonitorStore:
        data = MonitorStore()
        for index in range(guilds):
            config = GuildMonitorConfig(notification_channel_id=str(500 + index))
            for name in ("alpha", "bravo", "charlie")[: index + 1]:
                config.streamers.append(StreamerRecord(username=name, display_name=name.title()))
            data.guilds[str(index + 1)] = config
        return data

    def test_save_then_load_preserves_document(self) -> None:
        for guilds in (0, 1, 3):
            with self.subTest(guilds=guilds):
                store = PersistentStore(self.path)
                store.data = self._populated(guilds)
                self.assertTrue(store.save())

                reloaded = PersistentStore(self.path).load()
                self.assertEqual(reloaded.to_document(), store.data.to_document())
                names = [s.username for s in reloaded.guilds.get("3", GuildMonitorConfig()).streamers]
                if guilds == 3:
                    self.assertEqual(names, ["alpha", "bravo", "charlie"])

    def test_document_uses_camel_case_keys(self) -> None:
        store = PersistentStore(self.path)
        store.data = self._populated(1)
        store.save()
        document = json.loads(self.path.read_text(encoding="utf-8"))
        streamer = document["guilds"]["1"]["streamers"][0]
        self.assertEqual(document["guilds"]["1"]["notificationChannelId"], "500")
        for key in ("id", "username", "displayName", "addedAt", "isLive", "lastChecked"):
            self.assertIn(key, streamer)

    def test_failed_write_keeps_previous_file(self) -> None:
        store = PersistentStore(self.path)
        store.data = self._populated(1)
        self.assertTrue(store.save())
        before = self.path.read_text(encoding="utf-8")

        store.data = self._populated(3)
        with patch.object(twitch_store.os, "replace", side_effect=OSError("disk full")):
            with self.assertLogs(twitch_store.logger, level="ERROR"):
                self.assertFalse(store.save())

        self.assertEqual(self.path.read_text(encoding="utf-8"), before)
        self.assertEqual(list(self.path.parent.glob("*.tmp")), [])
        # The in-memory copy is kept after a failed write.
        self.assertEqual(len(store.data.guilds), 3)


class PersistentStoreReloadTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "twitch_data.json"
        self.clock = FakeClock()

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    def _write(self, usernames: list[str]) -> None:
        data = MonitorStore(guilds={"1": GuildMonitorConfig(
            notification_channel_id="9",
            streamers=[StreamerRecord(username=name) for name in usernames],
        )})
        self.path.write_text(json.dumps(data.to_document()), encoding="utf-8")

    async def test_reload_only_after_interval(self) -> None:
        self._write(["alpha"])
        store = PersistentStore(self.path, reload_interval=300, clock=self.clock)
        store.load()
        self._write(["alpha", "bravo"])

        self.clock.now += 299
        self.assertFalse(store.reload_if_stale())
        self.assertEqual(len(store.data.guilds["1"].streamers), 1)

        self.clock.now += 2
        self.assertTrue(store.reload_if_stale())
        self.assertEqual(len(store.data.guilds["1"].streamers), 2)

    async def test_failed_save_holds_off_reload_until_next_success(self) -> None:
        self._write(["alpha"])
        store = PersistentStore(self.path, reload_interval=300, clock=self.clock)
        store.load()
        store.data.guilds["1"].streamers.append(StreamerRecord(username="bravo"))

        with patch.object(twitch_store.os, "replace", side_effect=OSError("disk full")):
            with self.assertLogs(twitch_store.logger, level="ERROR"):
                self.assertFalse(store.save())
        self.assertTrue(store.dirty)

        self.clock.now += 301
        with self.assertLogs(twitch_store.logger, level="WARNING"):
            self.assertFalse(store.reload_if_stale())
        self.assertEqual(len(store.data.guilds["1"].streamers), 2)

        self.assertTrue(store.save())
        self.assertFalse(store.dirty)
        self.assertTrue(store.reload_if_stale())
        self.assertEqual(len(store.data.guilds["1"].streamers), 2)

    async def test_transaction_saves_on_success_only(self) -> None:
        store = PersistentStore(self.path, clock=self.clock)
        store.load()
        async with store.transaction() as data:
            data.guilds["7"] = GuildMonitorConfig(notification_channel_id="8")
        self.assertIn("7", json.loads(self.path.read_text(encoding="utf-8"))["guilds"])

        with self.assertRaises(RuntimeError):
            async with store.transaction() as data:
                data.guilds["9"] = GuildMonitorConfig()
                raise RuntimeError("boom")
        self.assertNotIn("9", json.loads(self.path.read_text(encoding="utf-8"))["guilds"])

    async def test_transactions_are_serialised(self) -> None:
        store = PersistentStore(self.path, clock=self.clock)
        store.load()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with store.transaction():
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        self.assertEqual(order, ["a-in", "a-out", "b-in", "b-out"])


if __name__ == "__main__":
    unittest.main()
