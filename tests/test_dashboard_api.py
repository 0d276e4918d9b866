import asyncio
import json
import logging
import re
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import backend_app
from bot.twitch_client import LiveSnapshot
from bot.twitch_monitor import MonitorRegistry
from bot.twitch_store import PersistentStore

TOKEN = "test-admin-token"
AUTH = {"X-Admin-Token": TOKEN}


class CorsConfigTests(unittest.TestCase):
    def test_default_regex_when_nothing_configured(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env({})
        self.assertEqual(allow_origins, [])
        self.assertIsNotNone(re.compile(allow_regex or "").fullmatch("https://dash.example"))

    def test_explicit_origins_drop_trailing_slash(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "https://dash.example/, http://localhost:3000"}
        )
        self.assertEqual(allow_origins, ["https://dash.example", "http://localhost:3000"])
        self.assertIsNone(allow_regex)

    def test_wildcard_matches_subdomains_only(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "https://*.haruka.bot"}
        )
        pattern = re.compile(allow_regex or "")
        self.assertEqual(allow_origins, [])
        self.assertIsNotNone(pattern.fullmatch("https://dash.haruka.bot"))
        self.assertIsNone(pattern.fullmatch("https://haruka.bot"))
        self.assertIsNone(pattern.fullmatch("https://example.com"))


class DashboardApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = PersistentStore(Path(self._tmp.name) / "twitch.json")
        self.store.load()
        self.registry = MonitorRegistry(self.store)
        self.status_client = MagicMock()
        self.status_client.fetch_status = AsyncMock(return_value=LiveSnapshot(
            is_live=True,
            title="Ranked grind",
            viewers=120,
            login="ninja",
            display_name="Ninja",
        ))
        backend_app.attach_runtime(
            backend_app.app,
            registry=self.registry,
            status_client=self.status_client,
            telemetry=lambda: {"ping_ms": 42, "guilds": 3},
        )
        self._token_patch = patch.object(backend_app, "ADMIN_TOKEN", TOKEN)
        self._token_patch.start()
        self.client = TestClient(backend_app.app)

    def tearDown(self) -> None:
        self.client.close()
        self._token_patch.stop()
        backend_app.attach_runtime(backend_app.app, registry=None)
        self._tmp.cleanup()

    def test_health_is_public(self) -> None:
        response = self.client.get("/system/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_meta_reports_attached_monitor(self) -> None:
        body = self.client.get("/system/meta").json()
        self.assertEqual(body["version"], backend_app.API_VERSION)
        self.assertTrue(body["monitor_attached"])

    def test_token_is_required(self) -> None:
        self.assertEqual(self.client.get("/twitch/stats").status_code, 401)
        self.assertEqual(self.client.get("/twitch/stats", headers={"X-Admin-Token": "nope"}).status_code, 401)
        bearer = self.client.get("/twitch/stats", headers={"Authorization": f"Bearer {TOKEN}"})
        self.assertEqual(bearer.status_code, 200)

    def test_add_list_remove_flow(self) -> None:
        created = self.client.post(
            "/twitch/guilds/111/streamers",
            json={"username": "Ninja", "channel_id": "222"},
            headers=AUTH,
        )
        self.assertEqual(created.status_code, 200)
        self.assertTrue(created.json()["success"])
        self.assertEqual(created.json()["data"]["username"], "ninja")
        self.assertEqual(created.json()["data"]["addedBy"], "dashboard")

        duplicate = self.client.post(
            "/twitch/guilds/111/streamers",
            json={"username": "ninja", "channel_id": "222"},
            headers=AUTH,
        )
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["code"], "already_monitored")

        listed = self.client.get("/twitch/guilds/111/streamers", headers=AUTH).json()
        self.assertEqual([s["username"] for s in listed["data"]], ["ninja"])

        guild = self.client.get("/twitch/guilds/111", headers=AUTH).json()
        self.assertEqual(guild["data"]["notificationChannelId"], "222")

        removed = self.client.delete("/twitch/guilds/111/streamers/ninja", headers=AUTH)
        self.assertEqual(removed.status_code, 200)
        missing = self.client.delete("/twitch/guilds/111/streamers/ninja", headers=AUTH)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json(), {"success": False, "message": "Streamer not found", "code": "not_found"})

    def test_invalid_input_maps_to_400(self) -> None:
        bad_user = self.client.post(
            "/twitch/guilds/111/streamers",
            json={"username": "no spaces allowed", "channel_id": "222"},
            headers=AUTH,
        )
        reserved = self.client.post(
            "/twitch/guilds/__proto__/streamers",
            json={"username": "ninja", "channel_id": "222"},
            headers=AUTH,
        )
        self.assertEqual(bad_user.status_code, 400)
        self.assertEqual(bad_user.json()["code"], "invalid_username")
        self.assertEqual(reserved.status_code, 400)
        self.assertEqual(reserved.json()["code"], "invalid_guild")
        self.assertEqual(self.store.data.guilds, {})

    def test_set_channel(self) -> None:
        response = self.client.put("/twitch/guilds/111/channel", json={"channel_id": "999"}, headers=AUTH)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["notificationChannelId"], "999")

    def test_stats(self) -> None:
        self.client.post("/twitch/guilds/1/streamers", json={"username": "ninja", "channel_id": "2"}, headers=AUTH)
        body = self.client.get("/twitch/stats", headers=AUTH).json()
        self.assertEqual(body["data"]["totalStreamers"], 1)
        self.assertFalse(body["data"]["isMonitoring"])

    def test_check_uses_status_client(self) -> None:
        response = self.client.get("/twitch/check/Ninja", headers=AUTH)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["is_live"])
        self.assertEqual(body["username"], "ninja")
        self.assertEqual(body["viewers"], 120)
        self.status_client.fetch_status.assert_awaited_once_with("Ninja")

    def test_metrics_include_system_bot_and_twitch(self) -> None:
        memory = MagicMock(percent=40.0, used=512 * 1024 * 1024)
        process = MagicMock()
        process.memory_info.return_value = MagicMock(rss=64 * 1024 * 1024)
        with patch.object(backend_app.psutil, "virtual_memory", return_value=memory), \
            patch.object(backend_app.psutil, "Process", return_value=process), \
            patch.object(backend_app.psutil, "cpu_percent", return_value=12.5):
            body = self.client.get("/dashboard/metrics", headers=AUTH).json()

        self.assertEqual(body["cpu_percent"], 12.5)
        self.assertEqual(body["memory_used_mb"], 512.0)
        self.assertEqual(body["process_rss_mb"], 64.0)
        self.assertEqual(body["bot"], {"ping_ms": 42, "guilds": 3})
        self.assertEqual(body["twitch"]["totalGuilds"], 0)

    def test_monitor_not_attached_is_503(self) -> None:
        backend_app.attach_runtime(backend_app.app, registry=None)
        response = self.client.get("/twitch/stats", headers=AUTH)
        self.assertEqual(response.status_code, 503)


class ConsoleLogHandlerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=10)
        backend_app._bot_log_listeners.add(self.queue)

    def tearDown(self) -> None:
        backend_app._bot_log_listeners.discard(self.queue)

    def test_records_are_forwarded_with_metadata(self) -> None:
        handler = backend_app.ConsoleLogHandler()
        record = logging.LogRecord("bot.bot_app", logging.WARNING, __file__, 1, "Announced %s", ("ninja",), None)
        record.console_metadata = {"event": "notification"}

        handler.emit(record)

        event = json.loads(self.queue.get_nowait())
        self.assertEqual(event["level"], "warning")
        self.assertEqual(event["message"], "Announced ninja")
        self.assertEqual(event["metadata"], {"event": "notification"})

    def test_full_listener_is_dropped(self) -> None:
        full: asyncio.Queue = asyncio.Queue(maxsize=1)
        full.put_nowait("x")
        backend_app._bot_log_listeners.add(full)
        backend_app._broadcast_bot_log({"message": "hello"})
        self.assertNotIn(full, backend_app._bot_log_listeners)
        self.assertEqual(json.loads(self.queue.get_nowait()), {"message": "hello"})

    def test_install_is_idempotent(self) -> None:
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            first = backend_app.install_console_handler()
            second = backend_app.install_console_handler()
            self.assertIs(first, second)
        finally:
            root.handlers = before


if __name__ == "__main__":
    unittest.main()
