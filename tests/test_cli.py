import io
import json
import os
import tempfile
import unittest
from unittest import mock

from marketchat.cli import Simulation, _load_frames, main, simulate
from marketchat.config import DEFAULT_RECONCILE_INTERVAL_SECONDS, SyncConfig


class CliTests(unittest.TestCase):
    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "state", "user_id": "u1"}]))
        ndjson_buffer = io.StringIO("\n".join(['{"t": "one"}', '{"t": "two"}']))

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "state", "user_id": "u1"}])
        self.assertEqual(list(_load_frames(ndjson_buffer)), [{"t": "one"}, {"t": "two"}])
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])

    def test_simulate_unread_and_read(self):
        frames = [
            {"t": "sign_in", "user_id": "u1"},
            {"t": "sign_in", "user_id": "u2"},
            {"t": "send", "from": "u2", "to": "u1", "content": "hi"},
            {"t": "state", "user_id": "u1"},
            {"t": "open", "user_id": "u1", "with": "u2"},
            {"t": "state", "user_id": "u1"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        before, after = [json.loads(line) for line in buffer.getvalue().splitlines()]
        self.assertEqual((before["unread"], before["total"]), ({"u2": 1}, 1))
        self.assertEqual((after["unread"], after["total"]), ({}, 0))
        self.assertEqual([(m["content"], m["is_read"]) for m in after["messages"]], [("hi", True)])

    def test_simulate_archive_release(self):
        frames = [
            {"t": "sign_in", "user_id": "u1"},
            {"t": "sign_in", "user_id": "u2"},
            {"t": "archive", "user_id": "u1", "with": "u2"},
            {"t": "state", "user_id": "u1"},
            {"t": "send", "from": "u2", "to": "u1", "content": "still there?"},
            {"t": "state", "user_id": "u1"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        archived, released = [json.loads(line) for line in buffer.getvalue().splitlines()]
        self.assertEqual(archived["archived"], ["u2"])
        self.assertEqual(released["archived"], [])
        self.assertEqual(released["notices"], ["Message from archived chat"])

    def test_simulate_reports_invalid_frames(self):
        frames = [
            {"t": "sign_in", "user_id": "u1"},
            {"t": "wave", "user_id": "u1"},
            {"t": "read", "user_id": "u1"},
            {"t": "unarchive", "user_id": "u1", "with": "u2"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        errors = [json.loads(line) for line in buffer.getvalue().splitlines()]
        self.assertEqual([(e["frame"], e["code"]) for e in errors], [("wave", "invalid_frame"), ("read", "invalid_frame")])

    def test_main_runs_simulation_from_file(self):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as handle:
            json.dump([{"t": "sign_in", "user_id": "u1"}, {"t": "state", "user_id": "u1"}], handle)
        self.addCleanup(os.unlink, handle.name)
        buffer = io.StringIO()

        exit_code = main(["simulate", "--file", handle.name], output=buffer)

        self.assertEqual(exit_code, 0)
        self.assertEqual(json.loads(buffer.getvalue())["total"], 0)


    def test_main_passes_environment_config_to_simulation(self):
        environ = {"MARKETCHAT_PUBLIC_URL_BASE": "https://cdn.example.com/blobs", "MARKETCHAT_AVATAR_BUCKET": "faces"}
        with mock.patch.dict(os.environ, environ), mock.patch("marketchat.cli.simulate") as fake_simulate:
            with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as handle:
                json.dump([], handle)
            self.addCleanup(os.unlink, handle.name)

            main(["simulate", "--file", handle.name], output=io.StringIO())

        config = fake_simulate.call_args.args[2]
        self.assertEqual(config.avatar_bucket, "faces")
        self.assertEqual(config.public_url_base, "https://cdn.example.com/blobs")

    def test_simulation_uses_configured_public_url_base(self):
        simulation = Simulation(io.StringIO(), SyncConfig(public_url_base="https://cdn.example.com/blobs"))
        self.addCleanup(simulation.datastore.close)

        url = simulation.datastore.public_url("avatars", "u1/a.png")

        self.assertEqual(url, "https://cdn.example.com/blobs/avatars/u1/a.png")

class SyncConfigTests(unittest.TestCase):
    def test_defaults(self):
        config = SyncConfig.from_env({})

        self.assertEqual(config.reconcile_interval_seconds, DEFAULT_RECONCILE_INTERVAL_SECONDS)
        self.assertEqual(config.message_image_bucket, "message-images")
        self.assertEqual(config.avatar_bucket, "avatars")
        self.assertIsNone(config.db_path)

    def test_environment_overrides(self):
        config = SyncConfig.from_env(
            {
                "MARKETCHAT_RECONCILE_INTERVAL_SECONDS": "5",
                "MARKETCHAT_DB_PATH": "/tmp/chat.db",
                "MARKETCHAT_PING_INTERVAL_S": "10",
            }
        )

        self.assertEqual(config.reconcile_interval_seconds, 5.0)
        self.assertEqual(config.db_path, "/tmp/chat.db")
        self.assertEqual(config.ping_interval_s, 10)

    def test_invalid_values_are_rejected(self):
        with self.assertRaises(ValueError):
            SyncConfig.from_env({"MARKETCHAT_PING_INTERVAL_S": "often"})
        with self.assertRaises(ValueError):
            SyncConfig.from_env({"MARKETCHAT_RECONCILE_INTERVAL_SECONDS": "-1"})


if __name__ == "__main__":
    unittest.main()
