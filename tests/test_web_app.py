import logging
import os
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock


class _FakeEngine:
    def __init__(self) -> None:
        self.state = "idle"
        self.start_error = None
        self.started_with = []
        self.started = threading.Event()
        self.stop_calls = 0
        self.closed = False

    def get_status(self):
        from oclb.contracts.v1 import BridgeStatus

        connected = self.state == "connected"
        return BridgeStatus(status=self.state, gateway_connected=connected, assistant_connected=connected)

    def start(self, cfg):
        self.started_with.append(cfg)
        self.started.set()
        if self.start_error is not None:
            self.state = "error"
            raise self.start_error
        self.state = "connected"
        return self.get_status()

    def stop(self) -> None:
        self.stop_calls += 1
        self.state = "idle"

    def close(self) -> None:
        self.closed = True


class TestControlPlaneApi(unittest.TestCase):
    def setUp(self) -> None:
        from fastapi.testclient import TestClient

        from oclb.ports.web.app import create_app
        from oclb.util.obslog import LogRing

        self._td = tempfile.TemporaryDirectory()
        self.home = Path(self._td.name)
        self.work_dir = self.home / "work"
        self.work_dir.mkdir()
        env = mock.patch.dict(os.environ, {"OCLB_HOME": str(self.home)})
        env.start()
        self.addCleanup(env.stop)

        self.config_path = self.home / "config.yaml"
        self.engine = _FakeEngine()
        self.factory_calls = []
        self.ring = LogRing(capacity=50)

        def factory(cfg):
            self.factory_calls.append(cfg)
            return self.engine

        self.app = create_app(engine_factory=factory, config_path=self.config_path, log_ring=self.ring, autostart=False)
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        self._td.cleanup()

    def _config_doc(self, **feishu):
        doc = {
            "feishu": {"app_id": "cli_test", "app_secret": "secret1"},
            "assistant": {"work_dir": str(self.work_dir), "port": 4196},
            "web": {"port": 3100},
        }
        doc["feishu"].update(feishu)
        return doc

    def _save_config(self) -> None:
        resp = self.client.post("/api/config", json=self._config_doc())
        self.assertEqual(resp.status_code, 200, resp.text)

    def test_health(self) -> None:
        from oclb import __version__

        body = self.client.get("/api/health").json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["result"]["version"], __version__)
        self.assertEqual(Path(body["result"]["home"]), self.home.resolve())

    def test_status_before_any_config(self) -> None:
        body = self.client.get("/api/status").json()
        self.assertEqual(body["result"]["status"], "idle")
        self.assertFalse(body["result"]["configured"])
        self.assertEqual(body["result"]["queue_size"], 0)

    def test_config_round_trip_masks_secret(self) -> None:
        body = self.client.get("/api/config").json()
        self.assertFalse(body["result"]["exists"])
        self.assertEqual(body["result"]["problems"], ["config is missing"])

        self._save_config()
        self.assertTrue(self.config_path.exists())

        body = self.client.get("/api/config").json()["result"]
        self.assertTrue(body["exists"])
        self.assertEqual(body["problems"], [])
        self.assertEqual(body["config"]["feishu"]["app_id"], "cli_test")
        self.assertEqual(body["config"]["feishu"]["app_secret"], "se***")
        self.assertEqual(body["config"]["assistant"]["port"], 4196)
        self.assertTrue(self.client.get("/api/status").json()["result"]["configured"])

    def test_masked_secret_keeps_stored_value(self) -> None:
        from oclb.kernel.settings import load_config

        self._save_config()
        resp = self.client.post("/api/config", json=self._config_doc(app_secret="se***", app_id="cli_other"))
        self.assertEqual(resp.status_code, 200, resp.text)

        cfg = load_config(self.config_path)
        self.assertEqual(cfg.feishu.app_id, "cli_other")
        self.assertEqual(cfg.feishu.app_secret, "secret1")

    def test_config_missing_credentials_rejected(self) -> None:
        resp = self.client.post("/api/config", json=self._config_doc(app_id=""))
        self.assertEqual(resp.status_code, 400)
        err = resp.json()["error"]
        self.assertEqual(err["code"], "config_invalid")
        self.assertEqual(err["details"]["missing"], ["feishu.app_id"])
        self.assertFalse(self.config_path.exists())

    def test_config_out_of_range_rejected(self) -> None:
        doc = self._config_doc()
        doc["assistant"]["port"] = 70000
        resp = self.client.post("/api/config", json=doc)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["code"], "config_invalid")

    def test_invalid_json_body(self) -> None:
        resp = self.client.post("/api/config", content=b"{not json", headers={"Content-Type": "application/json"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"]["code"], "invalid_json")

    def test_start_without_config(self) -> None:
        resp = self.client.post("/api/start")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["code"], "config_invalid")
        self.assertEqual(self.factory_calls, [])

    def test_start_with_missing_work_dir(self) -> None:
        doc = self._config_doc()
        doc["assistant"]["work_dir"] = str(self.home / "nope")
        self.assertEqual(self.client.post("/api/config", json=doc).status_code, 200)
        resp = self.client.post("/api/start")
        self.assertEqual(resp.status_code, 400)
        self.assertIn("work_dir does not exist", resp.json()["error"]["message"])

    def test_start_and_stop(self) -> None:
        self._save_config()
        resp = self.client.post("/api/start")
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["result"]["status"], "connected")
        self.assertEqual(len(self.factory_calls), 1)
        self.assertEqual(self.engine.started_with[0].feishu.app_secret, "secret1")
        self.assertEqual(self.client.get("/api/status").json()["result"]["status"], "connected")

        resp = self.client.post("/api/stop")
        self.assertEqual(resp.json()["result"]["status"], "idle")
        self.assertEqual(self.engine.stop_calls, 1)

        # The engine is reused for later starts.
        self.client.post("/api/start")
        self.assertEqual(len(self.factory_calls), 1)

    def test_start_errors_map_to_status_codes(self) -> None:
        from oclb.kernel.errors import AlreadyRunning, PortInUse, StartupTimeout

        self._save_config()
        cases = [
            (AlreadyRunning("bridge is already connected"), 409, "already_running"),
            (PortInUse("port 4196 busy"), 409, "port_in_use"),
            (StartupTimeout("not healthy after 30s"), 500, "startup_timeout"),
        ]
        for exc, status, code in cases:
            self.engine.start_error = exc
            resp = self.client.post("/api/start")
            self.assertEqual(resp.status_code, status)
            body = resp.json()
            self.assertFalse(body["ok"])
            self.assertEqual(body["error"]["code"], code)

    def test_stop_without_engine(self) -> None:
        resp = self.client.post("/api/stop")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["status"], "idle")

    def test_recent_logs(self) -> None:
        log = logging.getLogger("oclb.webtest")
        log.propagate = False
        log.setLevel(logging.INFO)
        log.addHandler(self.ring)
        self.addCleanup(log.removeHandler, self.ring)
        for i in range(5):
            log.info("line %d", i, extra={"chat_id": "oc_1"})

        logs = self.client.get("/api/logs", params={"limit": 2}).json()["result"]["logs"]
        self.assertEqual([e["msg"] for e in logs], ["line 3", "line 4"])
        self.assertEqual(logs[0]["chat_id"], "oc_1")
        self.assertEqual(logs[0]["level"], "INFO")

        logs = self.client.get("/api/logs", params={"limit": 0}).json()["result"]["logs"]
        self.assertEqual(len(logs), 1)


_LISTENER = (
    "import socket, sys, time\n"
    "s = socket.socket()\n"
    "s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)\n"
    "s.bind(('127.0.0.1', int(sys.argv[1])))\n"
    "s.listen()\n"
    "print('ready', flush=True)\n"
    "time.sleep(60)\n"
)


class TestKillOpencode(unittest.TestCase):
    def setUp(self) -> None:
        from fastapi.testclient import TestClient

        from oclb.kernel.settings import save_config
        from oclb.ports.web.app import create_app
        from oclb.util.obslog import LogRing

        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.home = Path(self._td.name)
        cfg_path = self.home / "config.yaml"
        save_config(
            {
                "feishu": {"app_id": "cli_test", "app_secret": "secret1"},
                "assistant": {"work_dir": str(self.home), "port": 4196},
                "web": {"port": 3100},
            },
            cfg_path,
        )
        app = create_app(engine_factory=lambda cfg: _FakeEngine(), config_path=cfg_path, log_ring=LogRing(), autostart=False)
        self.client = TestClient(app)

    def _listen(self, argv0: str):
        import subprocess

        from oclb.util.net import free_port

        port = free_port()
        proc = subprocess.Popen([argv0, "-c", _LISTENER, str(port)], stdout=subprocess.PIPE)
        self.addCleanup(self._reap, proc)
        self.assertEqual(proc.stdout.readline().strip(), b"ready")
        return port, proc

    @staticmethod
    def _reap(proc) -> None:
        if proc.poll() is None:
            proc.kill()
        proc.wait(5)
        proc.stdout.close()

    def test_rejects_bad_ports(self) -> None:
        for body in ({}, {"port": "abc"}, {"port": 0}, {"port": 70000}, {"port": True}):
            resp = self.client.post("/api/kill-opencode", json=body)
            self.assertEqual(resp.status_code, 400, body)
            self.assertEqual(resp.json()["detail"]["code"], "invalid_port")

    def test_refuses_control_plane_port(self) -> None:
        resp = self.client.post("/api/kill-opencode", json={"port": 3100})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["detail"]["code"], "forbidden_port")

    def test_leaves_other_processes_alone(self) -> None:
        port, proc = self._listen(sys.executable)
        resp = self.client.post("/api/kill-opencode", json={"port": port})
        self.assertEqual(resp.status_code, 200)
        result = resp.json()["result"]
        self.assertEqual(result["killed"], [])
        self.assertIn(proc.pid, [s["pid"] for s in result["skipped"]])
        self.assertIsNone(proc.poll())

    @unittest.skipUnless(sys.platform.startswith("linux"), "process name follows the exec path on Linux")
    def test_kills_opencode_listener(self) -> None:
        link = self.home / "opencode"
        os.symlink(sys.executable, link)
        port, proc = self._listen(str(link))

        resp = self.client.post("/api/kill-opencode", json={"port": str(port)})
        self.assertEqual(resp.status_code, 200)
        result = resp.json()["result"]
        self.assertEqual([k["pid"] for k in result["killed"]], [proc.pid])
        self.assertEqual(proc.wait(5), -9)

    def test_nothing_listening(self) -> None:
        from oclb.util.net import free_port

        resp = self.client.post("/api/kill-opencode", json={"port": free_port()})
        self.assertEqual(resp.json()["result"]["killed"], [])
        self.assertEqual(resp.json()["result"]["skipped"], [])


class TestLifespan(unittest.TestCase):
    def test_autostart_and_close(self) -> None:
        from fastapi.testclient import TestClient

        from oclb.kernel.settings import save_config
        from oclb.ports.web.app import create_app
        from oclb.util.obslog import LogRing

        with tempfile.TemporaryDirectory() as td:
            home = Path(td)
            cfg_path = home / "config.yaml"
            save_config(
                {
                    "feishu": {"app_id": "cli_test", "app_secret": "secret1"},
                    "assistant": {"work_dir": td, "port": 4196},
                    "web": {"port": 3100, "autostart": True},
                },
                cfg_path,
            )
            engine = _FakeEngine()
            app = create_app(engine_factory=lambda cfg: engine, config_path=cfg_path, log_ring=LogRing())
            with mock.patch.dict(os.environ, {"OCLB_HOME": td}):
                with TestClient(app):
                    self.assertTrue(engine.started.wait(5))
            self.assertTrue(engine.closed)


if __name__ == "__main__":
    unittest.main()
