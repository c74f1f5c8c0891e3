import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock


class TestSettings(unittest.TestCase):
    def test_missing_file_loads_as_none(self) -> None:
        from oclb.kernel.settings import load_config

        with tempfile.TemporaryDirectory() as td:
            self.assertIsNone(load_config(Path(td) / "config.yaml"))

    def test_save_and_load_roundtrip_keeps_env_secret_out_of_file(self) -> None:
        from oclb.contracts.v1 import BridgeConfig
        from oclb.kernel.settings import load_config, save_config

        old = os.environ.get("OCLB_TEST_SECRET")
        try:
            os.environ["OCLB_TEST_SECRET"] = "from-env"
            with tempfile.TemporaryDirectory() as td:
                p = Path(td) / "config.yaml"
                cfg = BridgeConfig()
                cfg.feishu.app_id = "cli_x"
                cfg.feishu.app_secret = "inline"
                cfg.feishu.app_secret_env = "OCLB_TEST_SECRET"
                cfg.assistant.work_dir = td
                save_config(cfg, p)

                self.assertNotIn("inline", p.read_text(encoding="utf-8"))
                loaded = load_config(p)
                self.assertIsNotNone(loaded)
                self.assertEqual(loaded.feishu.app_id, "cli_x")
                self.assertEqual(loaded.feishu.app_secret, "from-env")
                self.assertEqual(loaded.assistant.work_dir, td)
        finally:
            if old is None:
                os.environ.pop("OCLB_TEST_SECRET", None)
            else:
                os.environ["OCLB_TEST_SECRET"] = old

    def test_inline_secret_kept_when_env_var_unset(self) -> None:
        from oclb.contracts.v1 import BridgeConfig
        from oclb.kernel.settings import load_config, save_config

        with mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop("OCLB_UNSET_SECRET", None)
            with tempfile.TemporaryDirectory() as td:
                p = Path(td) / "config.yaml"
                cfg = BridgeConfig()
                cfg.feishu.app_id = "cli_x"
                cfg.feishu.app_secret = "inline"
                cfg.feishu.app_secret_env = "OCLB_UNSET_SECRET"
                save_config(cfg, p)

                loaded = load_config(p)
                self.assertEqual(loaded.feishu.app_secret, "inline")
                self.assertEqual(loaded.feishu.app_secret_env, "OCLB_UNSET_SECRET")

    def test_env_overrides(self) -> None:
        from oclb.contracts.v1 import BridgeConfig
        from oclb.kernel.settings import apply_env_overrides

        cfg = BridgeConfig()
        out = apply_env_overrides(cfg, env={"OCLB_WORK_DIR": "/tmp/w", "OCLB_WEB_PORT": "3100"})
        self.assertEqual(out.assistant.work_dir, "/tmp/w")
        self.assertEqual(out.web.port, 3100)
        # Original is untouched.
        self.assertEqual(cfg.web.port, 3000)

        out = apply_env_overrides(cfg, env={"OCLB_WEB_PORT": "abc"})
        self.assertEqual(out.web.port, 3000)

    def test_raw_secret_in_env_field_is_used_as_secret(self) -> None:
        from oclb.kernel.settings import apply_env_overrides, parse_config

        cfg = parse_config({"feishu": {"app_id": "cli_x", "app_secret_env": "s3cr3t-value"}})
        self.assertEqual(apply_env_overrides(cfg, env={}).feishu.app_secret, "s3cr3t-value")

    def test_invalid_values_raise_config_invalid(self) -> None:
        from oclb.kernel.errors import ConfigInvalid
        from oclb.kernel.settings import parse_config

        with self.assertRaises(ConfigInvalid) as ctx:
            parse_config({"assistant": {"port": 70000}})
        self.assertEqual(ctx.exception.code, "config_invalid")
        self.assertTrue(any("assistant.port" in e for e in ctx.exception.details["errors"]))

    def test_validate_config_reports_problems(self) -> None:
        from oclb.kernel.settings import parse_config, validate_config

        problems = validate_config(parse_config({}))
        joined = "\n".join(problems)
        self.assertIn("feishu.app_id", joined)
        self.assertIn("feishu.app_secret", joined)
        self.assertIn("assistant.work_dir", joined)

        with tempfile.TemporaryDirectory() as td:
            ok = parse_config({
                "feishu": {"app_id": "cli_x", "app_secret": "s"},
                "assistant": {"work_dir": td},
            })
            self.assertEqual(validate_config(ok), [])

            clash = ok.model_copy(deep=True)
            clash.web.port = clash.assistant.port
            self.assertTrue(any("port" in p for p in validate_config(clash)))

            missing_dir = ok.model_copy(deep=True)
            missing_dir.assistant.work_dir = str(Path(td) / "nope")
            self.assertTrue(any("does not exist" in p for p in validate_config(missing_dir)))

    def test_masked_hides_secret(self) -> None:
        from oclb.kernel.settings import parse_config

        cfg = parse_config({"feishu": {"app_id": "cli_x", "app_secret": "abcdefgh"}})
        masked = cfg.masked()
        self.assertEqual(masked["feishu"]["app_secret"], "ab***")
        self.assertEqual(cfg.feishu.app_secret, "abcdefgh")


if __name__ == "__main__":
    unittest.main()
