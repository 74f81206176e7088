import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from tuidoscope.kernel.config import (
    AppEntryConfig,
    Config,
    config_to_entry,
    expand_path,
    find_config_path,
    load_config,
    save_config,
    session_file_path,
)
from tuidoscope.paths import DaemonPaths, state_dir


class TestLoadConfig(unittest.TestCase):
    def test_parses_apps_and_ignores_ui_keys(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "tuidoscope.yaml"
            p.write_text(
                "version: 1\n"
                "theme: {primary: '#fff'}\n"
                "keybinds: {quit: q}\n"
                "tab_width: 20\n"
                "apps:\n"
                "  - name: Shell\n"
                "    command: zsh\n"
                "    autostart: true\n"
                "  - id: logs\n"
                "    name: Logs\n"
                "    command: tail\n"
                "    args: -f app.log\n"
                "    cwd: <CONFIG_DIR>/logs\n"
                "    restart_on_exit: true\n"
                "    env: {LANG: C}\n"
                "session:\n"
                "  persist: false\n",
                encoding="utf-8",
            )
            loaded = load_config(p)
            cfg = loaded.config
            self.assertEqual(loaded.path, p)
            self.assertEqual(loaded.config_dir, Path(td))
            self.assertEqual([a.name for a in cfg.apps], ["Shell", "Logs"])
            self.assertTrue(cfg.apps[0].autostart)
            self.assertEqual(cfg.apps[1].env, {"LANG": "C"})
            self.assertFalse(cfg.session.persist)

    def test_invalid_file_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "tuidoscope.yaml"
            p.write_text("apps: [ {name: x\n", encoding="utf-8")
            with self.assertLogs("tuidoscope.config", level="WARNING"):
                loaded = load_config(p)
            self.assertEqual(loaded.config, Config())

            p.write_text("apps:\n  - name: missing-command\n", encoding="utf-8")
            with self.assertLogs("tuidoscope.config", level="WARNING"):
                loaded = load_config(p)
            self.assertEqual(loaded.config.apps, [])

    def test_missing_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            loaded = load_config(Path(td) / "absent.yaml")
            self.assertIsNone(loaded.path)
            self.assertTrue(loaded.config.session.persist)

    def test_lookup_prefers_local_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cwd = os.getcwd()
            xdg = Path(td) / "xdg"
            (xdg / "tuidoscope").mkdir(parents=True)
            (xdg / "tuidoscope" / "tuidoscope.yaml").write_text("apps: []\n", encoding="utf-8")
            work = Path(td) / "work"
            work.mkdir()
            try:
                os.chdir(work)
                with patch.dict(os.environ, {"XDG_CONFIG_HOME": str(xdg)}):
                    self.assertEqual(find_config_path(), xdg / "tuidoscope" / "tuidoscope.yaml")
                    (work / "tuidoscope.yaml").write_text("apps: []\n", encoding="utf-8")
                    self.assertEqual(find_config_path(), (work / "tuidoscope.yaml").resolve())
            finally:
                os.chdir(cwd)

    def test_save_round_trip(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "tuidoscope.yaml"
            cfg = Config(apps=[AppEntryConfig(name="Top", command="htop", autostart=True)])
            save_config(cfg, p)
            self.assertEqual(load_config(p).config, cfg)


class TestEntriesAndPaths(unittest.TestCase):
    def test_config_to_entry_generates_id_when_missing(self) -> None:
        a = config_to_entry(AppEntryConfig(name="Shell", command="bash"))
        b = config_to_entry(AppEntryConfig(name="Shell", command="bash"))
        self.assertTrue(a.id)
        self.assertNotEqual(a.id, b.id)
        kept = config_to_entry(AppEntryConfig(id="fixed", name="Shell", command="bash", restart_on_exit=True))
        self.assertEqual(kept.id, "fixed")
        self.assertTrue(kept.restart_on_exit)

    def test_expand_path(self) -> None:
        home = str(Path.home())
        self.assertEqual(expand_path("~"), os.path.abspath(home))
        self.assertEqual(expand_path("~/src"), os.path.abspath(os.path.join(home, "src")))
        self.assertEqual(expand_path("<CONFIG_DIR>/x", Path("/etc/tdc")), "/etc/tdc/x")
        self.assertTrue(os.path.isabs(expand_path("relative/dir")))

    def test_session_file_path(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "tuidoscope.yaml"
            p.write_text("session:\n  file: <CONFIG_DIR>/my-session.yaml\n", encoding="utf-8")
            loaded = load_config(p)
            default = Path(td) / "state" / "session.yaml"
            self.assertEqual(session_file_path(loaded, default), Path(td) / "my-session.yaml")
            self.assertEqual(session_file_path(load_config(Path(td) / "none.yaml"), default), default)

    def test_state_dir_override(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with patch.dict(os.environ, {"TUIDOSCOPE_STATE_DIR": td}):
                self.assertEqual(state_dir(), Path(td))
            with patch.dict(os.environ, {"TUIDOSCOPE_STATE_DIR": "", "XDG_STATE_HOME": td}):
                self.assertEqual(state_dir(), Path(td) / "tuidoscope")
        paths = DaemonPaths(home=Path("/run/x"))
        self.assertEqual(paths.sock_path, Path("/run/x/tuidoscope.sock"))
        self.assertEqual(paths.session_path, Path("/run/x/session.yaml"))


if __name__ == "__main__":
    unittest.main()
