import tempfile
import unittest
from pathlib import Path

from tuidoscope.contracts.v1 import AppEntry, SessionAppRef, SessionData
from tuidoscope.kernel.session import clear_session, resolve_session_entry, restore_session, save_session


def _entries() -> list:
    return [
        AppEntry(id="a1", name="Shell", command="bash", cwd="/tmp"),
        AppEntry(id="b2", name="Logs", command="tail", args="-f /var/log/syslog", cwd="/var/log"),
    ]


class TestSessionFile(unittest.TestCase):
    def test_save_then_restore_current_shape(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "session.yaml"
            entries = _entries()
            save_session(
                p,
                SessionData(
                    running_apps=[SessionAppRef.from_entry(e) for e in entries],
                    active_tab=SessionAppRef.from_entry(entries[1]),
                    timestamp=123,
                ),
            )
            text = p.read_text(encoding="utf-8")
            self.assertIn("runningApps:", text)
            self.assertIn("activeTab:", text)

            data = restore_session(p)
            self.assertIsNotNone(data)
            self.assertEqual([r.id for r in data.running_apps], ["a1", "b2"])
            self.assertEqual(data.running_apps[1].args, "-f /var/log/syslog")
            self.assertEqual(data.active_tab.id, "b2")
            self.assertEqual(data.timestamp, 123)

    def test_legacy_bare_ids(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "session.yaml"
            p.write_text('{"runningApps": ["a1", "b2"], "activeTab": "a1", "timestamp": 5}', encoding="utf-8")
            data = restore_session(p)
            self.assertEqual(data.running_apps, ["a1", "b2"])
            self.assertEqual(data.active_tab, "a1")

    def test_missing_empty_and_garbage_files_restore_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "session.yaml"
            self.assertIsNone(restore_session(p))
            p.write_text("", encoding="utf-8")
            self.assertIsNone(restore_session(p))
            p.write_text("runningApps: [unclosed\n", encoding="utf-8")
            self.assertIsNone(restore_session(p))
            p.write_text("- just\n- a list\n", encoding="utf-8")
            self.assertIsNone(restore_session(p))

    def test_wrong_field_types_restore_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "session.yaml"
            p.write_text("runningApps: a1\ntimestamp: 1\n", encoding="utf-8")
            self.assertIsNone(restore_session(p))
            p.write_text("runningApps: []\ntimestamp: soon\n", encoding="utf-8")
            self.assertIsNone(restore_session(p))
            p.write_text("runningApps: []\ntimestamp: true\n", encoding="utf-8")
            self.assertIsNone(restore_session(p))
            p.write_text("runningApps: []\n", encoding="utf-8")
            self.assertIsNone(restore_session(p))

    def test_clear_session(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "session.yaml"
            save_session(p, SessionData(running_apps=["a1"], active_tab="a1", timestamp=1))
            self.assertIsNotNone(restore_session(p))
            clear_session(p)
            self.assertIsNone(restore_session(p))
            clear_session(Path(td) / "never-written.yaml")
            self.assertFalse((Path(td) / "never-written.yaml").exists())


class TestResolveSessionEntry(unittest.TestCase):
    def test_by_id(self) -> None:
        entries = _entries()
        self.assertIs(resolve_session_entry("b2", entries), entries[1])
        self.assertIsNone(resolve_session_entry("zz", entries))

    def test_object_ref_falls_back_to_launch_recipe(self) -> None:
        entries = _entries()
        ref = SessionAppRef(id="old-uuid", name="Logs", command="tail", args="-f /var/log/syslog", cwd="/var/log")
        self.assertIs(resolve_session_entry(ref, entries), entries[1])

    def test_missing_args_match_empty(self) -> None:
        entries = [AppEntry(id="new", name="Shell", command="bash", args="", cwd="/tmp")]
        ref = SessionAppRef(id="old", name="Shell", command="bash", cwd="/tmp")
        self.assertIs(resolve_session_entry(ref, entries), entries[0])

    def test_recipe_mismatch_is_unresolved(self) -> None:
        ref = SessionAppRef(id="old", name="Shell", command="bash", cwd="/home")
        self.assertIsNone(resolve_session_entry(ref, _entries()))


if __name__ == "__main__":
    unittest.main()
