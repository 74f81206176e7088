import json
import logging
import unittest

from tuidoscope.util.obslog import JsonLineFormatter


class TestJsonLogging(unittest.TestCase):
    def test_formatter_includes_extra_fields(self) -> None:
        rec = logging.LogRecord("tuidoscope.daemon.server", logging.INFO, __file__, 1, "started %s", ("a1",), None)
        rec.op = "start"
        doc = json.loads(JsonLineFormatter(component="daemon").format(rec))
        self.assertEqual(doc["msg"], "started a1")
        self.assertEqual(doc["level"], "INFO")
        self.assertEqual(doc["component"], "daemon")
        self.assertEqual(doc["logger"], "tuidoscope.daemon.server")
        self.assertEqual(doc["op"], "start")
        self.assertTrue(doc["ts"].endswith("Z"))


class TestModuleLoggers(unittest.TestCase):
    def test_daemon_modules_log_under_their_own_names(self) -> None:
        from tuidoscope.daemon import client_ops, loop, serve_ops, server
        from tuidoscope.daemon.ops import persist_ops, socket_accept_ops

        names = [m.logger.name for m in (server, serve_ops, socket_accept_ops, persist_ops, loop, client_ops)]
        self.assertEqual(len(set(names)), len(names))
        self.assertTrue(all(n.startswith("tuidoscope.daemon.") for n in names))
        self.assertEqual(socket_accept_ops.logger.name, "tuidoscope.daemon.connection")
        self.assertEqual(serve_ops.logger.name, "tuidoscope.daemon.serve")


if __name__ == "__main__":
    unittest.main()
