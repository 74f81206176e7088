import socket
import tempfile
import threading
import time
import unittest
from pathlib import Path
from typing import Any, List

from tuidoscope.contracts.v1 import (
    AppEntry,
    ErrorMessage,
    OutputMessage,
    ShutdownMessage,
    SnapshotMessage,
    StartMessage,
    StopMessage,
)
from tuidoscope.daemon.client_ops import (
    DaemonUnavailableError,
    SessionClient,
    connect_session_client,
    shutdown_session_server,
)
from tuidoscope.daemon.socket_protocol_ops import encode_message, parse_client_message
from tuidoscope.paths import DaemonPaths


def _read_line(sock: socket.socket, timeout: float = 2.0) -> str:
    sock.settimeout(timeout)
    buf = b""
    while not buf.endswith(b"\n"):
        chunk = sock.recv(4096)
        if not chunk:
            break
        buf += chunk
    return buf.decode("utf-8").strip()


class TestSessionClientEvents(unittest.TestCase):
    def test_reemits_by_type_and_drops_errors_and_garbage(self) -> None:
        a, b = socket.socketpair()
        client = SessionClient(a)
        seen: List[Any] = []
        done = threading.Event()
        disconnects: List[int] = []
        client.on("snapshot", lambda m: seen.append(m))
        client.on("output", lambda m: seen.append(m))
        client.on("error", lambda m: seen.append(m))
        client.on("disconnect", lambda: (disconnects.append(1), done.set()))
        client.listen()

        payload = (
            encode_message(SnapshotMessage(running_apps=[], active_tab_id=None))
            + encode_message(ErrorMessage(message="bad"))
            + b"this is not json\n\n"
            + encode_message(OutputMessage(id="a1", data="hi"))
        )
        b.sendall(payload[:7])
        time.sleep(0.01)
        b.sendall(payload[7:])
        b.close()

        self.assertTrue(done.wait(2.0))
        self.assertEqual([m.type for m in seen], ["snapshot", "output"])
        self.assertEqual(seen[1].data, "hi")
        self.assertEqual(disconnects, [1])
        self.assertTrue(client.closed)
        a.close()

    def test_off_unsubscribes(self) -> None:
        a, b = socket.socketpair()
        client = SessionClient(a)
        seen: List[Any] = []
        done = threading.Event()

        def _cb(m: Any) -> None:
            seen.append(m)

        client.on("output", _cb)
        client.off("output", _cb)
        client.on("disconnect", done.set)
        client.listen()
        b.sendall(encode_message(OutputMessage(id="a1", data="x")))
        b.close()
        self.assertTrue(done.wait(2.0))
        self.assertEqual(seen, [])
        a.close()


class TestSessionClientCommands(unittest.TestCase):
    def test_commands_are_encoded_in_order(self) -> None:
        a, b = socket.socketpair()
        client = SessionClient(a)
        entry = AppEntry(id="a1", name="Shell", command="bash", restart_on_exit=True)
        client.start(entry)
        client.stop("a1")
        client.send_input("a1", "ls\n")
        client.resize(100, 30)
        client.set_active_tab(None)
        client.update_entry("a1", {"name": "Renamed"})
        client.stop_all()
        client.restart(entry)

        msgs = [parse_client_message(_read_line(b)) for _ in range(8)]
        self.assertEqual(
            [m.type for m in msgs],
            ["start", "stop", "input", "resize", "set_active", "update_entry", "stop_all", "restart"],
        )
        self.assertIsInstance(msgs[0], StartMessage)
        self.assertTrue(msgs[0].entry.restart_on_exit)
        self.assertIsInstance(msgs[1], StopMessage)
        self.assertEqual(msgs[2].data, "ls\n")
        self.assertEqual((msgs[3].cols, msgs[3].rows), (100, 30))
        self.assertIsNone(msgs[4].id)
        self.assertEqual(msgs[5].updates, {"name": "Renamed"})
        a.close()
        b.close()

    def test_disconnect_half_closes_and_commands_become_noops(self) -> None:
        a, b = socket.socketpair()
        client = SessionClient(a)
        client.disconnect()
        client.stop("a1")
        client.send_input("a1", "x")
        b.settimeout(2.0)
        self.assertEqual(b.recv(10), b"")
        # The read side is still open.
        b.sendall(b"still readable\n")
        a.settimeout(2.0)
        self.assertEqual(a.recv(100), b"still readable\n")
        a.close()
        b.close()

    def test_send_after_peer_reset_marks_closed(self) -> None:
        a, b = socket.socketpair()
        client = SessionClient(a)
        b.close()
        for _ in range(50):
            client.send_input("a1", "x" * 1024)
            if client.closed:
                break
        self.assertTrue(client.closed)
        a.close()


class TestSessionClientShutdown(unittest.TestCase):
    def test_waits_for_daemon_to_close(self) -> None:
        a, b = socket.socketpair()
        client = SessionClient(a)
        received: List[Any] = []

        def _daemon() -> None:
            received.append(parse_client_message(_read_line(b)))
            time.sleep(0.1)
            b.close()

        t = threading.Thread(target=_daemon)
        t.start()
        started = time.monotonic()
        client.shutdown(clear_session=True, timeout_s=2.0)
        elapsed = time.monotonic() - started
        t.join(2.0)

        self.assertIsInstance(received[0], ShutdownMessage)
        self.assertTrue(received[0].clear_session)
        self.assertGreaterEqual(elapsed, 0.05)
        self.assertLess(elapsed, 1.5)
        self.assertTrue(client.closed)

    def test_force_closes_after_timeout(self) -> None:
        a, b = socket.socketpair()
        client = SessionClient(a)
        started = time.monotonic()
        client.shutdown(timeout_s=0.2)
        self.assertLess(time.monotonic() - started, 1.5)
        self.assertEqual(a.fileno(), -1)
        b.close()

    def test_with_listener_thread(self) -> None:
        a, b = socket.socketpair()
        client = SessionClient(a)
        gone = threading.Event()
        client.on("disconnect", gone.set)
        client.listen()

        def _daemon() -> None:
            _read_line(b)
            b.close()

        t = threading.Thread(target=_daemon)
        t.start()
        client.shutdown(timeout_s=2.0)
        t.join(2.0)
        self.assertTrue(gone.wait(2.0))


class TestConnectOrSpawn(unittest.TestCase):
    def test_spawns_when_nothing_listens(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            paths = DaemonPaths(home=Path(td))
            # A leftover file at the socket path refuses connections.
            paths.sock_path.write_text("stale", encoding="utf-8")
            listeners: List[socket.socket] = []

            def _spawn(p: DaemonPaths) -> None:
                self.assertFalse(p.sock_path.exists())
                s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                s.bind(str(p.sock_path))
                s.listen(1)
                listeners.append(s)

            client = connect_session_client(paths, retries=5, delay_s=0.01, spawn=_spawn)
            self.assertIsInstance(client, SessionClient)
            self.assertEqual(len(listeners), 1)
            client.disconnect()
            listeners[0].close()

    def test_connects_directly_without_spawning(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            paths = DaemonPaths(home=Path(td))
            s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            s.bind(str(paths.sock_path))
            s.listen(1)
            spawned: List[DaemonPaths] = []
            client = connect_session_client(paths, spawn=spawned.append)
            self.assertEqual(spawned, [])
            client.disconnect()
            s.close()

    def test_gives_up_after_retries(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            paths = DaemonPaths(home=Path(td))
            spawned: List[DaemonPaths] = []
            started = time.monotonic()
            with self.assertRaises(DaemonUnavailableError) as cm:
                connect_session_client(paths, retries=3, delay_s=0.01, spawn=spawned.append)
            self.assertLess(time.monotonic() - started, 1.0)
            self.assertEqual(len(spawned), 1)
            self.assertIsInstance(cm.exception.__cause__, OSError)
            self.assertIsInstance(cm.exception, ConnectionError)

    def test_shutdown_without_daemon(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertFalse(shutdown_session_server(DaemonPaths(home=Path(td))))


if __name__ == "__main__":
    unittest.main()
