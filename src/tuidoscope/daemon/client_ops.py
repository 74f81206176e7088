"""Daemon IPC client helpers."""

from __future__ import annotations

import errno
import logging
import os
import socket
import subprocess
import sys
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..contracts.v1 import (
    AppEntry,
    InputMessage,
    ResizeMessage,
    RestartMessage,
    SetActiveMessage,
    ShutdownMessage,
    StartMessage,
    StopAllMessage,
    StopMessage,
    UpdateEntryMessage,
)
from ..paths import DaemonPaths, default_paths
from .serve_ops import remove_socket_file
from .socket_protocol_ops import LineDecoder, ProtocolError, encode_message, parse_server_message

logger = logging.getLogger("tuidoscope.daemon.client")

CONNECT_RETRIES = 20
CONNECT_RETRY_DELAY_S = 0.1

Listener = Callable[..., None]


class DaemonUnavailableError(ConnectionError):
    """No daemon could be reached, even after trying to spawn one."""


class SessionClient:
    """One attached connection to the session daemon.

    Events are re-emitted by message `type` (snapshot, started, stopped,
    status, output, active) plus `disconnect`. Listeners run on the reader
    thread, so register them before calling `listen()`.
    """

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.closed = False
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._decoder = LineDecoder()
        self._reader: Optional[threading.Thread] = None
        self._disconnected = False

    # Events

    def on(self, event: str, callback: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Listener) -> None:
        with self._lock:
            cbs = self._listeners.get(event) or []
            if callback in cbs:
                cbs.remove(callback)

    def _emit(self, event: str, *args: Any) -> None:
        with self._lock:
            cbs = list(self._listeners.get(event) or [])
        for cb in cbs:
            try:
                cb(*args)
            except Exception:
                logger.exception("listener for %s failed", event)

    def listen(self) -> None:
        if self._reader is not None:
            return
        self._reader = threading.Thread(target=self._read_loop, name="tuidoscope-client", daemon=True)
        self._reader.start()

    def _read_loop(self) -> None:
        try:
            while True:
                try:
                    data = self.sock.recv(65536)
                except OSError:
                    break
                if not data:
                    break
                try:
                    lines = self._decoder.feed(data)
                except ProtocolError as e:
                    logger.warning("dropping oversized frame: %s", e)
                    continue
                for line in lines:
                    self._handle_line(line)
        finally:
            self.closed = True
            self._fire_disconnect()

    def _handle_line(self, line: str) -> None:
        try:
            msg = parse_server_message(line)
        except ProtocolError as e:
            logger.debug("ignoring malformed line: %s", e)
            return
        if msg.type == "error":
            logger.warning("daemon error: %s", msg.message)
            return
        self._emit(msg.type, msg)

    def _fire_disconnect(self) -> None:
        with self._lock:
            if self._disconnected:
                return
            self._disconnected = True
        self._emit("disconnect")

    # Commands

    def _send(self, msg: Any) -> None:
        if self.closed:
            return
        payload = encode_message(msg)
        try:
            with self._send_lock:
                self.sock.sendall(payload)
        except OSError as e:
            logger.debug("send failed: %s", e)
            self.closed = True

    def start(self, entry: AppEntry) -> None:
        self._send(StartMessage(entry=entry))

    def stop(self, app_id: str) -> None:
        self._send(StopMessage(id=app_id))

    def stop_all(self) -> None:
        self._send(StopAllMessage())

    def restart(self, entry: AppEntry) -> None:
        self._send(RestartMessage(entry=entry))

    def send_input(self, app_id: str, data: str) -> None:
        self._send(InputMessage(id=app_id, data=data))

    def resize(self, cols: int, rows: int) -> None:
        self._send(ResizeMessage(cols=cols, rows=rows))

    def set_active_tab(self, app_id: Optional[str]) -> None:
        self._send(SetActiveMessage(id=app_id))

    def update_entry(self, app_id: str, updates: Dict[str, Any]) -> None:
        self._send(UpdateEntryMessage(id=app_id, updates=updates))

    # Teardown

    def disconnect(self) -> None:
        """Half-close: the daemon sees EOF and drops this client; apps keep running."""
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError:
            self._force_close()

    def shutdown(self, clear_session: bool = False, timeout_s: float = 2.0) -> None:
        if self.closed:
            return
        self._send(ShutdownMessage(clear_session=clear_session))
        self.closed = True
        if self._reader is not None:
            self._reader.join(timeout_s)
        else:
            self._drain_until_closed(timeout_s)
        self._force_close()

    def _drain_until_closed(self, timeout_s: float) -> None:
        deadline = time.monotonic() + timeout_s
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            try:
                self.sock.settimeout(remaining)
                if not self.sock.recv(65536):
                    return
            except OSError:
                return

    def _force_close(self) -> None:
        try:
            self.sock.close()
        except OSError:
            pass


def _connect(sock_path: str) -> socket.socket:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.connect(sock_path)
    except OSError:
        s.close()
        raise
    return s


def _spawn_daemon(paths: DaemonPaths) -> None:
    env = dict(os.environ)
    env["TUIDOSCOPE_STATE_DIR"] = str(paths.home)
    with open(os.devnull, "rb") as devnull_in, open(os.devnull, "wb") as devnull_out:
        subprocess.Popen(
            [sys.executable, "-m", "tuidoscope", "daemon"],
            stdin=devnull_in,
            stdout=devnull_out,
            stderr=devnull_out,
            env=env,
            start_new_session=True,
            close_fds=True,
        )
    logger.info("spawned session daemon for %s", paths.sock_path)


def _is_missing_daemon(e: OSError) -> bool:
    return e.errno in (errno.ECONNREFUSED, errno.ENOENT)


def connect_session_client(
    paths: Optional[DaemonPaths] = None,
    *,
    retries: int = CONNECT_RETRIES,
    delay_s: float = CONNECT_RETRY_DELAY_S,
    spawn: Callable[[DaemonPaths], None] = _spawn_daemon,
) -> SessionClient:
    """Connect to the daemon, spawning a detached one if nothing is listening."""
    p = paths or default_paths()
    sock_path = str(p.sock_path)
    try:
        return SessionClient(_connect(sock_path))
    except OSError as e:
        if not _is_missing_daemon(e):
            raise DaemonUnavailableError(f"cannot connect to {sock_path}: {e}") from e
        last_error: OSError = e

    remove_socket_file(p.sock_path)
    p.home.mkdir(parents=True, exist_ok=True)
    spawn(p)

    for _ in range(max(0, int(retries))):
        time.sleep(delay_s)
        try:
            return SessionClient(_connect(sock_path))
        except OSError as e:
            last_error = e
    raise DaemonUnavailableError(f"session daemon did not come up on {sock_path}") from last_error


def shutdown_session_server(paths: Optional[DaemonPaths] = None, clear_session: bool = False) -> bool:
    p = paths or default_paths()
    try:
        sock = _connect(str(p.sock_path))
    except OSError:
        return False
    SessionClient(sock).shutdown(clear_session=clear_session)
    return True
