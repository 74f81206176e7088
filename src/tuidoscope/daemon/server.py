from __future__ import annotations

import atexit
import functools
import logging
import signal
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError

from ..contracts.v1 import (
    ActiveMessage,
    AppEntry,
    AppStatus,
    InputMessage,
    OutputMessage,
    ResizeMessage,
    RestartMessage,
    RunningAppSnapshot,
    SessionAppRef,
    SessionData,
    SetActiveMessage,
    ShutdownMessage,
    SnapshotMessage,
    StartedMessage,
    StartMessage,
    StatusMessage,
    StopAllMessage,
    StopMessage,
    StoppedMessage,
    UpdateEntryMessage,
)
from ..kernel.config import config_to_entry, load_config, session_file_path
from ..kernel.session import clear_session as clear_session_file
from ..kernel.session import resolve_session_entry, restore_session, save_session
from ..paths import DaemonPaths, default_paths
from ..runners.pty import spawn_pty
from ..util.time import now_ms
from .loop import EventLoop, TimerHandle
from .ops.persist_ops import SessionPersister
from .ops.socket_accept_ops import ClientConnection
from .serve_ops import (
    DaemonAlreadyRunning,
    bind_server_socket,
    is_daemon_alive,
    remove_pid_if_ours,
    remove_socket_file,
    write_pid,
)
from .socket_protocol_ops import ProtocolError, encode_message, error_message, parse_client_message

logger = logging.getLogger("tuidoscope.daemon.server")

MAX_BUFFER_CHARS = 200_000
OUTPUT_FLUSH_DELAY_S = 0.05
RESTART_DELAY_S = 0.5
AUTO_RESTART_DELAY_S = 1.0
REAP_INTERVAL_S = 1.0
KILL_GRACE_S = 1.0


def append_capped(buffer: str, chunk: str, cap: int = MAX_BUFFER_CHARS) -> str:
    combined = buffer + chunk
    if len(combined) > cap:
        return combined[-cap:]
    return combined


@dataclass
class RunningApp:
    entry: AppEntry
    # Auto-restart relaunches the definition the run was started with.
    restart_entry: AppEntry
    pty: Any
    run_id: int
    status: AppStatus = "running"
    buffer: str = ""

    def snapshot(self) -> RunningAppSnapshot:
        return RunningAppSnapshot(entry=self.entry, status=self.status, buffer=self.buffer, run_id=self.run_id)


@dataclass
class PendingOutput:
    data: str = ""
    flush_timer: Optional[TimerHandle] = None


def _entry_field_aliases() -> Dict[str, str]:
    out: Dict[str, str] = {}
    for name, info in AppEntry.model_fields.items():
        if info.alias:
            out[name] = info.alias
    return out


_ENTRY_ALIASES = _entry_field_aliases()


class SessionDaemon:
    """Authoritative registry of running apps plus the connected clients.

    Every mutation is paired with its broadcast and persistence hook inside the
    same loop callback, so clients never observe a half-applied change.
    """

    def __init__(
        self,
        *,
        entries: Iterable[AppEntry],
        loop: Any,
        persist: bool = False,
        session_path: Optional[Path] = None,
        spawn: Optional[Callable[[AppEntry, int, int], Any]] = None,
        config_dir: Optional[Path] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        self.entries: List[AppEntry] = list(entries)
        self.loop = loop
        self.persist = bool(persist)
        self.session_path = session_path
        self._spawn = spawn or functools.partial(spawn_pty, loop=loop, config_dir=config_dir)
        self._on_shutdown = on_shutdown

        self.running_apps: Dict[str, RunningApp] = {}
        self.pending_outputs: Dict[str, PendingOutput] = {}
        self.manual_stop_runs: Set[int] = set()
        self.active_tab_id: Optional[str] = None
        self.cols = 80
        self.rows = 24
        self.clients: Dict[Any, None] = {}
        self.shutting_down = False

        self._next_run_id = 1
        self._timers: Set[TimerHandle] = set()
        self._dying: Dict[int, Any] = {}
        self._listener: Any = None
        self._sock_path: Optional[Path] = None
        self._reap_timer: Optional[TimerHandle] = None
        # The session file is only ours to rewrite once restore() has read it.
        self.restored = False

        self.persister = SessionPersister(
            loop=loop,
            save=self._persist_now,
            enabled=self.persist and session_path is not None,
        )
        self._handlers: Dict[type, Callable[[Any, Any], None]] = {
            StartMessage: self._handle_start,
            StopMessage: self._handle_stop,
            StopAllMessage: self._handle_stop_all,
            RestartMessage: self._handle_restart,
            InputMessage: self._handle_input,
            ResizeMessage: self._handle_resize,
            SetActiveMessage: self._handle_set_active,
            UpdateEntryMessage: self._handle_update_entry,
            ShutdownMessage: self._handle_shutdown,
        }

    # Broadcast

    def broadcast(self, msg: Any) -> None:
        payload = encode_message(msg)
        for client in list(self.clients):
            client.send_raw(payload)

    def _report_error(self, origin: Any, message: str) -> None:
        logger.warning("%s", message)
        if origin is not None:
            origin.send_raw(encode_message(error_message(message)))

    def build_snapshot(self) -> SnapshotMessage:
        return SnapshotMessage(
            running_apps=[app.snapshot() for app in self.running_apps.values()],
            active_tab_id=self.active_tab_id,
        )

    # Connections

    def listen(self, sock_path: Path) -> None:
        self._listener = bind_server_socket(sock_path)
        self._sock_path = sock_path
        self.loop.add_reader(self._listener, self._accept)
        self._reap_timer = self.loop.call_later(REAP_INTERVAL_S, self._periodic_reap)
        logger.info("listening on %s", sock_path, extra={"op": "listen"})

    def _accept(self) -> None:
        if self._listener is None:
            return
        try:
            conn, _ = self._listener.accept()
        except (BlockingIOError, InterruptedError):
            return
        except OSError as e:
            logger.warning("accept failed: %s", e)
            return
        client = ClientConnection(conn, loop=self.loop, on_line=self.handle_line, on_close=self.detach)
        self.attach(client)

    def attach(self, client: Any) -> None:
        # The snapshot is queued before the client can receive any broadcast.
        client.send_raw(encode_message(self.build_snapshot()))
        if getattr(client, "closed", False):
            return
        if self.shutting_down:
            client.close(flush=True)
            return
        self.clients[client] = None
        logger.debug("client attached clients=%s", len(self.clients))

    def detach(self, client: Any) -> None:
        self.clients.pop(client, None)
        logger.debug("client detached clients=%s", len(self.clients))

    def handle_line(self, origin: Any, line: str) -> None:
        try:
            msg = parse_client_message(line)
        except ProtocolError as e:
            self._report_error(origin, str(e))
            return
        self.dispatch(msg, origin=origin)

    def dispatch(self, msg: Any, *, origin: Any = None) -> None:
        handler = self._handlers.get(type(msg))
        if handler is None:
            self._report_error(origin, f"Unsupported message type: {getattr(msg, 'type', type(msg).__name__)}")
            return
        try:
            handler(msg, origin)
        except Exception as e:
            logger.exception("failed to handle %s", getattr(msg, "type", "?"))
            self._report_error(origin, f"internal error: {type(e).__name__}: {e}")

    # Command handlers

    def _handle_start(self, msg: StartMessage, origin: Any) -> None:
        self.start_app(msg.entry, origin=origin)

    def _handle_stop(self, msg: StopMessage, origin: Any) -> None:
        self.stop_app(msg.id)

    def _handle_stop_all(self, msg: StopAllMessage, origin: Any) -> None:
        self.stop_all()

    def _handle_restart(self, msg: RestartMessage, origin: Any) -> None:
        self.restart_app(msg.entry)

    def _handle_input(self, msg: InputMessage, origin: Any) -> None:
        app = self.running_apps.get(msg.id)
        if app is not None:
            app.pty.write(msg.data)

    def _handle_resize(self, msg: ResizeMessage, origin: Any) -> None:
        self.resize_all(msg.cols, msg.rows)

    def _handle_set_active(self, msg: SetActiveMessage, origin: Any) -> None:
        self.set_active_tab(msg.id)

    def _handle_update_entry(self, msg: UpdateEntryMessage, origin: Any) -> None:
        self.update_entry(msg.id, msg.updates, origin=origin)

    def _handle_shutdown(self, msg: ShutdownMessage, origin: Any) -> None:
        self.shutdown(clear_session=bool(msg.clear_session))

    # Registry operations

    def start_app(self, entry: AppEntry, *, origin: Any = None) -> None:
        if entry.id in self.running_apps or self.shutting_down:
            return
        try:
            proc = self._spawn(entry, self.cols, self.rows)
        except OSError as e:
            self._report_error(origin, f"Failed to start {entry.name}: {e}")
            return

        run_id = self._next_run_id
        self._next_run_id += 1
        app = RunningApp(entry=entry, restart_entry=entry, pty=proc, run_id=run_id)
        self.running_apps[entry.id] = app
        self.pending_outputs[entry.id] = PendingOutput()

        proc.on_data(lambda data: self._on_pty_data(entry.id, run_id, data))
        proc.on_exit(lambda code: self._on_pty_exit(app, code))
        logger.info("started %s run=%s", entry.id, run_id, extra={"op": "start"})

        self.broadcast(StartedMessage(app=app.snapshot()))
        self.set_active_tab(entry.id)
        self.persister.schedule()

    def stop_app(self, app_id: str) -> None:
        app = self.running_apps.get(app_id)
        if app is None:
            return
        # The exit handler must see the marker, and kill may report exit right away.
        self.manual_stop_runs.add(app.run_id)
        self._dying[app.run_id] = app.pty
        app.pty.kill()
        self.running_apps.pop(app_id, None)
        self._drop_pending(app_id)
        logger.info("stopped %s run=%s", app_id, app.run_id, extra={"op": "stop"})
        self.broadcast(StoppedMessage(id=app_id))
        self.persister.schedule()

    def stop_all(self) -> None:
        for app_id in list(self.running_apps):
            self.stop_app(app_id)
        self.set_active_tab(None)

    def restart_app(self, entry: AppEntry) -> None:
        if entry.id not in self.running_apps:
            return
        self.stop_app(entry.id)
        self._schedule(RESTART_DELAY_S, self.start_app, entry)

    def resize_all(self, cols: int, rows: int) -> None:
        self.cols = int(cols)
        self.rows = int(rows)
        for app in self.running_apps.values():
            if app.status == "running":
                app.pty.resize(self.cols, self.rows)

    def set_active_tab(self, app_id: Optional[str]) -> None:
        self.active_tab_id = app_id
        self.broadcast(ActiveMessage(id=app_id))
        self.persister.schedule()

    def update_entry(self, app_id: str, updates: Dict[str, Any], *, origin: Any = None) -> None:
        app = self.running_apps.get(app_id)
        if app is None:
            return
        merged = app.entry.model_dump(by_alias=True)
        for key, value in (updates or {}).items():
            merged[_ENTRY_ALIASES.get(key, key)] = value
        merged["id"] = app.entry.id
        try:
            app.entry = AppEntry.model_validate(merged)
        except ValidationError as e:
            self._report_error(origin, f"Invalid entry update for {app_id}: {e.error_count()} validation error(s)")
            return
        self.broadcast(StartedMessage(app=app.snapshot()))
        self.persister.schedule()

    # PTY events

    def _on_pty_data(self, app_id: str, run_id: int, data: str) -> None:
        app = self.running_apps.get(app_id)
        if app is None or app.run_id != run_id:
            return
        pending = self.pending_outputs.get(app_id)
        if pending is None:
            return
        pending.data += data
        if pending.flush_timer is None:
            pending.flush_timer = self.loop.call_later(OUTPUT_FLUSH_DELAY_S, self.flush_output, app_id)

    def flush_output(self, app_id: str) -> None:
        pending = self.pending_outputs.get(app_id)
        if pending is None:
            return
        if pending.flush_timer is not None:
            pending.flush_timer.cancel()
            pending.flush_timer = None
        if not pending.data:
            return
        chunk = pending.data
        pending.data = ""
        app = self.running_apps.get(app_id)
        if app is not None:
            app.buffer = append_capped(app.buffer, chunk)
        self.broadcast(OutputMessage(id=app_id, data=chunk))

    def _on_pty_exit(self, app: RunningApp, exit_code: int) -> None:
        app_id = app.entry.id
        self._dying.pop(app.run_id, None)
        is_current = self.running_apps.get(app_id) is app
        if is_current:
            self.flush_output(app_id)

        if app.run_id in self.manual_stop_runs:
            self.manual_stop_runs.discard(app.run_id)
            logger.debug("manual stop observed %s run=%s code=%s", app_id, app.run_id, exit_code)
            return
        if not is_current:
            return

        app.status = "stopped" if exit_code == 0 else "error"
        logger.info("exited %s run=%s code=%s", app_id, app.run_id, exit_code, extra={"op": "exit"})
        self.broadcast(StatusMessage(id=app_id, status=app.status))
        self.running_apps.pop(app_id, None)
        self._drop_pending(app_id)
        self.persister.schedule()

        if app.restart_entry.restart_on_exit and exit_code != 0 and not self.shutting_down:
            self._schedule(AUTO_RESTART_DELAY_S, self.start_app, app.restart_entry)

    def reap_children(self) -> None:
        for app in list(self.running_apps.values()):
            app.pty.poll()
        for proc in list(self._dying.values()):
            proc.poll()

    def _periodic_reap(self) -> None:
        self._reap_timer = None
        if self.shutting_down:
            return
        self.reap_children()
        self._reap_timer = self.loop.call_later(REAP_INTERVAL_S, self._periodic_reap)

    def _drop_pending(self, app_id: str) -> None:
        pending = self.pending_outputs.pop(app_id, None)
        if pending is not None and pending.flush_timer is not None:
            pending.flush_timer.cancel()

    def _schedule(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        handle: Optional[TimerHandle] = None

        def _fire() -> None:
            self._timers.discard(handle)  # type: ignore[arg-type]
            callback(*args)

        handle = self.loop.call_later(delay, _fire)
        self._timers.add(handle)
        return handle

    # Persistence

    def _persist_now(self) -> None:
        if self.session_path is None:
            return
        active = self.running_apps.get(self.active_tab_id) if self.active_tab_id else None
        data = SessionData(
            running_apps=[SessionAppRef.from_entry(app.entry) for app in self.running_apps.values()],
            active_tab=SessionAppRef.from_entry(active.entry) if active is not None else None,
            timestamp=now_ms(),
        )
        save_session(self.session_path, data)

    def restore(self) -> None:
        """Start autostart entries plus whatever the saved session had running."""
        self._restore_apps()
        self.restored = True

    def _restore_apps(self) -> None:
        for entry in self.entries:
            if entry.autostart:
                self.start_app(entry)
        if not self.persist or self.session_path is None:
            return
        session = restore_session(self.session_path)
        if session is None:
            return
        for ref in session.running_apps:
            entry = resolve_session_entry(ref, self.entries)
            if entry is not None and entry.id not in self.running_apps:
                self.start_app(entry)
        if session.active_tab is not None:
            entry = resolve_session_entry(session.active_tab, self.entries)
            if entry is not None:
                self.set_active_tab(entry.id)

    # Shutdown

    def shutdown(self, *, clear_session: bool = False) -> None:
        if self.shutting_down:
            return
        self.shutting_down = True
        logger.info("shutting down clear_session=%s", clear_session, extra={"op": "shutdown"})

        self.persister.cancel()
        if not self.restored:
            logger.info("session file left untouched: daemon never restored", extra={"op": "shutdown"})
        elif clear_session:
            if self.session_path is not None:
                try:
                    clear_session_file(self.session_path)
                except OSError as e:
                    logger.warning("failed to clear session: %s", e)
        else:
            self.persister.flush()
        self.persister.suppress()

        self.stop_all()

        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        if self._reap_timer is not None:
            self._reap_timer.cancel()
            self._reap_timer = None
        self._reap_dying(KILL_GRACE_S)

        for client in list(self.clients):
            client.close(flush=True)
        self.clients.clear()

        if self._listener is not None:
            self.loop.remove_reader(self._listener)
            try:
                self._listener.close()
            except OSError:
                pass
            self._listener = None
        if self._sock_path is not None:
            remove_socket_file(self._sock_path)

        if self._on_shutdown is not None:
            self._on_shutdown()

    def _reap_dying(self, grace_s: float) -> None:
        deadline = time.monotonic() + grace_s
        while self._dying and time.monotonic() < deadline:
            for proc in list(self._dying.values()):
                proc.poll()
            if self._dying:
                time.sleep(0.02)
        for proc in list(self._dying.values()):
            proc.force_kill()
        end = time.monotonic() + 0.5
        while self._dying and time.monotonic() < end:
            for proc in list(self._dying.values()):
                proc.poll()
            if self._dying:
                time.sleep(0.02)


def serve_forever(paths: Optional[DaemonPaths] = None, *, config_path: Optional[Path] = None) -> int:
    p = paths or default_paths()
    loaded = load_config(config_path)
    entries = [config_to_entry(a) for a in loaded.config.apps]
    session_path = session_file_path(loaded, p.session_path)

    if is_daemon_alive(p.sock_path):
        raise DaemonAlreadyRunning(f"a session daemon is already listening on {p.sock_path}")
    remove_socket_file(p.sock_path)

    loop = EventLoop()
    daemon = SessionDaemon(
        entries=entries,
        loop=loop,
        persist=loaded.config.session.persist,
        session_path=session_path,
        config_dir=loaded.config_dir,
        on_shutdown=loop.stop,
    )
    try:
        daemon.listen(p.sock_path)
        # Last resort for paths that skip the graceful shutdown.
        atexit.register(remove_socket_file, p.sock_path)
        write_pid(p.pid_path)

        if threading.current_thread() is threading.main_thread():
            loop.add_signal_handler(signal.SIGTERM, daemon.shutdown)
            loop.add_signal_handler(signal.SIGINT, daemon.shutdown)
            loop.add_signal_handler(signal.SIGCHLD, daemon.reap_children)

        daemon.restore()
        loop.run_forever()
    finally:
        daemon.shutdown()
        remove_pid_if_ours(p.pid_path)
        loop.close()
    return 0
