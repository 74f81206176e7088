"""PTY runner: one child program attached to a pseudo-terminal.

The runner knows nothing about sessions or the wire protocol. It is driven by
an event loop (anything with add_reader/add_writer/call_later): the master
fd is read when readable, and the child is reaped once its side of the
terminal is gone or SIGCHLD says so.
"""

from __future__ import annotations

import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..contracts.v1 import AppEntry
from ..kernel.config import expand_path

logger = logging.getLogger("tuidoscope.runners.pty")

PTY_SUPPORTED = os.name == "posix"

INTERACTIVE_SHELLS = frozenset(
    {"bash", "zsh", "fish", "sh", "dash", "ksh", "mksh", "tcsh", "csh", "nu", "elvish", "xonsh"}
)

READ_CHUNK = 65536
MAX_PENDING_INPUT_BYTES = 4 * 1024 * 1024
EXIT_REPOLL_S = 0.05

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int], None]


def build_argv(entry: AppEntry, *, shell: Optional[str] = None) -> List[str]:
    command = str(entry.command or "").strip()
    args = str(entry.args or "").strip()
    words = command.split()
    if len(words) == 1 and not args and os.path.basename(words[0]) in INTERACTIVE_SHELLS:
        # Without -i some shells treat the PTY as non-interactive and exit on the first SIGHUP.
        return [words[0], "-i"]
    sh = shell or os.environ.get("SHELL") or "/bin/sh"
    return [sh, "-c", f"{command} {args}".strip()]


def build_env(
    entry: AppEntry,
    *,
    cols: int,
    rows: int,
    base: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["TERM"] = "xterm-256color"
    env["COLUMNS"] = str(int(cols))
    env["LINES"] = str(int(rows))
    if entry.env:
        env.update({str(k): str(v) for k, v in entry.env.items()})
    return env


def set_winsize(fd: int, rows: int, cols: int) -> None:
    ws = struct.pack("HHHH", max(1, int(rows)), max(1, int(cols)), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, ws)


def _signal_group(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        try:
            os.kill(pid, sig)
        except OSError:
            pass


class PtyProcess:
    """A child process on the slave side of a PTY; the daemon holds the master."""

    def __init__(self, pid: int, fd: int, *, loop: Any = None) -> None:
        self.pid = int(pid)
        self._fd: Optional[int] = fd
        self._loop = loop
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._on_data: Optional[DataCallback] = None
        self._on_exit: Optional[ExitCallback] = None
        self._exit_code: Optional[int] = None
        self._eof = False
        self._in = bytearray()
        os.set_blocking(fd, False)
        if loop is not None:
            loop.add_reader(fd, self.handle_readable)

    def fileno(self) -> int:
        return self._fd if self._fd is not None else -1

    @property
    def exited(self) -> bool:
        return self._exit_code is not None

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    def on_data(self, callback: DataCallback) -> None:
        if self._on_data is not None:
            raise RuntimeError("data listener already registered")
        self._on_data = callback

    def on_exit(self, callback: ExitCallback) -> None:
        if self._on_exit is not None:
            raise RuntimeError("exit listener already registered")
        self._on_exit = callback

    @property
    def pending_input(self) -> int:
        return len(self._in)

    def write(self, data: Union[str, bytes]) -> None:
        """Queue input for the child; whatever the terminal won't take now is sent when writable."""
        if self._fd is None or self.exited:
            return
        self._in += data.encode("utf-8") if isinstance(data, str) else bytes(data)
        if len(self._in) > MAX_PENDING_INPUT_BYTES:
            logger.warning("pty input dropped pid=%s bytes=%s", self.pid, len(self._in))
            self._in.clear()
        self._flush_input()

    def _flush_input(self) -> None:
        fd = self._fd
        if fd is None:
            self._in.clear()
            return
        while self._in:
            try:
                n = os.write(fd, self._in)
            except (BlockingIOError, InterruptedError):
                break
            except OSError:
                self._in.clear()
                break
            del self._in[:n]
        if self._loop is None:
            return
        if self._in:
            self._loop.add_writer(fd, self._flush_input)
        else:
            self._loop.remove_writer(fd)

    def resize(self, cols: int, rows: int) -> None:
        if self._fd is None or self.exited:
            return
        try:
            set_winsize(self._fd, rows, cols)
        except OSError:
            pass

    def kill(self) -> None:
        if self.exited:
            return
        _signal_group(self.pid, signal.SIGHUP)
        _signal_group(self.pid, signal.SIGTERM)

    def force_kill(self) -> None:
        if self.exited:
            return
        _signal_group(self.pid, signal.SIGKILL)

    def handle_readable(self) -> None:
        if self._fd is None:
            return
        try:
            chunk = os.read(self._fd, READ_CHUNK)
        except (BlockingIOError, InterruptedError):
            return
        except OSError:
            # Linux reports EIO once every slave fd is closed.
            chunk = b""
        if chunk:
            self._emit(chunk)
            return
        self._eof = True
        self._close_fd()
        self.poll()

    def poll(self) -> bool:
        """Reap the child if it has exited; fires the exit callback once."""
        if self._exit_code is not None:
            return True
        try:
            pid, status = os.waitpid(self.pid, os.WNOHANG)
        except ChildProcessError:
            pid, status = self.pid, -1
        if pid == 0:
            if self._eof and self._loop is not None:
                self._loop.call_later(EXIT_REPOLL_S, self.poll)
            return False
        code = os.waitstatus_to_exitcode(status) if status >= 0 else -1
        self._drain()
        self._close_fd()
        self._exit_code = code
        logger.debug("pty exited pid=%s code=%s", self.pid, code)
        if self._on_exit is not None:
            self._on_exit(code)
        return True

    def _emit(self, chunk: bytes) -> None:
        text = self._decoder.decode(chunk)
        if text and self._on_data is not None:
            self._on_data(text)

    def _drain(self) -> None:
        while self._fd is not None:
            try:
                chunk = os.read(self._fd, READ_CHUNK)
            except OSError:
                break
            if not chunk:
                break
            self._emit(chunk)
        tail = self._decoder.decode(b"", final=True)
        if tail and self._on_data is not None:
            self._on_data(tail)

    def _close_fd(self) -> None:
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        self._in.clear()
        if self._loop is not None:
            self._loop.remove_reader(fd)
            self._loop.remove_writer(fd)
        try:
            os.close(fd)
        except OSError:
            pass


def _exec_child(argv: List[str], env: Dict[str, str], cwd: str, cols: int, rows: int) -> None:
    try:
        try:
            set_winsize(1, rows, cols)
        except OSError:
            pass
        os.chdir(cwd)
        os.execvpe(argv[0], argv, env)
    except Exception as e:
        try:
            os.write(2, f"tuidoscope: failed to launch {argv[0]}: {e}\r\n".encode("utf-8", "replace"))
        except OSError:
            pass
    finally:
        os._exit(127)


def spawn_pty(
    entry: AppEntry,
    cols: int = 80,
    rows: int = 24,
    *,
    loop: Any = None,
    config_dir: Optional[Path] = None,
) -> PtyProcess:
    """Launch `entry` on a fresh PTY with the given geometry.

    Launch failures inside the child (bad cwd, missing executable) are written
    to the terminal and surface as exit code 127.
    """
    if not PTY_SUPPORTED:
        raise OSError("pty is not supported on this platform")
    argv = build_argv(entry)
    env = build_env(entry, cols=cols, rows=rows)
    cwd = expand_path(entry.cwd, config_dir)
    pid, fd = pty.fork()
    if pid == 0:
        _exec_child(argv, env, cwd, cols, rows)
    proc = PtyProcess(pid, fd, loop=loop)
    try:
        set_winsize(fd, rows, cols)
    except OSError:
        pass
    logger.debug("pty spawned pid=%s argv=%s cwd=%s", pid, argv, cwd)
    return proc
