from __future__ import annotations

import errno
import logging
import os
import socket
from pathlib import Path

from ..util.fs import atomic_write_text

logger = logging.getLogger("tuidoscope.daemon.serve")


class DaemonAlreadyRunning(RuntimeError):
    pass


def is_daemon_alive(sock_path: Path, *, timeout_s: float = 0.2) -> bool:
    if not sock_path.exists():
        return False
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.settimeout(timeout_s)
        s.connect(str(sock_path))
        return True
    except OSError:
        return False
    finally:
        try:
            s.close()
        except OSError:
            pass


def remove_socket_file(sock_path: Path) -> None:
    try:
        sock_path.unlink(missing_ok=True)
    except OSError as e:
        logger.debug("failed to remove socket %s: %s", sock_path, e)


def bind_server_socket(sock_path: Path, *, backlog: int = 50) -> socket.socket:
    sock_path.parent.mkdir(parents=True, exist_ok=True)
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.bind(str(sock_path))
    except OSError as e:
        s.close()
        if e.errno == errno.EADDRINUSE:
            raise DaemonAlreadyRunning(f"socket already in use: {sock_path}") from e
        raise
    try:
        os.chmod(str(sock_path), 0o600)
    except OSError:
        pass
    s.listen(backlog)
    s.setblocking(False)
    return s


def write_pid(pid_path: Path) -> None:
    try:
        atomic_write_text(pid_path, str(os.getpid()) + "\n")
    except OSError as e:
        logger.debug("failed to write pid file: %s", e)


def read_pid(pid_path: Path) -> int:
    try:
        txt = pid_path.read_text(encoding="utf-8").strip()
        return int(txt) if txt.isdigit() else 0
    except OSError:
        return 0


def remove_pid_if_ours(pid_path: Path) -> None:
    if read_pid(pid_path) != os.getpid():
        return
    try:
        pid_path.unlink(missing_ok=True)
    except OSError:
        pass
