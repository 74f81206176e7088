from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

APP_NAME = "tuidoscope"


def xdg_config_home() -> Path:
    raw = str(os.environ.get("XDG_CONFIG_HOME") or "").strip()
    return Path(raw) if raw else Path.home() / ".config"


def xdg_state_home() -> Path:
    raw = str(os.environ.get("XDG_STATE_HOME") or "").strip()
    return Path(raw) if raw else Path.home() / ".local" / "state"


def config_dir() -> Path:
    return xdg_config_home() / APP_NAME


def state_dir() -> Path:
    override = str(os.environ.get("TUIDOSCOPE_STATE_DIR") or "").strip()
    if override:
        return Path(override).expanduser()
    return xdg_state_home() / APP_NAME


def ensure_state_dir() -> Path:
    p = state_dir()
    p.mkdir(parents=True, exist_ok=True)
    return p


@dataclass
class DaemonPaths:
    home: Path

    @property
    def sock_path(self) -> Path:
        return self.home / "tuidoscope.sock"

    @property
    def session_path(self) -> Path:
        return self.home / "session.yaml"

    @property
    def pid_path(self) -> Path:
        return self.home / "daemon.pid"

    @property
    def log_path(self) -> Path:
        return self.home / "daemon.log"


def default_paths() -> DaemonPaths:
    return DaemonPaths(home=ensure_state_dir())
