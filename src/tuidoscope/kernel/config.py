"""YAML configuration: managed app entries and session settings."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..contracts.v1 import AppEntry
from ..paths import config_dir as default_config_dir
from ..util.fs import atomic_write_yaml, read_yaml

logger = logging.getLogger("tuidoscope.config")

CONFIG_FILENAME = "tuidoscope.yaml"
LOCAL_CONFIG_PATH = Path(".") / CONFIG_FILENAME


class AppEntryConfig(BaseModel):
    id: Optional[str] = None
    name: str
    command: str
    args: Optional[str] = None
    cwd: str = "~"
    autostart: bool = False
    restart_on_exit: bool = False
    env: Optional[Dict[str, str]] = None

    model_config = ConfigDict(extra="ignore")


class SessionConfig(BaseModel):
    persist: bool = True
    file: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class Config(BaseModel):
    version: int = 1
    apps: List[AppEntryConfig] = Field(default_factory=list)
    session: SessionConfig = Field(default_factory=SessionConfig)

    # theme/keybinds/tab_width belong to the UI layer.
    model_config = ConfigDict(extra="ignore")


@dataclass
class LoadedConfig:
    config: Config
    path: Optional[Path]
    config_dir: Path


def expand_path(path: str, config_dir: Optional[Path] = None) -> str:
    """Expand `~` and `<CONFIG_DIR>` tokens into an absolute path."""
    expanded = str(path or "~")
    if expanded.startswith("~"):
        expanded = str(Path.home()) + expanded[1:]
    if "<CONFIG_DIR>" in expanded:
        expanded = expanded.replace("<CONFIG_DIR>", str(config_dir or default_config_dir()))
    return os.path.abspath(expanded)


def config_to_entry(cfg: AppEntryConfig) -> AppEntry:
    return AppEntry(
        id=cfg.id or str(uuid.uuid4()),
        name=cfg.name,
        command=cfg.command,
        args=cfg.args,
        cwd=cfg.cwd,
        env=dict(cfg.env) if cfg.env else None,
        autostart=cfg.autostart,
        restart_on_exit=cfg.restart_on_exit,
    )


def find_config_path() -> Optional[Path]:
    if LOCAL_CONFIG_PATH.exists():
        return LOCAL_CONFIG_PATH.resolve()
    p = default_config_dir() / CONFIG_FILENAME
    if p.exists():
        return p
    return None


def load_config(path: Optional[Path] = None) -> LoadedConfig:
    p = path if path is not None else find_config_path()
    if p is None or not p.exists():
        return LoadedConfig(config=Config(), path=None, config_dir=default_config_dir())
    cdir = p.parent
    try:
        raw = read_yaml(p)
        cfg = Config.model_validate(raw if isinstance(raw, dict) else {})
    except (OSError, ValueError, ValidationError) as e:
        logger.warning("invalid config %s, using defaults: %s", p, e)
        cfg = Config()
    return LoadedConfig(config=cfg, path=p, config_dir=cdir)


def save_config(config: Config, path: Path) -> None:
    atomic_write_yaml(path, config.model_dump(mode="json", exclude_none=True))


def session_file_path(loaded: LoadedConfig, default: Path) -> Path:
    raw = str(loaded.config.session.file or "").strip()
    if not raw:
        return default
    return Path(expand_path(raw, loaded.config_dir))
