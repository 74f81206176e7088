"""Durable session record: which apps were running and which one was active."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from ..contracts.v1 import AppEntry, SessionAppRef, SessionData
from ..util.fs import atomic_write_text, atomic_write_yaml, read_yaml

logger = logging.getLogger("tuidoscope.session")


def save_session(path: Path, data: SessionData) -> None:
    doc = data.model_dump(mode="json", by_alias=True)
    atomic_write_yaml(path, doc)


def restore_session(path: Path) -> Optional[SessionData]:
    if not path.exists():
        return None
    try:
        raw = read_yaml(path)
    except (OSError, ValueError) as e:
        logger.warning("failed to read session %s: %s", path, e)
        return None
    if not isinstance(raw, dict):
        return None
    ts = raw.get("timestamp")
    if not isinstance(raw.get("runningApps"), list) or isinstance(ts, bool) or not isinstance(ts, (int, float)):
        return None
    try:
        return SessionData.model_validate(raw)
    except ValidationError as e:
        logger.warning("ignoring malformed session %s: %s", path, e)
        return None


def clear_session(path: Path) -> None:
    if path.exists():
        atomic_write_text(path, "")


def _same_args(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "") == (b or "")


def resolve_session_entry(ref: Union[str, SessionAppRef], entries: List[AppEntry]) -> Optional[AppEntry]:
    """Match a stored reference to a configured entry.

    Id first; object references fall back to name+command+args+cwd for
    entries whose generated id changed between runs.
    """
    ref_id = ref if isinstance(ref, str) else ref.id
    for entry in entries:
        if entry.id == ref_id:
            return entry
    if isinstance(ref, str):
        return None
    for entry in entries:
        if (
            entry.name == ref.name
            and entry.command == ref.command
            and _same_args(entry.args, ref.args)
            and entry.cwd == ref.cwd
        ):
            return entry
    return None
