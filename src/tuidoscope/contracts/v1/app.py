"""Managed app contracts (launch recipe + runtime snapshot)."""

from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

AppStatus = Literal["running", "stopped", "error"]


class AppEntry(BaseModel):
    """Launch recipe for one managed program. `id` is stable for the daemon's lifetime."""

    id: str = Field(min_length=1)
    name: str
    command: str
    args: Optional[str] = None
    cwd: str = "~"
    env: Optional[Dict[str, str]] = None
    autostart: bool = False
    restart_on_exit: bool = Field(default=False, alias="restartOnExit")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RunningAppSnapshot(BaseModel):
    entry: AppEntry
    status: AppStatus
    buffer: str = ""
    run_id: int = Field(alias="runId")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)
