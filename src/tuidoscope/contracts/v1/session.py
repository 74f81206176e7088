"""Durable session record contracts.

Older daemons wrote `runningApps` / `activeTab` as bare ids; both shapes are
accepted on read, only the reference-object shape is written.
"""

from __future__ import annotations

from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .app import AppEntry


class SessionAppRef(BaseModel):
    id: str
    name: str
    command: str
    args: Optional[str] = None
    cwd: str = "~"

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_entry(cls, entry: AppEntry) -> "SessionAppRef":
        return cls(id=entry.id, name=entry.name, command=entry.command, args=entry.args, cwd=entry.cwd)


SessionRef = Union[str, SessionAppRef]


class SessionData(BaseModel):
    running_apps: List[SessionRef] = Field(alias="runningApps")
    active_tab: Optional[SessionRef] = Field(default=None, alias="activeTab")
    timestamp: int

    model_config = ConfigDict(extra="ignore", populate_by_name=True)
