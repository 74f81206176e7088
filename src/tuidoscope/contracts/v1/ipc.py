"""Daemon IPC contracts.

Both directions are newline-delimited JSON objects tagged by `type`. There is
no request/response correlation: every server message is an asynchronous
event, triggered by any client's command or by the daemon itself.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .app import AppEntry, AppStatus, RunningAppSnapshot


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# Client -> daemon


class StartMessage(_WireModel):
    type: Literal["start"] = "start"
    entry: AppEntry


class StopMessage(_WireModel):
    type: Literal["stop"] = "stop"
    id: str


class StopAllMessage(_WireModel):
    type: Literal["stop_all"] = "stop_all"


class RestartMessage(_WireModel):
    type: Literal["restart"] = "restart"
    entry: AppEntry


class InputMessage(_WireModel):
    type: Literal["input"] = "input"
    id: str
    data: str


class ResizeMessage(_WireModel):
    type: Literal["resize"] = "resize"
    cols: int = Field(ge=1)
    rows: int = Field(ge=1)


class SetActiveMessage(_WireModel):
    type: Literal["set_active"] = "set_active"
    id: Optional[str] = None


class UpdateEntryMessage(_WireModel):
    type: Literal["update_entry"] = "update_entry"
    id: str
    updates: Dict[str, Any] = Field(default_factory=dict)


class ShutdownMessage(_WireModel):
    type: Literal["shutdown"] = "shutdown"
    clear_session: Optional[bool] = Field(default=None, alias="clearSession")


ClientMessage = Annotated[
    Union[
        StartMessage,
        StopMessage,
        StopAllMessage,
        RestartMessage,
        InputMessage,
        ResizeMessage,
        SetActiveMessage,
        UpdateEntryMessage,
        ShutdownMessage,
    ],
    Field(discriminator="type"),
]

CLIENT_MESSAGE_TYPES = (
    StartMessage,
    StopMessage,
    StopAllMessage,
    RestartMessage,
    InputMessage,
    ResizeMessage,
    SetActiveMessage,
    UpdateEntryMessage,
    ShutdownMessage,
)


# Daemon -> client


class SnapshotMessage(_WireModel):
    type: Literal["snapshot"] = "snapshot"
    running_apps: List[RunningAppSnapshot] = Field(default_factory=list, alias="runningApps")
    active_tab_id: Optional[str] = Field(default=None, alias="activeTabId")


class StartedMessage(_WireModel):
    type: Literal["started"] = "started"
    app: RunningAppSnapshot


class StoppedMessage(_WireModel):
    type: Literal["stopped"] = "stopped"
    id: str


class StatusMessage(_WireModel):
    type: Literal["status"] = "status"
    id: str
    status: AppStatus


class OutputMessage(_WireModel):
    type: Literal["output"] = "output"
    id: str
    data: str


class ActiveMessage(_WireModel):
    type: Literal["active"] = "active"
    id: Optional[str] = None


class ErrorMessage(_WireModel):
    type: Literal["error"] = "error"
    message: str


ServerMessage = Annotated[
    Union[
        SnapshotMessage,
        StartedMessage,
        StoppedMessage,
        StatusMessage,
        OutputMessage,
        ActiveMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

SERVER_EVENT_NAMES = ("snapshot", "started", "stopped", "status", "output", "active", "error")

CLIENT_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(ClientMessage)
SERVER_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(ServerMessage)
