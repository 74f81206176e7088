from .app import AppEntry, AppStatus, RunningAppSnapshot
from .ipc import (
    CLIENT_MESSAGE_ADAPTER,
    CLIENT_MESSAGE_TYPES,
    SERVER_EVENT_NAMES,
    SERVER_MESSAGE_ADAPTER,
    ActiveMessage,
    ClientMessage,
    ErrorMessage,
    InputMessage,
    OutputMessage,
    ResizeMessage,
    RestartMessage,
    ServerMessage,
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
from .session import SessionAppRef, SessionData, SessionRef

__all__ = [
    "AppEntry",
    "AppStatus",
    "RunningAppSnapshot",
    "CLIENT_MESSAGE_ADAPTER",
    "CLIENT_MESSAGE_TYPES",
    "SERVER_EVENT_NAMES",
    "SERVER_MESSAGE_ADAPTER",
    "ActiveMessage",
    "ClientMessage",
    "ErrorMessage",
    "InputMessage",
    "OutputMessage",
    "ResizeMessage",
    "RestartMessage",
    "ServerMessage",
    "SetActiveMessage",
    "ShutdownMessage",
    "SnapshotMessage",
    "StartedMessage",
    "StartMessage",
    "StatusMessage",
    "StopAllMessage",
    "StopMessage",
    "StoppedMessage",
    "UpdateEntryMessage",
    "SessionAppRef",
    "SessionData",
    "SessionRef",
]
