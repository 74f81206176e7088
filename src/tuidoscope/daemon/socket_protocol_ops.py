from __future__ import annotations

import codecs
import json
from typing import Any, Dict, List, Union

from pydantic import BaseModel, ValidationError

from ..contracts.v1 import CLIENT_MESSAGE_ADAPTER, SERVER_MESSAGE_ADAPTER, ErrorMessage

MAX_LINE_BYTES = 16_000_000


class ProtocolError(ValueError):
    """A line that is not valid JSON or does not match any known message."""


def dump_message(msg: Any) -> Dict[str, Any]:
    if isinstance(msg, BaseModel):
        return msg.model_dump(mode="json", by_alias=True)
    if isinstance(msg, dict):
        return msg
    raise TypeError(f"cannot serialize message of type {type(msg).__name__}")


def encode_message(msg: Any) -> bytes:
    # json.dumps escapes control characters, so a payload never carries a raw newline.
    return (json.dumps(dump_message(msg), ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


def error_message(message: str) -> ErrorMessage:
    return ErrorMessage(message=message)


class LineDecoder:
    """Reassemble newline-delimited frames from arbitrary read boundaries."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buf = ""

    def feed(self, data: Union[bytes, str]) -> List[str]:
        if isinstance(data, bytes):
            data = self._decoder.decode(data)
        self._buf += data
        if "\n" not in self._buf:
            if len(self._buf) > MAX_LINE_BYTES:
                self._buf = ""
                raise ProtocolError("message too large")
            return []
        *lines, self._buf = self._buf.split("\n")
        out: List[str] = []
        for line in lines:
            line = line.strip()
            if line:
                out.append(line)
        return out

    @property
    def pending(self) -> str:
        return self._buf


def _load_json(line: str) -> Any:
    try:
        return json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid message: {e}") from e


def _describe(e: ValidationError) -> str:
    first = e.errors()[0] if e.errors() else {}
    loc = ".".join(str(x) for x in first.get("loc") or ())
    msg = str(first.get("msg") or "validation error")
    return f"{loc}: {msg}" if loc else msg


def parse_client_message(line: str) -> Any:
    raw = _load_json(line)
    try:
        return CLIENT_MESSAGE_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise ProtocolError(f"Invalid message: {_describe(e)}") from e


def parse_server_message(line: str) -> Any:
    raw = _load_json(line)
    try:
        return SERVER_MESSAGE_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise ProtocolError(f"Invalid message: {_describe(e)}") from e
