"""Per-connection socket handling for the daemon loop."""

from __future__ import annotations

import logging
import socket
from typing import Any, Callable

from ..socket_protocol_ops import LineDecoder, ProtocolError, encode_message, error_message

logger = logging.getLogger("tuidoscope.daemon.connection")

MAX_PENDING_WRITE_BYTES = 32 * 1024 * 1024
CLOSE_FLUSH_TIMEOUT_S = 1.0


class ClientConnection:
    """One attached client: framed reads in, queued non-blocking writes out."""

    def __init__(
        self,
        sock: socket.socket,
        *,
        loop: Any,
        on_line: Callable[["ClientConnection", str], None],
        on_close: Callable[["ClientConnection"], None],
    ) -> None:
        self.sock = sock
        self.closed = False
        self._loop = loop
        self._decoder = LineDecoder()
        self._out = bytearray()
        self._on_line = on_line
        self._on_close = on_close
        sock.setblocking(False)
        loop.add_reader(sock, self._handle_readable)

    def send(self, msg: Any) -> None:
        self.send_raw(encode_message(msg))

    def send_raw(self, payload: bytes) -> None:
        if self.closed:
            return
        self._out += payload
        if len(self._out) > MAX_PENDING_WRITE_BYTES:
            logger.warning("dropping client with %s unsent bytes", len(self._out))
            self._out.clear()
            self.close()
            return
        self._flush()

    def _flush(self) -> None:
        while self._out and not self.closed:
            try:
                n = self.sock.send(self._out)
            except (BlockingIOError, InterruptedError):
                break
            except OSError:
                self._out.clear()
                self.close()
                return
            del self._out[:n]
        if self.closed:
            return
        if self._out:
            self._loop.add_writer(self.sock, self._flush)
        else:
            self._loop.remove_writer(self.sock)

    def _handle_readable(self) -> None:
        if self.closed:
            return
        try:
            data = self.sock.recv(65536)
        except (BlockingIOError, InterruptedError):
            return
        except OSError:
            self.close()
            return
        if not data:
            self.close(flush=True)
            return
        try:
            lines = self._decoder.feed(data)
        except ProtocolError as e:
            self.send(error_message(str(e)))
            return
        for line in lines:
            if self.closed:
                break
            self._on_line(self, line)

    def close(self, *, flush: bool = False) -> None:
        if self.closed:
            return
        self.closed = True
        self._loop.remove_reader(self.sock)
        self._loop.remove_writer(self.sock)
        if flush and self._out:
            try:
                self.sock.settimeout(CLOSE_FLUSH_TIMEOUT_S)
                self.sock.sendall(bytes(self._out))
            except OSError:
                pass
        self._out.clear()
        try:
            self.sock.close()
        except OSError:
            pass
        self._on_close(self)
