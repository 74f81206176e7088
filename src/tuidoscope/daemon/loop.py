"""Single-threaded selector loop with cancellable timers.

All daemon state is mutated from callbacks dispatched here, so handlers never
need locks. Signals are turned into loop callbacks through a wakeup socket.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import selectors
import signal
import socket
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("tuidoscope.daemon.loop")


class TimerHandle:
    __slots__ = ("when", "_callback", "_args", "cancelled")

    def __init__(self, when: float, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self.when = when
        self._callback: Optional[Callable[..., Any]] = callback
        self._args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        self._callback = None
        self._args = ()

    def _run(self) -> None:
        cb = self._callback
        if self.cancelled or cb is None:
            return
        self.cancelled = True
        cb(*self._args)


def _noop_signal_handler(signum: int, frame: Any) -> None:
    return None


class EventLoop:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._selector = selectors.DefaultSelector()
        self._timers: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._stopping = False
        self._signal_handlers: Dict[int, Callable[[], Any]] = {}
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self.add_reader(self._wake_r, self._read_wakeup)

    def time(self) -> float:
        return self._clock()

    # Timers

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle(self._clock() + max(0.0, float(delay)), callback, args)
        heapq.heappush(self._timers, (handle.when, next(self._seq), handle))
        return handle

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        return self.call_later(0.0, callback, *args)

    # I/O registration

    def _register(self, fileobj: Any, event: int, callback: Optional[Callable[[], Any]]) -> None:
        try:
            key = self._selector.get_key(fileobj)
        except (KeyError, ValueError):
            if callback is None:
                return
            data = (callback, None) if event == selectors.EVENT_READ else (None, callback)
            self._selector.register(fileobj, event, data)
            return
        reader, writer = key.data
        if event == selectors.EVENT_READ:
            reader = callback
        else:
            writer = callback
        events = (selectors.EVENT_READ if reader else 0) | (selectors.EVENT_WRITE if writer else 0)
        if not events:
            self._selector.unregister(fileobj)
        else:
            self._selector.modify(fileobj, events, (reader, writer))

    def add_reader(self, fileobj: Any, callback: Callable[[], Any]) -> None:
        self._register(fileobj, selectors.EVENT_READ, callback)

    def remove_reader(self, fileobj: Any) -> None:
        self._register(fileobj, selectors.EVENT_READ, None)

    def add_writer(self, fileobj: Any, callback: Callable[[], Any]) -> None:
        self._register(fileobj, selectors.EVENT_WRITE, callback)

    def remove_writer(self, fileobj: Any) -> None:
        self._register(fileobj, selectors.EVENT_WRITE, None)

    # Signals and wakeups

    def add_signal_handler(self, sig: int, callback: Callable[[], Any]) -> None:
        if threading.current_thread() is not threading.main_thread():
            raise RuntimeError("signal handlers can only be installed from the main thread")
        self._signal_handlers[int(sig)] = callback
        signal.signal(sig, _noop_signal_handler)
        signal.set_wakeup_fd(self._wake_w.fileno(), warn_on_full_buffer=False)

    def remove_signal_handlers(self) -> None:
        if not self._signal_handlers:
            return
        for sig in list(self._signal_handlers):
            try:
                signal.signal(sig, signal.SIG_DFL)
            except (ValueError, OSError):
                pass
        self._signal_handlers.clear()
        try:
            signal.set_wakeup_fd(-1)
        except ValueError:
            pass

    def wakeup(self) -> None:
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass

    def _read_wakeup(self) -> None:
        try:
            data = self._wake_r.recv(4096)
        except (BlockingIOError, InterruptedError):
            return
        for signum in data:
            cb = self._signal_handlers.get(signum)
            if cb is None:
                continue
            try:
                cb()
            except Exception:
                logger.exception("signal handler failed signum=%s", signum)

    # Running

    def stop(self) -> None:
        self._stopping = True
        self.wakeup()

    def run_once(self, timeout: Optional[float] = None) -> None:
        while self._timers and self._timers[0][2].cancelled:
            heapq.heappop(self._timers)
        if self._timers:
            delay = max(0.0, self._timers[0][0] - self._clock())
            timeout = delay if timeout is None else min(timeout, delay)

        for key, mask in self._selector.select(timeout):
            reader, writer = key.data
            if mask & selectors.EVENT_READ and reader is not None:
                self._invoke(reader)
            if mask & selectors.EVENT_WRITE and writer is not None:
                # The read callback may have dropped the writer.
                try:
                    current = self._selector.get_key(key.fileobj).data[1]
                except (KeyError, ValueError):
                    current = None
                if current is not None:
                    self._invoke(current)

        end = self._clock()
        while self._timers and self._timers[0][0] <= end:
            _, _, handle = heapq.heappop(self._timers)
            self._invoke(handle._run)

    def _invoke(self, callback: Callable[[], Any]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("loop callback failed")

    def run_forever(self) -> None:
        while not self._stopping:
            self.run_once()

    def close(self) -> None:
        self.remove_signal_handlers()
        try:
            self._selector.unregister(self._wake_r)
        except (KeyError, ValueError):
            pass
        self._selector.close()
        for s in (self._wake_r, self._wake_w):
            try:
                s.close()
            except OSError:
                pass
