"""Debounced session persistence."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("tuidoscope.daemon.persist")

PERSIST_DEBOUNCE_S = 0.1


class SessionPersister:
    """Collapse bursts of registry changes into one durable write.

    `schedule()` arms the debounce timer unless one is already pending;
    `flush()` writes synchronously; after `suppress()` nothing is written.
    """

    def __init__(
        self,
        *,
        loop: Any,
        save: Callable[[], None],
        enabled: bool = True,
        delay_s: float = PERSIST_DEBOUNCE_S,
    ) -> None:
        self._loop = loop
        self._save = save
        self.enabled = bool(enabled)
        self.delay_s = float(delay_s)
        self.suppressed = False
        self._timer: Optional[Any] = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def schedule(self) -> None:
        if self.suppressed or not self.enabled or self._timer is not None:
            return
        self._timer = self._loop.call_later(self.delay_s, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self._write()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def flush(self) -> None:
        self.cancel()
        if self.enabled and not self.suppressed:
            self._write()

    def suppress(self) -> None:
        self.cancel()
        self.suppressed = True

    def _write(self) -> None:
        try:
            self._save()
        except Exception:
            logger.exception("failed to save session")
