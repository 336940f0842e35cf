"""One cancellable timer per key.

Arming a key cancels whatever timer that key had before, so the last arm
always wins. A callback that fires after its timer was replaced or cancelled
does nothing.
"""

import asyncio
import itertools
from collections.abc import Callable
from typing import Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


CallLater = Callable[[float, Callable[[], None]], TimerHandle]


class KeyedTimer:
    """Map of key to its single outstanding timer.

    Args:
        call_later: Scheduling primitive taking a delay in seconds and a
            callback and returning a cancellable handle. Defaults to the
            running asyncio loop's ``call_later``.
    """

    def __init__(self, call_later: CallLater | None = None) -> None:
        self._call_later = call_later
        self._handles: dict[str, tuple[int, TimerHandle]] = {}
        self._tokens = itertools.count(1)

    def __len__(self) -> int:
        return len(self._handles)

    def _schedule(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        if self._call_later is not None:
            return self._call_later(delay, callback)
        return asyncio.get_running_loop().call_later(delay, callback)

    def arm(self, key: str, delay: float, callback: Callable[[], None]) -> None:
        """Cancel any timer for ``key`` and start a new one."""
        self.cancel(key)
        token = next(self._tokens)

        def fire() -> None:
            current = self._handles.get(key)
            if current is None or current[0] != token:
                return
            del self._handles[key]
            callback()

        self._handles[key] = (token, self._schedule(delay, fire))

    def cancel(self, key: str) -> bool:
        """Cancel the timer for ``key``.

        Returns:
            True if a timer was armed.
        """
        entry = self._handles.pop(key, None)
        if entry is None:
            return False
        entry[1].cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every timer and return how many were armed."""
        handles = list(self._handles.values())
        self._handles.clear()
        for _, handle in handles:
            handle.cancel()
        return len(handles)

    def is_armed(self, key: str) -> bool:
        return key in self._handles
