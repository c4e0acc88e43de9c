"""
Pending command queue with flush-on-ready.

Shared by every upstream bridge:
- Before ready: commands are held in submission order
- mark_ready(): every held command is handed to the sender exactly once,
  in FIFO order, then later commands go straight through
- reset(): held commands are dropped, never sent

Deterministic, synchronous behavior.
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Generic, TypeVar

T = TypeVar("T")


class PendingCommandQueue(Generic[T]):
    """
    FIFO gate in front of a sender callable.
    """

    def __init__(self, *, send: Callable[[T], None]) -> None:
        self._send = send
        self._held: Deque[T] = deque()
        self._ready = False

    @property
    def ready(self) -> bool:
        """True after mark_ready() and before reset()."""
        return self._ready

    def submit(self, command: T) -> bool:
        """
        Send now if ready, else hold.

        Returns:
            True if sent immediately
            False if held
        """
        if self._ready:
            self._send(command)
            return True
        self._held.append(command)
        return False

    def mark_ready(self) -> int:
        """
        Flush held commands in order and switch to pass-through.

        Returns the number of commands flushed. Calling it again while
        already ready flushes nothing.
        """
        if self._ready:
            return 0

        # Drain until empty: send may re-enter submit()
        flushed = 0
        while self._held:
            self._send(self._held.popleft())
            flushed += 1

        self._ready = True
        return flushed

    def reset(self) -> int:
        """
        Drop held commands and return to holding mode.

        Returns the number of commands dropped.
        """
        dropped = len(self._held)
        self._held.clear()
        self._ready = False
        return dropped

    def __len__(self) -> int:
        return len(self._held)
