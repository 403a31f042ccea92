from __future__ import annotations

import threading
import time
from typing import Optional

from .exceptions import OperationCancelled, OperationTimeout


class CallContext:
    """
    Cancellation + deadline carrier for blocking waits.

    Every wait in the package (login retry delay, task polling, export
    readiness polling) goes through ``ctx.sleep()`` so a cancel wakes it
    immediately and the three outcomes stay distinguishable:

      - OperationCancelled: someone called ``cancel()``
      - OperationTimeout:   the deadline passed
      - anything else:      the operation itself failed

    Children share the parent's cancel event and can only shorten the deadline.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
        parent: Optional["CallContext"] = None,
    ):
        if parent is not None:
            self._event = parent._event
        else:
            self._event = cancel_event if cancel_event is not None else threading.Event()

        deadline: Optional[float] = None
        if timeout is not None:
            deadline = time.monotonic() + max(0.0, float(timeout))
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

    def child(self, timeout: Optional[float] = None) -> "CallContext":
        return CallContext(timeout, parent=self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        r = self.remaining()
        return r is not None and r <= 0.0

    def check(self, op: str = "wait") -> None:
        if self.cancelled:
            raise OperationCancelled(msg=f"{op}: cancelled", context={"op": op})
        if self.expired():
            raise OperationTimeout(msg=f"{op}: deadline exceeded", context={"op": op})

    def sleep(self, seconds: float, op: str = "wait") -> None:
        """Sleep up to ``seconds``; raise early on cancel or when the deadline is hit."""
        self.check(op)
        wait = max(0.0, float(seconds))
        r = self.remaining()
        if r is not None and r < wait:
            wait = r
        if self._event.wait(wait):
            self.check(op)
        elif self.expired():
            self.check(op)


def background() -> CallContext:
    """A context that is never cancelled and has no deadline."""
    return CallContext()
