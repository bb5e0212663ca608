from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, Iterable, Optional

from .types import Role


class WaitOutcome(str, Enum):
    REACHED = "reached"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CheckpointBoard:
    """Tracks which targets of each role completed which named stages.

    A role's checkpoint is reached once every target of that role completed
    it; a role with no targets has reached every checkpoint. A role fails for
    its dependents as soon as one of its targets fails before reaching the
    checkpoint being waited on.
    """

    def __init__(
        self,
        members: dict[Role, Iterable[str]],
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._members = {role: set(names) for role, names in members.items()}
        self._reached: dict[tuple[Role, str], set[str]] = {}
        self._reached_at: dict[tuple[Role, str], float] = {}
        self._failures: dict[Role, str] = {}
        self._cancelled = False
        self._cond = threading.Condition()
        self._clock = clock

    def reach(self, role: Role, checkpoint: str, target: str) -> None:
        key = (role, checkpoint)
        with self._cond:
            done = self._reached.setdefault(key, set())
            done.add(target)
            if key not in self._reached_at and self._members.get(role, set()) <= done:
                self._reached_at[key] = self._clock()
            self._cond.notify_all()

    def fail(self, role: Role, target: str, reason: str) -> None:
        with self._cond:
            self._failures.setdefault(role, f"{target}: {reason}")
            self._cond.notify_all()

    def cancel(self) -> None:
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def reached_at(self, role: Role, checkpoint: str) -> Optional[float]:
        with self._cond:
            return self._reached_at.get((role, checkpoint))

    def wait(
        self,
        role: Role,
        checkpoint: str,
        cancel: Optional[threading.Event] = None,
    ) -> tuple[WaitOutcome, str]:
        """Block until the checkpoint is reached or the role fails.

        Waiters sleep until the board changes. A bare ``cancel`` event is only
        noticed on the next change, so cancel through :meth:`cancel` to wake
        them at once.
        """
        with self._cond:
            while True:
                if self._is_reached(role, checkpoint):
                    return WaitOutcome.REACHED, ""
                if self._cancelled or (cancel is not None and cancel.is_set()):
                    return WaitOutcome.CANCELLED, "run cancelled"
                if role in self._failures:
                    return WaitOutcome.FAILED, self._failures[role]
                self._cond.wait()

    def _is_reached(self, role: Role, checkpoint: str) -> bool:
        members = self._members.get(role, set())
        if not members:
            return True
        return members <= self._reached.get((role, checkpoint), set())
