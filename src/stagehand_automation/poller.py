from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .actions import ActionExecutor
from .types import Action, ActionResult, Outcome, Target, TargetStatus

logger = logging.getLogger(__name__)


class PollStatus(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    status: PollStatus
    attempts: int
    last: Optional[ActionResult] = None

    @property
    def ready(self) -> bool:
        return self.status is PollStatus.READY

    def describe(self, probe: Action) -> str:
        if self.status is PollStatus.READY:
            return f"{probe.display} ready after {self.attempts} attempt(s)"
        if self.status is PollStatus.CANCELLED:
            return f"cancelled while waiting for {probe.display} after {self.attempts} attempt(s)"
        detail = f": {self.last.details}" if self.last and self.last.details else ""
        return f"{probe.display} not ready after {self.attempts} attempt(s){detail}"


class ReadinessPoller:
    """Repeats a probe until it succeeds or its attempt budget runs out.

    The delay between attempts is spent in ``cancel.wait`` so a cancellation
    interrupts the loop within one interval without holding up other pipelines.
    """

    def __init__(self, executor: ActionExecutor):
        self.executor = executor

    def wait_until_ready(
        self,
        target: Target,
        probe: Action,
        max_attempts: int,
        delay: float,
        cancel: Optional[threading.Event] = None,
    ) -> PollResult:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        cancel = cancel or threading.Event()
        last: Optional[ActionResult] = None
        attempts = 0
        while attempts < max_attempts:
            if cancel.is_set():
                return PollResult(PollStatus.CANCELLED, attempts, last)
            attempts += 1
            last = self.executor.invoke(target, probe)
            if last.ok:
                logger.info(
                    "target=%s probe=%s ready attempt=%d/%d",
                    target.name,
                    probe.display,
                    attempts,
                    max_attempts,
                )
                return PollResult(PollStatus.READY, attempts, last)
            logger.info(
                "target=%s probe=%s %s attempt=%d/%d",
                target.name,
                probe.display,
                last.outcome.value,
                attempts,
                max_attempts,
            )
            if attempts < max_attempts and cancel.wait(delay):
                return PollResult(PollStatus.CANCELLED, attempts, last)
        if last is not None and last.outcome is Outcome.UNREACHABLE:
            self.executor.registry.update_status(target.name, TargetStatus.UNREACHABLE)
        return PollResult(PollStatus.TIMED_OUT, attempts, last)
