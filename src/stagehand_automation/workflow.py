from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .actions import ActionExecutor
from .poller import PollStatus, ReadinessPoller
from .types import (
    Action,
    ActionResult,
    FailureKind,
    FailureRecord,
    PipelineReport,
    PipelineState,
    RolePipeline,
    SideEffect,
    Stage,
    Target,
    TargetStatus,
)

logger = logging.getLogger(__name__)

PING = Action("ping", side_effect=SideEffect.QUERY, critical=True)
REBOOT = Action("reboot", critical=True)

_TRANSITIONS = {
    PipelineState.PENDING: {PipelineState.RUNNING, PipelineState.FAILED},
    PipelineState.RUNNING: {PipelineState.COMPLETED, PipelineState.FAILED},
    PipelineState.COMPLETED: set(),
    PipelineState.FAILED: set(),
}


class _Halt(Exception):
    def __init__(self, record: FailureRecord):
        super().__init__(record.diagnostic)
        self.record = record


class PipelineRun:
    """Mutable bookkeeping for one pipeline against one target."""

    def __init__(self, pipeline: RolePipeline, target: Target, clock: Callable[[], float]):
        self.pipeline = pipeline
        self.target = target
        self.state = PipelineState.PENDING
        self.results: list[ActionResult] = []
        self.completed: list[str] = []
        self.entries: list[tuple[str, float]] = []
        self.exits: list[tuple[str, float]] = []
        self.failure: Optional[FailureRecord] = None
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self._clock = clock

    def transition(self, state: PipelineState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal pipeline transition {self.state.value} -> {state.value}")
        logger.debug(
            "role=%s target=%s %s->%s",
            self.pipeline.role.value,
            self.target.name,
            self.state.value,
            state.value,
        )
        self.state = state
        now = self._clock()
        if state is PipelineState.RUNNING:
            self.started_at = now
        elif state in (PipelineState.COMPLETED, PipelineState.FAILED):
            self.finished_at = now

    def enter(self, stage: str) -> None:
        self.entries.append((stage, self._clock()))

    def leave(self, stage: str) -> None:
        self.completed.append(stage)
        self.exits.append((stage, self._clock()))

    def fail(self, record: FailureRecord) -> None:
        self.failure = record
        self.transition(PipelineState.FAILED)

    def report(self) -> PipelineReport:
        return PipelineReport(
            role=self.pipeline.role,
            target=self.target.name,
            state=self.state,
            required=self.pipeline.required,
            failure=self.failure,
            results=tuple(self.results),
            completed_stages=tuple(self.completed),
            stage_entries=tuple(self.entries),
            stage_exits=tuple(self.exits),
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


class WorkflowEngine:
    """Runs a role pipeline against one target, stage by stage.

    Stages and actions run strictly in order. After a stage whose actions
    flagged a reboot, the target is rebooted and polled with the reboot probe
    before the next stage starts.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        poller: Optional[ReadinessPoller] = None,
        *,
        reboot_probe: Action = PING,
        reboot_attempts: int = 10,
        reboot_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.executor = executor
        self.poller = poller or ReadinessPoller(executor)
        self.reboot_probe = reboot_probe
        self.reboot_attempts = reboot_attempts
        self.reboot_delay = reboot_delay
        self.clock = clock

    def run(
        self,
        pipeline: RolePipeline,
        target: Target,
        cancel: Optional[threading.Event] = None,
        on_stage_complete: Optional[Callable[[str], None]] = None,
    ) -> PipelineReport:
        cancel = cancel or threading.Event()
        run = PipelineRun(pipeline, target, self.clock)
        run.transition(PipelineState.RUNNING)
        logger.info("role=%s target=%s pipeline started", pipeline.role.value, target.name)
        try:
            for stage in pipeline.stages:
                self._run_stage(run, stage, cancel)
                run.leave(stage.name)
                logger.info("target=%s stage=%s completed", target.name, stage.name)
                if on_stage_complete is not None:
                    on_stage_complete(stage.name)
        except _Halt as halt:
            record = halt.record
            logger.error(
                "target=%s stage=%s action=%s %s: %s",
                target.name,
                record.stage,
                record.action,
                record.kind.value,
                record.diagnostic,
            )
            run.fail(record)
            self.executor.registry.update_status(target.name, TargetStatus.FAILED)
        else:
            run.transition(PipelineState.COMPLETED)
            logger.info("role=%s target=%s pipeline completed", pipeline.role.value, target.name)
        return run.report()

    def fail_without_running(
        self,
        pipeline: RolePipeline,
        target: Target,
        kind: FailureKind,
        diagnostic: str,
    ) -> PipelineReport:
        """Fail a pending pipeline without invoking any of its actions."""
        run = PipelineRun(pipeline, target, self.clock)
        logger.error("role=%s target=%s %s: %s", pipeline.role.value, target.name, kind.value, diagnostic)
        run.fail(FailureRecord(kind=kind, diagnostic=diagnostic))
        return run.report()

    def _run_stage(self, run: PipelineRun, stage: Stage, cancel: threading.Event) -> None:
        self._check_cancel(stage, None, cancel)
        run.enter(stage.name)
        logger.info("target=%s stage=%s started", run.target.name, stage.name)
        reboot_required = False
        for action in stage.actions:
            self._check_cancel(stage, action, cancel)
            result = self._invoke(run, stage, action, cancel)
            reboot_required = reboot_required or result.reboot_required
            if result.ok:
                continue
            if action.is_critical:
                raise _Halt(
                    FailureRecord(
                        kind=result.failure or FailureKind.ACTION_FAILED,
                        diagnostic=result.details,
                        stage=stage.name,
                        action=action.display,
                    )
                )
            logger.warning(
                "target=%s stage=%s non-critical action=%s %s: %s",
                run.target.name,
                stage.name,
                action.display,
                result.outcome.value,
                result.details,
            )

        if reboot_required and stage.reboot_if_flagged:
            self._reboot(run, stage, cancel)
        check = stage.wait_until_ready
        if check is not None:
            self._await(run, stage, check.probe, check.max_attempts, check.delay, cancel)

    def _invoke(self, run: PipelineRun, stage: Stage, action: Action, cancel: threading.Event) -> ActionResult:
        if action.retry is None:
            result = self.executor.invoke(run.target, action)
            run.results.append(result)
            return result
        return self._await(run, stage, action, action.retry.attempts, action.retry.delay, cancel)

    def _reboot(self, run: PipelineRun, stage: Stage, cancel: threading.Event) -> None:
        logger.info("target=%s stage=%s reboot required", run.target.name, stage.name)
        self._check_cancel(stage, REBOOT, cancel)
        result = self.executor.invoke(run.target, REBOOT)
        run.results.append(result)
        if not result.ok:
            raise _Halt(
                FailureRecord(
                    kind=result.failure or FailureKind.ACTION_FAILED,
                    diagnostic=result.details,
                    stage=stage.name,
                    action=REBOOT.display,
                )
            )
        self._await(run, stage, self.reboot_probe, self.reboot_attempts, self.reboot_delay, cancel)

    def _await(
        self,
        run: PipelineRun,
        stage: Stage,
        probe: Action,
        attempts: int,
        delay: float,
        cancel: threading.Event,
    ) -> ActionResult:
        """Poll ``probe`` and return its ready result, halting the pipeline otherwise."""
        poll = self.poller.wait_until_ready(run.target, probe, attempts, delay, cancel)
        last = poll.last
        if last is not None:
            run.results.append(last)
            if poll.status is PollStatus.READY:
                return last
        kind = FailureKind.CANCELLED if poll.status is PollStatus.CANCELLED else FailureKind.TIMED_OUT
        raise _Halt(
            FailureRecord(
                kind=kind,
                diagnostic=poll.describe(probe),
                stage=stage.name,
                action=probe.display,
            )
        )

    @staticmethod
    def _check_cancel(stage: Stage, action: Optional[Action], cancel: threading.Event) -> None:
        if cancel.is_set():
            raise _Halt(
                FailureRecord(
                    kind=FailureKind.CANCELLED,
                    diagnostic="run cancelled",
                    stage=stage.name,
                    action=action.display if action is not None else None,
                )
            )
