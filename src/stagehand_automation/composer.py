from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .checkpoints import CheckpointBoard, WaitOutcome
from .errors import CyclicDependency
from .registry import TargetRegistry
from .types import (
    Dependency,
    FailureKind,
    PipelineReport,
    PipelineState,
    Role,
    RolePipeline,
    RunReport,
    Target,
    TargetStatus,
)
from .workflow import WorkflowEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    order: tuple[Role, ...]
    waits: dict[Role, tuple[Dependency, ...]]


def compose(pipelines: Iterable[RolePipeline]) -> ExecutionPlan:
    """Order role pipelines so that every dependency precedes its dependents.

    Raises :class:`CyclicDependency` when the role graph is not acyclic and
    ``ValueError`` when a dependency names an undeclared role or a checkpoint
    that is not a stage of the upstream pipeline.
    """

    by_role: dict[Role, RolePipeline] = {}
    for pipeline in pipelines:
        if pipeline.role in by_role:
            raise ValueError(f"More than one pipeline declared for role '{pipeline.role.value}'")
        by_role[pipeline.role] = pipeline

    deps_map: dict[Role, set[Role]] = {}
    for role, pipeline in by_role.items():
        deps: set[Role] = set()
        for dep in pipeline.depends_on:
            upstream = by_role.get(dep.role)
            if upstream is None:
                raise ValueError(f"Pipeline '{role.value}' depends on undeclared role '{dep.role.value}'")
            if dep.checkpoint not in upstream.stage_names():
                raise ValueError(
                    f"Pipeline '{role.value}' waits on unknown checkpoint "
                    f"'{dep.checkpoint}' of role '{dep.role.value}'"
                )
            deps.add(dep.role)
        deps_map[role] = deps

    in_degree = {role: len(deps) for role, deps in deps_map.items()}
    queue = [role for role in by_role if in_degree[role] == 0]
    ordered: list[Role] = []
    while queue:
        current = queue.pop(0)
        ordered.append(current)
        for role in by_role:
            if current in deps_map[role]:
                in_degree[role] -= 1
                if in_degree[role] == 0:
                    queue.append(role)

    if len(ordered) != len(by_role):
        raise CyclicDependency(role.value for role in by_role if role not in ordered)

    waits = {role: tuple(by_role[role].depends_on) for role in ordered}
    return ExecutionPlan(order=tuple(ordered), waits=waits)


class PipelineComposer:
    """Runs every role pipeline against its targets, honouring checkpoints.

    One unit of work per (pipeline, target) runs in a thread pool. A unit
    stays pending until each dependency's checkpoint is reached; if the
    upstream role fails first the unit fails without invoking any action.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        engine: WorkflowEngine,
        pipelines: Iterable[RolePipeline],
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.engine = engine
        self.pipelines = list(pipelines)
        self.clock = clock
        self._cancel = threading.Event()
        self._active: Optional[tuple[threading.Event, CheckpointBoard]] = None
        self._lock = threading.RLock()

    def plan(self) -> ExecutionPlan:
        return compose(self.pipelines)

    def cancel(self) -> None:
        """Cancel the current run and wake every unit waiting on a checkpoint."""
        self._cancel.set()
        with self._lock:
            active = self._active
        if active is not None:
            event, board = active
            event.set()
            board.cancel()

    def run_all(self, cancel: Optional[threading.Event] = None) -> RunReport:
        plan = self.plan()
        cancel = cancel or self._cancel
        started = self.clock()
        by_role = {pipeline.role: pipeline for pipeline in self.pipelines}
        members = {role: [t.name for t in self.registry.by_role(role)] for role in plan.order}
        board = CheckpointBoard(members, clock=self.engine.clock)
        with self._lock:
            self._active = (cancel, board)
        if self._cancel.is_set():
            self.cancel()

        units = [
            (by_role[role], target)
            for role in plan.order
            for target in self.registry.by_role(role)
        ]
        logger.info(
            "order=%s units=%d",
            ",".join(role.value for role in plan.order),
            len(units),
        )
        reports: list[PipelineReport] = []
        try:
            if units:
                with ThreadPoolExecutor(max_workers=len(units), thread_name_prefix="pipeline") as pool:
                    futures = [
                        pool.submit(self._run_unit, pipeline, target, plan.waits[pipeline.role], board, cancel)
                        for pipeline, target in units
                    ]
                    reports = [future.result() for future in futures]
        finally:
            with self._lock:
                self._active = None
        return RunReport(pipelines=tuple(reports), started_at=started, finished_at=self.clock())

    def _run_unit(
        self,
        pipeline: RolePipeline,
        target: Target,
        waits: tuple[Dependency, ...],
        board: CheckpointBoard,
        cancel: threading.Event,
    ) -> PipelineReport:
        try:
            report = self._gate_and_run(pipeline, target, waits, board, cancel)
        except Exception as exc:  # noqa: BLE001
            logger.error("role=%s target=%s crashed: %s", pipeline.role.value, target.name, exc, exc_info=True)
            self.registry.update_status(target.name, TargetStatus.FAILED)
            report = self.engine.fail_without_running(
                pipeline, target, FailureKind.ACTION_FAILED, f"{type(exc).__name__}: {exc}"
            )
        if report.state is PipelineState.FAILED:
            reason = report.failure.diagnostic if report.failure else "failed"
            board.fail(pipeline.role, target.name, reason)
        return report

    def _gate_and_run(
        self,
        pipeline: RolePipeline,
        target: Target,
        waits: tuple[Dependency, ...],
        board: CheckpointBoard,
        cancel: threading.Event,
    ) -> PipelineReport:
        for dep in waits:
            logger.debug("target=%s waiting for %s:%s", target.name, dep.role.value, dep.checkpoint)
            outcome, reason = board.wait(dep.role, dep.checkpoint, cancel)
            if outcome is WaitOutcome.FAILED:
                return self.engine.fail_without_running(
                    pipeline,
                    target,
                    FailureKind.DEPENDENCY_FAILED,
                    f"dependency {dep.role.value} failed before {dep.checkpoint} ({reason})",
                )
            if outcome is WaitOutcome.CANCELLED:
                return self.engine.fail_without_running(
                    pipeline, target, FailureKind.CANCELLED, "run cancelled"
                )

        def _reached(stage: str) -> None:
            board.reach(pipeline.role, stage, target.name)

        return self.engine.run(pipeline, target, cancel, on_stage_complete=_reached)
