from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    CONTROLLER = "controller"
    MEMBER = "member"
    DEPLOY = "deploy"


class TargetStatus(str, Enum):
    UNKNOWN = "unknown"
    UNREACHABLE = "unreachable"
    READY = "ready"
    FAILED = "failed"


class Outcome(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    UNREACHABLE = "unreachable"


class SideEffect(str, Enum):
    MUTATING = "mutating"
    QUERY = "query"


class FailureKind(str, Enum):
    UNREACHABLE = "unreachable"
    ACTION_FAILED = "action_failed"
    TIMED_OUT = "timed_out"
    DEPENDENCY_FAILED = "dependency_failed"
    CREDENTIAL_UNAVAILABLE = "credential_unavailable"
    CANCELLED = "cancelled"


class PipelineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Target:
    name: str
    role: Role
    address: Optional[str] = None
    connection: str = "winrm"
    credential: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)
    status: TargetStatus = TargetStatus.UNKNOWN

    @property
    def host(self) -> str:
        return self.address or self.name


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    delay: float


@dataclass(frozen=True)
class Action:
    name: str
    params: dict[str, Any] = field(default_factory=dict)
    side_effect: SideEffect = SideEffect.MUTATING
    critical: Optional[bool] = None
    retry: Optional[RetryPolicy] = None
    label: Optional[str] = None

    @property
    def is_critical(self) -> bool:
        if self.critical is None:
            return self.side_effect is SideEffect.MUTATING
        return self.critical

    @property
    def display(self) -> str:
        return self.label or self.name


@dataclass
class ActionResult:
    target: str
    action: str
    outcome: Outcome
    details: str = ""
    reboot_required: bool = False
    failure: Optional[FailureKind] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.CHANGED, Outcome.UNCHANGED)

    @property
    def changed(self) -> bool:
        return self.outcome is Outcome.CHANGED


@dataclass(frozen=True)
class ReadinessCheck:
    probe: Action
    max_attempts: int
    delay: float


@dataclass
class Stage:
    name: str
    actions: list[Action]
    reboot_if_flagged: bool = True
    wait_until_ready: Optional[ReadinessCheck] = None


@dataclass(frozen=True)
class Dependency:
    role: Role
    checkpoint: str


@dataclass
class RolePipeline:
    role: Role
    stages: list[Stage]
    depends_on: list[Dependency] = field(default_factory=list)
    required: bool = True

    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]


@dataclass(frozen=True)
class FailureRecord:
    kind: FailureKind
    diagnostic: str
    stage: Optional[str] = None
    action: Optional[str] = None


@dataclass(frozen=True)
class PipelineReport:
    role: Role
    target: str
    state: PipelineState
    required: bool = True
    failure: Optional[FailureRecord] = None
    results: tuple[ActionResult, ...] = ()
    completed_stages: tuple[str, ...] = ()
    stage_entries: tuple[tuple[str, float], ...] = ()
    stage_exits: tuple[tuple[str, float], ...] = ()
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def entered(self, stage: str) -> Optional[float]:
        return _lookup(self.stage_entries, stage)

    def completed_at(self, stage: str) -> Optional[float]:
        return _lookup(self.stage_exits, stage)


def _lookup(marks: tuple[tuple[str, float], ...], stage: str) -> Optional[float]:
    for name, when in marks:
        if name == stage:
            return when
    return None


@dataclass(frozen=True)
class RunReport:
    pipelines: tuple[PipelineReport, ...]
    started_at: float
    finished_at: float

    @property
    def succeeded(self) -> bool:
        return all(
            report.state is PipelineState.COMPLETED
            for report in self.pipelines
            if report.required
        )

    def failed(self) -> list[PipelineReport]:
        return [report for report in self.pipelines if report.state is PipelineState.FAILED]

    def for_target(self, name: str) -> Optional[PipelineReport]:
        for report in self.pipelines:
            if report.target == name:
                return report
        return None
