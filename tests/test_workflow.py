import threading
import time

from stagehand_automation.registry import TargetRegistry
from stagehand_automation.types import (
    Action,
    FailureKind,
    PipelineState,
    ReadinessCheck,
    RetryPolicy,
    Role,
    RolePipeline,
    SideEffect,
    Stage,
    Target,
    TargetStatus,
)


def feature(name: str, **kwargs) -> Action:
    return Action("install-feature", {"name": name}, label=f"feature[{name}]", **kwargs)


def five_stage_pipeline() -> RolePipeline:
    return RolePipeline(
        role=Role.CONTROLLER,
        stages=[Stage(f"stage-{i}", [feature(f"F{i}")]) for i in range(1, 6)],
    )


def setup(engine_factory, **kwargs):
    target = Target("dc01", Role.CONTROLLER)
    registry = TargetRegistry([target])
    return target, registry, engine_factory(registry, **kwargs)


def test_pipeline_completes_all_stages(engine_factory, provider):
    target, registry, engine = setup(engine_factory)
    completed: list[str] = []

    report = engine.run(five_stage_pipeline(), target, on_stage_complete=completed.append)

    assert report.state is PipelineState.COMPLETED
    assert report.completed_stages == tuple(f"stage-{i}" for i in range(1, 6))
    assert completed == list(report.completed_stages)
    assert report.failure is None
    assert registry.status("dc01") is TargetStatus.READY
    entries = [when for _, when in report.stage_entries]
    assert entries == sorted(entries)


def test_critical_failure_halts_remaining_stages(engine_factory, provider):
    target, registry, engine = setup(engine_factory)
    provider.queue("dc01", "win_feature", "ok", "failed")

    report = engine.run(five_stage_pipeline(), target)

    assert report.state is PipelineState.FAILED
    assert report.completed_stages == ("stage-1",)
    assert report.failure.kind is FailureKind.ACTION_FAILED
    assert report.failure.stage == "stage-2"
    assert report.failure.action == "feature[F2]"
    assert provider.modules_for("dc01") == ["win_feature", "win_feature"]
    assert report.entered("stage-3") is None
    assert registry.status("dc01") is TargetStatus.FAILED


def test_non_critical_failure_does_not_halt(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    provider.queue("dc01", "win_file", "failed")
    pipeline = RolePipeline(
        role=Role.CONTROLLER,
        stages=[
            Stage("cleanup", [Action("remove-file", {"path": "C:\\tmp\\x.exe"}, critical=False)]),
            Stage("after", [feature("DNS")]),
        ],
    )

    report = engine.run(pipeline, target)

    assert report.state is PipelineState.COMPLETED
    assert report.results[0].ok is False


def test_unreachable_critical_action_reports_unreachable(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    provider.queue("dc01", "win_feature", "unreachable")

    report = engine.run(five_stage_pipeline(), target)

    assert report.failure.kind is FailureKind.UNREACHABLE


def test_reboot_then_wait_when_flagged(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    provider.reboot_modules.add("win_domain")
    provider.queue("dc01", "win_ping", "unreachable", "unreachable")
    pipeline = RolePipeline(
        role=Role.CONTROLLER,
        stages=[
            Stage(
                "create-domain",
                [Action("create-domain", {"domain": "example.local", "safe_mode_password": "x"})],
            ),
            Stage("after", [feature("RSAT-AD-PowerShell")]),
        ],
    )

    report = engine.run(pipeline, target)

    assert report.state is PipelineState.COMPLETED
    assert provider.modules_for("dc01") == [
        "win_domain",
        "win_reboot",
        "win_ping",
        "win_ping",
        "win_ping",
        "win_feature",
    ]


def test_no_reboot_without_flag(engine_factory, provider):
    target, _, engine = setup(engine_factory)

    engine.run(five_stage_pipeline(), target)

    assert "win_reboot" not in provider.modules_for("dc01")


def test_reboot_flag_ignored_when_stage_opts_out(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    provider.reboot_modules.add("win_feature")
    pipeline = RolePipeline(Role.CONTROLLER, [Stage("features", [feature("DNS")], reboot_if_flagged=False)])

    engine.run(pipeline, target)

    assert provider.modules_for("dc01") == ["win_feature"]


def test_reboot_wait_timeout_is_critical(engine_factory, provider):
    target, _, engine = setup(engine_factory, reboot_attempts=2)
    provider.reboot_modules.add("win_feature")
    provider.queue("dc01", "win_ping", "unreachable", "unreachable")

    report = engine.run(five_stage_pipeline(), target)

    assert report.state is PipelineState.FAILED
    assert report.failure.kind is FailureKind.TIMED_OUT
    assert report.failure.stage == "stage-1"
    assert report.completed_stages == ()


def test_wait_until_ready_post_condition(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    provider.queue("dc01", "win_ping", "unreachable")
    probe = Action("ping", side_effect=SideEffect.QUERY)
    pipeline = RolePipeline(
        Role.CONTROLLER,
        [Stage("wait-for-boot", [], wait_until_ready=ReadinessCheck(probe, 3, 0))],
    )

    report = engine.run(pipeline, target)

    assert report.state is PipelineState.COMPLETED
    assert provider.modules_for("dc01") == ["win_ping", "win_ping"]


def test_retry_safe_action_is_polled(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    provider.queue("dc01", "win_shell", "failed", "failed")
    check = Action(
        "check-domain",
        side_effect=SideEffect.QUERY,
        critical=True,
        retry=RetryPolicy(attempts=3, delay=0),
    )

    report = engine.run(RolePipeline(Role.CONTROLLER, [Stage("adws", [check])]), target)

    assert report.state is PipelineState.COMPLETED
    assert provider.modules_for("dc01") == ["win_shell"] * 3


def test_retry_budget_exhausted_times_out(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    provider.queue("dc01", "win_shell", "failed", "failed")
    check = Action("check-domain", side_effect=SideEffect.QUERY, retry=RetryPolicy(attempts=2, delay=0))

    report = engine.run(RolePipeline(Role.CONTROLLER, [Stage("adws", [check])]), target)

    assert report.failure.kind is FailureKind.TIMED_OUT


def test_cancelled_before_first_stage(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    cancel = threading.Event()
    cancel.set()

    report = engine.run(five_stage_pipeline(), target, cancel)

    assert report.state is PipelineState.FAILED
    assert report.failure.kind is FailureKind.CANCELLED
    assert provider.calls == []


def test_fail_without_running_invokes_nothing(engine_factory, provider):
    target, _, engine = setup(engine_factory)

    report = engine.fail_without_running(
        five_stage_pipeline(), target, FailureKind.DEPENDENCY_FAILED, "controller failed"
    )

    assert report.state is PipelineState.FAILED
    assert report.failure.kind is FailureKind.DEPENDENCY_FAILED
    assert report.started_at is None
    assert provider.calls == []


def run_with_cancel_after(engine, pipeline, target, seconds: float):
    cancel = threading.Event()
    timer = threading.Timer(seconds, cancel.set)
    started = time.monotonic()
    timer.start()
    try:
        report = engine.run(pipeline, target, cancel)
    finally:
        timer.cancel()
    return report, time.monotonic() - started


def test_cancel_during_reboot_wait_reports_cancelled(engine_factory, provider):
    target, _, engine = setup(engine_factory, reboot_attempts=50, reboot_delay=1.0)
    provider.reboot_modules.add("win_feature")
    provider.queue("dc01", "win_ping", *(["unreachable"] * 50))

    report, elapsed = run_with_cancel_after(engine, five_stage_pipeline(), target, 0.2)

    assert report.state is PipelineState.FAILED
    assert report.failure.kind is FailureKind.CANCELLED
    assert report.failure.stage == "stage-1"
    assert report.completed_stages == ()
    assert elapsed < 1.0
    assert provider.modules_for("dc01") == ["win_feature", "win_reboot", "win_ping"]


def test_cancel_during_readiness_wait_reports_cancelled(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    provider.queue("dc01", "win_ping", *(["unreachable"] * 50))
    ping = Action("ping", side_effect=SideEffect.QUERY)
    pipeline = RolePipeline(
        Role.CONTROLLER,
        [
            Stage("wait-for-boot", [], wait_until_ready=ReadinessCheck(ping, 50, 1.0)),
            Stage("features", [feature("DNS")]),
        ],
    )

    report, elapsed = run_with_cancel_after(engine, pipeline, target, 0.2)

    assert report.failure.kind is FailureKind.CANCELLED
    assert report.failure.stage == "wait-for-boot"
    assert elapsed < 1.0
    assert "win_feature" not in provider.modules_for("dc01")


def test_cancel_during_retry_poll_reports_cancelled(engine_factory, provider):
    target, _, engine = setup(engine_factory)
    provider.queue("dc01", "win_shell", *(["failed"] * 50))
    check = Action("check-domain", side_effect=SideEffect.QUERY, retry=RetryPolicy(attempts=50, delay=1.0))

    report, elapsed = run_with_cancel_after(
        engine, RolePipeline(Role.CONTROLLER, [Stage("adws", [check])]), target, 0.2
    )

    assert report.failure.kind is FailureKind.CANCELLED
    assert report.failure.kind is not FailureKind.TIMED_OUT
    assert elapsed < 1.0
    assert provider.modules_for("dc01") == ["win_shell"]
