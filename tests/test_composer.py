import threading

import pytest

from stagehand_automation.composer import PipelineComposer, compose
from stagehand_automation.errors import CyclicDependency
from stagehand_automation.registry import TargetRegistry
from stagehand_automation.types import (
    Action,
    Dependency,
    FailureKind,
    PipelineState,
    ReadinessCheck,
    Role,
    RolePipeline,
    SideEffect,
    Stage,
    Target,
    TargetStatus,
)


def feature(name: str) -> Action:
    return Action("install-feature", {"name": name})


def controller_pipeline(**kwargs) -> RolePipeline:
    return RolePipeline(
        Role.CONTROLLER,
        [
            Stage("install-features", [feature("AD-Domain-Services")]),
            Stage("create-users", [feature("RSAT-AD-Tools")]),
        ],
        **kwargs,
    )


def member_pipeline(checkpoint: str = "create-users", **kwargs) -> RolePipeline:
    return RolePipeline(
        Role.MEMBER,
        [
            Stage("configure-dns", [Action("set-dns", {"servers": ["192.168.56.21"]})]),
            Stage("join-domain", [feature("RSAT-DNS-Server")]),
        ],
        depends_on=[Dependency(Role.CONTROLLER, checkpoint)],
        **kwargs,
    )


def lab_registry(*members: str) -> TargetRegistry:
    targets = [Target("dc01", Role.CONTROLLER, address="192.168.56.21")]
    targets.extend(Target(name, Role.MEMBER) for name in members)
    return TargetRegistry(targets)


def test_compose_orders_dependencies_first():
    plan = compose([member_pipeline(), controller_pipeline()])

    assert plan.order == (Role.CONTROLLER, Role.MEMBER)
    assert plan.waits[Role.MEMBER] == (Dependency(Role.CONTROLLER, "create-users"),)


def test_compose_rejects_cycle():
    controller = controller_pipeline(depends_on=[Dependency(Role.MEMBER, "join-domain")])

    with pytest.raises(CyclicDependency) as excinfo:
        compose([controller, member_pipeline()])

    assert "controller" in str(excinfo.value)
    assert "member" in str(excinfo.value)


def test_compose_rejects_undeclared_role():
    with pytest.raises(ValueError, match="undeclared role"):
        compose([member_pipeline()])


def test_compose_rejects_unknown_checkpoint():
    with pytest.raises(ValueError, match="unknown checkpoint"):
        compose([controller_pipeline(), member_pipeline(checkpoint="bake-cake")])


def test_cycle_invokes_nothing(engine_factory, provider):
    registry = lab_registry("member01")
    controller = controller_pipeline(depends_on=[Dependency(Role.MEMBER, "join-domain")])
    composer = PipelineComposer(registry, engine_factory(registry), [controller, member_pipeline()])

    with pytest.raises(CyclicDependency):
        composer.run_all()

    assert provider.calls == []


def test_member_waits_for_controller_checkpoint(engine_factory, provider):
    registry = lab_registry("member01")
    provider.slow["dc01"] = 0.05
    composer = PipelineComposer(
        registry, engine_factory(registry), [member_pipeline(), controller_pipeline()]
    )

    report = composer.run_all()

    assert report.succeeded
    controller = report.for_target("dc01")
    member = report.for_target("member01")
    assert member.entered("configure-dns") >= controller.completed_at("create-users")
    controller_calls = [when for name, _, _, when in provider.calls if name == "dc01"]
    member_calls = [when for name, _, _, when in provider.calls if name == "member01"]
    assert max(controller_calls) <= min(member_calls)


def test_members_run_concurrently(engine_factory, provider):
    registry = lab_registry("member01", "member02")
    provider.slow.update({"member01": 0.2, "member02": 0.2})
    composer = PipelineComposer(
        registry, engine_factory(registry), [controller_pipeline(), member_pipeline()]
    )

    report = composer.run_all()

    first = report.for_target("member01")
    second = report.for_target("member02")
    assert first.entered("configure-dns") < second.completed_at("configure-dns")
    assert second.entered("configure-dns") < first.completed_at("configure-dns")


def test_controller_failure_cascades_without_member_calls(engine_factory, provider):
    registry = lab_registry("member01", "member02")
    provider.queue("dc01", "win_feature", "failed")
    composer = PipelineComposer(
        registry, engine_factory(registry), [controller_pipeline(), member_pipeline()]
    )

    report = composer.run_all()

    assert not report.succeeded
    assert report.for_target("dc01").failure.kind is FailureKind.ACTION_FAILED
    for name in ("member01", "member02"):
        member = report.for_target(name)
        assert member.state is PipelineState.FAILED
        assert member.failure.kind is FailureKind.DEPENDENCY_FAILED
        assert "controller" in member.failure.diagnostic
        assert provider.modules_for(name) == []


def test_failure_after_checkpoint_does_not_cascade(engine_factory, provider):
    registry = lab_registry("member01")
    provider.queue("dc01", "win_feature", "ok", "failed")
    composer = PipelineComposer(
        registry,
        engine_factory(registry),
        [controller_pipeline(), member_pipeline(checkpoint="install-features")],
    )

    report = composer.run_all()

    assert report.for_target("dc01").state is PipelineState.FAILED
    assert report.for_target("member01").state is PipelineState.COMPLETED


def test_cancel_while_pending(engine_factory, provider):
    registry = lab_registry("member01")
    provider.slow["dc01"] = 0.3
    composer = PipelineComposer(
        registry, engine_factory(registry), [controller_pipeline(), member_pipeline()]
    )
    timer = threading.Timer(0.1, composer.cancel)

    timer.start()
    try:
        report = composer.run_all()
    finally:
        timer.cancel()

    assert report.for_target("dc01").failure.kind is FailureKind.CANCELLED
    assert report.for_target("member01").failure.kind is FailureKind.CANCELLED
    assert report.for_target("member01").failure.diagnostic == "run cancelled"
    assert provider.modules_for("dc01") == ["win_feature"]
    assert provider.modules_for("member01") == []


def test_cancel_before_run_invokes_nothing(engine_factory, provider):
    registry = lab_registry("member01")
    composer = PipelineComposer(
        registry, engine_factory(registry), [controller_pipeline(), member_pipeline()]
    )

    composer.cancel()
    report = composer.run_all()

    assert {p.failure.kind for p in report.pipelines} == {FailureKind.CANCELLED}
    assert provider.calls == []


def test_crashed_unit_is_reported_and_cascades(engine_factory, provider):
    registry = lab_registry("member01")
    ping = Action("ping", side_effect=SideEffect.QUERY)
    controller = RolePipeline(
        Role.CONTROLLER, [Stage("boot", [], wait_until_ready=ReadinessCheck(ping, 0, 0))]
    )
    composer = PipelineComposer(
        registry, engine_factory(registry), [controller, member_pipeline(checkpoint="boot")]
    )

    report = composer.run_all()

    crashed = report.for_target("dc01")
    assert crashed.state is PipelineState.FAILED
    assert crashed.failure.kind is FailureKind.ACTION_FAILED
    assert "max_attempts" in crashed.failure.diagnostic
    assert registry.status("dc01") is TargetStatus.FAILED
    assert report.for_target("member01").failure.kind is FailureKind.DEPENDENCY_FAILED
    assert provider.calls == []


def test_role_without_targets_counts_as_reached(engine_factory, provider):
    registry = lab_registry()
    deploy = RolePipeline(Role.DEPLOY, [Stage("bootstrap", [Action("install-pip", {"name": "pywinrm"})])])
    controller = controller_pipeline(depends_on=[Dependency(Role.DEPLOY, "bootstrap")])
    composer = PipelineComposer(registry, engine_factory(registry), [deploy, controller])

    report = composer.run_all()

    assert report.succeeded
    assert [p.target for p in report.pipelines] == ["dc01"]


def test_optional_pipeline_failure_keeps_run_successful(engine_factory, provider):
    registry = lab_registry("member01")
    provider.queue("member01", "win_dns_client", "failed")
    composer = PipelineComposer(
        registry,
        engine_factory(registry),
        [controller_pipeline(), member_pipeline(required=False)],
    )

    report = composer.run_all()

    assert report.succeeded
    assert [p.target for p in report.failed()] == ["member01"]
