from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from .actions import ActionExecutor
from .composer import PipelineComposer
from .config import StagehandConfig, load_config
from .credentials import CredentialStore
from .errors import CyclicDependency, DuplicateTarget
from .executors import LocalExecutor
from .inventory import InventoryLoader
from .provider import AnsibleProvider
from .registry import TargetRegistry
from .report import write_report
from .types import ActionResult, Outcome, PipelineReport, PipelineState, RunReport
from .workflow import WorkflowEngine


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stagehand domain provisioning runner")
    parser.add_argument(
        "plan",
        nargs="?",
        default=None,
        type=Path,
        help="Path to a plan file (default from config or /etc/stagehand/plan.toml)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("/etc/stagehand/main.conf"),
        help="Path to stagehand config file (default: /etc/stagehand/main.conf)",
    )
    parser.add_argument("--report-file", type=Path, help="Write the run report as JSON to this path")
    parser.add_argument("--dry-run", action="store_true", help="Run mutating actions in check mode")
    parser.add_argument(
        "--no-deploy",
        action="store_true",
        help="Skip the deploy-bootstrap pipeline",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s - %(message)s",
    )


def build_composer(cfg: StagehandConfig, plan_path: Path, *, dry_run: bool, include_deploy: bool) -> PipelineComposer:
    plan = InventoryLoader().load(plan_path)
    pipelines = plan.build_pipelines(cfg.polling, include_deploy=include_deploy)
    registry = TargetRegistry(plan.targets)
    provider = AnsibleProvider(
        LocalExecutor(dry_run=dry_run),
        ansible_bin=cfg.ansible_bin,
        timeout=cfg.command_timeout,
    )
    executor = ActionExecutor(registry, provider, CredentialStore(), dry_run=dry_run)
    engine = WorkflowEngine(
        executor,
        reboot_attempts=cfg.polling.reboot_attempts,
        reboot_delay=cfg.polling.reboot_delay,
    )
    return PipelineComposer(registry, engine, pipelines)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
    except ValueError as exc:
        print(colorize(f"Config invalid: {exc}", Ansi.RED), file=sys.stderr)
        return 2
    _apply_aws_env(cfg)
    plan_path = args.plan or cfg.plan
    try:
        composer = build_composer(cfg, plan_path, dry_run=args.dry_run, include_deploy=not args.no_deploy)
        composer.plan()
    except (ValueError, OSError, DuplicateTarget, CyclicDependency) as exc:
        print(colorize(f"Plan validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return 2

    previous = _install_interrupt(composer)
    try:
        report = composer.run_all()
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    effective_level = logging.getLogger().getEffectiveLevel()
    for pipeline in report.pipelines:
        for result in pipeline.results:
            if should_display_result(result, effective_level):
                print(format_result(result))

    for line in render_report(report):
        print(line)

    report_path = args.report_file or cfg.report_file
    if report_path:
        write_report(report, report_path)

    return 0 if report.succeeded else 1


def _install_interrupt(composer: PipelineComposer):
    def _handler(signum, frame):  # noqa: ARG001
        logging.warning("Interrupt received; cancelling outstanding pipelines")
        composer.cancel()

    try:
        return signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # not on the main thread
        return None


def format_result(result: ActionResult) -> str:
    status = result.outcome.value
    color: Optional[str]
    if result.outcome is Outcome.FAILED:
        color = Ansi.RED
    elif result.outcome is Outcome.UNREACHABLE:
        color = Ansi.ORANGE
    elif result.outcome is Outcome.CHANGED:
        color = Ansi.GREEN
    else:
        color = Ansi.BLUE
    reboot = " (reboot required)" if result.reboot_required else ""
    line = f"{result.target}::{result.action} {status} - {result.details}{reboot}"
    return colorize(line, color)


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.outcome is not Outcome.UNCHANGED:
        return True
    return log_level <= logging.DEBUG


def format_pipeline(report: PipelineReport) -> str:
    head = f"{report.role.value}/{report.target} {report.state.value}"
    if report.state is PipelineState.COMPLETED:
        return colorize(f"{head} ({len(report.completed_stages)} stages)", Ansi.GREEN)
    failure = report.failure
    if failure is None:
        return colorize(head, Ansi.YELLOW)
    where = "/".join(part for part in (failure.stage, failure.action) if part)
    where = f" at {where}" if where else ""
    optional = "" if report.required else " [optional]"
    return colorize(f"{head}{optional} [{failure.kind.value}]{where}: {failure.diagnostic}", Ansi.RED)


class Summary:
    def __init__(self) -> None:
        self.changes = 0
        self.unchanged = 0
        self.failures = 0
        self.unreachable = 0

    def add(self, result: ActionResult) -> None:
        if result.outcome is Outcome.CHANGED:
            self.changes += 1
        elif result.outcome is Outcome.UNCHANGED:
            self.unchanged += 1
        elif result.outcome is Outcome.UNREACHABLE:
            self.unreachable += 1
        else:
            self.failures += 1

    def render(self, succeeded: bool) -> str:
        parts = [
            f"Changes: {self.changes}",
            f"Unchanged: {self.unchanged}",
            f"Unreachable: {self.unreachable}",
            f"Failures: {self.failures}",
        ]
        text = " | ".join(parts)
        return colorize(text, Ansi.GREEN if succeeded else Ansi.RED)


def render_report(report: RunReport) -> list[str]:
    summary = Summary()
    lines: list[str] = []
    for pipeline in report.pipelines:
        for result in pipeline.results:
            summary.add(result)
        lines.append(format_pipeline(pipeline))
    failed = [p for p in report.failed() if p.required]
    if failed:
        names = ", ".join(f"{p.role.value}/{p.target}" for p in failed)
        lines.append(colorize(f"Failed pipelines: {names}", Ansi.RED))
    lines.append(summary.render(report.succeeded))
    return lines


def _apply_aws_env(cfg: StagehandConfig) -> None:
    """Expose configured AWS defaults to boto3 without overriding the caller's environment."""
    exported = {"AWS_PROFILE": cfg.aws_profile}
    if cfg.aws_region:
        exported.update(AWS_REGION=cfg.aws_region, AWS_DEFAULT_REGION=cfg.aws_region)
    for name, value in exported.items():
        if value:
            os.environ.setdefault(name, value)


if __name__ == "__main__":
    raise SystemExit(main())
