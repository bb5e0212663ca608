from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any

from .types import ActionResult, PipelineReport, RunReport

logger = logging.getLogger(__name__)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize_value(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value


def result_to_dict(result: ActionResult) -> dict[str, Any]:
    return _normalize_value(
        {
            "target": result.target,
            "action": result.action,
            "outcome": result.outcome,
            "details": result.details,
            "reboot_required": result.reboot_required,
            "failure": result.failure,
        }
    )


def pipeline_to_dict(report: PipelineReport) -> dict[str, Any]:
    failure = None
    if report.failure is not None:
        failure = {
            "kind": report.failure.kind,
            "stage": report.failure.stage,
            "action": report.failure.action,
            "diagnostic": report.failure.diagnostic,
        }
    return _normalize_value(
        {
            "role": report.role,
            "target": report.target,
            "state": report.state,
            "required": report.required,
            "failure": failure,
            "completed_stages": list(report.completed_stages),
            "results": [result_to_dict(r) for r in report.results],
        }
    )


def report_to_dict(report: RunReport) -> dict[str, Any]:
    return {
        "succeeded": report.succeeded,
        "started_at": report.started_at,
        "finished_at": report.finished_at,
        "pipelines": [pipeline_to_dict(p) for p in report.pipelines],
    }


def write_report(report: RunReport, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report_to_dict(report), indent=2))
    try:
        os.chmod(path, 0o600)
    except OSError:
        logger.debug("Unable to chmod report file %s", path, exc_info=True)
