from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]


DEFAULT_PLAN = Path("/etc/stagehand/plan.toml")


@dataclass
class PollingConfig:
    """Attempt budgets for readiness gating.

    ``reboot_*`` bounds the wait after a reboot, ``boot_*`` the wait for a
    freshly launched machine to answer at all.
    """

    reboot_attempts: int = 10
    reboot_delay: float = 30.0
    boot_attempts: int = 90
    boot_delay: float = 20.0
    retry_attempts: int = 5
    retry_delay: float = 30.0


@dataclass
class StagehandConfig:
    plan: Path = DEFAULT_PLAN
    report_file: Optional[Path] = None
    ansible_bin: str = "ansible"
    command_timeout: Optional[float] = None
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    polling: PollingConfig = field(default_factory=PollingConfig)


def load_config(path: Path) -> StagehandConfig:
    if not path.exists():
        return StagehandConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"{path}: {exc}") from None
    defaults = data.get("defaults", {})
    plan = Path(defaults.get("plan", DEFAULT_PLAN))
    report_file = defaults.get("report_file")
    ansible_bin = defaults.get("ansible_bin", "ansible")
    command_timeout = defaults.get("command_timeout")
    aws_region = defaults.get("aws_region")
    aws_profile = defaults.get("aws_profile")
    return StagehandConfig(
        plan=Path(plan),
        report_file=Path(report_file) if report_file else None,
        ansible_bin=str(ansible_bin),
        command_timeout=float(command_timeout) if command_timeout is not None else None,
        aws_region=str(aws_region) if aws_region else None,
        aws_profile=str(aws_profile) if aws_profile else None,
        polling=_load_polling(data.get("polling", {})),
    )


def _load_polling(raw: dict[str, Any]) -> PollingConfig:
    base = PollingConfig()
    values: dict[str, Any] = {}
    for name in ("reboot_attempts", "boot_attempts", "retry_attempts"):
        if name in raw:
            values[name] = int(raw[name])
            if values[name] < 1:
                raise ValueError(f"polling.{name} must be at least 1")
    for name in ("reboot_delay", "boot_delay", "retry_delay"):
        if name in raw:
            values[name] = float(raw[name])
            if values[name] < 0:
                raise ValueError(f"polling.{name} must not be negative")
    return PollingConfig(**{**base.__dict__, **values})
