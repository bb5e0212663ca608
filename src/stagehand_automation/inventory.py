from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .config import PollingConfig
from .recipes import DomainSettings, DomainUser, domain_lab_pipelines
from .types import (
    Action,
    Dependency,
    ReadinessCheck,
    RetryPolicy,
    Role,
    RolePipeline,
    SideEffect,
    Stage,
    Target,
)

ACTION_KEYS = {"action", "label", "side_effect", "critical", "retry"}


@dataclass
class Plan:
    targets: list[Target]
    settings: Optional[DomainSettings] = None
    pipelines: list[RolePipeline] = field(default_factory=list)

    def build_pipelines(self, polling: PollingConfig, *, include_deploy: bool = True) -> list[RolePipeline]:
        """Explicit pipelines win; otherwise the built-in domain lab recipe is used."""
        if self.pipelines:
            if include_deploy:
                return list(self.pipelines)
            return [_without_deploy(p) for p in self.pipelines if p.role is not Role.DEPLOY]
        if self.settings is None:
            raise ValueError("plan declares neither [[pipelines]] nor [settings]")
        has_deploy = any(t.role is Role.DEPLOY for t in self.targets)
        return domain_lab_pipelines(self.settings, polling, include_deploy=include_deploy and has_deploy)


def _without_deploy(pipeline: RolePipeline) -> RolePipeline:
    deps = [dep for dep in pipeline.depends_on if dep.role is not Role.DEPLOY]
    return RolePipeline(role=pipeline.role, stages=pipeline.stages, depends_on=deps, required=pipeline.required)


class InventoryLoader:
    """Loads targets, lab settings and optional pipelines from a TOML plan."""

    def load(self, path: Path) -> Plan:
        path = Path(path)
        try:
            data = tomllib.loads(path.read_text())
        except tomllib.TOMLDecodeError as exc:
            line = getattr(exc, "lineno", None)
            col = getattr(exc, "colno", None)
            where = f"{line}:{col}" if line is not None else "?"
            raise ValueError(f"{path}:{where} {getattr(exc, 'msg', exc)}") from None

        targets = self._parse_targets(_table(data.get("targets", {}), "targets"))
        raw_settings = data.get("settings")
        settings = self._parse_settings(
            _table(raw_settings, "settings") if raw_settings is not None else None, targets
        )
        pipelines = [
            self._parse_pipeline(_table(raw, f"pipelines.{idx}"), f"pipelines.{idx}")
            for idx, raw in enumerate(_as_list(data.get("pipelines")), start=1)
        ]
        return Plan(targets=targets, settings=settings, pipelines=pipelines)

    @staticmethod
    def _parse_targets(raw_targets: dict[str, Any]) -> list[Target]:
        if not raw_targets:
            raise ValueError("plan declares no [targets]")
        targets: list[Target] = []
        for name, payload in raw_targets.items():
            payload = _table(payload, f"targets.{name}")
            role = _role(payload.get("role"), f"targets.{name}")
            variables = payload.get("variables", {})
            if not isinstance(variables, dict):
                raise ValueError(f"targets.{name}.variables must be a table")
            targets.append(
                Target(
                    name=name,
                    role=role,
                    address=payload.get("address"),
                    connection=str(payload.get("connection", "winrm")),
                    credential=payload.get("credential"),
                    variables=dict(variables),
                )
            )
        return targets

    @staticmethod
    def _parse_settings(raw: Optional[dict[str, Any]], targets: list[Target]) -> Optional[DomainSettings]:
        if raw is None:
            return None
        for key in ("domain_name", "netbios_name", "admin_credential"):
            if not raw.get(key):
                raise ValueError(f"settings.{key} is required")
        controller_address = raw.get("controller_address")
        if not controller_address:
            controllers = [t for t in targets if t.role is Role.CONTROLLER and t.address]
            controller_address = controllers[0].address if controllers else None
        users = []
        for idx, user in enumerate(_as_list(raw.get("users")), start=1):
            user = _table(user, f"settings.users.{idx}")
            for key in ("name", "username", "password"):
                if not user.get(key):
                    raise ValueError(f"settings.users.{idx} is missing '{key}'")
            users.append(
                DomainUser(
                    name=str(user["name"]),
                    username=str(user["username"]),
                    password=str(user["password"]),
                    groups=list(user.get("groups", ["Domain Users"])),
                )
            )
        extra = {
            key: raw[key]
            for key in ("admin_user", "browser_url", "browser_path", "deploy_packages", "deploy_pip_packages")
            if key in raw
        }
        return DomainSettings(
            domain_name=str(raw["domain_name"]),
            netbios_name=str(raw["netbios_name"]),
            admin_credential=str(raw["admin_credential"]),
            controller_address=controller_address,
            users=users,
            **extra,
        )

    def _parse_pipeline(self, raw: dict[str, Any], where: str) -> RolePipeline:
        role = _role(raw.get("role"), where)
        depends = []
        for item in _as_list(raw.get("depends_on")):
            dep_role, sep, checkpoint = str(item).partition(":")
            if not sep or not checkpoint:
                raise ValueError(f"{where}.depends_on entries must be 'role:checkpoint', got '{item}'")
            depends.append(Dependency(_role(dep_role, where), checkpoint))
        stages = [
            self._parse_stage(_table(stage, f"{where}.stages.{idx}"), f"{where}.stages.{idx}")
            for idx, stage in enumerate(_as_list(raw.get("stages")), start=1)
        ]
        if not stages:
            raise ValueError(f"{where} declares no stages")
        return RolePipeline(role=role, stages=stages, depends_on=depends, required=bool(raw.get("required", True)))

    def _parse_stage(self, raw: dict[str, Any], where: str) -> Stage:
        name = raw.get("name")
        if not name:
            raise ValueError(f"{where} is missing a name")
        actions = [
            self._parse_action(_table(action, f"{where}.actions.{idx}"), f"{where}.actions.{idx}")
            for idx, action in enumerate(_as_list(raw.get("actions")), start=1)
        ]
        wait = raw.get("wait_until_ready")
        check = None
        if wait is not None:
            wait = _table(wait, f"{where}.wait_until_ready")
            probe = Action(str(wait.get("probe", "ping")), side_effect=SideEffect.QUERY)
            attempts, delay = _budget(wait, f"{where}.wait_until_ready", 10, 30.0)
            check = ReadinessCheck(probe, attempts, delay)
        return Stage(
            name=str(name),
            actions=actions,
            reboot_if_flagged=bool(raw.get("reboot_if_flagged", True)),
            wait_until_ready=check,
        )

    @staticmethod
    def _parse_action(raw: dict[str, Any], where: str) -> Action:
        name = raw.get("action")
        if not name:
            raise ValueError(f"{where} is missing an action")
        side_effect = raw.get("side_effect", "mutating")
        try:
            effect = SideEffect(side_effect)
        except ValueError:
            raise ValueError(f"{where}.side_effect must be 'mutating' or 'query'") from None
        retry = raw.get("retry")
        policy = None
        if retry is not None:
            retry = _table(retry, f"{where}.retry")
            policy = RetryPolicy(*_budget(retry, f"{where}.retry", 5, 30.0))
        critical = raw.get("critical")
        return Action(
            name=str(name),
            params={k: v for k, v in raw.items() if k not in ACTION_KEYS},
            side_effect=effect,
            critical=bool(critical) if critical is not None else None,
            retry=policy,
            label=raw.get("label"),
        )


def _role(value: Any, where: str) -> Role:
    try:
        return Role(str(value))
    except ValueError:
        choices = ", ".join(role.value for role in Role)
        raise ValueError(f"{where}.role must be one of {choices}, got '{value}'") from None


def _table(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"{where} must be a table")
    return value


def _budget(raw: dict[str, Any], where: str, attempts: int, delay: float) -> tuple[int, float]:
    try:
        attempts = int(raw.get("attempts", attempts))
        delay = float(raw.get("delay", delay))
    except (TypeError, ValueError):
        raise ValueError(f"{where}.attempts and .delay must be numbers") from None
    if attempts < 1:
        raise ValueError(f"{where}.attempts must be at least 1")
    if delay < 0:
        raise ValueError(f"{where}.delay must not be negative")
    return attempts, delay


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]
