"""Built-in pipelines for a single-forest Windows domain lab.

The controller installs AD DS and DNS, promotes itself to a new forest and
creates the declared users. Members point DNS at the controller, join the
domain, enable auto-logon for the domain administrator and install a browser.
An optional Linux deploy node is bootstrapped with the automation tooling
before any Windows stage starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from .config import PollingConfig
from .types import (
    Action,
    Dependency,
    ReadinessCheck,
    RetryPolicy,
    Role,
    RolePipeline,
    SideEffect,
    Stage,
)

DEPLOY_CHECKPOINT = "bootstrap"
CONTROLLER_CHECKPOINT = "create-users"

WINLOGON_KEY = r"HKLM:\SOFTWARE\Microsoft\Windows NT\CurrentVersion\Winlogon"
DEFAULT_BROWSER_URL = "https://dl.google.com/chrome/install/latest/chrome_installer.exe"
DEFAULT_BROWSER_PATH = "C:\\Windows\\Temp\\chrome_installer.exe"


@dataclass
class DomainUser:
    name: str
    username: str
    password: str
    groups: list[str] = field(default_factory=lambda: ["Domain Users"])


@dataclass
class DomainSettings:
    domain_name: str
    netbios_name: str
    admin_credential: str
    admin_user: str = "Administrator"
    controller_address: Optional[str] = None
    users: list[DomainUser] = field(default_factory=list)
    browser_url: str = DEFAULT_BROWSER_URL
    browser_path: str = DEFAULT_BROWSER_PATH
    deploy_packages: list[str] = field(default_factory=lambda: ["ansible", "python3-pip"])
    deploy_pip_packages: list[str] = field(default_factory=lambda: ["pywinrm"])


def secret(reference: str, key: str = "password") -> dict[str, str]:
    return {"credential": reference, "key": key}


def users_container(domain_name: str) -> str:
    labels = [label for label in domain_name.split(".") if label]
    return ",".join(["CN=Users"] + [f"DC={label}" for label in labels])


def split_name(full_name: str) -> tuple[str, Optional[str]]:
    first, _, rest = full_name.strip().partition(" ")
    return first, rest.strip() or None


def ping_check(attempts: int, delay: float) -> ReadinessCheck:
    return ReadinessCheck(Action("ping", side_effect=SideEffect.QUERY), attempts, delay)


def deploy_pipeline(settings: DomainSettings, polling: PollingConfig) -> RolePipeline:
    add_repo = Action(
        "shell",
        {
            "command": (
                "apt-get update && apt-get install -y software-properties-common && "
                "add-apt-repository --yes --update ppa:ansible/ansible"
            ),
            "creates": "/etc/apt/sources.list.d/ansible-ubuntu-ansible-noble.sources",
        },
        label="add-ansible-ppa",
    )
    return RolePipeline(
        role=Role.DEPLOY,
        stages=[
            Stage(
                "wait-for-connection",
                actions=[],
                wait_until_ready=ping_check(polling.boot_attempts, polling.boot_delay),
            ),
            Stage(
                DEPLOY_CHECKPOINT,
                actions=[
                    add_repo,
                    Action("install-package", {"packages": list(settings.deploy_packages)}),
                    Action("install-pip", {"name": list(settings.deploy_pip_packages)}),
                ],
            ),
        ],
    )


def controller_pipeline(
    settings: DomainSettings,
    polling: PollingConfig,
    *,
    after_deploy: bool = False,
) -> RolePipeline:
    admin_password = secret(settings.admin_credential)
    depends = [Dependency(Role.DEPLOY, DEPLOY_CHECKPOINT)] if after_deploy else []
    return RolePipeline(
        role=Role.CONTROLLER,
        depends_on=depends,
        stages=[
            Stage(
                "wait-for-boot",
                actions=[],
                wait_until_ready=ping_check(polling.boot_attempts, polling.boot_delay),
            ),
            Stage(
                "set-admin-password",
                actions=[
                    Action("set-local-password", {"name": settings.admin_user, "password": admin_password}),
                ],
            ),
            Stage(
                "install-features",
                actions=[
                    Action("install-feature", {"name": "AD-Domain-Services"}, label="install-feature[AD-Domain-Services]"),
                    Action("install-feature", {"name": "DNS"}, label="install-feature[DNS]"),
                ],
            ),
            Stage(
                "create-domain",
                actions=[
                    Action(
                        "create-domain",
                        {
                            "domain": settings.domain_name,
                            "netbios_name": settings.netbios_name,
                            "safe_mode_password": admin_password,
                        },
                    ),
                ],
                wait_until_ready=ping_check(polling.reboot_attempts, polling.reboot_delay),
            ),
            Stage(
                "directory-services",
                actions=[
                    Action(
                        "install-feature",
                        {"name": "RSAT-AD-PowerShell", "include_management_tools": False},
                        label="install-feature[RSAT-AD-PowerShell]",
                    ),
                    Action("ensure-service", {"name": "ADWS", "state": "started", "start_mode": "auto"}),
                    Action(
                        "check-domain",
                        side_effect=SideEffect.QUERY,
                        critical=True,
                        retry=RetryPolicy(polling.retry_attempts, polling.retry_delay),
                    ),
                ],
            ),
            Stage(CONTROLLER_CHECKPOINT, actions=user_actions(settings)),
        ],
    )


def user_actions(settings: DomainSettings) -> list[Action]:
    """One independent ``create-user`` action per declared user."""
    path = users_container(settings.domain_name)
    actions: list[Action] = []
    for user in settings.users:
        firstname, surname = split_name(user.name)
        params: dict[str, Any] = {
            "username": user.username,
            "password": secret(user.password),
            "groups": list(user.groups),
            "path": path,
            "firstname": firstname,
        }
        if surname:
            params["surname"] = surname
        actions.append(Action("create-user", params, label=f"create-user[{user.username}]"))
    return actions


def member_pipeline(settings: DomainSettings, polling: PollingConfig) -> RolePipeline:
    if not settings.controller_address:
        raise ValueError("member pipeline requires the controller address for DNS")
    admin_password = secret(settings.admin_credential)
    autologon = {
        "AutoAdminLogon": "1",
        "DefaultDomainName": settings.netbios_name,
        "DefaultUserName": settings.admin_user,
        "DefaultPassword": admin_password,
    }
    return RolePipeline(
        role=Role.MEMBER,
        depends_on=[Dependency(Role.CONTROLLER, CONTROLLER_CHECKPOINT)],
        stages=[
            Stage(
                "wait-for-boot",
                actions=[],
                wait_until_ready=ping_check(polling.boot_attempts, polling.boot_delay),
            ),
            Stage(
                "configure-dns",
                actions=[Action("set-dns", {"adapter_names": "*", "servers": [settings.controller_address]})],
            ),
            Stage(
                "join-domain",
                actions=[
                    Action(
                        "join-domain",
                        {
                            "domain": settings.domain_name,
                            "admin_user": f"{settings.netbios_name}\\{settings.admin_user}",
                            "admin_password": admin_password,
                        },
                    ),
                ]
                + [
                    Action(
                        "set-registry",
                        {"path": WINLOGON_KEY, "name": key, "data": value, "type": "string"},
                        label=f"set-registry[{key}]",
                    )
                    for key, value in autologon.items()
                ],
            ),
            Stage(
                "install-browser",
                actions=[
                    Action("download-file", {"url": settings.browser_url, "dest": settings.browser_path}),
                    Action(
                        "install-package",
                        {"path": settings.browser_path, "arguments": "/silent /install"},
                    ),
                    Action("remove-file", {"path": settings.browser_path}, critical=False),
                ],
            ),
        ],
    )


def domain_lab_pipelines(
    settings: DomainSettings,
    polling: PollingConfig,
    *,
    include_deploy: bool = True,
) -> list[RolePipeline]:
    pipelines: list[RolePipeline] = []
    if include_deploy:
        pipelines.append(deploy_pipeline(settings, polling))
    pipelines.append(controller_pipeline(settings, polling, after_deploy=include_deploy))
    pipelines.append(member_pipeline(settings, polling))
    return pipelines
