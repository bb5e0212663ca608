from __future__ import annotations

import ipaddress
from typing import Any

from .base import ModuleCall, Operation, is_windows
from ..types import Target


class WindowsOperation(Operation):
    """Operations that only make sense on a Windows management channel."""

    def build(self, target: Target) -> ModuleCall:
        if not is_windows(target):
            raise self._unsupported(target)
        return self._build()

    def _build(self) -> ModuleCall:
        raise NotImplementedError


class LocalUserOperation(WindowsOperation):
    name = "set-local-password"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.user = str(spec.get("name", "Administrator"))
        self.password = self._require("password")

    def _build(self) -> ModuleCall:
        return ModuleCall(
            "win_user",
            {
                "name": self.user,
                "password": self.password,
                "state": "present",
                "password_never_expires": True,
            },
        )


class FeatureOperation(WindowsOperation):
    name = "install-feature"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.features = [str(f) for f in self._as_list(self._require("name"))]
        self.management_tools = bool(spec.get("include_management_tools", True))

    def _build(self) -> ModuleCall:
        return ModuleCall(
            "win_feature",
            {
                "name": self.features,
                "state": "present",
                "include_management_tools": self.management_tools,
            },
        )


class DomainOperation(WindowsOperation):
    name = "create-domain"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.domain = str(self._require("domain"))
        if "." not in self.domain:
            raise ValueError(f"create-domain requires a DNS domain name, got '{self.domain}'")
        self.safe_mode_password = self._require("safe_mode_password")
        self.netbios_name = spec.get("netbios_name")

    def _build(self) -> ModuleCall:
        args: dict[str, Any] = {
            "dns_domain_name": self.domain,
            "safe_mode_password": self.safe_mode_password,
        }
        if self.netbios_name:
            args["domain_netbios_name"] = str(self.netbios_name)
        return ModuleCall("win_domain", args)


class DomainCheckOperation(WindowsOperation):
    """Query whether Active Directory Web Services answers for the domain."""

    name = "check-domain"

    def _build(self) -> ModuleCall:
        return ModuleCall("win_shell", {"_raw_params": "Get-ADDomain | Out-Null"})


class DomainUserOperation(WindowsOperation):
    name = "create-user"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.username = str(self._require("username"))
        self.password = self._require("password")
        self.groups = [str(g) for g in self._as_list(spec.get("groups", ["Domain Users"]))]
        self.path = spec.get("path")
        self.firstname = spec.get("firstname")
        self.surname = spec.get("surname")

    def _build(self) -> ModuleCall:
        args: dict[str, Any] = {
            "name": self.username,
            "password": self.password,
            "state": "present",
            "groups": self.groups,
            "password_never_expires": True,
            "user_cannot_change_password": False,
        }
        if self.path:
            args["path"] = str(self.path)
        if self.firstname:
            args["firstname"] = str(self.firstname)
        if self.surname:
            args["surname"] = str(self.surname)
        return ModuleCall("win_domain_user", args)


class DnsClientOperation(WindowsOperation):
    name = "set-dns"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.adapters = [str(a) for a in self._as_list(spec.get("adapter_names", "*"))]
        self.servers = [str(s) for s in self._as_list(self._require("servers"))]
        for server in self.servers:
            try:
                ipaddress.IPv4Address(server)
            except ValueError:
                raise ValueError(f"set-dns server '{server}' is not an IPv4 address") from None

    def _build(self) -> ModuleCall:
        return ModuleCall(
            "win_dns_client",
            {"adapter_names": self.adapters, "ipv4_addresses": self.servers},
        )


class DomainMembershipOperation(WindowsOperation):
    name = "join-domain"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.domain = str(self._require("domain"))
        self.admin_user = str(self._require("admin_user"))
        self.admin_password = self._require("admin_password")

    def _build(self) -> ModuleCall:
        return ModuleCall(
            "win_domain_membership",
            {
                "dns_domain_name": self.domain,
                "domain_admin_user": self.admin_user,
                "domain_admin_password": self.admin_password,
                "state": "domain",
            },
        )


class RegistryOperation(WindowsOperation):
    name = "set-registry"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.path = str(self._require("path"))
        self.value_name = str(self._require("name"))
        self.data = self._require("data")
        self.value_type = str(spec.get("type", "string"))

    def _build(self) -> ModuleCall:
        return ModuleCall(
            "win_regedit",
            {"path": self.path, "name": self.value_name, "data": self.data, "type": self.value_type},
        )


class ServiceOperation(WindowsOperation):
    name = "ensure-service"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.service = str(self._require("name"))
        self.state = str(spec.get("state", "started"))
        if self.state not in {"started", "stopped", "restarted"}:
            raise ValueError("ensure-service state must be 'started', 'stopped' or 'restarted'")
        self.start_mode = str(spec.get("start_mode", "auto"))

    def _build(self) -> ModuleCall:
        return ModuleCall(
            "win_service",
            {"name": self.service, "state": self.state, "start_mode": self.start_mode},
        )


class DownloadOperation(WindowsOperation):
    name = "download-file"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.url = str(self._require("url"))
        if not self.url.startswith(("http://", "https://")):
            raise ValueError(f"download-file url must be http(s), got '{self.url}'")
        self.dest = str(self._require("dest"))

    def _build(self) -> ModuleCall:
        return ModuleCall("win_get_url", {"url": self.url, "dest": self.dest})
