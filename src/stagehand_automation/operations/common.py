from __future__ import annotations

from typing import Any

from .base import ModuleCall, Operation, is_windows
from ..types import Target


class PingOperation(Operation):
    """Readiness probe: succeeds once the management channel answers."""

    name = "ping"

    def build(self, target: Target) -> ModuleCall:
        return ModuleCall("win_ping" if is_windows(target) else "ping")


class RebootOperation(Operation):
    name = "reboot"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        timeout = spec.get("reboot_timeout")
        self.reboot_timeout = int(timeout) if timeout is not None else None

    def build(self, target: Target) -> ModuleCall:
        args: dict[str, Any] = {}
        if self.reboot_timeout is not None:
            args["reboot_timeout"] = self.reboot_timeout
        return ModuleCall("win_reboot" if is_windows(target) else "reboot", args)


class PackageOperation(Operation):
    """Install a package: an installer path on Windows, apt packages elsewhere."""

    name = "install-package"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.path = spec.get("path")
        self.packages = [str(p) for p in self._as_list(spec.get("packages") or spec.get("name"))]
        self.arguments = spec.get("arguments")
        self.product_id = spec.get("product_id")
        if not self.path and not self.packages:
            raise ValueError("install-package requires a path or packages")

    def build(self, target: Target) -> ModuleCall:
        if is_windows(target):
            if not self.path:
                raise ValueError("install-package on Windows requires an installer path")
            args: dict[str, Any] = {"path": str(self.path), "state": "present"}
            if self.arguments:
                args["arguments"] = str(self.arguments)
            if self.product_id:
                args["product_id"] = str(self.product_id)
            return ModuleCall("win_package", args)
        if not self.packages:
            raise ValueError("install-package requires packages on non-Windows targets")
        return ModuleCall(
            "apt",
            {"name": self.packages, "state": "present", "update_cache": bool(self.spec.get("update_cache", True))},
        )


class PipOperation(Operation):
    name = "install-pip"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.packages = [str(p) for p in self._as_list(self._require("name"))]

    def build(self, target: Target) -> ModuleCall:
        if is_windows(target):
            raise self._unsupported(target)
        return ModuleCall("pip", {"name": self.packages, "state": "present"})


class ShellOperation(Operation):
    """Run a shell snippet; ``creates`` keeps it idempotent."""

    name = "shell"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.command = str(self._require("command"))
        self.creates = spec.get("creates")

    def build(self, target: Target) -> ModuleCall:
        args: dict[str, Any] = {"_raw_params": self.command}
        if self.creates:
            args["creates"] = str(self.creates)
        return ModuleCall("win_shell" if is_windows(target) else "shell", args)


class RemoveFileOperation(Operation):
    name = "remove-file"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.path = str(self._require("path"))

    def build(self, target: Target) -> ModuleCall:
        module = "win_file" if is_windows(target) else "file"
        return ModuleCall(module, {"path": self.path, "state": "absent"})
