from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .credentials import Credentials
from .errors import ActionFailed, Unreachable
from .executors import CommandResult, Executor
from .operations.base import ModuleCall
from .types import Target

logger = logging.getLogger(__name__)

CONNECTION_PLUGINS = {
    "winrm": "winrm",
    "psrp": "psrp",
    "incus": "community.general.incus",
    "ssh": "ssh",
    "local": "local",
}

ANSIBLE_ENV = {
    "ANSIBLE_STDOUT_CALLBACK": "json",
    "ANSIBLE_LOAD_CALLBACK_PLUGINS": "1",
    "ANSIBLE_HOST_KEY_CHECKING": "False",
    "ANSIBLE_RETRY_FILES_ENABLED": "False",
}

# ansible exits with 4 when at least one host was unreachable
UNREACHABLE_RC = 4


@dataclass
class ProviderResult:
    changed: bool
    reboot_required: bool = False
    diagnostic: str = ""


class ActionProvider(ABC):
    """Executes a module call against a target out of process."""

    @abstractmethod
    def perform(
        self,
        target: Target,
        call: ModuleCall,
        credentials: Optional[Credentials],
        *,
        check_mode: bool = False,
    ) -> ProviderResult:
        """Run ``call`` on ``target``.

        Raises :class:`Unreachable` when the target cannot be contacted and
        :class:`ActionFailed` when the module reports an error.
        """


class AnsibleProvider(ActionProvider):
    """Runs catalog modules through the ``ansible`` ad-hoc command.

    Connection details and credentials go into a private vars file passed with
    ``-e @file`` so secrets never appear on the command line.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        ansible_bin: str = "ansible",
        timeout: Optional[float] = None,
    ):
        self.executor = executor
        self.ansible_bin = ansible_bin
        self.timeout = timeout

    def perform(
        self,
        target: Target,
        call: ModuleCall,
        credentials: Optional[Credentials],
        *,
        check_mode: bool = False,
    ) -> ProviderResult:
        vars_file = self._write_vars(self.connection_vars(target, credentials))
        try:
            command = self.build_command(target, call, vars_file, check_mode=check_mode)
            logger.debug("module=%s target=%s check=%s", call.module, target.name, check_mode)
            try:
                result = self.executor.run(
                    command,
                    check=False,
                    mutable=False,
                    env=ANSIBLE_ENV,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired:
                raise Unreachable(f"{call.module} timed out after {self.timeout}s") from None
            except FileNotFoundError:
                raise ActionFailed(f"{self.ansible_bin} not found on PATH") from None
        finally:
            vars_file.unlink(missing_ok=True)
        return self.parse_result(target, call, result)

    def build_command(
        self, target: Target, call: ModuleCall, vars_file: Path, *, check_mode: bool = False
    ) -> list[str]:
        command = [
            self.ansible_bin,
            "all",
            "-i",
            f"{target.host},",
            "-m",
            call.module,
        ]
        if call.args:
            command.extend(["-a", json.dumps(call.args)])
        command.extend(["-e", f"@{vars_file}"])
        if check_mode:
            command.append("--check")
        return command

    @staticmethod
    def connection_vars(target: Target, credentials: Optional[Credentials]) -> dict[str, Any]:
        plugin = CONNECTION_PLUGINS.get(target.connection)
        if plugin is None:
            raise ActionFailed(f"Unknown connection type '{target.connection}'")
        data: dict[str, Any] = {"ansible_connection": plugin}
        if target.connection == "winrm":
            data["ansible_winrm_transport"] = "ntlm"
            data["ansible_winrm_server_cert_validation"] = "ignore"
        data.update(target.variables)
        if credentials is not None:
            data["ansible_user"] = credentials.username
            data["ansible_password"] = credentials.password
        return data

    @staticmethod
    def _write_vars(data: dict[str, Any]) -> Path:
        fd, name = tempfile.mkstemp(prefix="stagehand-vars-", suffix=".json")
        path = Path(name)
        try:
            os.chmod(path, 0o600)
            with os.fdopen(fd, "w") as handle:
                json.dump(data, handle)
        except Exception:
            path.unlink(missing_ok=True)
            raise
        return path

    def parse_result(self, target: Target, call: ModuleCall, result: CommandResult) -> ProviderResult:
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError:
            detail = _summarize_output(result) or f"rc={result.returncode}"
            if result.returncode == UNREACHABLE_RC:
                raise Unreachable(detail) from None
            if result.returncode != 0:
                raise ActionFailed(f"{call.module}: {detail}") from None
            raise ActionFailed(f"{call.module}: unparseable ansible output") from None

        host_result = _find_host_result(payload, target.host)
        if host_result is None:
            stats = payload.get("stats", {}).get(target.host, {})
            if stats.get("unreachable") or result.returncode == UNREACHABLE_RC:
                raise Unreachable(f"{target.host} unreachable")
            raise ActionFailed(f"{call.module}: no result reported for {target.host}")

        message = _message(host_result)
        if host_result.get("unreachable"):
            raise Unreachable(message or f"{target.host} unreachable")
        if host_result.get("failed"):
            raise ActionFailed(f"{call.module}: {message or 'failed'}")
        return ProviderResult(
            changed=bool(host_result.get("changed", False)),
            reboot_required=bool(host_result.get("reboot_required", False)),
            diagnostic=message or ("changed" if host_result.get("changed") else "ok"),
        )


def _find_host_result(payload: dict[str, Any], host: str) -> Optional[dict[str, Any]]:
    for play in payload.get("plays", []):
        for task in play.get("tasks", []):
            hosts = task.get("hosts", {})
            if host in hosts:
                return hosts[host]
    return None


def _message(host_result: dict[str, Any]) -> str:
    for key in ("msg", "stderr", "stdout"):
        value = host_result.get(key)
        if not value:
            continue
        text = str(value).strip()
        if not text:
            continue
        line = text.splitlines()[0]
        return (line[:157] + "...") if len(line) > 160 else line
    return ""


def _summarize_output(result: CommandResult) -> Optional[str]:
    for text in (result.stderr, result.stdout):
        if not text:
            continue
        stripped = text.strip()
        if not stripped:
            continue
        line = stripped.splitlines()[0]
        return (line[:157] + "...") if len(line) > 160 else line
    return None
