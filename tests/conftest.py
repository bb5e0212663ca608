from __future__ import annotations

import json
import threading
import time

import pytest

from stagehand_automation.actions import ActionExecutor
from stagehand_automation.credentials import CredentialStore
from stagehand_automation.errors import ActionFailed, Unreachable
from stagehand_automation.provider import ActionProvider, ProviderResult
from stagehand_automation.registry import TargetRegistry
from stagehand_automation.workflow import WorkflowEngine

QUERY_MODULES = {"win_ping", "ping"}


class FakeProvider(ActionProvider):
    """Remembers applied module calls so repeats come back unchanged.

    ``script`` queues per (target, module) steps consumed before the default
    behaviour: ``"unreachable"``, ``"failed"``, ``"ok"`` or an exception.
    """

    def __init__(self):
        self.calls: list[tuple[str, str, dict, float]] = []
        self.check_modes: list[bool] = []
        self.applied: set[tuple[str, str, str]] = set()
        self.script: dict[tuple[str, str], list] = {}
        self.reboot_modules: set[str] = set()
        self.slow: dict[str, float] = {}
        self._lock = threading.Lock()

    def queue(self, target: str, module: str, *steps) -> None:
        self.script.setdefault((target, module), []).extend(steps)

    def modules_for(self, target: str) -> list[str]:
        return [module for name, module, _, _ in self.calls if name == target]

    def perform(self, target, call, credentials, *, check_mode=False):
        delay = self.slow.get(target.name)
        if delay:
            time.sleep(delay)
        with self._lock:
            self.calls.append((target.name, call.module, dict(call.args), time.monotonic()))
            self.check_modes.append(check_mode)
            steps = self.script.get((target.name, call.module))
            step = steps.pop(0) if steps else None
        if isinstance(step, Exception):
            raise step
        if step == "unreachable":
            raise Unreachable(f"{target.host} unreachable")
        if step == "failed":
            raise ActionFailed(f"{call.module}: boom")
        if call.module in QUERY_MODULES or step == "ok":
            return ProviderResult(changed=False, diagnostic="ok")
        key = (target.name, call.module, json.dumps(call.args, sort_keys=True))
        with self._lock:
            if key in self.applied:
                return ProviderResult(changed=False, diagnostic="noop")
            self.applied.add(key)
        return ProviderResult(changed=True, reboot_required=call.module in self.reboot_modules)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore(
        environ={
            "ADMIN_USERNAME": "Administrator",
            "ADMIN_PASSWORD": "P@ssw0rd123!",
            "JSMITH_PASSWORD": "User123!",
        }
    )


@pytest.fixture
def engine_factory(provider, store):
    def build(registry: TargetRegistry, **kwargs) -> WorkflowEngine:
        executor = ActionExecutor(registry, provider, store)
        kwargs.setdefault("reboot_attempts", 3)
        kwargs.setdefault("reboot_delay", 0)
        return WorkflowEngine(executor, **kwargs)

    return build
