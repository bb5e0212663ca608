from __future__ import annotations

from typing import Iterable


class StagehandError(Exception):
    """Base class for errors raised by the provisioning engine."""


class DuplicateTarget(StagehandError):
    def __init__(self, name: str):
        super().__init__(f"Target '{name}' is already registered")
        self.name = name


class UnknownTarget(StagehandError, KeyError):
    def __init__(self, name: str):
        super().__init__(f"Target '{name}' is not registered")
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class CredentialUnavailable(StagehandError):
    def __init__(self, reference: str, reason: str):
        super().__init__(f"credential '{reference}' unavailable: {reason}")
        self.reference = reference
        self.reason = reason


class CyclicDependency(StagehandError):
    def __init__(self, roles: Iterable[str]):
        self.roles = sorted(roles)
        super().__init__(f"Cyclic dependency between roles: {', '.join(self.roles)}")


class Unreachable(StagehandError):
    """The target could not be contacted; retryable by the readiness poller."""


class ActionFailed(StagehandError):
    """The remote operation ran and reported an error."""
