from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..types import Target

WINDOWS_CONNECTIONS = {"winrm", "psrp"}


@dataclass(frozen=True)
class ModuleCall:
    """A single remote module invocation handed to the provider."""

    module: str
    args: dict[str, Any] = field(default_factory=dict)


def is_windows(target: Target) -> bool:
    return target.connection in WINDOWS_CONNECTIONS


class Operation(ABC):
    """Shared surface for catalog actions.

    Constructors validate the parameter set and raise ``ValueError`` when the
    action's precondition is unmet, before anything reaches the target.
    """

    name = "operation"

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec

    @abstractmethod
    def build(self, target: Target) -> ModuleCall:
        """Translate the action into a module call for ``target``."""

    def _require(self, key: str) -> Any:
        value = self.spec.get(key)
        if value is None or value == "" or value == []:
            raise ValueError(f"{self.name} requires '{key}'")
        return value

    def _unsupported(self, target: Target) -> ValueError:
        return ValueError(f"{self.name} is not supported over '{target.connection}' connections")

    @staticmethod
    def _as_list(value: Any) -> list[Any]:
        if value is None:
            return []
        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            return [value]
        return list(value)
