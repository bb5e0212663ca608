from __future__ import annotations

import logging
import threading
from typing import Iterable, Iterator

from .errors import DuplicateTarget, UnknownTarget
from .types import Role, Target, TargetStatus

logger = logging.getLogger(__name__)


class TargetRegistry:
    """Declared targets for one run, in declaration order.

    Each target belongs to exactly one pipeline, so status writes never race
    on the same entry; the lock only keeps single-field updates atomic.
    """

    def __init__(self, targets: Iterable[Target] = ()):
        self._targets: dict[str, Target] = {}
        self._lock = threading.Lock()
        for target in targets:
            self.register(target)

    def register(self, target: Target) -> None:
        with self._lock:
            if target.name in self._targets:
                raise DuplicateTarget(target.name)
            self._targets[target.name] = target

    def get(self, name: str) -> Target:
        try:
            return self._targets[name]
        except KeyError:
            raise UnknownTarget(name) from None

    def by_role(self, role: Role) -> list[Target]:
        return [target for target in self._targets.values() if target.role is role]

    def roles(self) -> set[Role]:
        return {target.role for target in self._targets.values()}

    def status(self, name: str) -> TargetStatus:
        return self.get(name).status

    def update_status(self, name: str, status: TargetStatus) -> None:
        with self._lock:
            target = self._targets.get(name)
            if target is None:
                raise UnknownTarget(name)
            if target.status is not status:
                logger.debug("target=%s status %s->%s", name, target.status.value, status.value)
            target.status = status

    def __iter__(self) -> Iterator[Target]:
        return iter(list(self._targets.values()))

    def __len__(self) -> int:
        return len(self._targets)

    def __contains__(self, name: object) -> bool:
        return name in self._targets
