from __future__ import annotations

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Executor(ABC):
    """Runs control-node commands on behalf of a remote provider.

    ``mutable`` marks commands that change something when run; those are
    skipped on a dry-run. Providers that have their own check mode pass
    ``mutable=False`` and let the remote tooling decide.
    """

    def __init__(self, *, dry_run: bool = False):
        self.dry_run = dry_run

    @abstractmethod
    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` to completion and capture its output."""


class LocalExecutor(Executor):
    """Spawns processes on the control node itself."""

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        argv = [str(part) for part in command]
        if not argv:
            raise ValueError("empty command")
        if self.dry_run and mutable:
            logger.info("dry-run skip=%s", argv[0])
            return CommandResult(argv, "", "skipped (dry-run)", 0)

        # only the program name is logged; arguments may carry module parameters
        logger.debug("exec=%s timeout=%s", argv[0], timeout)
        proc = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            env=_merged_env(env),
            cwd=os.fspath(cwd) if cwd is not None else None,
            timeout=timeout,
        )
        result = CommandResult(argv, proc.stdout, proc.stderr, proc.returncode)
        if check and not result.ok:
            raise subprocess.CalledProcessError(result.returncode, argv, result.stdout, result.stderr)
        return result


def _merged_env(extra: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
    if not extra:
        return None
    return {**os.environ, **extra}
