from __future__ import annotations

import logging
from typing import Optional, Union

from . import operations
from .credentials import CredentialStore, Credentials
from .errors import ActionFailed, CredentialUnavailable, Unreachable
from .operations.base import ModuleCall
from .provider import ActionProvider
from .registry import TargetRegistry
from .types import Action, ActionResult, FailureKind, Outcome, SideEffect, Target, TargetStatus

logger = logging.getLogger(__name__)


class ActionExecutor:
    """Invokes one catalog action against one target.

    Provider errors never escape: every invocation produces exactly one
    :class:`ActionResult`. Target status is only touched once the provider
    has actually been asked to reach the target.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        provider: ActionProvider,
        credentials: Optional[CredentialStore] = None,
        *,
        dry_run: bool = False,
    ):
        self.registry = registry
        self.provider = provider
        self.credentials = credentials or CredentialStore()
        self.dry_run = dry_run

    def invoke(self, target: Target, action: Action) -> ActionResult:
        prepared = self._prepare(target, action)
        if isinstance(prepared, ActionResult):
            result = prepared
        else:
            call, creds = prepared
            result = self._perform(target, action, call, creds)
            if result.outcome is Outcome.UNREACHABLE:
                self.registry.update_status(target.name, TargetStatus.UNREACHABLE)
            else:
                self.registry.update_status(target.name, TargetStatus.READY)
        logger.debug(
            "action=%s target=%s outcome=%s reboot=%s",
            action.display,
            target.name,
            result.outcome.value,
            result.reboot_required,
        )
        return result

    def _prepare(
        self, target: Target, action: Action
    ) -> Union[ActionResult, tuple[ModuleCall, Optional[Credentials]]]:
        operation_cls = operations.OPERATION_REGISTRY.get(action.name)
        if operation_cls is None:
            detail = f"unknown action '{action.name}'"
            logger.warning(detail)
            return self._failed(target, action, detail)

        try:
            params = self.credentials.resolve_params(action.params)
            creds = self._target_credentials(target)
        except CredentialUnavailable as exc:
            logger.error("action=%s target=%s %s", action.display, target.name, exc)
            return self._failed(target, action, str(exc), kind=FailureKind.CREDENTIAL_UNAVAILABLE)

        try:
            call = operation_cls(params).build(target)
        except ValueError as exc:
            return self._failed(target, action, f"precondition: {exc}")
        return call, creds

    def _perform(
        self, target: Target, action: Action, call: ModuleCall, creds: Optional[Credentials]
    ) -> ActionResult:
        check_mode = self.dry_run and action.side_effect is SideEffect.MUTATING
        try:
            outcome = self.provider.perform(target, call, creds, check_mode=check_mode)
        except Unreachable as exc:
            return ActionResult(
                target=target.name,
                action=action.display,
                outcome=Outcome.UNREACHABLE,
                details=str(exc) or "unreachable",
                failure=FailureKind.UNREACHABLE,
            )
        except ActionFailed as exc:
            return self._failed(target, action, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "action=%s target=%s failed: %s", action.display, target.name, exc, exc_info=True
            )
            return self._failed(target, action, str(exc))

        return ActionResult(
            target=target.name,
            action=action.display,
            outcome=Outcome.CHANGED if outcome.changed else Outcome.UNCHANGED,
            details=outcome.diagnostic or ("changed" if outcome.changed else "noop"),
            reboot_required=outcome.reboot_required,
        )

    def _target_credentials(self, target: Target) -> Optional[Credentials]:
        if not target.credential:
            return None
        return self.credentials.resolve(target.credential)

    @staticmethod
    def _failed(
        target: Target,
        action: Action,
        detail: str,
        *,
        kind: FailureKind = FailureKind.ACTION_FAILED,
    ) -> ActionResult:
        return ActionResult(
            target=target.name,
            action=action.display,
            outcome=Outcome.FAILED,
            details=detail,
            failure=kind,
        )
