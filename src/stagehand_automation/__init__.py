"""Stagehand: ordered, idempotent multi-node provisioning."""

from .composer import PipelineComposer
from .inventory import InventoryLoader
from .registry import TargetRegistry
from .workflow import WorkflowEngine

__all__ = ["PipelineComposer", "InventoryLoader", "TargetRegistry", "WorkflowEngine"]
