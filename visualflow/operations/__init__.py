from __future__ import annotations

from .base import OperationContext, OperationRegistry, OperationResult, OperationSpec
from .builtin import register_core_operations
from .data import register_data_operations
from .messaging import register_messaging_operations
from .workflows import register_workflow_operations


def register_builtin_operations(registry: OperationRegistry) -> None:
    register_core_operations(registry)
    register_data_operations(registry)
    register_messaging_operations(registry)
    register_workflow_operations(registry)


def default_registry() -> OperationRegistry:
    registry = OperationRegistry()
    register_builtin_operations(registry)
    return registry


__all__ = [
    "OperationContext",
    "OperationRegistry",
    "OperationResult",
    "OperationSpec",
    "default_registry",
    "register_builtin_operations",
]
