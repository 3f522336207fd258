from __future__ import annotations

from .engine import FlowExecutionEngine
from .filters import evaluate_filter
from .interpolation import interpolate_deep, interpolate_string
from .models import Connection, Execution, ExecutionLog, ExecutionResult, Flow, Operation
from .operations import OperationRegistry, OperationResult, OperationSpec, default_registry
from .paths import get_path, set_path
from .store import SQLiteStore

__all__ = [
    "Connection",
    "Execution",
    "ExecutionLog",
    "ExecutionResult",
    "Flow",
    "FlowExecutionEngine",
    "Operation",
    "OperationRegistry",
    "OperationResult",
    "OperationSpec",
    "SQLiteStore",
    "default_registry",
    "evaluate_filter",
    "get_path",
    "interpolate_deep",
    "interpolate_string",
    "set_path",
]
