from __future__ import annotations

from collections import Counter

from .errors import AuthoringError
from .filters import unknown_operators
from .models import TRIGGER_SOURCE, Flow
from .operations.base import OperationRegistry


def flow_problems(flow: Flow, registry: OperationRegistry) -> list[str]:
    problems: list[str] = []

    key_counts = Counter(op.operation_key for op in flow.operations)
    for key, count in sorted(key_counts.items()):
        if count > 1:
            problems.append(f"Duplicate operation_key '{key}'")

    id_counts = Counter(op.id for op in flow.operations)
    for op_id, count in sorted(id_counts.items()):
        if count > 1:
            problems.append(f"Duplicate operation id '{op_id}'")

    for op in flow.operations:
        if not op.operation_key.strip():
            problems.append(f"Operation '{op.id}' has an empty operation_key")
        elif op.operation_key.startswith("$"):
            problems.append(f"Operation key '{op.operation_key}' is reserved")
        if op.id == TRIGGER_SOURCE:
            problems.append(f"Operation id '{TRIGGER_SOURCE}' is reserved")
        if op.operation_type not in registry:
            problems.append(f"Operation '{op.operation_key}' has unknown type '{op.operation_type}'")
        elif op.operation_type == "condition":
            bad = unknown_operators(op.options.get("filter"))
            if bad:
                problems.append(f"Condition '{op.operation_key}' uses unknown operators: {sorted(bad)}")

    operation_ids = set(id_counts)
    for conn in flow.connections:
        if conn.source_id != TRIGGER_SOURCE and conn.source_id not in operation_ids:
            problems.append(f"Connection '{conn.id}' has unknown source '{conn.source_id}'")
        if conn.target_id not in operation_ids:
            problems.append(f"Connection '{conn.id}' has unknown target '{conn.target_id}'")
        if conn.condition:
            bad = unknown_operators(conn.condition)
            if bad:
                problems.append(f"Connection '{conn.id}' condition uses unknown operators: {sorted(bad)}")

    return problems


def validate_flow(flow: Flow, registry: OperationRegistry) -> Flow:
    """Reject malformed flows at save time."""
    problems = flow_problems(flow, registry)
    if problems:
        raise AuthoringError(problems)
    return flow
