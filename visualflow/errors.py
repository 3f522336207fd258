from __future__ import annotations


class VisualFlowError(Exception):
    """Base class for errors raised by the visual flows package."""


class AuthoringError(VisualFlowError):
    """A flow definition is malformed and cannot be saved."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Invalid flow definition")


class EngineFault(VisualFlowError):
    """Infrastructure the engine depends on is unavailable or inconsistent."""


class FlowNotFoundError(VisualFlowError):
    def __init__(self, flow_id: str) -> None:
        self.flow_id = flow_id
        super().__init__(f"Flow '{flow_id}' not found")


class FlowNotActiveError(VisualFlowError):
    def __init__(self, flow_id: str, status: str) -> None:
        self.flow_id = flow_id
        self.status = status
        super().__init__(f"Flow '{flow_id}' is not active (status: {status})")


class ModuleNotRegisteredError(VisualFlowError, LookupError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Module '{name}' is not registered")


class FilterError(VisualFlowError, ValueError):
    """Raised by the filter evaluator in strict mode."""
