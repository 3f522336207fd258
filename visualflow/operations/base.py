from __future__ import annotations

import asyncio
import inspect
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ValidationError

from ..collaborators import ModuleResolver, NotificationSender, WorkflowRunner
from ..config import EngineSettings


@dataclass(slots=True)
class OperationResult:
    success: bool
    data: Any = None
    error: str | None = None
    error_stack: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: Any = None, error_stack: str | None = None) -> OperationResult:
        return cls(success=False, data=data, error=error, error_stack=error_stack)


SubFlowRunner = Callable[..., Awaitable[Any]]


@dataclass(slots=True)
class OperationContext:
    data_chain: dict[str, Any]
    flow_id: str
    execution_id: str
    operation_id: str
    operation_key: str
    settings: EngineSettings = field(default_factory=EngineSettings)
    modules: ModuleResolver | None = None
    notifier: NotificationSender | None = None
    workflows: WorkflowRunner | None = None
    run_flow: SubFlowRunner | None = None
    http_client_factory: Callable[[], httpx.AsyncClient] = httpx.AsyncClient
    cancel_event: asyncio.Event | None = None


OperationHandler = Callable[[dict[str, Any], OperationContext], Awaitable[Any]]


@dataclass(slots=True)
class OperationSpec:
    type_name: str
    description: str
    handler: OperationHandler
    category: str = "general"
    options_model: type[BaseModel] | None = None
    default_options: dict[str, Any] = field(default_factory=dict)
    # A failed outcome is a branch decision rather than a fault.
    branching: bool = False

    async def run(self, options: dict[str, Any], context: OperationContext) -> OperationResult:
        try:
            outcome = self.handler(options, context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return OperationResult.fail(str(exc) or exc.__class__.__name__, error_stack=traceback.format_exc())
        if isinstance(outcome, OperationResult):
            return outcome
        return OperationResult.ok(outcome)

    def describe(self) -> dict[str, Any]:
        return {
            "type": self.type_name,
            "description": self.description,
            "category": self.category,
            "branching": self.branching,
            "default_options": dict(self.default_options),
            "options_schema": self.options_model.model_json_schema() if self.options_model else None,
        }


def parse_options(model: type[BaseModel], options: dict[str, Any]) -> Any:
    """Validate interpolated options; raises ``ValueError`` with a readable message."""
    try:
        return model.model_validate(options)
    except ValidationError as exc:
        problems = ", ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'options'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValueError(f"Invalid options: {problems}") from exc


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class OperationRegistry:
    def __init__(self) -> None:
        self._operations: dict[str, OperationSpec] = {}

    def register(self, spec: OperationSpec) -> None:
        self._operations[spec.type_name] = spec

    def get(self, type_name: str) -> OperationSpec:
        if type_name not in self._operations:
            raise KeyError(f"Unknown operation type: {type_name}")
        return self._operations[type_name]

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._operations

    def list_types(self) -> list[str]:
        return sorted(self._operations)

    def list_specs(self) -> list[dict[str, Any]]:
        return [self._operations[key].describe() for key in sorted(self._operations)]
