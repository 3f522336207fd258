"""Contracts for the services operations reach outside the engine.

Commerce modules, notification delivery and sub-workflow orchestration live
elsewhere; the engine only depends on these protocols.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .errors import ModuleNotRegisteredError


@runtime_checkable
class DataModule(Protocol):
    def create(self, data: dict[str, Any]) -> Any: ...

    def retrieve(self, record_id: str) -> Any: ...

    def list(self, filters: dict[str, Any], fields: list[str] | None, limit: int | None) -> Any: ...

    def update(self, record_id: str, data: dict[str, Any]) -> Any: ...


@runtime_checkable
class SupportsSoftDelete(Protocol):
    def soft_delete(self, record_id: str) -> Any: ...


@runtime_checkable
class SupportsDelete(Protocol):
    def delete(self, record_id: str) -> Any: ...


class ModuleResolver(Protocol):
    def resolve(self, name: str) -> Any: ...


class NotificationSender(Protocol):
    def send(self, *, to: str, channel: str, template: str | None, data: dict[str, Any]) -> Any: ...


class WorkflowRunner(Protocol):
    def run(self, workflow_id: str, *, input: dict[str, Any], correlation_id: str) -> Any:
        """Return a mapping with ``result`` and ``transaction_id``."""
        ...


class ModuleRegistry:
    def __init__(self) -> None:
        self._modules: dict[str, Any] = {}

    def register(self, name: str, module: Any) -> None:
        self._modules[name] = module

    def resolve(self, name: str) -> Any:
        if name not in self._modules:
            raise ModuleNotRegisteredError(name)
        return self._modules[name]

    def list_names(self) -> list[str]:
        return sorted(self._modules)

    def describe(self) -> list[dict[str, Any]]:
        """Registered modules with the record operations each one supports."""
        described = []
        for name in self.list_names():
            module = self._modules[name]
            described.append(
                {
                    "name": name,
                    "data_module": isinstance(module, DataModule),
                    "soft_delete": isinstance(module, SupportsSoftDelete),
                    "delete": isinstance(module, SupportsDelete),
                }
            )
        return described
