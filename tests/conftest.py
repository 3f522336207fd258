"""Shared fixtures for visual flow tests."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from visualflow.collaborators import ModuleRegistry
from visualflow.config import EngineSettings
from visualflow.engine import FlowExecutionEngine
from visualflow.models import Connection, ConnectionType, Flow, FlowStatus, Operation
from visualflow.operations import default_registry
from visualflow.operations.base import OperationContext
from visualflow.store import SQLiteStore


def run(coro: Any) -> Any:
    return asyncio.run(coro)


class RecordingModule:
    """In-memory data module with hard delete only."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.deleted: list[str] = []
        self._next = 1

    def create(self, data: dict[str, Any]) -> dict[str, Any]:
        record = {"id": str(self._next), **data}
        self._next += 1
        self.records[record["id"]] = record
        return record

    def retrieve(self, record_id: str) -> dict[str, Any] | None:
        return self.records.get(record_id)

    def list(self, filters: dict[str, Any], fields: list[str] | None, limit: int | None) -> list[dict[str, Any]]:
        found = [
            record
            for record in self.records.values()
            if all(record.get(key) == value for key, value in filters.items())
        ]
        if fields:
            found = [{key: record.get(key) for key in fields} for record in found]
        return found

    def update(self, record_id: str, data: dict[str, Any]) -> dict[str, Any]:
        self.records[record_id].update(data)
        return self.records[record_id]

    def delete(self, record_id: str) -> None:
        self.deleted.append(record_id)
        self.records.pop(record_id, None)


class SoftDeletingModule(RecordingModule):
    def __init__(self) -> None:
        super().__init__()
        self.soft_deleted: list[str] = []

    async def soft_delete(self, record_id: str) -> None:
        self.soft_deleted.append(record_id)


class ReadOnlyModule:
    def retrieve(self, record_id: str) -> dict[str, Any]:
        return {"id": record_id}


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    def send(self, *, to: str, channel: str, template: str | None, data: dict[str, Any]) -> dict[str, Any]:
        if self.fail:
            raise ConnectionError("notification provider unavailable")
        message = {"to": to, "channel": channel, "template": template, "data": data}
        self.sent.append(message)
        return {"id": f"msg_{len(self.sent)}"}


class RecordingWorkflowRunner:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def run(self, workflow_id: str, *, input: dict[str, Any], correlation_id: str) -> dict[str, Any]:
        self.calls.append({"workflow_id": workflow_id, "input": input, "correlation_id": correlation_id})
        return {"result": {"echo": input}, "transaction_id": f"tx_{len(self.calls)}"}


def unreachable_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("All connection attempts failed", request=request)

    return httpx.MockTransport(handler)


def json_transport(status_code: int = 200, payload: Any = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload if payload is not None else {"ok": True})

    return httpx.MockTransport(handler)


def make_flow(
    operations: list[Operation],
    connections: list[tuple[str, str, str] | Connection],
    *,
    status: FlowStatus = FlowStatus.ACTIVE,
    name: str = "test flow",
) -> Flow:
    """Build a flow; connections may be (source, target, type) tuples."""
    built: list[Connection] = []
    for index, item in enumerate(connections):
        if isinstance(item, Connection):
            built.append(item)
            continue
        source, target, kind = item
        built.append(
            Connection(
                id=f"c{index:02d}",
                source_id=source,
                target_id=target,
                connection_type=ConnectionType(kind),
            )
        )
    return Flow(name=name, status=status, operations=operations, connections=built)


def op(key: str, operation_type: str, sort_order: int = 0, **options: Any) -> Operation:
    return Operation(id=key, operation_key=key, operation_type=operation_type, options=options, sort_order=sort_order)


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(tmp_path / "flows.db")


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def modules():
    resolver = ModuleRegistry()
    resolver.register("orders", RecordingModule())
    resolver.register("customers", SoftDeletingModule())
    resolver.register("reports", ReadOnlyModule())
    return resolver


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def workflow_runner():
    return RecordingWorkflowRunner()


@pytest.fixture
def settings():
    return EngineSettings(max_steps=50, max_sleep_ms=50)


@pytest.fixture
def engine(registry, store, settings, modules, notifier, workflow_runner):
    return FlowExecutionEngine(
        registry,
        store,
        settings=settings,
        env={"STORE_CURRENCY": "eur"},
        modules=modules,
        notifier=notifier,
        workflows=workflow_runner,
        http_client_factory=lambda: httpx.AsyncClient(transport=json_transport()),
    )


@pytest.fixture
def make_context(settings, modules, notifier, workflow_runner):
    def _make(chain: dict[str, Any] | None = None, **overrides: Any) -> OperationContext:
        values: dict[str, Any] = {
            "data_chain": chain if chain is not None else {"$trigger": {"payload": {}}, "$last": None},
            "flow_id": "flow-1",
            "execution_id": "exec-1",
            "operation_id": "op-1",
            "operation_key": "step",
            "settings": settings,
            "modules": modules,
            "notifier": notifier,
            "workflows": workflow_runner,
            "http_client_factory": lambda: httpx.AsyncClient(transport=json_transport()),
        }
        values.update(overrides)
        return OperationContext(**values)

    return _make
