"""Graph traversal engine for visual flows.

A run starts at the synthetic ``trigger`` node and follows one connection at
a time. After every operation the engine picks the next edge from the
operation's outcome:

* ``success`` edges after a success, falling back to ``default`` edges;
* ``failure`` edges after a failure; a branching operation (``condition``)
  falls back to ``default`` edges, any other operation fails the run.

Edges whose ``condition`` rule does not hold against the current data chain
are ignored. When no edge qualifies the graph has drained and the run
completes.
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import structlog

from .collaborators import ModuleResolver, NotificationSender, WorkflowRunner
from .config import EngineSettings
from .errors import EngineFault, FlowNotActiveError, FlowNotFoundError
from .filters import evaluate_filter
from .interpolation import interpolate_deep
from .models import (
    TRIGGER_SOURCE,
    Connection,
    ConnectionType,
    Execution,
    ExecutionLog,
    ExecutionResult,
    ExecutionStatus,
    Flow,
    FlowStatus,
    LogStatus,
    Operation,
)
from .operations.base import OperationContext, OperationRegistry, OperationResult, OperationSpec
from .store import SQLiteStore

logger = structlog.get_logger(__name__)


class _RunOutcome:
    __slots__ = ("status", "error")

    def __init__(self, status: ExecutionStatus, error: str | None = None) -> None:
        self.status = status
        self.error = error


class FlowExecutionEngine:
    def __init__(
        self,
        registry: OperationRegistry,
        store: SQLiteStore,
        *,
        settings: EngineSettings | None = None,
        env: Mapping[str, str] | None = None,
        modules: ModuleResolver | None = None,
        notifier: NotificationSender | None = None,
        workflows: WorkflowRunner | None = None,
        http_client_factory: Callable[[], httpx.AsyncClient] = httpx.AsyncClient,
    ) -> None:
        self.registry = registry
        self.store = store
        self.settings = settings or EngineSettings()
        self.env = dict(env or {})
        self.modules = modules
        self.notifier = notifier
        self.workflows = workflows
        self.http_client_factory = http_client_factory
        self._cancel_events: dict[str, asyncio.Event] = {}

    async def execute(
        self,
        flow_id: str,
        trigger_payload: Any = None,
        *,
        triggered_by: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """Run a stored, active flow."""
        flow = self.store.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        if flow.status != FlowStatus.ACTIVE:
            raise FlowNotActiveError(flow_id, flow.status.value)
        return await self.run(flow, trigger_payload, triggered_by=triggered_by, metadata=metadata)

    def cancel(self, execution_id: str) -> bool:
        event = self._cancel_events.get(execution_id)
        if event is None:
            return False
        event.set()
        return True

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._cancel_events

    async def run(
        self,
        flow: Flow,
        trigger_payload: Any = None,
        *,
        triggered_by: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """Execute ``flow`` to a terminal status.

        Never raises. Cancelling the calling task records the run as
        cancelled and then re-raises ``CancelledError``.
        """
        # Authoring changes made while this run is in flight must not leak in.
        flow = flow.model_copy(deep=True)
        payload = {} if trigger_payload is None else trigger_payload
        execution = Execution(
            flow_id=flow.id,
            trigger_data=payload,
            triggered_by=triggered_by,
            metadata=dict(metadata or {}),
        )
        execution.data_chain = self._seed_chain(flow, payload, triggered_by)
        log = logger.bind(execution_id=execution.id, flow_id=flow.id)

        try:
            await asyncio.to_thread(self.store.begin_execution, execution)
        except Exception as exc:
            log.exception("execution_begin_failed")
            return ExecutionResult(
                execution_id=execution.id,
                status=ExecutionStatus.FAILED,
                data_chain=execution.data_chain,
                error=f"Execution recorder unavailable: {exc}",
            )

        cancel_event = asyncio.Event()
        self._cancel_events[execution.id] = cancel_event
        try:
            outcome = await self._traverse(flow, execution, cancel_event, log)
        except asyncio.CancelledError:
            log.warning("execution_task_cancelled")
            self._finalize(execution, _RunOutcome(ExecutionStatus.CANCELLED, "Execution task cancelled"), log)
            raise
        except EngineFault as exc:
            log.error("engine_fault", error=str(exc))
            outcome = _RunOutcome(ExecutionStatus.FAILED, str(exc))
        except Exception as exc:
            log.exception("engine_fault")
            outcome = _RunOutcome(ExecutionStatus.FAILED, f"Engine fault: {exc}")
        finally:
            self._cancel_events.pop(execution.id, None)

        await asyncio.to_thread(self._finalize, execution, outcome, log)
        log.info("execution_finished", status=outcome.status.value, error=outcome.error)
        return ExecutionResult(
            execution_id=execution.id,
            status=outcome.status,
            data_chain=execution.data_chain,
            error=outcome.error,
        )

    def _finalize(self, execution: Execution, outcome: _RunOutcome, log: Any) -> None:
        execution.status = outcome.status
        execution.error = outcome.error
        execution.completed_at = datetime.now(timezone.utc)
        try:
            self.store.finalize_execution(execution.id, outcome.status, execution.data_chain, outcome.error)
        except Exception:
            log.exception("execution_finalize_failed", status=outcome.status.value)

    def _seed_chain(self, flow: Flow, payload: Any, triggered_by: str | None) -> dict[str, Any]:
        return {
            "$trigger": {
                "payload": payload,
                "event": flow.trigger_config.get("event"),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            "$accountability": {"triggered_by": triggered_by},
            "$env": dict(self.env),
            "$last": None,
        }

    async def _traverse(
        self,
        flow: Flow,
        execution: Execution,
        cancel_event: asyncio.Event,
        log: Any,
    ) -> _RunOutcome:
        execution.status = ExecutionStatus.RUNNING
        await self._persist(execution)
        log.info("execution_started", operations=len(flow.operations), connections=len(flow.connections))

        operations = {op.id: op for op in flow.operations}
        started = time.monotonic()
        source = TRIGGER_SOURCE
        outcome: ConnectionType | None = None
        fall_back_to_default = True
        last_error: str | None = None
        steps = 0

        while True:
            if cancel_event.is_set():
                log.info("execution_cancelled", steps=steps)
                return _RunOutcome(ExecutionStatus.CANCELLED, "Execution cancelled")

            connection = self._next_connection(
                flow.connections, operations, source, outcome, fall_back_to_default, execution.data_chain
            )
            if connection is None:
                if outcome == ConnectionType.FAILURE and not fall_back_to_default:
                    return _RunOutcome(ExecutionStatus.FAILED, last_error or "Operation failed")
                return _RunOutcome(ExecutionStatus.COMPLETED)

            if steps >= self.settings.max_steps:
                return _RunOutcome(
                    ExecutionStatus.FAILED, f"Step limit of {self.settings.max_steps} operations exceeded"
                )
            timeout = self.settings.run_timeout_seconds
            if timeout is not None and time.monotonic() - started > timeout:
                return _RunOutcome(ExecutionStatus.FAILED, f"Run timeout of {timeout}s exceeded")

            operation = operations.get(connection.target_id)
            if operation is None:
                raise EngineFault(f"Connection '{connection.id}' targets unknown operation '{connection.target_id}'")
            try:
                spec = self.registry.get(operation.operation_type)
            except KeyError as exc:
                raise EngineFault(f"Unknown operation type: {operation.operation_type}") from exc

            log.debug(
                "connection_followed",
                connection_id=connection.id,
                connection_type=connection.connection_type.value,
                target=operation.operation_key,
            )
            result = await self._execute_operation(flow, execution, operation, spec, cancel_event, log)
            steps += 1

            source = operation.id
            outcome = ConnectionType.SUCCESS if result.success else ConnectionType.FAILURE
            fall_back_to_default = result.success or spec.branching
            last_error = result.error

    def _next_connection(
        self,
        connections: list[Connection],
        operations: dict[str, Operation],
        source: str,
        outcome: ConnectionType | None,
        fall_back_to_default: bool,
        chain: dict[str, Any],
    ) -> Connection | None:
        outgoing = [
            conn
            for conn in connections
            if conn.source_id == source and (not conn.condition or evaluate_filter(conn.condition, chain))
        ]
        if outcome is None:
            candidates = outgoing
        else:
            candidates = [conn for conn in outgoing if conn.connection_type == outcome]
            if not candidates and fall_back_to_default:
                candidates = [conn for conn in outgoing if conn.connection_type == ConnectionType.DEFAULT]
        if not candidates:
            return None

        def _order(conn: Connection) -> tuple[int, str]:
            target = operations.get(conn.target_id)
            return (target.sort_order if target else 0, conn.id)

        return min(candidates, key=_order)

    async def _execute_operation(
        self,
        flow: Flow,
        execution: Execution,
        operation: Operation,
        spec: OperationSpec,
        cancel_event: asyncio.Event,
        log: Any,
    ) -> OperationResult:
        chain = execution.data_chain
        options = interpolate_deep({**spec.default_options, **operation.options}, chain)
        entry = ExecutionLog(
            execution_id=execution.id,
            operation_id=operation.id,
            operation_key=operation.operation_key,
            status=LogStatus.RUNNING,
            input_data=options,
        )
        await self._record(self.store.append_log, entry)
        depth = int(execution.metadata.get("flow_depth") or 0)

        context = OperationContext(
            data_chain=chain,
            flow_id=flow.id,
            execution_id=execution.id,
            operation_id=operation.id,
            operation_key=operation.operation_key,
            settings=self.settings,
            modules=self.modules,
            notifier=self.notifier,
            workflows=self.workflows,
            run_flow=functools.partial(self._run_sub_flow, depth=depth + 1),
            http_client_factory=self.http_client_factory,
            cancel_event=cancel_event,
        )
        log.info("operation_started", operation_key=operation.operation_key, operation_type=spec.type_name)
        started = time.perf_counter()
        try:
            result = await spec.run(options, context)
        except asyncio.CancelledError:
            entry.status = LogStatus.FAILURE
            entry.error = "Execution cancelled"
            entry.duration_ms = int((time.perf_counter() - started) * 1000)
            try:
                self.store.finalize_log(entry)
            except Exception:
                log.exception("operation_log_finalize_failed", operation_key=operation.operation_key)
            raise
        duration_ms = int((time.perf_counter() - started) * 1000)

        entry.status = LogStatus.SUCCESS if result.success else LogStatus.FAILURE
        entry.output_data = result.data
        entry.error = result.error
        entry.error_stack = result.error_stack
        entry.duration_ms = duration_ms
        await self._record(self.store.finalize_log, entry)

        if result.success:
            value = result.data
        else:
            value = result.data if result.data is not None else {"error": result.error}
        chain[operation.operation_key] = value
        chain["$last"] = value
        await self._persist(execution)

        log.info(
            "operation_finished",
            operation_key=operation.operation_key,
            success=result.success,
            duration_ms=duration_ms,
            error=result.error,
        )
        return result

    async def _run_sub_flow(
        self, flow_id: str, trigger_payload: Any = None, *, triggered_by: str | None = None, depth: int = 1
    ) -> ExecutionResult:
        limit = self.settings.max_flow_depth
        if depth > limit:
            raise ValueError(f"Sub-flow depth limit of {limit} exceeded")
        return await self.execute(
            flow_id, trigger_payload, triggered_by=triggered_by, metadata={"flow_depth": depth}
        )

    async def _persist(self, execution: Execution) -> None:
        await self._record(self.store.update_execution, execution)

    async def _record(self, write: Callable[[Any], Any], value: Any) -> None:
        # sqlite writes run off the event loop so concurrent runs keep moving.
        try:
            await asyncio.to_thread(write, value)
        except Exception as exc:
            raise EngineFault(f"Execution recorder unavailable: {exc}") from exc
