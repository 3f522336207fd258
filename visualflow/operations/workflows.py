from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import BaseModel, Field

from .base import OperationContext, OperationRegistry, OperationResult, OperationSpec, maybe_await, parse_options

logger = structlog.get_logger(__name__)

# Keeps fire-and-forget runs alive until they finish.
_background_runs: set[asyncio.Task[Any]] = set()


def _start_background(coro: Any, **log_context: Any) -> None:
    task = asyncio.ensure_future(coro)
    _background_runs.add(task)

    def _done(finished: asyncio.Task[Any]) -> None:
        _background_runs.discard(finished)
        if not finished.cancelled() and finished.exception() is not None:
            logger.error("background_run_failed", error=str(finished.exception()), **log_context)

    task.add_done_callback(_done)


class TriggerWorkflowOptions(BaseModel):
    workflow_id: str = Field(..., min_length=1)
    input: dict[str, Any] = Field(default_factory=dict)
    wait_for_completion: bool = True


async def trigger_workflow_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(TriggerWorkflowOptions, options)
    if context.workflows is None:
        raise RuntimeError("No workflow runner configured")

    run = context.workflows.run(parsed.workflow_id, input=parsed.input, correlation_id=context.execution_id)
    if not parsed.wait_for_completion:
        _start_background(maybe_await(run), workflow_id=parsed.workflow_id, execution_id=context.execution_id)
        return {"workflow_id": parsed.workflow_id, "started": True}

    outcome = await maybe_await(run)
    if isinstance(outcome, Mapping):
        result, transaction_id = outcome.get("result"), outcome.get("transaction_id")
    else:
        result, transaction_id = outcome, None
    return {"workflow_id": parsed.workflow_id, "result": result, "transaction_id": transaction_id}


class TriggerFlowOptions(BaseModel):
    flow_id: str = Field(..., min_length=1)
    input: Any = Field(default_factory=dict)
    wait_for_completion: bool = True


async def trigger_flow_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(TriggerFlowOptions, options)
    if context.run_flow is None:
        raise RuntimeError("Sub-flow execution is not available")
    if parsed.flow_id == context.flow_id:
        raise ValueError("A flow cannot trigger itself")

    run = context.run_flow(parsed.flow_id, parsed.input, triggered_by=f"flow:{context.flow_id}")
    if not parsed.wait_for_completion:
        _start_background(run, flow_id=parsed.flow_id, execution_id=context.execution_id)
        return {"flow_id": parsed.flow_id, "started": True}

    child = await run
    data = {
        "flow_id": parsed.flow_id,
        "execution_id": child.execution_id,
        "status": child.status.value,
        "data_chain": child.data_chain,
    }
    if child.status.value != "completed":
        return OperationResult.fail(child.error or f"Sub-flow ended {child.status.value}", data=data)
    return data


def register_workflow_operations(registry: OperationRegistry) -> None:
    registry.register(
        OperationSpec(
            type_name="trigger_workflow",
            description="Runs a named workflow through the workflow runner.",
            handler=trigger_workflow_handler,
            category="integration",
            options_model=TriggerWorkflowOptions,
            default_options={"wait_for_completion": True},
        )
    )
    registry.register(
        OperationSpec(
            type_name="trigger_flow",
            description="Executes another stored flow with the given input.",
            handler=trigger_flow_handler,
            category="integration",
            options_model=TriggerFlowOptions,
            default_options={"wait_for_completion": True},
        )
    )
