from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

TRIGGER_SOURCE = "trigger"


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FlowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class TriggerType(str, Enum):
    MANUAL = "manual"
    EVENT = "event"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    ANOTHER_FLOW = "another_flow"


class ConnectionType(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DEFAULT = "default"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class LogStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class Operation(BaseModel):
    id: str = Field(default_factory=_new_id)
    operation_key: str
    operation_type: str
    name: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)
    sort_order: int = 0
    position_x: float = 0
    position_y: float = 0


class Connection(BaseModel):
    id: str = Field(default_factory=_new_id)
    source_id: str
    target_id: str
    connection_type: ConnectionType = ConnectionType.DEFAULT
    condition: dict[str, Any] | None = None
    label: str | None = None
    style: dict[str, Any] | None = None


class Flow(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str | None = None
    status: FlowStatus = FlowStatus.DRAFT
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    canvas_state: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    operations: list[Operation] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Execution(BaseModel):
    id: str = Field(default_factory=_new_id)
    flow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    data_chain: dict[str, Any] = Field(default_factory=dict)
    trigger_data: Any = None
    triggered_by: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None


class ExecutionLog(BaseModel):
    id: str = Field(default_factory=_new_id)
    execution_id: str
    operation_id: str | None = None
    operation_key: str
    status: LogStatus = LogStatus.RUNNING
    input_data: Any = None
    output_data: Any = None
    error: str | None = None
    error_stack: str | None = None
    duration_ms: int | None = None
    executed_at: datetime = Field(default_factory=_now)


class RunRequest(BaseModel):
    trigger_payload: Any = Field(default_factory=dict)
    triggered_by: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DuplicateRequest(BaseModel):
    name: str | None = None


class ExecutionResult(BaseModel):
    execution_id: str
    status: ExecutionStatus
    data_chain: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
