from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import Execution, ExecutionLog, ExecutionStatus, Flow, FlowStatus, LogStatus, Operation

_TERMINAL = tuple(status.value for status in ExecutionStatus if status.is_terminal)


def _dump(value: Any) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


def _load(blob: str | None) -> Any:
    return json.loads(blob) if blob else None


class SQLiteStore:
    """Flow definitions plus the execution audit trail.

    Every public method runs in its own transaction, so a log entry or a
    flow with its operations and connections is either fully written or not
    written at all.
    """

    def __init__(self, db_path: str | Path = "data/visualflows.db") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS flows (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    definition TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    flow_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    data_chain TEXT,
                    trigger_data TEXT,
                    triggered_by TEXT,
                    metadata TEXT,
                    error TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS execution_logs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    execution_id TEXT NOT NULL,
                    operation_id TEXT,
                    operation_key TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input_data TEXT,
                    output_data TEXT,
                    error TEXT,
                    error_stack TEXT,
                    duration_ms INTEGER,
                    executed_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_flow ON executions (flow_id, started_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_execution ON execution_logs (execution_id, seq)")

    # Flows

    def create_flow(self, flow: Flow) -> Flow:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO flows (id, name, status, definition, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    flow.id,
                    flow.name,
                    flow.status.value,
                    flow.model_dump_json(),
                    flow.created_at.isoformat(),
                ),
            )
        return flow

    def update_flow(self, flow_id: str, flow: Flow) -> Flow | None:
        updated = flow.model_copy(update={"id": flow_id, "updated_at": datetime.now(timezone.utc)})
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT definition FROM flows WHERE id = ?",
                (flow_id,),
            ).fetchone()
            if not existing:
                return None
            original = Flow.model_validate_json(existing["definition"])
            updated = updated.model_copy(update={"created_at": original.created_at})
            conn.execute(
                "UPDATE flows SET name = ?, status = ?, definition = ? WHERE id = ?",
                (
                    updated.name,
                    updated.status.value,
                    updated.model_dump_json(),
                    flow_id,
                ),
            )
        return updated

    def get_flow(self, flow_id: str) -> Flow | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM flows WHERE id = ?",
                (flow_id,),
            ).fetchone()

        if not row:
            return None
        return Flow.model_validate_json(row["definition"])

    def list_flows(self) -> list[Flow]:
        with self._connect() as conn:
            rows = conn.execute("SELECT definition FROM flows ORDER BY created_at DESC").fetchall()

        return [Flow.model_validate_json(row["definition"]) for row in rows]

    def delete_flow(self, flow_id: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM flows WHERE id = ?", (flow_id,)).rowcount
            conn.execute(
                "DELETE FROM execution_logs WHERE execution_id IN (SELECT id FROM executions WHERE flow_id = ?)",
                (flow_id,),
            )
            conn.execute("DELETE FROM executions WHERE flow_id = ?", (flow_id,))
        return deleted > 0

    def duplicate_flow(self, flow_id: str, name: str | None = None) -> Flow | None:
        original = self.get_flow(flow_id)
        if original is None:
            return None

        id_map: dict[str, str] = {}
        operations: list[Operation] = []
        for op in original.operations:
            new_id = str(uuid.uuid4())
            id_map[op.id] = new_id
            operations.append(op.model_copy(update={"id": new_id}, deep=True))

        connections = [
            conn.model_copy(
                update={
                    "id": str(uuid.uuid4()),
                    "source_id": id_map.get(conn.source_id, conn.source_id),
                    "target_id": id_map.get(conn.target_id, conn.target_id),
                },
                deep=True,
            )
            for conn in original.connections
        ]

        now = datetime.now(timezone.utc)
        duplicate = original.model_copy(
            update={
                "id": str(uuid.uuid4()),
                "name": name or f"{original.name} (Copy)",
                "status": FlowStatus.DRAFT,
                "operations": operations,
                "connections": connections,
                "created_at": now,
                "updated_at": now,
            },
            deep=True,
        )
        return self.create_flow(duplicate)

    # Executions

    def begin_execution(self, execution: Execution) -> Execution:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executions (
                    id, flow_id, status, data_chain, trigger_data, triggered_by,
                    metadata, error, started_at, completed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.flow_id,
                    execution.status.value,
                    _dump(execution.data_chain),
                    _dump(execution.trigger_data),
                    execution.triggered_by,
                    _dump(execution.metadata),
                    None,
                    execution.started_at.isoformat(),
                    None,
                ),
            )
        return execution

    def update_execution(self, execution: Execution) -> bool:
        """Persist status and data chain of a run that is still in progress."""
        with self._connect() as conn:
            changed = conn.execute(
                f"""
                UPDATE executions SET status = ?, data_chain = ?
                WHERE id = ? AND status NOT IN ({", ".join("?" for _ in _TERMINAL)})
                """,
                (execution.status.value, _dump(execution.data_chain), execution.id, *_TERMINAL),
            ).rowcount
        return changed > 0

    def finalize_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        data_chain: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        if not status.is_terminal:
            raise ValueError(f"Cannot finalize an execution as {status.value}")
        completed_at = datetime.now(timezone.utc).isoformat()

        with self._connect() as conn:
            changed = conn.execute(
                f"""
                UPDATE executions
                SET status = ?, data_chain = COALESCE(?, data_chain), error = ?, completed_at = ?
                WHERE id = ? AND status NOT IN ({", ".join("?" for _ in _TERMINAL)})
                """,
                (status.value, _dump(data_chain), error, completed_at, execution_id, *_TERMINAL),
            ).rowcount
        return changed > 0

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM executions WHERE id = ?",
                (execution_id,),
            ).fetchone()

        if not row:
            return None
        return self._execution_from_row(row)

    def list_executions(self, flow_id: str, limit: int = 50, offset: int = 0) -> list[Execution]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM executions WHERE flow_id = ?
                ORDER BY started_at DESC, rowid DESC LIMIT ? OFFSET ?
                """,
                (flow_id, limit, offset),
            ).fetchall()

        return [self._execution_from_row(row) for row in rows]

    def _execution_from_row(self, row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            flow_id=row["flow_id"],
            status=ExecutionStatus(row["status"]),
            data_chain=_load(row["data_chain"]) or {},
            trigger_data=_load(row["trigger_data"]),
            triggered_by=row["triggered_by"],
            metadata=_load(row["metadata"]) or {},
            error=row["error"],
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        )

    # Execution logs

    def append_log(self, entry: ExecutionLog) -> ExecutionLog:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO execution_logs (
                    id, execution_id, operation_id, operation_key, status, input_data,
                    output_data, error, error_stack, duration_ms, executed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.execution_id,
                    entry.operation_id,
                    entry.operation_key,
                    entry.status.value,
                    _dump(entry.input_data),
                    _dump(entry.output_data),
                    entry.error,
                    entry.error_stack,
                    entry.duration_ms,
                    entry.executed_at.isoformat(),
                ),
            )
        return entry

    def finalize_log(self, entry: ExecutionLog) -> bool:
        """Write the outcome of a running entry; finalized entries never change."""
        if entry.status == LogStatus.RUNNING:
            raise ValueError("Cannot finalize a log entry as running")
        with self._connect() as conn:
            changed = conn.execute(
                """
                UPDATE execution_logs
                SET status = ?, output_data = ?, error = ?, error_stack = ?, duration_ms = ?
                WHERE id = ? AND status = ?
                """,
                (
                    entry.status.value,
                    _dump(entry.output_data),
                    entry.error,
                    entry.error_stack,
                    entry.duration_ms,
                    entry.id,
                    LogStatus.RUNNING.value,
                ),
            ).rowcount
        return changed > 0

    def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_logs WHERE execution_id = ? ORDER BY seq",
                (execution_id,),
            ).fetchall()

        return [
            ExecutionLog(
                id=row["id"],
                execution_id=row["execution_id"],
                operation_id=row["operation_id"],
                operation_key=row["operation_key"],
                status=LogStatus(row["status"]),
                input_data=_load(row["input_data"]),
                output_data=_load(row["output_data"]),
                error=row["error"],
                error_stack=row["error_stack"],
                duration_ms=row["duration_ms"],
                executed_at=datetime.fromisoformat(row["executed_at"]),
            )
            for row in rows
        ]
