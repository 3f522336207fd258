from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ..collaborators import SupportsDelete, SupportsSoftDelete
from .base import OperationContext, OperationRegistry, OperationSpec, maybe_await, parse_options


class CreateDataOptions(BaseModel):
    entity: str = Field(..., min_length=1, description="Module name resolved through the module resolver")
    data: dict[str, Any] = Field(default_factory=dict)


class ReadDataOptions(BaseModel):
    entity: str = Field(..., min_length=1)
    id: str | int | None = None
    filters: dict[str, Any] = Field(default_factory=dict)
    fields: list[str] | None = None
    limit: int | None = Field(None, gt=0)


class UpdateDataOptions(BaseModel):
    entity: str = Field(..., min_length=1)
    id: str | int
    data: dict[str, Any] = Field(default_factory=dict)


class DeleteDataOptions(BaseModel):
    entity: str = Field(..., min_length=1)
    id: str | int


def _resolve_module(context: OperationContext, entity: str) -> Any:
    if context.modules is None:
        raise RuntimeError("No module resolver configured")
    return context.modules.resolve(entity)


def _record_id(value: str | int, entity: str) -> str:
    record_id = str(value).strip()
    if not record_id:
        raise ValueError(f"A record id is required for module '{entity}'")
    return record_id


def _require_method(module: Any, entity: str, method: str) -> Any:
    bound = getattr(module, method, None)
    if not callable(bound):
        raise ValueError(f"Module '{entity}' does not implement '{method}'")
    return bound


async def create_data_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(CreateDataOptions, options)
    module = _resolve_module(context, parsed.entity)
    record = await maybe_await(_require_method(module, parsed.entity, "create")(parsed.data))
    return {"record": record}


async def read_data_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(ReadDataOptions, options)
    module = _resolve_module(context, parsed.entity)
    if parsed.id is not None and parsed.id != "":
        record = await maybe_await(_require_method(module, parsed.entity, "retrieve")(str(parsed.id)))
        records = [] if record is None else [record]
    else:
        found = await maybe_await(
            _require_method(module, parsed.entity, "list")(parsed.filters, parsed.fields, parsed.limit)
        )
        records = list(found or [])
        if parsed.limit is not None:
            records = records[: parsed.limit]
    return {"records": records, "count": len(records)}


async def update_data_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(UpdateDataOptions, options)
    module = _resolve_module(context, parsed.entity)
    record_id = _record_id(parsed.id, parsed.entity)
    record = await maybe_await(_require_method(module, parsed.entity, "update")(record_id, parsed.data))
    return {"record": record}


async def delete_data_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(DeleteDataOptions, options)
    module = _resolve_module(context, parsed.entity)
    record_id = _record_id(parsed.id, parsed.entity)
    if isinstance(module, SupportsSoftDelete):
        await maybe_await(module.soft_delete(record_id))
        return {"id": record_id, "deleted": True, "soft": True}
    if isinstance(module, SupportsDelete):
        await maybe_await(module.delete(record_id))
        return {"id": record_id, "deleted": True, "soft": False}
    raise ValueError(f"Module '{parsed.entity}' implements neither 'soft_delete' nor 'delete'")


def register_data_operations(registry: OperationRegistry) -> None:
    registry.register(
        OperationSpec(
            type_name="create_data",
            description="Creates a record through an external module.",
            handler=create_data_handler,
            category="data",
            options_model=CreateDataOptions,
        )
    )
    registry.register(
        OperationSpec(
            type_name="read_data",
            description="Retrieves one record by id or lists records matching filters.",
            handler=read_data_handler,
            category="data",
            options_model=ReadDataOptions,
            default_options={"filters": {}},
        )
    )
    registry.register(
        OperationSpec(
            type_name="update_data",
            description="Updates a record through an external module.",
            handler=update_data_handler,
            category="data",
            options_model=UpdateDataOptions,
        )
    )
    registry.register(
        OperationSpec(
            type_name="delete_data",
            description="Deletes a record, preferring the module's soft delete.",
            handler=delete_data_handler,
            category="data",
            options_model=DeleteDataOptions,
        )
    )
