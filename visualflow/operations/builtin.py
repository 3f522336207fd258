from __future__ import annotations

import ast
import asyncio
import copy
import math
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import BaseModel, Field

from ..filters import evaluate_filter
from ..interpolation import resolve_expression
from ..paths import set_path
from .base import OperationContext, OperationRegistry, OperationResult, OperationSpec, parse_options

logger = structlog.get_logger(__name__)


class ConditionOptions(BaseModel):
    filter: dict[str, Any] = Field(default_factory=dict, description="Filter rule to evaluate")
    data: Any = Field(None, description="Subject of the rule; the whole data chain when omitted")


async def condition_handler(options: dict[str, Any], context: OperationContext) -> OperationResult:
    parsed = parse_options(ConditionOptions, options)
    subject = context.data_chain if parsed.data is None else parsed.data
    passed = evaluate_filter(parsed.filter, subject)
    if passed:
        return OperationResult.ok({"result": True})
    return OperationResult.fail("Condition not met", data={"result": False})


class TransformOptions(BaseModel):
    template: Any = Field(default_factory=dict, description="Output structure, interpolated before use")
    mappings: dict[str, str] = Field(
        default_factory=dict,
        description="Output path -> data chain path, applied on top of the template",
    )


async def transform_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(TransformOptions, options)
    output = copy.deepcopy(parsed.template)
    if not parsed.mappings:
        return output
    if not isinstance(output, dict):
        raise ValueError("transform.template must be an object when mappings are used")
    for target, source in parsed.mappings.items():
        set_path(output, target, copy.deepcopy(resolve_expression(source, context.data_chain)))
    return output


_SCRIPT_BUILTINS: dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "float": float,
    "int": int,
    "len": len,
    "list": list,
    "max": max,
    "min": min,
    "round": round,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "sqrt": math.sqrt,
}

_FORBIDDEN_NODES = (ast.Lambda, ast.NamedExpr, ast.Await, ast.Yield, ast.YieldFrom)
# Plain data methods only. Generator and frame attributes lead back to real builtins.
_ALLOWED_ATTRIBUTES = frozenset(
    {
        "count",
        "endswith",
        "get",
        "index",
        "items",
        "join",
        "keys",
        "lower",
        "lstrip",
        "replace",
        "rstrip",
        "split",
        "startswith",
        "strip",
        "upper",
        "values",
    }
)


def _check_script(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if isinstance(node, _FORBIDDEN_NODES):
            raise ValueError(f"run_script does not allow {node.__class__.__name__} expressions")
        if isinstance(node, ast.Attribute) and node.attr not in _ALLOWED_ATTRIBUTES:
            raise ValueError(f"run_script cannot access attribute '{node.attr}'")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise ValueError(f"run_script cannot access private name '{node.id}'")


class RunScriptOptions(BaseModel):
    expression: str = Field(..., min_length=1, description="Python expression over trigger/last/env/chain")


async def run_script_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(RunScriptOptions, options)
    try:
        tree = ast.parse(parsed.expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError(f"run_script expression is invalid: {exc.msg}") from exc
    _check_script(tree)

    chain = copy.deepcopy(context.data_chain)
    scope = {
        "trigger": chain.get("$trigger"),
        "last": chain.get("$last"),
        "env": chain.get("$env"),
        "chain": chain,
    }
    code = compile(tree, "<run_script>", "eval")
    result = eval(code, {"__builtins__": _SCRIPT_BUILTINS, **scope})  # noqa: S307
    return {"result": result}


class SleepOptions(BaseModel):
    duration: float = Field(1000, ge=0, description="Milliseconds to wait")


async def sleep_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(SleepOptions, options)
    duration_ms = min(parsed.duration, float(context.settings.max_sleep_ms))
    await asyncio.sleep(duration_ms / 1000)
    return {"slept_ms": duration_ms}


class LogOptions(BaseModel):
    message: Any = ""
    level: str = "info"
    data: Any = None


_LOG_LEVELS = {"debug", "info", "warning", "error"}


async def log_handler(options: dict[str, Any], context: OperationContext) -> Any:
    message = options.get("message", "")
    level = str(options.get("level") or "info").lower()
    if level not in _LOG_LEVELS:
        level = "info"
    data = options.get("data")
    getattr(logger, level)(
        "flow_log",
        message=message,
        data=data,
        execution_id=context.execution_id,
        operation_key=context.operation_key,
    )
    return {"message": message, "level": level, "data": data}


class HttpRequestOptions(BaseModel):
    method: str = "GET"
    url: str = Field(..., min_length=1)
    headers: dict[str, Any] = Field(default_factory=dict)
    query: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: int | None = Field(None, gt=0)


def _check_domain(url: str, allow_domains: list[str]) -> None:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if parsed.scheme not in ("http", "https") or not host:
        raise ValueError(f"Invalid URL: {url}")
    allow = {domain.strip().lower() for domain in allow_domains if domain.strip()}
    if allow and host not in allow:
        raise ValueError(f"Domain blocked. Allowed domains: {sorted(allow)}")


def _response_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            pass
    return response.text


async def http_request_handler(options: dict[str, Any], context: OperationContext) -> OperationResult:
    parsed = parse_options(HttpRequestOptions, options)
    _check_domain(parsed.url, context.settings.http_allow_domains)

    request_kwargs: dict[str, Any] = {
        "headers": {key: str(value) for key, value in parsed.headers.items()},
        "params": parsed.query or None,
        "timeout": (parsed.timeout_ms or context.settings.http_timeout_ms) / 1000,
    }
    if isinstance(parsed.body, (dict, list)):
        request_kwargs["json"] = parsed.body
    elif parsed.body is not None:
        request_kwargs["content"] = str(parsed.body)

    try:
        async with context.http_client_factory() as client:
            response = await client.request(parsed.method.upper(), parsed.url, **request_kwargs)
    except httpx.TimeoutException as exc:
        return OperationResult.fail(f"HTTP request timed out: {exc}")
    except httpx.HTTPError as exc:
        return OperationResult.fail(f"HTTP request failed: {exc}")

    data = {
        "status": response.status_code,
        "headers": dict(response.headers),
        "body": _response_body(response),
    }
    if response.status_code >= 400:
        return OperationResult.fail(f"HTTP {response.status_code}", data=data)
    return OperationResult.ok(data)


def register_core_operations(registry: OperationRegistry) -> None:
    registry.register(
        OperationSpec(
            type_name="condition",
            description="Evaluates a filter rule and branches on the outcome.",
            handler=condition_handler,
            category="logic",
            options_model=ConditionOptions,
            branching=True,
        )
    )
    registry.register(
        OperationSpec(
            type_name="transform",
            description="Reshapes data chain values into a new structure.",
            handler=transform_handler,
            category="data",
            options_model=TransformOptions,
        )
    )
    registry.register(
        OperationSpec(
            type_name="run_script",
            description="Evaluates a restricted expression against the data chain.",
            handler=run_script_handler,
            category="logic",
            options_model=RunScriptOptions,
        )
    )
    registry.register(
        OperationSpec(
            type_name="sleep",
            description="Pauses this execution for a bounded number of milliseconds.",
            handler=sleep_handler,
            category="utility",
            options_model=SleepOptions,
            default_options={"duration": 1000},
        )
    )
    registry.register(
        OperationSpec(
            type_name="log",
            description="Writes a diagnostic log entry.",
            handler=log_handler,
            category="utility",
            options_model=LogOptions,
            default_options={"level": "info"},
        )
    )
    registry.register(
        OperationSpec(
            type_name="http_request",
            description="Calls an HTTP endpoint and returns status, headers and body.",
            handler=http_request_handler,
            category="integration",
            options_model=HttpRequestOptions,
            default_options={"method": "GET", "headers": {}},
        )
    )
