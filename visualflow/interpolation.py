from __future__ import annotations

import json
import os
import re
from collections.abc import Iterable, Mapping
from typing import Any

from .paths import get_path

PLACEHOLDER = re.compile(r"\{\{\s*(.+?)\s*\}\}")

# Addresses the whole data chain.
CHAIN_ALIAS = "$input"


def resolve_expression(expression: str, chain: Mapping[str, Any]) -> Any:
    expression = expression.strip()
    if expression == CHAIN_ALIAS:
        return chain
    if expression.startswith(CHAIN_ALIAS + ".") or expression.startswith(CHAIN_ALIAS + "["):
        expression = expression[len(CHAIN_ALIAS):].lstrip(".")
    return get_path(chain, expression)


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def interpolate_string(template: str, chain: Mapping[str, Any]) -> str:
    """Replace every ``{{ path }}`` in ``template`` with its resolved text."""
    if "{{" not in template:
        return template
    return PLACEHOLDER.sub(lambda match: stringify(resolve_expression(match.group(1), chain)), template)


def interpolate_deep(value: Any, chain: Mapping[str, Any]) -> Any:
    """Interpolate strings anywhere inside ``value``.

    A string consisting of a single placeholder keeps the native type of the
    resolved value, so ``"{{ $last.count }}"`` yields an int rather than text.
    """
    if isinstance(value, str):
        exact = PLACEHOLDER.fullmatch(value)
        if exact and "{{" not in exact.group(1):
            return resolve_expression(exact.group(1), chain)
        return interpolate_string(value, chain)
    if isinstance(value, list):
        return [interpolate_deep(item, chain) for item in value]
    if isinstance(value, dict):
        return {key: interpolate_deep(item, chain) for key, item in value.items()}
    return value


def allowed_env_vars(allow_list: Iterable[str], environ: Mapping[str, str] | None = None) -> dict[str, str]:
    source = os.environ if environ is None else environ
    return {name: source[name] for name in allow_list if name in source}
