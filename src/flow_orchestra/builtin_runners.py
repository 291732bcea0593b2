"""Built-in utility runners.

Integration-specific runners (Slack, Stripe, storage, ...) are registered by
the embedding application. The runners here cover control flow and the
small pure-data utilities every workflow needs.
"""

from __future__ import annotations
import csv
import io
import json
import operator
from typing import Any, Callable, Dict, List, Optional

import httpx

from .errors import ValidationError
from .graph import NodeSpec
from .routing import BRANCH_KEY, FAN_OUT_KEY, ITEMS_KEY
from .runners import PassThroughRunner

_MISSING = object()


def safe_json(raw: Any, fallback: Any) -> Any:
    """Decode JSON strings, pass other values through, fall back on bad JSON."""
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return fallback
    return fallback if raw is None else raw


def get_path(payload: Any, path: Optional[str], default: Any = None) -> Any:
    """Resolve a dotted path (``a.b.0.c``) inside nested dicts and lists."""
    if not path:
        return payload
    current = payload
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except ValueError:
                return default
            if -len(current) <= index < len(current):
                current = current[index]
            else:
                return default
        else:
            return default
    return current


def _contains(container: Any, item: Any) -> bool:
    try:
        return item in container
    except TypeError:
        return False


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "contains": _contains,
    "exists": lambda value, _: value is not _MISSING and value is not None,
}


def _branch_key(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


async def switch_runner(node: NodeSpec, payload: Any) -> Dict[str, Any]:
    """Compute a branch tag for ``switch`` and ``condition`` nodes.

    ``config.field`` selects a value from the input (dotted path). With
    ``config.operator`` the value is compared against ``config.value`` and the
    tag is ``"true"``/``"false"``. Without an operator a ``condition`` node
    tests truthiness and a ``switch`` node uses the value itself as the tag.
    """
    cfg = node.config
    field = cfg.get("field") or node.options.get("selector")
    value = get_path(payload, field, _MISSING)

    op_name = cfg.get("operator")
    if op_name is not None:
        compare = _OPERATORS.get(str(op_name))
        if compare is None:
            raise ValidationError(f"Unknown operator: {op_name}", node_id=node.id)
        try:
            key: Any = compare(value, cfg.get("value")) if value is not _MISSING or op_name == "exists" else False
        except TypeError:
            key = False
    elif node.subtype == "condition":
        key = value is not _MISSING and bool(value)
    else:
        key = "default" if value is _MISSING or value is None else value

    return {BRANCH_KEY: _branch_key(key), "key": None if value is _MISSING else value, "input": payload}


async def split_runner(node: NodeSpec, payload: Any) -> Dict[str, Any]:
    """Fan the list at ``config.field`` (or the input itself) out to every neighbor."""
    items = get_path(payload, node.config.get("field"))
    if items is None:
        items = []
    elif not isinstance(items, list):
        items = list(items) if isinstance(items, tuple) else [items]
    return {FAN_OUT_KEY: True, ITEMS_KEY: items}


class HttpRequestRunner:
    """Plain HTTP call configured by ``url``, ``method``, ``headers`` and ``body``."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._timeout = timeout
        self._transport = transport

    async def execute(self, node: NodeSpec, payload: Any) -> Dict[str, Any]:
        cfg = node.config
        url = cfg.get("url")
        if not url:
            raise ValidationError("http-request node requires a url", node_id=node.id)
        method = str(cfg.get("method") or "GET").upper()
        headers = safe_json(cfg.get("headers"), {})

        request_kwargs: Dict[str, Any] = {"headers": headers}
        if method not in ("GET", "HEAD"):
            body = cfg.get("body")
            if body is None and cfg.get("sendInput"):
                body = payload
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            elif body is not None:
                request_kwargs["content"] = str(body)

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.request(method, url, **request_kwargs)

        content_type = response.headers.get("content-type", "")
        data = response.json() if "application/json" in content_type else response.text
        return {"status": response.status_code, "ok": response.is_success, "data": data}


def _to_csv(value: Any) -> str:
    if isinstance(value, list):
        rows = value
    elif isinstance(value, dict):
        rows = [value]
    else:
        rows = [{"value": value}]
    rows = [r if isinstance(r, dict) else {"value": r} for r in rows]

    headers: List[str] = []
    for row in rows:
        for key in row:
            if key not in headers:
                headers.append(key)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=headers, lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue().rstrip("\n")


def _render(data: Any, fmt: str) -> tuple[str, str]:
    if fmt == "csv":
        return _to_csv(data), "csv"
    if fmt == "txt":
        return (data if isinstance(data, str) else json.dumps(data, default=str)), "txt"
    return json.dumps(data, indent=2, default=str), "json"


async def data_converter_runner(node: NodeSpec, payload: Any) -> Dict[str, Any]:
    """Render the input (or ``config.customData``) as csv, json or txt."""
    cfg = node.config
    fmt = str(cfg.get("outputFormat") or cfg.get("format") or "json").lower()
    data = safe_json(cfg["customData"], cfg["customData"]) if cfg.get("customData") else payload
    if node.subtype == "file-export" and isinstance(data, dict) and "data" in data:
        data = data["data"]

    rendered, ext = _render(data, fmt)
    filename = cfg.get("fileName") or f"export.{ext}"
    return {
        "exports": [{"format": ext, "filename": filename, "data": rendered}],
        "fileName": filename,
        "preview": rendered[:2000],
    }


async def agent_state_runner(node: NodeSpec, payload: Any) -> Dict[str, Any]:
    """Read, write, append or delete ``config.stateKey`` in ``input.state[namespace]``."""
    cfg = node.config
    base = payload if isinstance(payload, dict) else {"input": payload}
    namespace = cfg.get("namespace") or "agent"
    key = cfg.get("stateKey") or ""
    op = cfg.get("operation") or "read"

    state_root = {k: dict(v) if isinstance(v, dict) else v for k, v in (base.get("state") or {}).items()}
    ns = state_root.setdefault(namespace, {})

    if not key:
        return {**base, "state": state_root, "warning": "No stateKey provided"}
    if op == "read":
        return {**base, "state": state_root, "value": ns.get(key)}
    if op == "delete":
        ns.pop(key, None)
        return {**base, "state": state_root, "deleted": True}

    value = safe_json(cfg.get("value"), cfg.get("value"))
    if op == "append":
        current = ns.get(key)
        if isinstance(current, list):
            ns[key] = [*current, value]
        elif isinstance(current, str):
            ns[key] = current + str(value)
        elif isinstance(current, dict) and isinstance(value, dict):
            ns[key] = {**current, **value}
        else:
            ns[key] = [v for v in (current, value) if v is not None]
    elif op == "write":
        current = ns.get(key)
        if node.options.get("mergeStrategy") == "deepMerge" and isinstance(current, dict) and isinstance(value, dict):
            ns[key] = {**current, **value}
        else:
            ns[key] = value
    else:
        raise ValidationError(f"Unknown state operation: {op}", node_id=node.id)
    return {**base, "state": state_root}


def register_builtin_runners(registry: Any) -> None:
    registry.register("switch", switch_runner)
    registry.register("condition", switch_runner)
    registry.register("split", split_runner)
    registry.register("split-items", split_runner)
    http_runner = HttpRequestRunner()
    registry.register("http-request", http_runner)
    registry.register("webhook-call", http_runner)
    registry.register("data-converter", data_converter_runner)
    registry.register("file-export", data_converter_runner)
    registry.register("agent-state", agent_state_runner)
    # Scheduling happens outside the engine; the node only forwards its input
    registry.register("scheduler", PassThroughRunner())
