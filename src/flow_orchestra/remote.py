"""Client for the remote workflow execution service.

The engine submits whole workflows (or single nodes) here first when a
backend is configured, and falls back to local execution on any failure.
"""

from __future__ import annotations
import time
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

import httpx

from .errors import RemoteExecutionError
from .graph import EdgeSpec, NodeSpec
from .logging import get_system_logger

WORKFLOW_EXECUTE_PATH = "/api/workflows/test/execute"
NODE_EXECUTE_PATH = "/api/workflows/nodes/{subtype}/execute"
NODE_TEST_PATH = "/api/workflows/nodes/{subtype}/test"

# Locations the service has used for the per-node results, most specific first
_RESULT_PATHS = (
    ("data", "result", "output", "nodeResults"),
    ("data", "result", "nodeResults"),
    ("data", "output", "nodeResults"),
    ("data", "nodeResults"),
    ("output", "nodeResults"),
    ("nodeResults",),
)


def _dig(data: Any, path: tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(data, dict) or key not in data:
            return None
        data = data[key]
    return data


def extract_node_results(body: Dict[str, Any]) -> Dict[str, Any]:
    """Pull the per-node results map out of a service response.

    Each entry is unwrapped from ``{"result": value}`` when wrapped that way.

    Raises:
        RemoteExecutionError: If no results map is present.
    """
    for path in _RESULT_PATHS:
        node_results = _dig(body, path)
        if isinstance(node_results, dict):
            return {
                node_id: result["result"] if isinstance(result, dict) and "result" in result else result
                for node_id, result in node_results.items()
            }
    raise RemoteExecutionError("Remote response did not contain node results")


class RemoteExecutor:
    """Wrapper around the workflow execution endpoints."""

    def __init__(self, base_url: str, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 headers: Optional[Dict[str, str]] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._system_logger = get_system_logger()

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout,
                                         transport=self._transport) as client:
                response = await client.post(path, json=payload, headers=self._headers)
            latency_ms = int((time.perf_counter() - start) * 1000)
            self._system_logger.debug("remote", f"POST {path} -> {response.status_code} in {latency_ms}ms")
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise RemoteExecutionError(f"Remote call to {path} failed: {e}") from e
        except ValueError as e:
            raise RemoteExecutionError(f"Remote call to {path} returned invalid JSON") from e

        if not isinstance(body, dict):
            raise RemoteExecutionError(f"Remote call to {path} returned a non-object body")
        if body.get("success") is False:
            raise RemoteExecutionError(str(body.get("error") or body.get("message") or f"Remote call to {path} failed"))
        return body

    async def execute_workflow(self, nodes: Iterable[NodeSpec], edges: Iterable[EdgeSpec],
                               initial_input: Any = None) -> Dict[str, Any]:
        """Run a whole workflow remotely and return its results map."""
        node_list = list(nodes)
        payload = {
            "nodes": [n.model_dump(by_alias=True, mode="json") for n in node_list],
            "edges": [e.model_dump(by_alias=True, mode="json") for e in edges],
            "input": {} if initial_input is None else initial_input,
        }
        self._system_logger.info("remote", f"Executing workflow remotely ({len(node_list)} nodes)")
        body = await self._post(WORKFLOW_EXECUTE_PATH, payload)
        return extract_node_results(body)

    async def execute_node(self, node: NodeSpec, payload: Any = None) -> Any:
        """Run one node remotely and return its output."""
        path = NODE_EXECUTE_PATH.format(subtype=quote(node.subtype or node.kind, safe=""))
        body = await self._post(path, {
            "config": node.config,
            "input": {} if payload is None else payload,
            "options": node.options,
        })
        return body.get("data", body)

    async def test_node(self, node: NodeSpec) -> Any:
        path = NODE_TEST_PATH.format(subtype=quote(node.subtype or node.kind, safe=""))
        body = await self._post(path, {"config": node.config})
        return body.get("data", body)
