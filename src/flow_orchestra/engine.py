"""
Graph execution engine for flow-orchestra.

Walks the node/edge graph with a FIFO work queue: start nodes are seeded with
the initial input, each dequeued work item is run through the retry wrapper,
and its output is propagated by fan-out, branch routing, join accumulation or
plain fan-to-all. Runs are single-threaded; one work item is fully processed
before the next is dequeued.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, Iterable, Mapping, Optional

from .config import EngineSettings, RunOptions, load_settings
from .context import RunContext
from .errors import RemoteExecutionError, ValidationError
from .events import EventEmitter, EventType, JSONLSink
from .graph import EdgeSpec, NodeSpec, WorkGraph, build_graph, coerce_edges, coerce_node, coerce_nodes
from .logging import get_system_logger
from .remote import RemoteExecutor
from .retry import NodeInvoker, error_payload, validate_node
from .routing import ITEMS_KEY, branch_tag, expand_fan_out, is_fan_out, route_branch
from .runners import RunnerRegistry, default_registry

logger = logging.getLogger(__name__)

NodesArg = Iterable[NodeSpec | Mapping[str, Any]]
EdgesArg = Optional[Iterable[EdgeSpec | Mapping[str, Any]]]


def _preview(value: Any, limit: int = 200) -> str:
    text = repr(value)
    return text if len(text) <= limit else text[:limit] + "..."


class WorkflowEngine:
    def __init__(self, registry: Optional[RunnerRegistry] = None, emitter: Optional[EventEmitter] = None,
                 remote: Optional[RemoteExecutor] = None, settings: Optional[EngineSettings] = None):
        self._settings = settings or load_settings()
        self._registry = registry if registry is not None else default_registry()
        self._emitter = emitter if emitter is not None else EventEmitter()
        if self._settings.events_path:
            self._emitter.add_sink(JSONLSink(self._settings.events_path))
        if remote is None and self._settings.backend_url:
            remote = RemoteExecutor(self._settings.backend_url, timeout=self._settings.backend_timeout)
        self._remote = remote
        self._system_logger = get_system_logger()
        self._system_logger.info("engine", "WorkflowEngine initialized",
                                 runners=len(self._registry.subtypes()), remote=bool(self._remote))

    @property
    def registry(self) -> RunnerRegistry:
        return self._registry

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    async def close(self) -> None:
        await self._emitter.close()

    async def _emit(self, ctx: RunContext, event_type: EventType, node_id: Optional[str] = None,
                    data: Optional[Dict[str, Any]] = None) -> None:
        """Record an event in the run trace and forward it to the sinks."""
        event = ctx.record_event(event_type, node_id, data)
        await self._emitter.emit(event)

    async def run(self, nodes: NodesArg, edges: EdgesArg = None,
                  options: RunOptions | Dict[str, Any] | None = None, **overrides: Any) -> Dict[str, Any]:
        """Run a workflow and return its results map (node id -> output)."""
        ctx = await self.execute(nodes, edges, options, **overrides)
        return ctx.results

    async def execute(self, nodes: NodesArg, edges: EdgesArg = None,
                      options: RunOptions | Dict[str, Any] | None = None, **overrides: Any) -> RunContext:
        """Run a workflow and return the full run context (results, trace, counts).

        Raises:
            ValidationError: If the graph itself is invalid (duplicate ids,
                dangling edges, or cycles when cycles are not allowed).
        """
        opts = RunOptions.coerce(options, **overrides)
        node_list = coerce_nodes(nodes)
        edge_list = coerce_edges(edges)
        graph = build_graph(node_list, edge_list)
        if not opts.allow_cycles:
            graph.validate_dag()

        ctx = RunContext(graph=graph, join_mode=opts.join_threshold)
        if opts.workflow_id:
            ctx.run_id = f"{opts.workflow_id}:{ctx.run_id}"

        if self._remote is not None and opts.use_remote:
            await self._emit(ctx, EventType.REMOTE_START, data={"nodes": len(node_list), "base_url": self._remote.base_url})
            try:
                ctx.results = await self._remote.execute_workflow(node_list, edge_list, opts.initial_input)
            except RemoteExecutionError as e:
                self._system_logger.warning("engine", f"Remote execution failed, falling back to local: {e}")
                await self._emit(ctx, EventType.REMOTE_FALLBACK, data={"error": str(e)})
            else:
                self._system_logger.info("engine", f"Remote execution completed: {ctx.run_id}")
                await self._emit(ctx, EventType.REMOTE_COMPLETE, data={"nodes": len(ctx.results)})
                return ctx

        await self._run_local(ctx, opts)
        return ctx

    async def _run_local(self, ctx: RunContext, opts: RunOptions) -> None:
        graph = ctx.graph
        invoker = NodeInvoker(
            default_retries=opts.retries if opts.retries is not None else self._settings.default_retries,
            base_delay=opts.retry_delay if opts.retry_delay is not None else self._settings.retry_delay,
            timeout=opts.timeout,
            on_retry=partial(self._on_retry, ctx),
        )

        start_ids = opts.start_from or [n.id for n in graph.nodes.values() if n.is_trigger]
        self._system_logger.info("engine", f"Starting run {ctx.run_id}: {len(graph.nodes)} nodes, start={start_ids}")
        await self._emit(ctx, EventType.RUN_START, data={"start_nodes": list(start_ids), "nodes": len(graph.nodes)})

        for node_id in start_ids:
            if node_id not in graph.nodes:
                self._system_logger.warning("engine", f"Unknown start node skipped: {node_id}")
                await self._emit(ctx, EventType.NODE_SKIPPED, node_id, {"reason": "unknown start node"})
                continue
            ctx.enqueue(node_id, opts.initial_input)

        while ctx.queue:
            if opts.max_steps is not None and ctx.steps >= opts.max_steps:
                self._system_logger.warning("engine", f"Step limit {opts.max_steps} reached; {len(ctx.queue)} items dropped")
                await self._emit(ctx, EventType.RUN_STEP_LIMIT, data={"max_steps": opts.max_steps,
                                                                      "remaining": len(ctx.queue)})
                break

            item = ctx.pop()
            node = graph.nodes[item.node_id]
            ctx.invocations[node.id] += 1
            await self._emit(ctx, EventType.NODE_START, node.id, {
                "subtype": node.subtype,
                "kind": node.kind,
                "source": item.source,
                "invocation": ctx.invocations[node.id],
                "max_attempts": invoker.max_retries_for(node) + 1,
            })
            logger.debug(f"Node {node.id} input: {_preview(item.payload)}")

            runner = self._registry.lookup(node.subtype)
            outcome = await invoker.invoke(node, runner, item.payload)

            if not outcome.ok:
                # Branch truncated: nothing downstream of this node is enqueued
                ctx.results[node.id] = error_payload(outcome.message)
                await self._emit(ctx, EventType.NODE_ERROR, node.id, {
                    "message": outcome.message,
                    "error_type": type(outcome.error).__name__,
                    "attempts": outcome.attempts,
                })
                continue

            ctx.results[node.id] = outcome.output
            logger.debug(f"Node {node.id} output: {_preview(outcome.output)}")
            await self._emit(ctx, EventType.NODE_COMPLETE, node.id, {
                "attempts": outcome.attempts,
                "continued_on_fail": outcome.error is not None,
            })
            await self._propagate(ctx, node.id, outcome.output)

        for node_id, info in ctx.joins.pending().items():
            self._system_logger.warning("engine", f"Join never released; missing {info['missing']}", node_id=node_id)
            await self._emit(ctx, EventType.JOIN_PENDING, node_id, info)

        errors = sum(1 for r in ctx.results.values() if isinstance(r, dict) and r.get("error") is True)
        self._system_logger.info("engine", f"Run {ctx.run_id} finished: {len(ctx.results)} nodes, {errors} errors")
        await self._emit(ctx, EventType.RUN_END, data={"steps": ctx.steps, "nodes": len(ctx.results), "errors": errors})

    async def _propagate(self, ctx: RunContext, node_id: str, output: Any) -> None:
        """Deliver a successful output downstream."""
        graph = ctx.graph
        neighbors = graph.neighbors(node_id)

        if is_fan_out(output):
            pairs = expand_fan_out(neighbors, output[ITEMS_KEY])
            await self._emit(ctx, EventType.FAN_OUT, node_id, {
                "items": len(output[ITEMS_KEY]), "neighbors": list(neighbors), "work_items": len(pairs)})
            for target, item in pairs:
                await self._deliver(ctx, target, item, node_id)
            return

        tag = branch_tag(output)
        if tag is not None:
            targets = route_branch(graph, node_id, tag)
            if not targets:
                self._system_logger.info("router", f"Branch '{tag}' has no outgoing edge; output dropped", node_id=node_id)
                await self._emit(ctx, EventType.BRANCH_DROPPED, node_id, {"tag": tag})
                return
            await self._emit(ctx, EventType.BRANCH_ROUTED, node_id, {"tag": tag, "targets": targets})
            for target in targets:
                await self._deliver(ctx, target, output, node_id)
            return

        for target in neighbors:
            await self._deliver(ctx, target, output, node_id)

    async def _deliver(self, ctx: RunContext, target: str, payload: Any, source: str) -> None:
        """Enqueue ``payload`` for ``target``, buffering it first when target is a join."""
        node = ctx.graph.nodes[target]
        if not node.is_join:
            ctx.enqueue(target, payload, source)
            return

        combined = ctx.joins.offer(target, payload, source)
        if combined is None:
            await self._emit(ctx, EventType.JOIN_BUFFERED, target, {
                "source": source,
                "received": ctx.joins.received(target),
                "expected": ctx.joins.expected(target),
            })
            return
        await self._emit(ctx, EventType.JOIN_RELEASED, target, {"payloads": len(combined), "source": source})
        ctx.enqueue(target, combined, source)

    async def _on_retry(self, ctx: RunContext, node: NodeSpec, attempt: int, error: BaseException) -> None:
        await self._emit(ctx, EventType.NODE_RETRY, node.id, {"attempt": attempt, "error": str(error) or type(error).__name__})

    async def execute_single_node(self, node: NodeSpec | Mapping[str, Any], payload: Any = None,
                                  *, use_remote: bool = True) -> Dict[str, Any]:
        """Run one node outside a graph.

        Returns:
            ``{"success": True, "result": output}`` or ``{"success": False, "error": message}``.
        """
        spec = coerce_node(node)
        if self._remote is not None and use_remote:
            try:
                result = await self._remote.execute_node(spec, payload)
                self._system_logger.debug("engine", "Single node remote execution successful", node_id=spec.id)
                return {"success": True, "result": result}
            except RemoteExecutionError as e:
                self._system_logger.warning("engine", f"Single node remote execution failed, running locally: {e}",
                                            node_id=spec.id)

        runner = self._registry.lookup(spec.subtype)
        try:
            output = await runner.execute(spec, {} if payload is None else payload)
        except Exception as e:
            self._system_logger.error("engine", f"Single node execution failed: {e}", node_id=spec.id)
            return {"success": False, "error": str(e) or type(e).__name__}
        return {"success": True, "result": output}

    async def test_single_node(self, node: NodeSpec | Mapping[str, Any], *, use_remote: bool = True) -> Dict[str, Any]:
        """Check a node's configuration without executing it."""
        spec = coerce_node(node)
        if self._remote is not None and use_remote:
            try:
                return await self._remote.test_node(spec)
            except RemoteExecutionError as e:
                self._system_logger.warning("engine", f"Single node remote test failed, checking locally: {e}",
                                            node_id=spec.id)

        node_type = spec.subtype or spec.kind
        try:
            validate_node(spec)
        except ValidationError as e:
            status, message = "error", e.message
        else:
            status, message = "success", f"{node_type} node test completed successfully"
        return {
            "nodeType": node_type,
            "status": status,
            "message": message,
            "registered": bool(spec.subtype) and spec.subtype in self._registry,
            "config": dict(spec.config),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


async def run_workflow(nodes: NodesArg, edges: EdgesArg = None,
                       options: RunOptions | Dict[str, Any] | None = None, *,
                       registry: Optional[RunnerRegistry] = None,
                       emitter: Optional[EventEmitter] = None,
                       remote: Optional[RemoteExecutor] = None,
                       settings: Optional[EngineSettings] = None,
                       **overrides: Any) -> Dict[str, Any]:
    """Run a workflow with a fresh engine and return its results map.

    Node failures never raise; they appear as ``{"error": True, "message": ...}``
    entries. Only an invalid workflow definition raises ``ValidationError``.
    """
    engine = WorkflowEngine(registry=registry, emitter=emitter, remote=remote, settings=settings)
    try:
        return await engine.run(nodes, edges, options, **overrides)
    finally:
        await engine.close()
