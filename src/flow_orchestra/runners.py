from __future__ import annotations
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from .graph import NodeSpec
from .logging import get_system_logger

RunnerFn = Callable[[NodeSpec, Any], Union[Any, Awaitable[Any]]]


class Runner(Protocol):  # structural typing per PEP 544
    async def execute(self, node: NodeSpec, payload: Any) -> Any:  # type: ignore
        """Perform the node's work and return its output payload."""


class CallableRunner:
    """Wrap a sync or async callable ``fn(node, payload)``."""

    def __init__(self, fn: RunnerFn, name: Optional[str] = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", type(fn).__name__)

    async def execute(self, node: NodeSpec, payload: Any) -> Any:
        result = self._fn(node, payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"CallableRunner({self.name})"


class PassThroughRunner:
    """Fallback for unknown subtypes: echoes the node and its input."""

    async def execute(self, node: NodeSpec, payload: Any) -> Dict[str, Any]:
        return {
            "nodeId": node.id,
            "subtype": node.subtype,
            "input": payload,
            "config": dict(node.config),
        }


class RunnerRegistry:
    """Maps node subtypes to runners.

    Unknown or missing subtypes resolve to the pass-through runner so that
    unconfigured nodes never fail a run.
    """

    def __init__(self, runners: Optional[Dict[str, Runner]] = None, default: Optional[Runner] = None) -> None:
        self._runners: Dict[str, Runner] = dict(runners or {})
        self._default: Runner = default or PassThroughRunner()
        self._system_logger = get_system_logger()

    def register(self, subtype: str, runner: Union[Runner, RunnerFn]) -> Runner:
        """Register a runner object, or wrap a plain callable, under ``subtype``."""
        if not hasattr(runner, "execute"):
            runner = CallableRunner(runner)  # type: ignore[arg-type]
        if subtype in self._runners:
            self._system_logger.debug("registry", f"Replacing runner for subtype: {subtype}")
        self._runners[subtype] = runner  # type: ignore[assignment]
        return runner  # type: ignore[return-value]

    def runner(self, *subtypes: str) -> Callable[[RunnerFn], RunnerFn]:
        """Decorator registering a function under one or more subtypes."""
        def decorator(fn: RunnerFn) -> RunnerFn:
            for subtype in subtypes:
                self.register(subtype, fn)
            return fn
        return decorator

    def lookup(self, subtype: Optional[str]) -> Runner:
        if subtype and subtype in self._runners:
            return self._runners[subtype]
        return self._default

    def __contains__(self, subtype: str) -> bool:
        return subtype in self._runners

    def subtypes(self) -> List[str]:
        return sorted(self._runners)

    def copy(self) -> "RunnerRegistry":
        return RunnerRegistry(self._runners, self._default)


def default_registry() -> RunnerRegistry:
    """Registry populated with the built-in utility runners."""
    from .builtin_runners import register_builtin_runners

    registry = RunnerRegistry()
    register_builtin_runners(registry)
    return registry
