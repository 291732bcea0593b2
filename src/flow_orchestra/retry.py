"""Validation and bounded retry around a single node invocation."""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_not_exception_type, stop_after_attempt, wait_incrementing

from .config import DEFAULT_MAX_RETRIES
from .errors import ExecutionError, ValidationError
from .graph import NodeSpec
from .logging import get_system_logger
from .runners import Runner

# Called before attempt n (n >= 2) with the error that failed attempt n - 1
RetryHook = Callable[[NodeSpec, int, BaseException], Awaitable[None]]


@dataclass(frozen=True)
class Outcome:
    """Result of a guarded invocation as seen by the execution loop."""

    ok: bool
    output: Any = None
    error: Optional[Exception] = None
    attempts: int = 0

    @property
    def message(self) -> str:
        if self.error is None:
            return ""
        return getattr(self.error, "message", None) or str(self.error) or type(self.error).__name__


def error_payload(message: str) -> dict[str, Any]:
    return {"error": True, "message": message}


def validate_node(node: NodeSpec) -> None:
    """Reject nodes with neither a configuration nor a subtype.

    Raises:
        ValidationError: If the node cannot be executed.
    """
    if not node.config and not node.subtype:
        raise ValidationError("Node configuration is missing; configure the node before executing", node_id=node.id)


class NodeInvoker:
    """Runs a node through validation and ``max_retries + 1`` attempts.

    Backoff is linear: the n-th wait lasts ``n * base_delay`` seconds.
    """

    def __init__(self, default_retries: int = DEFAULT_MAX_RETRIES, base_delay: float = 1.0,
                 timeout: Optional[float] = None, on_retry: Optional[RetryHook] = None) -> None:
        self.default_retries = default_retries
        self.base_delay = base_delay
        self.timeout = timeout
        self._on_retry = on_retry
        self._system_logger = get_system_logger()

    def max_retries_for(self, node: NodeSpec) -> int:
        if node.error_policy.max_retries is not None:
            return node.error_policy.max_retries
        return self.default_retries

    async def invoke(self, node: NodeSpec, runner: Runner, payload: Any) -> Outcome:
        continue_on_fail = node.error_policy.continue_on_fail
        try:
            validate_node(node)
        except ValidationError as e:
            self._system_logger.error("retry", f"Validation failed: {e.message}", node_id=node.id)
            return self._failed(e, 0, continue_on_fail)

        attempts = 0
        last_error: Optional[BaseException] = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries_for(node) + 1),
                wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
                retry=retry_if_not_exception_type(ValidationError),
                before_sleep=self._before_sleep(node),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1 and self._on_retry and last_error is not None:
                        await self._on_retry(node, attempts, last_error)
                    try:
                        output = await self._attempt(node, runner, payload)
                    except Exception as e:
                        last_error = e
                        raise
        except ValidationError as e:
            self._system_logger.error("retry", f"Validation failed: {e.message}", node_id=node.id)
            return self._failed(e, attempts, continue_on_fail)
        except Exception as e:
            error = ExecutionError(_describe(e), node_id=node.id, attempts=attempts)
            error.__cause__ = e
            self._system_logger.error("retry", f"Node failed after {attempts} attempt(s): {error.message}", node_id=node.id)
            return self._failed(error, attempts, continue_on_fail)

        return Outcome(ok=True, output=output, attempts=attempts)

    async def _attempt(self, node: NodeSpec, runner: Runner, payload: Any) -> Any:
        if self.timeout:
            try:
                return await asyncio.wait_for(runner.execute(node, payload), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise ExecutionError(f"Node execution timed out after {self.timeout} seconds", node_id=node.id)
        return await runner.execute(node, payload)

    def _before_sleep(self, node: NodeSpec) -> Callable[[RetryCallState], None]:
        def hook(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            self._system_logger.warning(
                "retry",
                f"Attempt {retry_state.attempt_number} failed ({_describe(exc)}); retrying in {delay:.2f}s",
                node_id=node.id,
            )
        return hook

    @staticmethod
    def _failed(error: Exception, attempts: int, continue_on_fail: bool) -> Outcome:
        outcome = Outcome(ok=False, error=error, attempts=attempts)
        if continue_on_fail:
            return Outcome(ok=True, output=error_payload(outcome.message), error=error, attempts=attempts)
        return outcome


def _describe(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "unknown error"
    message = getattr(exc, "message", None) or str(exc)
    return message or type(exc).__name__
