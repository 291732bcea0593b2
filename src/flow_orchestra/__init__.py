"""flow-orchestra - graph execution engine for integration workflows."""

__version__ = "0.1.0"

from .config import EngineSettings, RunOptions, load_settings
from .context import RunContext, WorkItem
from .engine import WorkflowEngine, run_workflow
from .errors import ExecutionError, RemoteExecutionError, ValidationError, WorkflowError
from .events import Event, EventBuffer, EventEmitter, EventSink, EventType, JSONLSink
from .graph import EdgeSpec, ErrorPolicy, NodeSpec, WorkGraph, build_graph
from .remote import RemoteExecutor
from .routing import BRANCH_KEY, FAN_OUT_KEY, ITEMS_KEY, JoinAccumulator
from .runners import CallableRunner, PassThroughRunner, Runner, RunnerRegistry, default_registry
from .workflow_loader import WorkflowDefinition, load_workflow

__all__ = [
    "__version__",
    "WorkflowEngine",
    "run_workflow",
    "RunOptions",
    "EngineSettings",
    "load_settings",
    "RunContext",
    "WorkItem",
    "NodeSpec",
    "EdgeSpec",
    "ErrorPolicy",
    "WorkGraph",
    "build_graph",
    "Runner",
    "CallableRunner",
    "PassThroughRunner",
    "RunnerRegistry",
    "default_registry",
    "RemoteExecutor",
    "JoinAccumulator",
    "BRANCH_KEY",
    "FAN_OUT_KEY",
    "ITEMS_KEY",
    "Event",
    "EventType",
    "EventSink",
    "EventBuffer",
    "EventEmitter",
    "JSONLSink",
    "WorkflowError",
    "ValidationError",
    "ExecutionError",
    "RemoteExecutionError",
    "WorkflowDefinition",
    "load_workflow",
]
