"""Pytest configuration and shared fixtures."""

import pytest

from flow_orchestra.config import EngineSettings
from flow_orchestra.engine import WorkflowEngine
from flow_orchestra.events import EventBuffer, EventEmitter
from flow_orchestra.runners import RunnerRegistry


class Recorder:
    """Records every (node_id, payload) a runner receives."""

    def __init__(self):
        self.calls = []

    def calls_for(self, node_id):
        return [payload for called, payload in self.calls if called == node_id]

    def order(self):
        return [called for called, _ in self.calls]

    def runner(self, fn=None):
        async def run(node, payload):
            self.calls.append((node.id, payload))
            if fn is not None:
                return fn(node, payload)
            return {"from": node.id, "input": payload}
        return run


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def settings():
    """Settings with no remote backend and no backoff delay."""
    return EngineSettings(backend_url=None, retry_delay_ms=0)


@pytest.fixture
def registry(recorder):
    reg = RunnerRegistry()
    reg.register("record", recorder.runner())
    reg.register("branch", recorder.runner(lambda node, payload: {"__branch": node.config["tag"], "input": payload}))
    reg.register("fan", recorder.runner(lambda node, payload: {"__fanOut": True, "items": node.config["items"]}))
    reg.register("const", recorder.runner(lambda node, payload: node.config["value"]))
    return reg


@pytest.fixture
def event_buffer():
    return EventBuffer()


@pytest.fixture
def engine(registry, event_buffer, settings):
    return WorkflowEngine(registry=registry, emitter=EventEmitter([event_buffer]), settings=settings)
