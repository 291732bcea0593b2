from __future__ import annotations
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from .events import Event, EventType
from .graph import WorkGraph
from .routing import JoinAccumulator, JoinMode


@dataclass(frozen=True)
class WorkItem:
    """One pending invocation of ``node_id`` with ``payload``."""

    node_id: str
    payload: Any
    source: Optional[str] = None


@dataclass
class RunContext:
    """All mutable state of one run. Created per run, never shared."""

    graph: WorkGraph
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    join_mode: JoinMode = "distinct_sources"
    queue: Deque[WorkItem] = field(default_factory=deque)
    results: Dict[str, Any] = field(default_factory=dict)
    invocations: Counter = field(default_factory=Counter)
    events: List[Event] = field(default_factory=list)
    steps: int = 0
    joins: JoinAccumulator = field(init=False)
    _event_seq: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.joins = JoinAccumulator(self.graph, self.join_mode)

    def enqueue(self, node_id: str, payload: Any, source: Optional[str] = None) -> None:
        self.queue.append(WorkItem(node_id, payload, source))

    def pop(self) -> WorkItem:
        self.steps += 1
        return self.queue.popleft()

    def record_event(self, event_type: EventType, node_id: Optional[str] = None,
                     payload: Optional[Dict[str, Any]] = None) -> Event:
        """Create the next event of this run and keep it in the run trace."""
        self._event_seq += 1
        event = Event(type=event_type, run_id=self.run_id, node_id=node_id,
                      payload=payload or {}, seq=self._event_seq)
        self.events.append(event)
        return event
