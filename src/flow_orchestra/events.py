"""Run trace events and JSONL logging.

Every observable step of a run (node lifecycle, retries, routing decisions,
join buffering, remote fallback) is emitted as an Event. Branches and joins
that drop work do so visibly through ``branch.dropped`` and ``join.pending``.
"""

import json
import time
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles

from .logging import get_system_logger


class EventType(Enum):
    """Event types."""

    # Run lifecycle
    RUN_START = "run.start"
    RUN_END = "run.end"
    RUN_STEP_LIMIT = "run.step_limit"

    # Node lifecycle
    NODE_START = "node.start"
    NODE_RETRY = "node.retry"
    NODE_COMPLETE = "node.complete"
    NODE_ERROR = "node.error"
    NODE_SKIPPED = "node.skipped"

    # Routing
    BRANCH_ROUTED = "branch.routed"
    BRANCH_DROPPED = "branch.dropped"
    FAN_OUT = "fan_out"
    JOIN_BUFFERED = "join.buffered"
    JOIN_RELEASED = "join.released"
    JOIN_PENDING = "join.pending"

    # Remote delegate
    REMOTE_START = "remote.start"
    REMOTE_COMPLETE = "remote.complete"
    REMOTE_FALLBACK = "remote.fallback"


@dataclass
class Event:
    """A single trace event of a run."""

    type: EventType
    run_id: str
    node_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization.

        Returns:
            Dictionary representation of the event with the type as its string value.
        """
        data = asdict(self)
        data['type'] = self.type.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        """Create event from dictionary.

        Raises:
            ValueError: If event type is invalid.
        """
        data = data.copy()
        data['type'] = EventType(data['type'])
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


class EventSink:
    """Base class for event output destinations."""

    async def write(self, event: Event) -> None:
        """Write an event to the sink.

        Raises:
            NotImplementedError: Must be implemented by subclasses.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Close the sink and flush any pending writes."""
        pass


class JSONLSink(EventSink):
    """JSONL file sink for events."""

    def __init__(self, file_path: str | Path) -> None:
        self.file_path = Path(file_path)
        self._file: Any = None

    async def _ensure_open(self) -> None:
        if self._file is None:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            self._file = await aiofiles.open(self.file_path, 'a')

    async def write(self, event: Event) -> None:
        """Write event as JSONL."""
        await self._ensure_open()
        await self._file.write(event.to_json() + '\n')
        await self._file.flush()

    async def close(self) -> None:
        if self._file:
            await self._file.close()
            self._file = None


class EventBuffer(EventSink):
    """In-memory buffer for events (useful for testing)."""

    def __init__(self, max_size: int = 10000) -> None:
        self.events: list[Event] = []
        self.max_size = max_size

    async def write(self, event: Event) -> None:
        self.events.append(event)
        if len(self.events) > self.max_size:
            self.events.pop(0)

    def get_events(self, event_type: EventType | None = None) -> list[Event]:
        """Get events, optionally filtered by type."""
        if event_type is None:
            return self.events.copy()
        return [e for e in self.events if e.type == event_type]

    def clear(self) -> None:
        self.events.clear()


class EventEmitter:
    """Event emitter with multiple sinks."""

    def __init__(self, sinks: list[EventSink] | None = None) -> None:
        self.sinks = sinks or []

    def add_sink(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    async def emit(self, event: Event) -> None:
        """Emit event to all sinks."""
        for sink in self.sinks:
            try:
                await sink.write(event)
            except Exception as e:
                # Sink failures must not break the run
                get_system_logger().warning("events", f"Error writing to event sink {type(sink).__name__}: {e}")

    async def close(self) -> None:
        """Close all sinks."""
        for sink in self.sinks:
            try:
                await sink.close()
            except Exception as e:
                get_system_logger().warning("events", f"Error closing event sink {type(sink).__name__}: {e}")


async def read_events_from_jsonl(file_path: str | Path) -> AsyncIterator[Event]:
    """Read events from a JSONL file, skipping unparseable lines."""
    async with aiofiles.open(file_path) as f:
        async for line in f:
            line = line.strip()
            if line:
                try:
                    yield Event.from_json(line)
                except (ValueError, TypeError, KeyError) as e:
                    get_system_logger().warning("events", f"Error parsing event line: {e}")
                    continue
