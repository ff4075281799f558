"""Typed execution events, transports and the thread-safe event bus.

The bus fans every published event out to two kinds of subscriber:

- :class:`Subscription` objects, read by iterating (blocking queue);
- :class:`Transport` objects, written synchronously on publish.

Both receive a ``snapshot`` event first. The snapshot is taken under the
same lock that registers the subscriber, so no live event can fall between
the snapshot and the first event delivered.
"""

from __future__ import annotations

import json
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator, TextIO

from rich.markup import escape

from braid import log
from braid.errors import TransportWriteError

if TYPE_CHECKING:
    from braid.registry import ExecutionRegistry
    from braid.store import StateStore


class EventType(str, Enum):
    SNAPSHOT = "snapshot"

    PLAN_READY = "plan_ready"
    BATCH_START = "batch_start"
    BATCH_COMPLETE = "batch_complete"

    TASK_START = "task_start"
    TASK_OUTPUT = "task_output"
    TASK_COMPLETE = "task_complete"
    TASK_ERROR = "task_error"

    MERGE_START = "merge_start"
    MERGE_COMPLETE = "merge_complete"
    MERGE_CONFLICT = "merge_conflict"

    REVIEW_START = "review_start"
    REVIEW_TASK_START = "review_task_start"
    REVIEW_FIX_START = "review_fix_start"
    REVIEW_FIX_COMPLETE = "review_fix_complete"
    REVIEW_TASK_COMPLETE = "review_task_complete"
    REVIEW_TASK_FAILED = "review_task_failed"
    REVIEW_BATCH_COMPLETE = "review_batch_complete"

    EXECUTION_COMPLETE = "execution_complete"
    EXECUTION_ERROR = "execution_error"
    ABORTED = "aborted"


TERMINAL_EVENTS = frozenset(
    {EventType.EXECUTION_COMPLETE, EventType.EXECUTION_ERROR, EventType.ABORTED}
)


@dataclass
class ExecutionEvent:
    type: EventType
    project_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "project_id": self.project_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_sse(self) -> str:
        """Server-sent-events frame: ``event:`` line, ``data:`` line, blank line."""
        return f"event: {self.type.value}\ndata: {self.to_json()}\n\n"


# ── Transports ───────────────────────────────────────────────────────

class Transport(ABC):
    @abstractmethod
    def write(self, event: ExecutionEvent) -> None:
        """Deliver one event. Raise :class:`TransportWriteError` on failure."""
        ...


class StreamTransport(Transport):
    """Writes events to a text stream as SSE frames or JSON lines."""

    def __init__(self, stream: TextIO, *, fmt: str = "sse") -> None:
        if fmt not in ("sse", "jsonl"):
            raise ValueError(f"Unknown stream format: {fmt}")
        self.stream = stream
        self.fmt = fmt

    def write(self, event: ExecutionEvent) -> None:
        payload = event.to_sse() if self.fmt == "sse" else event.to_json() + "\n"
        try:
            self.stream.write(payload)
            self.stream.flush()
        except (OSError, ValueError) as e:
            raise TransportWriteError(str(e)) from e


class ConsoleTransport(Transport):
    """Renders events on the terminal with the braid log helpers."""

    def write(self, event: ExecutionEvent) -> None:
        d = event.data
        tid = d.get("task_id", "")
        title = d.get("title") or tid

        match event.type:
            case EventType.SNAPSHOT:
                if d.get("live"):
                    log.info(f"Attached to running execution (batch {d.get('batch_number')}/{d.get('total_batches')})")
            case EventType.PLAN_READY:
                log.info(f"Planned {d.get('total_tasks', 0)} task(s) in {d.get('total_batches', 0)} batch(es)")
            case EventType.BATCH_START:
                log.phase(f"Batch {d.get('batch_number')}/{d.get('total_batches')}")
            case EventType.TASK_START:
                log.task_line("●", "cyan", title, tid, f"[dim]{escape(d.get('branch_name', ''))}[/dim]")
            case EventType.TASK_COMPLETE:
                log.task_line("✓", "green", title, tid)
            case EventType.TASK_ERROR:
                log.task_line("✗", "red", title, tid, "\\[Aborted]" if d.get("aborted") else "")
                if d.get("error"):
                    log.console.print(f"[dim]    Error: {escape(str(d['error']))}[/dim]")
            case EventType.BATCH_COMPLETE:
                log.info(f"Batch {d.get('batch_number')}: {d.get('succeeded', 0)} succeeded, {d.get('failed', 0)} failed")
            case EventType.MERGE_START:
                log.info(f"Merging {d.get('branch_name', '')}…")
            case EventType.MERGE_COMPLETE:
                suffix = " (conflicts resolved by agent)" if d.get("resolved_by_agent") else ""
                log.task_line("✓", "green", title, tid, f"\\[Merged]{suffix}")
            case EventType.MERGE_CONFLICT:
                log.task_line("✗", "red", title, tid, "\\[Merge Failed]")
                if d.get("error"):
                    log.console.print(f"[dim]    Error: {escape(str(d['error']))}[/dim]")
            case EventType.REVIEW_START:
                log.info(f"Reviewing {len(d.get('task_ids', []))} merged task(s)…")
            case EventType.REVIEW_TASK_START:
                log.debug(f"Review attempt {d.get('attempt')} for {tid}")
            case EventType.REVIEW_FIX_START:
                log.task_line("↻", "yellow", title, tid, f"fix attempt {d.get('attempt')}")
            case EventType.REVIEW_TASK_COMPLETE:
                log.task_line("★", "green", title, tid, f"quality {d.get('quality_score')}/10")
            case EventType.REVIEW_TASK_FAILED:
                log.task_line("!", "yellow", title, tid, f"quality {d.get('quality_score')}/10 after {d.get('attempts')} attempt(s)")
            case EventType.EXECUTION_COMPLETE:
                log.success("Execution complete")
            case EventType.EXECUTION_ERROR:
                log.error(escape(str(d.get("error", "Execution failed"))))
            case EventType.ABORTED:
                log.warn(str(d.get("message", "Execution aborted")))
            case _:
                pass


# ── Subscriptions ────────────────────────────────────────────────────

class Subscription:
    """Snapshot plus a blocking stream of live events for one project.

    Iteration stops after a terminal event or once the subscription is closed.
    A subscription taken while no run is live holds only the persisted
    snapshot and is closed from the start.
    """

    def __init__(self, bus: EventBus, project_id: str, snapshot: ExecutionEvent) -> None:
        self.bus = bus
        self.project_id = project_id
        self.snapshot = snapshot
        self._queue: queue.Queue[ExecutionEvent | None] = queue.Queue()
        self.closed = False

    def _deliver(self, event: ExecutionEvent | None) -> None:
        self._queue.put(event)

    def __iter__(self) -> Iterator[ExecutionEvent]:
        while True:
            event = self._queue.get()
            if event is None:
                return
            yield event
            if event.is_terminal:
                return

    def close(self) -> None:
        self.bus.unsubscribe(self)


class EventBus:
    def __init__(self, registry: ExecutionRegistry, store: StateStore | None = None) -> None:
        self.registry = registry
        self.store = store
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._transports: dict[str, list[Transport]] = {}
        self._lock = threading.RLock()

    def _snapshot(self, project_id: str) -> ExecutionEvent:
        ctx = self.registry.get(project_id)
        if ctx is not None:
            data = ctx.snapshot()
        elif self.store is not None:
            data = self.store.snapshot(project_id)
        else:
            data = {"live": False}
        return ExecutionEvent(EventType.SNAPSHOT, project_id, data)

    def publish(self, event: ExecutionEvent) -> None:
        with self._lock:
            ctx = self.registry.get(event.project_id)
            if ctx is not None:
                ctx.apply(event)

            for sub in self._subscriptions.get(event.project_id, []):
                sub._deliver(event)

            for transport in list(self._transports.get(event.project_id, [])):
                try:
                    transport.write(event)
                except TransportWriteError as e:
                    log.warn(f"Event subscriber detached after write failure: {e}")
                    self._transports[event.project_id].remove(transport)
                except Exception as e:
                    log.warn(f"Event subscriber detached after {type(e).__name__}: {e}")
                    self._transports[event.project_id].remove(transport)

    def emit(self, project_id: str, event_type: EventType, **data: Any) -> ExecutionEvent:
        event = ExecutionEvent(event_type, project_id, data)
        self.publish(event)
        return event

    def subscribe(self, project_id: str) -> Subscription:
        with self._lock:
            sub = Subscription(self, project_id, self._snapshot(project_id))
            if not sub.snapshot.data.get("live"):
                sub.closed = True
                sub._deliver(None)
                return sub
            self._subscriptions.setdefault(project_id, []).append(sub)
        log.debug(f"Subscriber added for {project_id}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.project_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscriptions.pop(sub.project_id, None)
            if not sub.closed:
                sub.closed = True
                sub._deliver(None)

    def attach(self, project_id: str, transport: Transport) -> bool:
        """Send the snapshot to *transport*, then every live event.

        Returns ``False`` if the snapshot write already failed.
        """
        with self._lock:
            try:
                transport.write(self._snapshot(project_id))
            except TransportWriteError as e:
                log.warn(f"Event subscriber could not attach: {e}")
                return False
            except Exception as e:
                log.warn(f"Event subscriber could not attach ({type(e).__name__}): {e}")
                return False
            self._transports.setdefault(project_id, []).append(transport)
        return True

    def detach(self, project_id: str, transport: Transport) -> None:
        with self._lock:
            transports = self._transports.get(project_id, [])
            if transport in transports:
                transports.remove(transport)

    def subscriber_count(self, project_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(project_id, [])) + len(self._transports.get(project_id, []))

    def close_project(self, project_id: str) -> None:
        """Drop every subscriber of *project_id*, ending open iterations."""
        with self._lock:
            subs = self._subscriptions.pop(project_id, [])
            self._transports.pop(project_id, None)
            for sub in subs:
                if not sub.closed:
                    sub.closed = True
                    sub._deliver(None)
