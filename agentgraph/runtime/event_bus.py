"""
Event Bus - Pub/sub of run and step lifecycle events.

The walker publishes an event for every lifecycle transition. Tracers,
servers and user code subscribe without the walker knowing about them.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    RUN_RESUMED = "run_resumed"

    # Step lifecycle
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_RETRY = "step_retry"

    # Routing
    EDGE_TRAVERSED = "edge_traversed"
    LOOP_ITERATION = "loop_iteration"

    # Error ledger
    ERROR_RESOLVED = "error_resolved"

    # External triggers
    TRIGGER_RECEIVED = "trigger_received"

    # Custom events
    CUSTOM = "custom"


@dataclass
class RunEvent:
    """An event emitted while a run executes."""

    type: EventType
    graph_id: str
    run_id: str | None = None
    node_id: str | None = None  # Which node emitted this event
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "graph_id": self.graph_id,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


# Type for event handlers
EventHandler = Callable[[RunEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_graph: str | None = None  # Only receive events from this graph
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub event bus for run lifecycle events.

    Features:
    - Async event handling
    - Type-based subscriptions
    - Graph/run/node filtering
    - Event history for debugging

    Example:
        bus = EventBus()

        async def on_run_failed(event: RunEvent):
            print(f"Run {event.run_id} failed: {event.data['error']}")

        bus.subscribe(event_types=[EventType.RUN_FAILED], handler=on_run_failed)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[RunEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_graph: str | None = None,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_graph: Only receive events from this graph
            filter_run: Only receive events from this run
            filter_node: Only receive events from this node

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_graph=filter_graph,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")

        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: RunEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            subscription.handler
            for subscription in self._subscriptions.values()
            if self._matches(subscription, event)
        ]

        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: RunEvent) -> bool:
        """Check if a subscription matches an event."""
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_graph and subscription.filter_graph != event.graph_id:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(self, event: RunEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(
        self,
        graph_id: str,
        run_id: str,
        input_data: dict[str, Any] | None = None,
    ) -> None:
        """Emit run started event."""
        await self.publish(
            RunEvent(
                type=EventType.RUN_STARTED,
                graph_id=graph_id,
                run_id=run_id,
                data={"input": input_data or {}},
            )
        )

    async def emit_run_finished(
        self,
        graph_id: str,
        run_id: str,
        status: str,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        """Emit the terminal event matching ``status``."""
        event_type = {
            "completed": EventType.RUN_COMPLETED,
            "failed": EventType.RUN_FAILED,
            "cancelled": EventType.RUN_CANCELLED,
        }.get(status, EventType.CUSTOM)
        data: dict[str, Any] = {"status": status, "output": output}
        if error is not None:
            data["error"] = error
        await self.publish(RunEvent(type=event_type, graph_id=graph_id, run_id=run_id, data=data))

    async def emit_step_started(
        self,
        graph_id: str,
        run_id: str,
        node_id: str,
        attempt: int,
    ) -> None:
        """Emit step started event."""
        await self.publish(
            RunEvent(
                type=EventType.STEP_STARTED,
                graph_id=graph_id,
                run_id=run_id,
                node_id=node_id,
                data={"attempt": attempt},
            )
        )

    async def emit_step_finished(
        self,
        graph_id: str,
        run_id: str,
        node_id: str,
        attempt: int,
        status: str,
        duration_ms: int | None = None,
        error: str | None = None,
    ) -> None:
        """Emit step completed/failed/retry event."""
        event_type = {
            "completed": EventType.STEP_COMPLETED,
            "failed": EventType.STEP_FAILED,
            "retrying": EventType.STEP_RETRY,
        }.get(status, EventType.CUSTOM)
        await self.publish(
            RunEvent(
                type=event_type,
                graph_id=graph_id,
                run_id=run_id,
                node_id=node_id,
                data={
                    "attempt": attempt,
                    "status": status,
                    "duration_ms": duration_ms,
                    "error": error,
                },
            )
        )

    async def emit_edge_traversed(
        self,
        graph_id: str,
        run_id: str,
        source_node: str,
        target_node: str,
        edge_kind: str = "next",
    ) -> None:
        """Emit edge traversed event."""
        await self.publish(
            RunEvent(
                type=EventType.EDGE_TRAVERSED,
                graph_id=graph_id,
                run_id=run_id,
                node_id=source_node,
                data={"source_node": source_node, "target_node": target_node, "edge": edge_kind},
            )
        )

    async def emit_loop_iteration(
        self,
        graph_id: str,
        run_id: str,
        node_id: str,
        iteration: int,
        max_iterations: int,
    ) -> None:
        """Emit loop iteration event."""
        await self.publish(
            RunEvent(
                type=EventType.LOOP_ITERATION,
                graph_id=graph_id,
                run_id=run_id,
                node_id=node_id,
                data={"iteration": iteration, "max_iterations": max_iterations},
            )
        )

    async def emit_trigger_received(
        self,
        graph_id: str,
        path: str,
        method: str,
        payload: dict[str, Any],
        run_id: str | None = None,
    ) -> None:
        """Emit trigger received event (HTTP trigger accepted)."""
        await self.publish(
            RunEvent(
                type=EventType.TRIGGER_RECEIVED,
                graph_id=graph_id,
                run_id=run_id,
                data={"path": path, "method": method, "payload": payload},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        graph_id: str | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[RunEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if graph_id:
            events = [e for e in events if e.graph_id == graph_id]
        if run_id:
            events = [e for e in events if e.run_id == run_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        graph_id: str | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> RunEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: RunEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: RunEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_graph=graph_id,
            filter_run=run_id,
            filter_node=node_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
