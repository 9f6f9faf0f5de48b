"""Cluster event watching.

Wraps a filtered, long-lived event watch in an ``EventWatch`` whose
background task copies events into a queue. Consumers iterate the watch or
poll it with a timeout; ``stop()`` cancels the pump and closes the stream, and
always runs when the watch is used as an async context manager.

Example:
    async with watch_events(controller, "default", name="myapp-build") as watch:
        async for event in watch:
            print(format_event_message(event, show_sub=True))
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from typing import Any

from loguru import logger

from .controller import ClusterController, ClusterEvent

_CLOSED: Any = object()


class EventWatch:
    """A running watch over cluster events for one kind of object."""

    def __init__(
        self,
        controller: ClusterController,
        namespace: str,
        field_selector: dict[str, str],
        *,
        resource_version: str = "",
        timeout: float = 3600.0,
    ) -> None:
        self.controller = controller
        self.namespace = namespace
        self.field_selector = field_selector
        self.resource_version = resource_version
        self.timeout = timeout
        self.error: BaseException | None = None
        self.closed = False
        self._ended = False
        self._queue: asyncio.Queue[ClusterEvent] = asyncio.Queue()
        self._stream: AsyncGenerator[ClusterEvent, None] | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> EventWatch:
        """Open the stream and start pumping events.

        Raises:
            ClusterApiError: If the watch cannot be established
        """
        self._stream = await self.controller.open_event_watch(
            self.namespace,
            self.field_selector,
            resource_version=self.resource_version,
            timeout=self.timeout,
        )
        self._task = asyncio.create_task(self._pump())
        logger.debug(
            f"Watching events in {self.namespace} with {self.field_selector} "
            f"from {self.resource_version or 'now'}"
        )
        return self

    async def _pump(self) -> None:
        assert self._stream is not None
        try:
            async for event in self._stream:
                self._queue.put_nowait(event)
        except Exception as e:
            # Progress reporting is best-effort; consumers just stop seeing events.
            self.error = e
            logger.warning(f"Event watch in {self.namespace} ended with error: {e}")
        finally:
            self._end_stream()

    def _end_stream(self) -> None:
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(_CLOSED)

    async def stop(self) -> None:
        """Stop the pump task and close the underlying stream.

        Safe to call more than once. Events already queued stay readable and
        are followed by end-of-stream.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        if self._stream is not None:
            await self._stream.aclose()
            self._stream = None
        # A pump cancelled before its first step never reaches its finally block
        self._end_stream()

    async def next_event(self, timeout: float) -> ClusterEvent | None:
        """Wait up to ``timeout`` seconds for the next event.

        Returns:
            The event, or None if none arrived in time or the stream is closed
        """
        if self.closed:
            await asyncio.sleep(timeout)
            return None
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None
        if event is _CLOSED:
            self.closed = True
            return None
        return event

    def __aiter__(self) -> EventWatch:
        return self

    async def __anext__(self) -> ClusterEvent:
        if self.closed:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> EventWatch:
        return await self.start()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()


def watch_events(
    controller: ClusterController,
    namespace: str,
    *,
    kind: str = "Pod",
    name: str | None = None,
    resource_version: str = "",
    timeout: float = 3600.0,
) -> EventWatch:
    """Build a watch over events whose involved object has ``kind``.

    Args:
        controller: Cluster controller used to open the stream
        namespace: Namespace to watch
        kind: ``involvedObject.kind`` to filter on
        name: Optional exact ``involvedObject.name`` to filter on
        resource_version: Resume token; empty means "from now"
        timeout: Idle timeout for the dedicated connection

    Returns:
        An EventWatch that is started by ``start()`` or ``async with``
    """
    selector = {"involvedObject.kind": kind}
    if name:
        selector["involvedObject.name"] = name
    return EventWatch(
        controller,
        namespace,
        selector,
        resource_version=resource_version,
        timeout=timeout,
    )


def format_event_message(event: ClusterEvent, show_sub: bool) -> str:
    """Render one event as ``name[ - fieldPath] - message [component[, host]]``."""
    sub = ""
    if show_sub and event.field_path:
        sub = f" - {event.field_path}"
    component = [event.source_component]
    if event.source_host:
        component.append(event.source_host)
    return f"{event.involved_name}{sub} - {event.message} [{', '.join(component)}]"


def is_deployment_event(event: ClusterEvent, deployment_name: str) -> bool:
    """Whether an event belongs to a deployment.

    This is a prefix match on the event name, so objects whose names merely
    start with the deployment name are included too.
    """
    return event.name.startswith(deployment_name)
