from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any, Awaitable, Callable, Optional
import uuid

from .transport import Transport

logger = logging.getLogger("regdesk.client")


@dataclass(frozen=True)
class QueueConfig:
    batch_size: int = 10
    batch_interval: float = 5.0
    max_retries: int = 3
    retry_delay: float = 1.0
    beacon_grace: float = 2.0


@dataclass(eq=False)
class ClientEvent:
    endpoint: str
    payload: dict[str, Any]
    attempts: int = 0
    created_at: float = field(default_factory=time.monotonic)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class EventQueue:
    """Buffers analytics events and delivers them to the ingestion API in batches.

    Events are flushed when the buffer reaches ``batch_size`` or on the
    ``batch_interval`` ticker. Each event is delivered on its own; a failed
    one is retried after ``retry_delay * attempts`` seconds and dropped once
    it has failed ``max_retries + 1`` times. Nothing is sent while offline:
    retries that come due are parked and replayed with the buffer when the
    queue goes back online.
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[QueueConfig] = None,
        session_id: Optional[str] = None,
        online: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.transport = transport
        self.config = config or QueueConfig()
        if self.config.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.config.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:16]}"
        self.delivered = 0
        self.dropped = 0
        self._clock = clock
        self._started_at = time.monotonic()
        self._online = online
        self._closed = False
        self._buffer: list[ClientEvent] = []
        self._parked: list[ClientEvent] = []
        self._retry_handles: dict[ClientEvent, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._beacons: set[asyncio.Task] = set()
        self._ticker: Optional[asyncio.Task] = None

    @property
    def online(self) -> bool:
        return self._online

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def waiting_retries(self) -> int:
        return len(self._retry_handles) + len(self._parked)

    def time_on_page_ms(self) -> int:
        return int((time.monotonic() - self._started_at) * 1000)

    def build_payload(self, data: dict[str, Any]) -> dict[str, Any]:
        return {
            **data,
            "sessionId": self.session_id,
            "timestamp": self._clock().isoformat(),
            "timeOnPage": self.time_on_page_ms(),
        }

    def start(self) -> None:
        """Start the interval flush; must be called from a running event loop."""
        if self._ticker is not None or self._closed:
            return
        self._ticker = asyncio.get_running_loop().create_task(self._tick(), name="event-queue-ticker")

    async def _tick(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.config.batch_interval)
            await self.flush()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def enqueue(self, endpoint: str, data: dict[str, Any]) -> None:
        if self._closed:
            logger.debug("Event ignored after close", extra={"event": "queue_closed", "endpoint": endpoint})
            return

        self._buffer.append(ClientEvent(endpoint=endpoint, payload=self.build_payload(data)))
        if len(self._buffer) < self.config.batch_size or not self._online or _running_loop() is None:
            return

        # Later appends land in a fresh buffer and wait for the next flush.
        batch = self._buffer[: self.config.batch_size]
        del self._buffer[: self.config.batch_size]
        self._spawn(self._deliver_batch(batch))

    async def flush(self) -> int:
        if self._closed or not self._online or not self._buffer:
            return 0
        batch = self._buffer
        self._buffer = []
        await self._deliver_batch(batch)
        return len(batch)

    async def _deliver_batch(self, batch: list[ClientEvent]) -> None:
        await asyncio.gather(*(self._deliver(event) for event in batch))

    async def _deliver(self, event: ClientEvent) -> bool:
        try:
            await self.transport.post(event.endpoint, event.payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._handle_failure(event, exc)
            return False
        self.delivered += 1
        return True

    def _handle_failure(self, event: ClientEvent, exc: Exception) -> None:
        if self._closed:
            return

        if not getattr(exc, "retryable", True):
            self.dropped += 1
            logger.error(
                "Event rejected by server, dropped",
                extra={"event": "event_rejected", "endpoint": event.endpoint, "reason": str(exc)},
            )
            return

        if event.attempts >= self.config.max_retries:
            self.dropped += 1
            logger.error(
                "Event dropped after retries",
                extra={"event": "event_dropped", "endpoint": event.endpoint, "attempts": event.attempts + 1},
            )
            return

        event.attempts += 1
        delay = self.config.retry_delay * event.attempts
        handle = asyncio.get_running_loop().call_later(delay, self._on_retry_due, event)
        self._retry_handles[event] = handle
        logger.warning(
            "Event delivery failed, retry scheduled",
            extra={
                "event": "event_retry",
                "endpoint": event.endpoint,
                "attempts": event.attempts,
                "reason": str(exc),
            },
        )

    def _on_retry_due(self, event: ClientEvent) -> None:
        self._retry_handles.pop(event, None)
        if self._closed:
            return
        if not self._online:
            self._parked.append(event)
            return
        self._spawn(self._deliver(event))

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if not online or was_online or self._closed:
            return
        if _running_loop() is None:
            return

        logger.info("Back online, replaying queued events", extra={"event": "queue_online"})
        parked = self._parked
        self._parked = []
        for event in parked:
            self._spawn(self._deliver(event))
        self._spawn(self.flush())

    async def send_immediate(self, endpoint: str, data: dict[str, Any]) -> bool:
        """Send one critical event right away, outside the batch; never raises."""
        if self._closed:
            return False
        try:
            await self.transport.post(endpoint, self.build_payload(data))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Immediate send failed", extra={"event": "immediate_failed", "endpoint": endpoint})
            return False
        self.delivered += 1
        return True

    def send_beacon(self, endpoint: str, data: dict[str, Any]) -> None:
        """Fire a single best-effort delivery that outlives ``aclose`` for a short grace period."""
        loop = _running_loop()
        if loop is None:
            logger.warning("Beacon needs a running loop", extra={"event": "beacon_skipped", "endpoint": endpoint})
            return
        task = loop.create_task(self._beacon(endpoint, self.build_payload(data)))
        self._beacons.add(task)
        task.add_done_callback(self._beacons.discard)

    async def _beacon(self, endpoint: str, payload: dict[str, Any]) -> None:
        try:
            await self.transport.beacon(endpoint, payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Beacon delivery failed", extra={"event": "beacon_failed", "endpoint": endpoint})

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._ticker is not None:
            self._ticker.cancel()
        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()
        self._parked.clear()

        tasks = list(self._tasks)
        if self._ticker is not None:
            tasks.append(self._ticker)
            self._ticker = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        beacons = list(self._beacons)
        if beacons:
            _, still_running = await asyncio.wait(beacons, timeout=self.config.beacon_grace)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        logger.info(
            "Event queue closed",
            extra={"event": "queue_closed", "attempts": len(self._buffer)},
        )
