"""
Upstream reporting of anti-cheat violations.

High and critical violations go out immediately; low and medium ones are
batched and flushed either when the batch fills or on a timer.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from anyio import sleep

from ..config.models import AntiCheatConfig
from ..events.event_bus import EventBus
from ..events.event_types import ViolationsReported
from ..structured_logging.enhanced_logging_config import get_logger
from .models import Severity, Violation

logger = get_logger(__name__)

ReportSink = Callable[[dict[str, Any]], Awaitable[Any]]

# Batches kept while the sink keeps failing, expressed in report_batch_size units
_MAX_PENDING_BATCHES = 10


class ViolationReporter:
    """
    Forwards violations to an upstream sink.

    Sink failures never propagate: the violations are kept for the next
    flush, bounded so a dead sink cannot grow memory without limit.
    """

    def __init__(
        self,
        sink: ReportSink,
        config: AntiCheatConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        self.sink = sink
        self.config = config or AntiCheatConfig()
        self.event_bus = event_bus
        self._pending: deque[Violation] = deque(maxlen=self.config.report_batch_size * _MAX_PENDING_BATCHES)
        self._tasks: set[asyncio.Task] = set()
        self._flush_task: asyncio.Task | None = None
        self._flush_lock = asyncio.Lock()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def report(self, violations: list[Violation]) -> None:
        """
        Accept violations from the validator.

        Never raises. Sending happens on background tasks when a loop is running.
        """
        urgent = [v for v in violations if v.severity >= Severity.HIGH]
        routine = [v for v in violations if v.severity < Severity.HIGH]

        if urgent and not self._spawn(self._send(urgent, immediate=True)):
            # No loop to send on; fall back to the next batch flush
            self._pending.extend(urgent)

        if routine:
            self._pending.extend(routine)
            if len(self._pending) >= self.config.report_batch_size:
                self._spawn(self.flush())

    def _spawn(self, coro: Awaitable[Any]) -> bool:
        try:
            task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        except RuntimeError:
            coro.close()  # type: ignore[attr-defined]
            return False
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _send(self, violations: list[Violation], immediate: bool) -> bool:
        payload = {"violations": [v.to_dict() for v in violations], "immediate": immediate}
        try:
            await self.sink(payload)
        except Exception as e:  # pylint: disable=broad-exception-caught  # Reason: reporting is best effort and must never surface to gameplay code
            logger.warning(
                "Violation report failed, keeping for next flush",
                count=len(violations),
                immediate=immediate,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._requeue(violations)
            return False

        logger.info("Violations reported", count=len(violations), immediate=immediate)
        if self.event_bus is not None:
            self.event_bus.publish(ViolationsReported(count=len(violations), immediate=immediate))
        return True

    def _requeue(self, violations: list[Violation]) -> None:
        """Put a failed batch back in front of newer violations, dropping the oldest when full."""
        combined = [*violations, *self._pending]
        overflow = max(0, len(combined) - (self._pending.maxlen or len(combined)))
        if overflow:
            logger.warning("Violation backlog full, dropping oldest", dropped=overflow)
        self._pending.clear()
        self._pending.extend(combined[overflow:])

    async def flush(self) -> int:
        """
        Send every pending violation in batches.

        Returns:
            Number of violations delivered
        """
        delivered = 0
        async with self._flush_lock:
            while self._pending:
                batch = [self._pending.popleft() for _ in range(min(self.config.report_batch_size, len(self._pending)))]
                if not await self._send(batch, immediate=False):
                    break
                delivered += len(batch)
        return delivered

    async def _flush_loop(self) -> None:
        while True:
            await sleep(self.config.report_flush_interval)
            await self.flush()

    def start(self) -> None:
        """Start the periodic flush task."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_loop())
            logger.debug("Violation reporter started", flush_interval=self.config.report_flush_interval)

    async def stop(self) -> None:
        """Stop the periodic flush, wait for in-flight sends, then flush once more."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.flush()
        logger.debug("Violation reporter stopped", pending=len(self._pending))
