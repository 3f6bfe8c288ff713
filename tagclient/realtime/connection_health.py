"""
Connection health tracking.

A probe emits a ping and waits for the matching pong. Latency is smoothed
with an exponential moving average and bucketed into quality tiers; the
tier, not the raw number, is what gets published.
"""

import asyncio
from enum import Enum

from ..config.models import RealtimeConfig
from ..events.event_bus import EventBus
from ..events.event_types import ConnectionQualityChanged
from ..exceptions import TransportError
from ..structured_logging.enhanced_logging_config import get_logger
from ..utils.clock import Clock, SystemClock
from .transport import RealtimeTransport

logger = get_logger(__name__)

_PROBE_CANCELLED = object()


class ConnectionQuality(str, Enum):
    """Link quality tiers."""

    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    OFFLINE = "offline"


class ConnectionHealth:
    """Latency average, quality tier and the ping/pong probe."""

    def __init__(
        self,
        config: RealtimeConfig | None = None,
        event_bus: EventBus | None = None,
        clock: Clock | None = None,
    ):
        self.config = config or RealtimeConfig()
        self.event_bus = event_bus
        self.clock: Clock = clock or SystemClock()
        self.latency_ms: float | None = None
        self.quality = ConnectionQuality.OFFLINE
        self._pending_probe: asyncio.Future | None = None

    def classify(self, latency_ms: float) -> ConnectionQuality:
        if latency_ms < self.config.latency_good_ms:
            return ConnectionQuality.GOOD
        if latency_ms < self.config.latency_fair_ms:
            return ConnectionQuality.FAIR
        return ConnectionQuality.POOR

    def record_latency(self, sample_ms: float) -> ConnectionQuality:
        """Fold a latency sample into the moving average and update the tier."""
        if self.latency_ms is None:
            self.latency_ms = sample_ms
        else:
            alpha = self.config.latency_ema_alpha
            self.latency_ms = alpha * sample_ms + (1 - alpha) * self.latency_ms
        self._set_quality(self.classify(self.latency_ms))
        return self.quality

    def mark_online(self) -> None:
        """Channel just opened; assume good until the first probe says otherwise."""
        self.latency_ms = None
        self._set_quality(ConnectionQuality.GOOD)

    def mark_offline(self) -> None:
        self.latency_ms = None
        self._set_quality(ConnectionQuality.OFFLINE)

    def _set_quality(self, quality: ConnectionQuality) -> None:
        if quality is self.quality:
            return
        previous = self.quality
        self.quality = quality
        logger.info(
            "Connection quality changed",
            quality=quality.value,
            previous_quality=previous.value,
            latency_ms=round(self.latency_ms, 1) if self.latency_ms is not None else None,
        )
        if self.event_bus is not None:
            self.event_bus.publish(ConnectionQualityChanged(quality=quality.value, latency_ms=self.latency_ms))

    async def probe(self, transport: RealtimeTransport) -> float | None:
        """
        Send one ping and wait for the pong.

        Returns:
            Round-trip latency in milliseconds, or None on timeout, send
            failure or cancellation
        """
        loop = asyncio.get_running_loop()
        pong: asyncio.Future = loop.create_future()

        def _on_pong(_data: object = None) -> None:
            if not pong.done():
                pong.set_result(None)

        self._pending_probe = pong
        transport.on(self.config.pong_event, _on_pong)
        started = self.clock.monotonic()
        try:
            await transport.emit(self.config.ping_event, {"sent_at": started})
            outcome = await asyncio.wait_for(pong, timeout=self.config.health_check_timeout)
        except TimeoutError:
            logger.warning("Health check timed out", timeout=self.config.health_check_timeout)
            return None
        except TransportError as e:
            logger.warning("Health check ping could not be sent", error=str(e))
            return None
        finally:
            transport.off(self.config.pong_event, _on_pong)
            self._pending_probe = None

        if outcome is _PROBE_CANCELLED:
            return None

        latency = (self.clock.monotonic() - started) * 1000
        self.record_latency(latency)
        logger.debug("Health check completed", latency_ms=round(latency, 1), quality=self.quality.value)
        return latency

    def cancel_probe(self) -> None:
        """Resolve a pending probe as cancelled so its waiter returns None."""
        if self._pending_probe is not None and not self._pending_probe.done():
            self._pending_probe.set_result(_PROBE_CANCELLED)
