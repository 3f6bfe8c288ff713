"""Device network availability signal, fed by the platform layer."""

from ..events.event_bus import EventBus
from ..events.event_types import NetworkStatusChanged
from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class NetworkMonitor:
    """Tracks whether the device currently reports network connectivity."""

    def __init__(self, event_bus: EventBus | None = None, online: bool = True):
        self.event_bus = event_bus
        self._online = online

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Record a platform connectivity change; publishes only on actual changes."""
        if online == self._online:
            return
        self._online = online
        logger.info("Network status changed", online=online)
        if self.event_bus is not None:
            self.event_bus.publish(NetworkStatusChanged(online=online))
