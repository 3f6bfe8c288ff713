"""
Connection state machine for the realtime channel.

Makes the lifecycle explicit so an invalid transition (for example
reconnecting after an intentional disconnect) raises instead of silently
corrupting state.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from statemachine import State, StateMachine

from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class ConnectionStatus(str, Enum):
    """Public names of the machine's states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class RealtimeConnectionStateMachine(StateMachine):
    """
    State machine for the realtime channel lifecycle.

    Transitions:
    - disconnected, failed → connecting: connect
    - connecting, reconnecting → connected: connection_established
    - connecting, connected → reconnecting: start_reconnect
    - connecting, reconnecting → failed: give_up
    - any other state → disconnected: disconnect

    failed is terminal until an explicit connect().
    """

    disconnected = State("Disconnected", initial=True)
    connecting = State("Connecting")
    connected = State("Connected")
    reconnecting = State("Reconnecting")
    failed = State("Failed")

    connect = disconnected.to(connecting) | failed.to(connecting)
    connection_established = connecting.to(connected) | reconnecting.to(connected)
    start_reconnect = connecting.to(reconnecting) | connected.to(reconnecting)
    give_up = connecting.to(failed) | reconnecting.to(failed)
    disconnect = (
        connecting.to(disconnected) | connected.to(disconnected) | reconnecting.to(disconnected) | failed.to(disconnected)
    )

    def __init__(self, connection_id: str = "realtime"):
        # Set attributes BEFORE super().__init__() because on_enter_state is called during init
        self.connection_id = connection_id
        self.total_connections = 0
        self.total_disconnections = 0
        self.last_connected_time: datetime | None = None

        super().__init__()

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus(self.current_state.id)

    def on_enter_state(self, state: State, event: Any = None, **kwargs: Any) -> None:
        """Log every transition."""
        source = kwargs.get("source")
        logger.info(
            "Realtime connection state transition",
            connection_id=self.connection_id,
            trigger_event=str(event) if event else "unknown",
            from_state=source.id if source else None,
            to_state=state.id,
        )

    def on_connection_established(self) -> None:
        self.last_connected_time = datetime.now(UTC)
        self.total_connections += 1

    def on_disconnect(self) -> None:
        self.total_disconnections += 1

    def on_give_up(self) -> None:
        logger.error("Realtime connection failed permanently", connection_id=self.connection_id)

    def get_stats(self) -> dict[str, Any]:
        """Connection statistics for diagnostics."""
        return {
            "connection_id": self.connection_id,
            "current_state": self.current_state.id,
            "total_connections": self.total_connections,
            "total_disconnections": self.total_disconnections,
            "last_connected_time": self.last_connected_time.isoformat() if self.last_connected_time else None,
        }
