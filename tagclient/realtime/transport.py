"""
Realtime transport contract.

The connection manager and offline queue only ever talk to a transport
through this protocol: named events with JSON payloads, optional
acknowledgments, and a single close callback that says why the channel went
away.
"""

from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class CloseReason(str, Enum):
    """
    Why the channel closed.

    SERVER_INITIATED is an authoritative eviction and CLIENT_INITIATED an
    intentional close; neither is retried. TRANSPORT_ERROR is a lost
    connection and is retried with backoff.
    """

    SERVER_INITIATED = "server_initiated"
    CLIENT_INITIATED = "client_initiated"
    TRANSPORT_ERROR = "transport_error"


MessageHandler = Callable[[Any], Any]
CloseHandler = Callable[[CloseReason, str | None], Any]


@runtime_checkable
class RealtimeTransport(Protocol):
    """
    A single realtime channel.

    open() raises AuthenticationRejectedError when the credential is
    refused and TransportError for anything else. emit() raises
    TransportError when the channel is not open; emit_with_ack() raises
    AckTimeoutError when no acknowledgment arrives in time.
    """

    @property
    def is_open(self) -> bool: ...

    async def open(self, credential: str) -> None: ...

    async def close(self) -> None: ...

    async def emit(self, event: str, payload: Any = None) -> None: ...

    async def emit_with_ack(self, event: str, payload: Any = None, timeout: float = 5.0) -> Any: ...

    def on(self, event: str, handler: MessageHandler) -> None: ...

    def off(self, event: str, handler: MessageHandler) -> None: ...

    def set_close_handler(self, handler: CloseHandler | None) -> None: ...
