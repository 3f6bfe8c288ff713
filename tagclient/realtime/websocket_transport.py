"""
WebSocket implementation of the realtime transport.

Every frame is a JSON envelope:

    {"event": "<name>", "data": <payload>, "ack_id": "<id>"?, "timestamp": "...", "sequence_number": n}

Acknowledged emits carry an ack_id; the server answers with
{"event": "ack", "ack_id": "<id>", "data": <result>}. A single reader task
consumes the socket and routes frames to handlers and pending acks.
"""

import asyncio
import inspect
import itertools
import json
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from ..exceptions import AckTimeoutError, AuthenticationRejectedError, TransportError
from ..structured_logging.enhanced_logging_config import get_logger
from .transport import CloseHandler, CloseReason, MessageHandler

logger = get_logger(__name__)

ACK_EVENT = "ack"

# Close codes a server uses to end a session on purpose
_AUTHORITATIVE_CLOSE_CODES = {1000, 1008}
_APPLICATION_CLOSE_CODES = range(4000, 5000)
_AUTH_REJECT_STATUSES = {401, 403}


class WebSocketTransport:
    """Realtime transport over a single WebSocket connection."""

    def __init__(self, url: str, open_timeout: float | None = None, close_timeout: float = 5.0):
        self.url = url
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout

        self._ws: ClientConnection | None = None
        self._reader_task: asyncio.Task | None = None
        self._handlers: dict[str, list[MessageHandler]] = defaultdict(list)
        self._pending_acks: dict[str, asyncio.Future] = {}
        self._close_handler: CloseHandler | None = None
        self._ack_ids = itertools.count(1)
        self._sequence = 0
        self._closing = False
        self._handler_tasks: set[asyncio.Task] = set()

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    async def open(self, credential: str) -> None:
        if self._ws is not None:
            return

        try:
            ws = await connect(
                self.url,
                additional_headers={"Authorization": f"Bearer {credential}"},
                open_timeout=self.open_timeout,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in _AUTH_REJECT_STATUSES:
                raise AuthenticationRejectedError("Realtime handshake rejected credential", status_code=status) from e
            raise TransportError(f"Realtime handshake failed with HTTP {status}") from e
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Could not open realtime channel: {e}") from e

        self._ws = ws
        self._closing = False
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(ws), name="websocket-reader")
        logger.info("WebSocket channel opened", url=self.url)

    async def close(self) -> None:
        ws = self._ws
        if ws is None:
            return
        self._closing = True
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug("Error while closing WebSocket", error=str(e))

        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task():
            try:
                await asyncio.wait_for(reader, timeout=self.close_timeout)
            except TimeoutError:
                reader.cancel()
        self._ws = None
        self._reader_task = None

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            while True:
                raw = await ws.recv()
                self._dispatch(raw)
        except ConnectionClosed as closed:
            reason, detail = self._classify_close(closed)
        except asyncio.CancelledError:
            self._teardown(ws)
            raise

        self._teardown(ws)
        logger.info("WebSocket channel closed", close_reason=reason.value, detail=detail)
        if self._close_handler is not None:
            try:
                self._close_handler(reason, detail)
            except Exception as e:  # pylint: disable=broad-exception-caught  # Reason: the reader task must finish cleanly whatever the callback does
                logger.error("Error in close handler", error=str(e), error_type=type(e).__name__)

    def _classify_close(self, closed: ConnectionClosed) -> tuple[CloseReason, str | None]:
        if self._closing:
            return CloseReason.CLIENT_INITIATED, "client close"

        rcvd = closed.rcvd
        if rcvd is not None and closed.rcvd_then_sent is not False:
            code = rcvd.code
            if code in _AUTHORITATIVE_CLOSE_CODES or code in _APPLICATION_CLOSE_CODES:
                return CloseReason.SERVER_INITIATED, rcvd.reason or f"close code {code}"
            return CloseReason.TRANSPORT_ERROR, rcvd.reason or f"close code {code}"

        return CloseReason.TRANSPORT_ERROR, "connection lost"

    def _teardown(self, ws: ClientConnection) -> None:
        if self._ws is ws:
            self._ws = None
        pending = list(self._pending_acks.values())
        self._pending_acks.clear()
        for future in pending:
            if not future.done():
                future.set_exception(TransportError("Realtime channel closed before acknowledgment"))

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
            logger.debug("Ignoring non-JSON frame")
            return
        if not isinstance(message, dict):
            return

        event = message.get("event")
        data = message.get("data")

        if event == ACK_EVENT:
            future = self._pending_acks.pop(str(message.get("ack_id")), None)
            if future is not None and not future.done():
                future.set_result(data)
            return

        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(data)
            except Exception as e:  # pylint: disable=broad-exception-caught  # Reason: one failing handler must not stop the reader
                logger.error("Error in message handler", message_event=event, error=str(e), error_type=type(e).__name__)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)

    def _frame(self, event: str, payload: Any, ack_id: str | None = None) -> str:
        self._sequence += 1
        frame: dict[str, Any] = {
            "event": event,
            "data": payload,
            "timestamp": datetime.now(UTC).isoformat(),
            "sequence_number": self._sequence,
        }
        if ack_id is not None:
            frame["ack_id"] = ack_id
        return json.dumps(frame, default=str)

    async def _send(self, event: str, frame: str) -> None:
        ws = self._ws
        if ws is None or self._closing:
            raise TransportError("Realtime channel is not open", event=event)
        try:
            await ws.send(frame)
        except (ConnectionClosed, OSError, WebSocketException) as e:
            raise TransportError(f"Send failed: {e}", event=event) from e

    async def emit(self, event: str, payload: Any = None) -> None:
        await self._send(event, self._frame(event, payload))

    async def emit_with_ack(self, event: str, payload: Any = None, timeout: float = 5.0) -> Any:
        ack_id = str(next(self._ack_ids))
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_acks[ack_id] = future
        try:
            await self._send(event, self._frame(event, payload, ack_id))
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            raise AckTimeoutError(f"No acknowledgment for {event}", event=event, timeout=timeout) from None
        finally:
            self._pending_acks.pop(ack_id, None)

    def on(self, event: str, handler: MessageHandler) -> None:
        if handler not in self._handlers[event]:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: MessageHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def set_close_handler(self, handler: CloseHandler | None) -> None:
        self._close_handler = handler
