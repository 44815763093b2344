"""
WebSocket client for the remote document store.

This module handles communication with the document store server:
maintaining the WebSocket connection, correlating requests with their
results, dispatching pushed snapshots to subscribers, and re-establishing
every live subscription after the connection drops.
"""

import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, ConnectionClosedOK

from canvass.config.logging_config import get_logger
from canvass.config.settings import StoreSettings
from canvass.data.base_store import (
    SERVER_TIMESTAMP,
    BaseEntityStore,
    DocumentSnapshot,
    OrderBy,
    QuerySnapshot,
    SnapshotCallback,
    Subscription,
    WriteBatch,
    invoke_callback,
)
from canvass.data.paths import is_document_path, join_path
from canvass.events.event_interface import Event, EventType, event_bus
from canvass.utils.async_helpers import TaskManager, run_with_timeout
from canvass.utils.error_handling import (
    NotFoundError,
    StoreError,
    SubscriptionInterruptedError,
    WriteFailedError,
)

logger = get_logger(__name__)

SERVER_TIMESTAMP_MARKER = {"__op__": "serverTimestamp"}


def _encode_value(value: Any) -> Any:
    if value is SERVER_TIMESTAMP:
        return SERVER_TIMESTAMP_MARKER
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    return value


class _RemoteWatch:
    def __init__(self, subscription_id: str, path: str, callback: SnapshotCallback, order_by: Optional[OrderBy]):
        self.subscription_id = subscription_id
        self.path = path
        self.callback = callback
        self.order_by = order_by


class WebSocketStoreClient(BaseEntityStore):
    """
    Client for a document store server reached over a WebSocket.

    This class handles:
    - Establishing and maintaining the WebSocket connection
    - Sending requests and awaiting their correlated results
    - Routing pushed snapshots to subscription callbacks
    - Auto-reconnection with exponential backoff and re-subscription
    """

    def __init__(self, config: Optional[StoreSettings] = None):
        """Initialize the store client."""
        if config is None:
            from canvass.config import settings
            config = settings.store
        super().__init__(config.model_dump())
        self.config = config
        self.websocket = None
        self.connected = False
        self.closing = False
        self.task_manager = TaskManager("store_client")
        self.receiver_task: Optional[asyncio.Task] = None
        self.reconnect_task: Optional[asyncio.Task] = None
        self.connect_task: Optional[asyncio.Task] = None

        # Requests awaiting a result, keyed by request id
        self.pending_requests: Dict[str, asyncio.Future] = {}
        self.read_requests: Set[str] = set()
        # Live subscriptions, keyed by subscription id
        self.watches: Dict[str, _RemoteWatch] = {}

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.disconnect()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Establish a WebSocket connection to the document store

        Returns:
            bool: True if connection was successful, False otherwise
        """
        headers = {}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"

        await self._close_socket()

        try:
            logger.info(f"Connecting to {self.config.url}")
            self.websocket = await websockets.connect(
                self.config.url,
                additional_headers=headers,
                ping_interval=30,  # Send ping every 30 seconds
                ping_timeout=10,   # Wait 10 seconds for pong before timeout
                close_timeout=5    # Allow 5 seconds for clean close
            )
        except Exception as e:
            logger.error(f"Failed to connect to document store: {e}")
            return False

        self.connected = True
        self.closing = False
        logger.info("Successfully connected to document store")

        self.receiver_task = self.task_manager.create_task(self._receive_messages(self.websocket), "receiver")

        # Registrations made while offline (or lost with the previous connection)
        for watch in list(self.watches.values()):
            await self._send_subscribe(watch)

        return True

    async def ensure_connected(self) -> bool:
        """
        Ensure the client is connected, attempting to reconnect if necessary
        with exponential backoff for retries.

        Concurrent callers share a single reconnection attempt.

        Returns:
            bool: True if connected, False if failed to connect
        """
        if self.connected and self.websocket:
            return True

        if self.connect_task is None or self.connect_task.done():
            self.connect_task = self.task_manager.create_task(self._connect_with_retries(), "connect")
        return await asyncio.shield(self.connect_task)

    async def _connect_with_retries(self) -> bool:
        max_retries = self.config.max_reconnect_attempts
        delay = self.config.reconnect_delay

        logger.info("Connection lost, attempting to reconnect...")

        for attempt in range(1, max_retries + 1):
            if attempt > 1:
                logger.info(f"Waiting {delay:.1f}s before reconnection attempt {attempt}/{max_retries}...")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.config.max_reconnect_delay)

            if await self.connect():
                logger.info(f"Successfully reconnected on attempt {attempt}")
                return True

            logger.warning(f"Reconnection attempt {attempt}/{max_retries} failed")

        logger.error(f"Failed to reconnect after {max_retries} attempts")
        return False

    async def disconnect(self) -> None:
        """Close the WebSocket connection and cleanup resources"""
        self.closing = True
        self.connected = False

        self.task_manager.cancel_all()
        self._fail_pending(StoreError("Store client disconnected"))

        if self.websocket:
            await self._close_socket()
            logger.info("Disconnected from document store")

        self.watches.clear()

    async def _close_socket(self) -> None:
        """Close the current socket, if any, and stop its receiver."""
        if self.receiver_task is not None and not self.receiver_task.done():
            self.receiver_task.cancel()
        self.receiver_task = None

        websocket, self.websocket = self.websocket, None
        self.connected = False
        if websocket is None:
            return
        try:
            await websocket.close(code=1000, reason="Client disconnecting")
        except Exception as e:
            logger.warning(f"Error during WebSocket closure: {e}")

    async def health_check(self) -> Dict[str, Any]:
        """Report connection status information."""
        return {
            "service": "document_store",
            "connected": self.connected,
            "subscriptions": len(self.watches),
            "pending_requests": len(self.pending_requests),
        }

    def _on_connection_lost(self, reason: str) -> None:
        self.connected = False
        self.websocket = None
        self._fail_pending(SubscriptionInterruptedError(f"Connection lost: {reason}"))

        if self.closing:
            return
        if self.reconnect_task is not None and not self.reconnect_task.done():
            return

        event_bus.emit(Event(
            type=EventType.SUBSCRIPTION_INTERRUPTED,
            data={"reason": reason, "subscriptions": len(self.watches)}
        ))
        self.reconnect_task = self.task_manager.create_task(self._reconnect(), "reconnect")

    async def _reconnect(self) -> None:
        if await self.ensure_connected():
            event_bus.emit(Event(
                type=EventType.SUBSCRIPTION_RESTORED,
                data={"subscriptions": len(self.watches)}
            ))

    def _fail_pending(self, error: Exception) -> None:
        for future in self.pending_requests.values():
            if not future.done():
                future.set_exception(error)
        self.pending_requests.clear()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        path: str,
        callback: SnapshotCallback,
        order_by: Optional[OrderBy] = None
    ) -> Subscription:
        subscription_id = f"sub_{uuid.uuid4().hex}"
        watch = _RemoteWatch(subscription_id, path, callback, order_by)
        self.watches[subscription_id] = watch

        if self.connected and self.websocket:
            self.task_manager.create_task(self._send_subscribe(watch), f"subscribe_{subscription_id}")

        def release() -> None:
            self.watches.pop(subscription_id, None)
            if self.connected and self.websocket:
                self.task_manager.create_task(
                    self._send_frame({"type": "unsubscribe", "subscription_id": subscription_id}),
                    f"unsubscribe_{subscription_id}"
                )

        return Subscription(path, release)

    async def _send_subscribe(self, watch: _RemoteWatch) -> None:
        frame = {
            "type": "subscribe",
            "subscription_id": watch.subscription_id,
            "path": watch.path,
            "order_by": list(watch.order_by) if watch.order_by else None,
        }
        try:
            await self._send_frame(frame)
        except (ConnectionClosed, ConnectionError) as e:
            # The reconnect path re-sends every registration.
            logger.warning(f"Subscribe to {watch.path} not sent: {e}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, path: str) -> DocumentSnapshot:
        result = await self._read({"type": "get", "path": path})
        if not result.get("exists"):
            raise NotFoundError(path)
        return DocumentSnapshot(path=path, exists=True, data=result.get("data") or {})

    async def list(self, collection_path: str, order_by: Optional[OrderBy] = None) -> QuerySnapshot:
        result = await self._read({
            "type": "list",
            "path": collection_path,
            "order_by": list(order_by) if order_by else None,
        })
        return self._query_snapshot(collection_path, result.get("docs") or [])

    async def _read(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self._request(frame, read=True)
        except (ConnectionError, ConnectionClosed, asyncio.TimeoutError) as e:
            raise StoreError(f"{frame['type']} failed on {frame.get('path')}: {e}", path=frame.get("path"), cause=e) from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, collection_path: str, fields: Dict[str, Any]) -> str:
        document_id = self.new_id()
        await self._write("create", join_path(collection_path, document_id), {
            "type": "set",
            "path": join_path(collection_path, document_id),
            "fields": _encode_value(fields),
            "merge": False,
        })
        return document_id

    async def set(self, path: str, fields: Dict[str, Any], merge: bool = False) -> None:
        await self._write("set", path, {
            "type": "set",
            "path": path,
            "fields": _encode_value(fields),
            "merge": merge,
        })

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        await self._write("update", path, {
            "type": "update",
            "path": path,
            "fields": _encode_value(fields),
        })

    async def delete(self, path: str) -> None:
        await self._write("delete", path, {"type": "delete", "path": path})

    async def commit(self, batch: WriteBatch) -> None:
        operations = [
            {
                "kind": op.kind,
                "path": op.path,
                "fields": _encode_value(op.fields),
                "merge": op.merge,
            }
            for op in batch.operations
        ]
        first_path = batch.operations[0].path if batch.operations else None
        await self._write("commit", first_path, {"type": "commit", "operations": operations})

    async def _write(self, operation: str, path: Optional[str], frame: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self._request(frame)
        except (StoreError, ConnectionError, ConnectionClosed, asyncio.TimeoutError) as e:
            raise self.report_write_failure(e, operation, path) from e

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, frame: Dict[str, Any], read: bool = False) -> Dict[str, Any]:
        """
        Send a request and wait for its result

        Raises:
            ConnectionError: If the store cannot be reached
            asyncio.TimeoutError: If no result arrives in time
            StoreError: If the store answers with an error
        """
        request_id = f"req_{uuid.uuid4().hex}"
        future = asyncio.get_running_loop().create_future()
        self.pending_requests[request_id] = future
        if read:
            self.read_requests.add(request_id)

        try:
            await self._send_frame({**frame, "request_id": request_id})
            return await run_with_timeout(future, self.config.request_timeout, frame.get("type", "request"))
        finally:
            self.pending_requests.pop(request_id, None)
            self.read_requests.discard(request_id)

    async def _send_frame(self, frame: Dict[str, Any]) -> None:
        if not self.connected or not self.websocket:
            logger.warning("Not connected, attempting to reconnect...")
            if not await self.ensure_connected():
                raise ConnectionError("Not connected to the document store")

        logger.debug(f"Sending {frame.get('type')} for {frame.get('path', frame.get('subscription_id'))}")
        try:
            await self.websocket.send(json.dumps(frame))
        except ConnectionClosedOK as e:
            logger.info(f"Cannot send frame: WebSocket already closed normally: {e}")
            self.connected = False
            raise
        except ConnectionClosedError as e:
            logger.warning(f"Cannot send frame: WebSocket closed with error: {e}")
            self.connected = False
            raise

    async def _receive_messages(self, websocket) -> None:
        """
        Continuously receive and process messages from the WebSocket

        A frame that cannot be processed is logged and skipped; only the loss
        of the connection ends the loop.
        """
        if not websocket:
            logger.error("Cannot receive messages: WebSocket is not connected")
            return

        reason = "closed by server"
        try:
            async for message in websocket:
                try:
                    await self._process_message(message)
                except Exception as e:
                    logger.error(f"Error processing store message: {type(e).__name__}: {e}")
        except ConnectionClosedOK as e:
            logger.info(f"WebSocket connection closed normally: {e}")
            reason = "closed normally"
        except ConnectionClosedError as e:
            logger.warning(f"WebSocket connection closed unexpectedly: {e}")
            reason = str(e)
        except asyncio.CancelledError:
            return
        if websocket is not self.websocket:
            # Replaced by a newer connection
            return
        self._on_connection_lost(reason)

    async def _process_message(self, message: str) -> None:
        """
        Process a message received from the WebSocket

        Args:
            message: Raw message received from WebSocket
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.error(f"Received invalid JSON: {message}")
            return

        message_type = data.get("type", "unknown")
        logger.debug(f"Received {message_type}")

        if message_type == "snapshot":
            self._dispatch_snapshot(data)
        elif message_type == "result":
            self._resolve(data.get("request_id"), result=data)
        elif message_type == "error":
            self._handle_error(data)
        else:
            logger.warning(f"Ignoring unknown message type: {message_type}")

    def _resolve(self, request_id: Optional[str], result: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None) -> None:
        future = self.pending_requests.get(request_id) if request_id else None
        if future is None or future.done():
            logger.debug(f"No pending request for {request_id}")
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result or {})

    def _handle_error(self, error_data: Dict[str, Any]) -> None:
        code = error_data.get("code", "unknown")
        message = error_data.get("message", "No error message provided")
        path = error_data.get("path")
        request_id = error_data.get("request_id")
        subscription_id = error_data.get("subscription_id")

        logger.error(f"Store error ({code}): {message}")

        if request_id:
            if code == "not-found" and path:
                self._resolve(request_id, error=NotFoundError(path))
            elif request_id in self.read_requests:
                self._resolve(request_id, error=StoreError(message, path=path, details={"code": code}))
            else:
                self._resolve(request_id, error=WriteFailedError(message, path=path, code=code))
        elif subscription_id:
            # The server refused or dropped the registration; it will not push again.
            watch = self.watches.pop(subscription_id, None)
            if watch:
                logger.warning(f"Subscription to {watch.path} rejected: {message}")

    def _dispatch_snapshot(self, data: Dict[str, Any]) -> None:
        watch = self.watches.get(data.get("subscription_id"))
        if watch is None:
            # Late push for a cancelled subscription
            return

        if is_document_path(watch.path):
            snapshot = DocumentSnapshot(
                path=watch.path,
                exists=bool(data.get("exists")),
                data=data.get("data") or {}
            )
        else:
            snapshot = self._query_snapshot(watch.path, data.get("docs") or [])

        invoke_callback(watch.callback, snapshot)

    def _query_snapshot(self, collection_path: str, docs: Any) -> QuerySnapshot:
        return QuerySnapshot(
            path=collection_path,
            docs=tuple(
                DocumentSnapshot(
                    path=join_path(collection_path, doc["id"]),
                    exists=True,
                    data=doc.get("data") or {}
                )
                for doc in docs
            )
        )
