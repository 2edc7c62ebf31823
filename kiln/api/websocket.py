"""
Live task status over WebSockets.

The manager is registered as a listener on the change-stream monitor, so
every transition the monitor observes is pushed to the clients whose
filters match it. Clients narrow the stream by task id, by status, or
both; a client with no filters receives every transition.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from kiln.constants import TaskStatus
from kiln.types.events import StatusChange, WebSocketCommand, WebSocketMessage

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ConnectionInfo:
    """One client and its filters."""

    websocket: WebSocket
    subscribed_tasks: set[str] = field(default_factory=set)
    subscribed_statuses: set[TaskStatus] = field(default_factory=set)

    def wants(self, change: StatusChange) -> bool:
        if self.subscribed_tasks and change.task_id not in self.subscribed_tasks:
            return False
        if self.subscribed_statuses and change.status not in self.subscribed_statuses:
            return False
        return True

    def apply(self, command: WebSocketCommand) -> None:
        if command.action == "subscribe":
            if command.task_id:
                self.subscribed_tasks.add(command.task_id)
            self.subscribed_statuses.update(command.statuses)
        elif command.action == "unsubscribe":
            if command.task_id:
                self.subscribed_tasks.discard(command.task_id)
            self.subscribed_statuses.difference_update(command.statuses)


class WebSocketManager:
    """Tracks open connections and fans status changes out to them."""

    def __init__(self):
        self._connections: list[ConnectionInfo] = []
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket) -> ConnectionInfo:
        """Accept a connection and start sending it every transition."""
        await websocket.accept()

        connection = ConnectionInfo(websocket=websocket)
        async with self._lock:
            self._connections.append(connection)

        logger.info("WebSocket connected", extra={"connections": len(self._connections)})
        return connection

    async def disconnect(self, connection: ConnectionInfo) -> None:
        async with self._lock:
            if connection in self._connections:
                self._connections.remove(connection)

        logger.info("WebSocket disconnected", extra={"connections": len(self._connections)})

    def task_status_changed(self, change: StatusChange) -> None:
        """Monitor listener; the broadcast runs in its own task so dispatch never waits."""
        if not self._connections:
            return
        task = asyncio.create_task(self.broadcast_change(change))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def broadcast_change(self, change: StatusChange) -> None:
        """
        Send one transition to every connection whose filters match.

        Connections that cannot be written to are dropped.
        """
        async with self._lock:
            connections = [c for c in self._connections if c.wants(change)]

        if not connections:
            return

        message_json = WebSocketMessage.from_change(change).model_dump_json()

        broken = []
        for connection in connections:
            try:
                await connection.websocket.send_text(message_json)
            except Exception as e:
                logger.warning(
                    f"Failed to send WebSocket message: {e}",
                    extra={"task_id": change.task_id},
                )
                broken.append(connection)

        for connection in broken:
            await self.disconnect(connection)

    def get_connection_count(self) -> int:
        return len(self._connections)


_ws_manager: WebSocketManager | None = None


def get_ws_manager() -> WebSocketManager:
    """Get or create the process-wide manager."""
    global _ws_manager
    if _ws_manager is None:
        _ws_manager = WebSocketManager()
    return _ws_manager


async def websocket_handler(websocket: WebSocket) -> None:
    """
    Serve one client on ``/ws/tasks``.

    Clients send :class:`WebSocketCommand` JSON, for example
    ``{"action": "subscribe", "task_id": "..."}`` or
    ``{"action": "subscribe", "statuses": ["failed"]}``. Each command is
    answered with ``subscribed``, ``unsubscribed``, ``pong`` or ``error``.
    """
    manager = get_ws_manager()
    connection = await manager.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                command = WebSocketCommand.model_validate_json(data)
            except ValidationError as e:
                await websocket.send_json(
                    {"type": "error", "message": f"Invalid message: {e.error_count()} error(s)"}
                )
                continue

            if command.action == "ping":
                await websocket.send_json({"type": "pong"})
                continue

            connection.apply(command)
            await websocket.send_json(
                {
                    "type": f"{command.action}d",
                    "task_id": command.task_id,
                    "statuses": sorted(s.value for s in connection.subscribed_statuses),
                }
            )
    except WebSocketDisconnect:
        await manager.disconnect(connection)
