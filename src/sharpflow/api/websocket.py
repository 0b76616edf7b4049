"""WebSocket push channel for job lifecycle events.

Each connection is bound to the owner it authenticated as and only ever
receives that owner's events. Delivery is best-effort: a connection that
fails to receive is dropped, and a client that reconnects gets a fresh
``jobs_snapshot`` instead of a replay of what it missed.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from sharpflow.api.auth import owner_from_websocket
from sharpflow.api.event_types import JobEvent

log = structlog.get_logger()

SNAPSHOT_LIMIT = 50
# Close code for connections without a valid owner token
POLICY_VIOLATION = 4401


@dataclass
class Connection:
    """A WebSocket connection with its owner context."""

    websocket: WebSocket
    owner_id: str | None = None


class ConnectionManager:
    """Tracks live connections and fans events out to them.

    Also satisfies ``EventPublisher``, so a single-process deployment can
    hand it straight to the workers.

    Usage:
        manager = ConnectionManager()
        await manager.broadcast("job_progress", {"job_id": ..., "progress": 50}, owner_id=owner)
    """

    def __init__(self) -> None:
        self.active_connections: list[Connection] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, owner_id: str | None = None) -> Connection:
        await websocket.accept()
        connection = Connection(websocket=websocket, owner_id=owner_id)
        async with self._lock:
            self.active_connections.append(connection)
        log.info(
            "websocket_connected",
            owner_id=owner_id,
            total_connections=len(self.active_connections),
        )
        return connection

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self.active_connections = [
                c for c in self.active_connections if c.websocket is not websocket
            ]
        log.info("websocket_disconnected", total_connections=len(self.active_connections))

    async def send(self, connection: Connection, event: str, data: dict[str, Any]) -> None:
        await connection.websocket.send_json(
            {"event": event, "data": data, "timestamp": datetime.now(UTC).isoformat()}
        )

    async def broadcast(self, event: str, data: dict[str, Any], *, owner_id: str) -> None:
        """Send an event to the connections authenticated as owner_id."""
        targets = [c for c in self.active_connections if c.owner_id == owner_id]
        failed: list[Connection] = []
        for connection in targets:
            try:
                await self.send(connection, event, data)
            except Exception as e:
                log.debug("websocket_send_failed", owner_id=connection.owner_id, error=str(e))
                failed.append(connection)
        if failed:
            async with self._lock:
                self.active_connections = [
                    c for c in self.active_connections if c not in failed
                ]

    async def publish(self, event: str, data: dict[str, Any], *, owner_id: str) -> None:
        await self.broadcast(event, data, owner_id=owner_id)

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)


router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    state = websocket.app.state
    owner_id = owner_from_websocket(websocket, state.settings)
    if owner_id is None:
        await websocket.close(code=POLICY_VIOLATION)
        return

    manager: ConnectionManager = state.connections
    connection = await manager.connect(websocket, owner_id)
    try:
        await manager.send(connection, JobEvent.CONNECTION_ESTABLISHED, {"owner_id": owner_id})
        jobs = await state.store.list_for_owner(owner_id, limit=SNAPSHOT_LIMIT)
        await manager.send(
            connection, JobEvent.JOBS_SNAPSHOT, {"jobs": [job.to_summary() for job in jobs]}
        )
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(websocket)
