"""
WebSocket Connection Manager
Tracks live dashboard connections and broadcasts workflow events
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

EVENT_TYPES = ("workflow_execution", "schedule_run", "webhook_received")


class ConnectionManager:
    """Manages WebSocket connections and broadcasts."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.subscribers: Dict[str, Set[WebSocket]] = {event: set() for event in (*EVENT_TYPES, "all")}
        self.organizations: Dict[WebSocket, str | None] = {}

    async def connect(
        self,
        websocket: WebSocket,
        subscribe_to: List[str] | None = None,
        organization_id: str | None = None,
    ) -> List[str]:
        """Accept a connection and register its subscriptions; unknown event names are ignored."""
        await websocket.accept()
        self.active_connections.append(websocket)
        self.organizations[websocket] = organization_id

        subscriptions = [event for event in (subscribe_to or []) if event in self.subscribers] or ["all"]
        for event_type in subscriptions:
            self.subscribers[event_type].add(websocket)

        await websocket.send_json(
            {
                "type": "connection_established",
                "message": "Connected to workflow execution updates",
                "subscriptions": subscriptions,
                "timestamp": datetime.utcnow().isoformat(),
            }
        )
        return subscriptions

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        self.organizations.pop(websocket, None)
        for subscribers in self.subscribers.values():
            subscribers.discard(websocket)

    async def broadcast(self, event_type: str, data: dict, organization_id: str | None = None) -> int:
        """Send an event to its subscribers, scoped to one organization when given."""
        message = {
            "type": event_type,
            "data": data,
            "timestamp": datetime.utcnow().isoformat(),
        }

        recipients = self.subscribers.get(event_type, set()) | self.subscribers["all"]
        if organization_id is not None:
            recipients = {
                ws for ws in recipients if self.organizations.get(ws) in (None, organization_id)
            }

        disconnected: List[WebSocket] = []
        delivered = 0
        for connection in recipients:
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as exc:
                logger.debug("Dropping websocket after send failure: %s", exc)
                disconnected.append(connection)
        for connection in disconnected:
            self.disconnect(connection)
        return delivered

    async def send_personal(self, websocket: WebSocket, event_type: str, data: dict):
        try:
            await websocket.send_json(
                {
                    "type": event_type,
                    "data": data,
                    "timestamp": datetime.utcnow().isoformat(),
                }
            )
        except Exception as exc:
            logger.debug("Dropping websocket after send failure: %s", exc)
            self.disconnect(websocket)


manager = ConnectionManager()
