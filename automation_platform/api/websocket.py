"""
WebSocket API Endpoints
Live workflow execution updates
"""
from __future__ import annotations

import json
from typing import List

import jwt
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from automation_platform.config import settings
from automation_platform.core.security import decode_token
from automation_platform.websockets.connection_manager import manager

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    subscribe: List[str] = Query(default=["all"]),
    token: str | None = None,
):
    """
    WebSocket endpoint for execution events.

    Example:
      ws://localhost:8000/ws?subscribe=workflow_execution&subscribe=schedule_run&token=<jwt>
    """
    try:
        claims = decode_token(token or "")
    except jwt.PyJWTError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    organization_id = str(claims.get("org") or settings.admin_organization_id)

    await manager.connect(websocket, subscribe, organization_id=organization_id)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await manager.send_personal(websocket, "pong", {"status": "alive"})
    except WebSocketDisconnect:
        manager.disconnect(websocket)
