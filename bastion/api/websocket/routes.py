"""
WebSocket Routes

Real-time SOC monitoring endpoint.
"""

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.access.gate import is_caller_blocked, require_admin
from bastion.api.audit.events import (
    AccessDeniedPayload,
    AuditAction,
    AuditOutcome,
    AuditResource,
    AuthFailurePayload,
)
from bastion.api.audit.middleware import build_context
from bastion.api.auth.principal import AuthenticationFailed, Principal, authenticate
from bastion.api.db.session import get_db
from bastion.api.soc.incidents import Priority
from bastion.api.websocket.events import ErrorEvent
from bastion.api.websocket.handlers import MessageHandler
from bastion.api.websocket.manager import ClientConnection, get_connection_manager

logger = logging.getLogger(__name__)
router = APIRouter()


async def authenticate_websocket(
    websocket: WebSocket,
    db: AsyncSession,
    token: Optional[str],
) -> Optional[Principal]:
    """
    Authenticate a SOC monitoring socket.

    The caller must be an admin and must not be blocked, unless trusted.
    Rejections are audited like their HTTP counterparts.

    Returns:
        The principal, or None when the socket must be closed
    """
    context = build_context(websocket, "WS")
    recorder = websocket.app.state.audit_recorder

    if await is_caller_blocked(db, context.ip_address, bearer_token=token):
        recorder.record(
            context,
            AuditAction.BLOCKED_IP,
            AuditResource.SECURITY,
            AuditOutcome.failure(
                "WebSocket connection from blocked IP address",
                payload=AccessDeniedPayload(reason="blocked_ip"),
                resource_id=context.ip_address,
            ),
        )
        return None

    try:
        principal = await authenticate(db, bearer_token=token)
    except AuthenticationFailed as e:
        recorder.record(
            context,
            AuditAction.AUTH_FAILED,
            AuditResource.AUTH,
            AuditOutcome.failure(
                e.message,
                payload=AuthFailurePayload(attempted_method=e.attempted_method, reason=e.reason),
            ),
        )
        return None

    context.principal = principal
    if not principal.is_admin:
        recorder.record(
            context,
            AuditAction.UNAUTHORIZED_ACCESS,
            AuditResource.SECURITY,
            AuditOutcome.failure(
                "SOC monitoring requires admin access",
                payload=AccessDeniedPayload(reason="admin_required", required="admin"),
                severity=Priority.HIGH.value,
            ),
        )
        return None

    # Persist the API key's last_used_at before the long-lived loop
    await db.commit()
    return principal


@router.websocket("/ws/soc")
async def soc_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """
    WebSocket endpoint for SOC monitoring.

    Authentication:
    - Pass a JWT or API key as query param: /ws/soc?token=xxx
    - Admin accounts only

    Message Types (Client -> Server):
    - ping: Heartbeat
    - join-room: Subscribe to a room (default soc-monitoring)
    - leave-room: Unsubscribe from a room

    Event Types (Server -> Client):
    - connected: Connection established
    - security-event: New incident-grade audit entry
    - audit-log-update: Audit entry created or changed
    - incident-update: Incident opened or triaged
    - error: Error occurred
    """
    manager = get_connection_manager()
    handler = MessageHandler(manager)
    connection: Optional[ClientConnection] = None

    principal = await authenticate_websocket(websocket, db, token)
    if principal is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        connection = await manager.connect(
            websocket=websocket,
            user_id=principal.id,
            client_id=str(uuid.uuid4()),
        )
        logger.info(f"SOC monitor connected: {connection.client_id} ({principal.email})")

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await connection.send_event(
                    ErrorEvent(code="INVALID_JSON", message="Invalid JSON format")
                )
                continue

            if not isinstance(message, dict):
                await connection.send_event(
                    ErrorEvent(code="INVALID_MESSAGE", message="Message must be an object")
                )
                continue

            response = await handler.handle_message(connection, message)
            if response:
                await connection.send_json(response)

    except WebSocketDisconnect:
        logger.info("SOC monitor disconnected")

    except Exception as e:
        logger.error(f"WebSocket error: {e}")

    finally:
        if connection:
            await manager.disconnect(connection.client_id)


@router.get("/ws/stats")
async def websocket_stats(_: Principal = Depends(require_admin)):
    """Get WebSocket connection statistics."""
    return get_connection_manager().get_stats()
