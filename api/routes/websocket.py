"""WebSocket endpoint for real-time updates."""

import logging
from typing import List
from datetime import datetime, timezone
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core.types import BridgeTransaction, TransactionStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


class ConnectionManager:
    """Manage WebSocket connections."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients."""
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error broadcasting to client: {e}")


# Global connection manager
manager = ConnectionManager()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time updates.

    Frontend connects to receive live transaction status changes.
    """
    await manager.connect(websocket)
    try:
        while True:
            # Keep connection alive and handle pings
            await websocket.receive_text()

            # Echo back for heartbeat
            await websocket.send_json({
                "type": "pong",
                "timestamp": datetime.now(timezone.utc).isoformat()
            })
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        manager.disconnect(websocket)


async def broadcast_transaction_update(tx: BridgeTransaction, previous: TransactionStatus):
    """Broadcast a transaction status change to all connected clients.

    Registered as a lifecycle listener when the API starts.
    """
    await manager.broadcast({
        "type": "transaction_update",
        "id": tx.id,
        "status": tx.status.value,
        "previous_status": previous.value,
        "source_tx_hash": tx.source_tx_ref,
        "settlement_tx_hash": tx.settlement_tx_ref,
        "timestamp": datetime.now(timezone.utc).isoformat()
    })
