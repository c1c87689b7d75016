"""Inbound chat webhook."""

import logging
from fastapi import APIRouter, Depends

from api.dependencies import get_service
from api.models import IncomingMessageRequest, IncomingMessageResponse
from bridge import BridgeService
from transport import IncomingMessage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["messages"])


@router.post("/messages", response_model=IncomingMessageResponse)
async def receive_message(
    request: IncomingMessageRequest,
    service: BridgeService = Depends(get_service)
):
    """Feed one chat message into the intake flow.

    Replies go out through the configured chat transport, not in this response.
    """
    handled = await service.intake.handle(
        IncomingMessage(user_id=request.user_id, chat_id=request.chat_id, text=request.text)
    )
    return IncomingMessageResponse(handled=handled)
