"""Transaction status endpoints. Read-only."""

import logging
from decimal import Decimal
from fastapi import APIRouter, HTTPException, Depends

from api.dependencies import get_service
from api.models import TransactionHistory, TransactionStatusResponse
from bridge import BridgeService
from core.errors import NotFoundError
from core.types import TransactionStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["transactions"])


@router.get("/transactions/{tx_id}", response_model=TransactionStatusResponse)
async def get_transaction_status(
    tx_id: str,
    service: BridgeService = Depends(get_service)
):
    """Get status of a bridge transaction.

    Frontend polls this to show deposit and settlement progress.
    """
    try:
        snapshot = await service.engine.status(tx_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Transaction not found")
    except Exception as e:
        logger.error(f"Failed to get transaction status: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return TransactionStatusResponse.from_snapshot(snapshot)


@router.get("/users/{user_id}/transactions", response_model=TransactionHistory)
async def get_transaction_history(
    user_id: str,
    service: BridgeService = Depends(get_service)
):
    """Get all transactions opened by a user, newest first."""
    try:
        transactions = await service.engine.history(user_id)
    except Exception as e:
        logger.error(f"Failed to get transaction history: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    total = sum(
        (tx.net_amount for tx in transactions if tx.status == TransactionStatus.COMPLETED),
        Decimal(0),
    )
    return TransactionHistory(
        user_id=user_id,
        transactions=[TransactionStatusResponse.from_transaction(tx) for tx in transactions],
        total_bridged=str(total),
    )
