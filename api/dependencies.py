"""Shared dependencies for API routes."""

from typing import Optional
from fastapi import HTTPException
from bridge import BridgeService

# Global service instance
_service: Optional[BridgeService] = None


def set_service(service: Optional[BridgeService]) -> None:
    """Set the global service instance."""
    global _service
    _service = service


def get_service() -> BridgeService:
    """Get the service instance dependency."""
    if not _service:
        raise HTTPException(status_code=503, detail="Bridge not initialized")
    return _service
