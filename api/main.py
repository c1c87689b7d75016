"""Main FastAPI application for BTC Bridge."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import set_service
from api.models import HealthResponse
from api.routes import messages, transactions, websocket
from bridge import BridgeService
from config import BridgeConfig
from transport import LogTransport, WebhookTransport

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(service: Optional[BridgeService] = None, manage_service: bool = True) -> FastAPI:
    """Create the API app.

    Args:
        service: Prebuilt service; built from the environment when omitted
        manage_service: Start and stop the service with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        # Startup
        logger.info("Starting BTC Bridge API...")

        bridge = service
        if bridge is None:
            config = BridgeConfig.from_env()
            config.validate()
            transport = (
                WebhookTransport(config.chat_webhook_url)
                if config.chat_webhook_url else LogTransport()
            )
            bridge = BridgeService.from_config(config, transport)

        bridge.engine.add_listener(websocket.broadcast_transaction_update)

        # Set global service instance for dependency injection
        set_service(bridge)

        if manage_service:
            await bridge.start()
        logger.info("BTC Bridge API started successfully")

        yield

        # Shutdown
        logger.info("Stopping BTC Bridge API...")
        if manage_service:
            await bridge.stop()
        bridge.engine.remove_listener(websocket.broadcast_transaction_update)
        set_service(None)
        logger.info("BTC Bridge API stopped")

    app = FastAPI(
        title="BTC Bridge API",
        description="Status and chat intake API for the BTC to EVM bridge",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Enable CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify your frontend domain
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(transactions.router)
    app.include_router(messages.router)
    app.include_router(websocket.router)

    @app.get("/", response_model=HealthResponse)
    async def root():
        """API health check."""
        return HealthResponse(
            status="online",
            service="BTC Bridge API",
            version=VERSION
        )

    @app.get("/health")
    async def health_check():
        """Simple health check for monitoring."""
        return {"status": "healthy"}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info"
    )
