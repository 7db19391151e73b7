"""Helpdesk Backend Application.

Entry point of the real-time customer-support service: clients open chats,
agents pick them up from a pending queue, and both sides talk over a single
WebSocket. Agents also get direct messages, groups and a team-wide chat.
WhatsApp conversations are bridged into the same chat model.

Modules:
    - domain: entities, enums and state-transition tables
    - storage: DuckDB-backed persistence gateway
    - realtime: sessions, rooms, presence, unread state and the event router
    - bridge: WhatsApp Cloud API client and webhook

Run with:
    uvicorn helpdesk.main:app --app-dir backend --port 3000
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from helpdesk import __version__
from helpdesk.bridge.webhook import router as whatsapp_router
from helpdesk.bridge.whatsapp import WhatsAppClient
from helpdesk.config import AppConfig, get_config
from helpdesk.realtime.api import router as realtime_api_router
from helpdesk.realtime.hub import ConnectionHub
from helpdesk.realtime.router import EventRouter
from helpdesk.realtime.ws import router as ws_router
from helpdesk.storage import PersistenceGateway

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every TCP connection and TLS handshake.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "duckdb",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    gateway: Optional[PersistenceGateway] = None,
    bridge: Optional[Any] = None,
) -> FastAPI:
    """Build the application.

    Args:
        config: Settings to use; defaults to the process-wide configuration.
        gateway: Persistence gateway to use; created from ``config`` when
            omitted and then closed on shutdown.
        bridge: Outbound provider client; a WhatsAppClient is created from
            ``config`` when omitted.
    """
    app_config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in helpdesk.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, app_config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", app_config.logging.level.upper())

        owned_gateway = gateway is None
        store = gateway or PersistenceGateway(app_config.database.path)

        owned_bridge = bridge is None
        provider = bridge
        if provider is None:
            secrets = app_config.secrets.whatsapp
            provider = WhatsAppClient(
                secrets.access_token,
                secrets.phone_number_id,
                graph_version=app_config.whatsapp.graph_version,
            )
            if not provider.configured:
                logger.info("WhatsApp credentials missing; outbound WhatsApp disabled")

        event_router = EventRouter(store, ConnectionHub(), bridge=provider, config=app_config)
        app.state.event_router = event_router
        logger.info(
            f"Helpdesk ready on http://{app_config.server.host}:{app_config.server.port} "
            f"({len(event_router.events)} events)"
        )

        yield  # Application runs here

        # Shutdown
        await event_router.drain()
        if owned_bridge:
            await provider.aclose()
        if owned_gateway:
            store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Helpdesk Realtime API",
        description="Real-time customer support chat with agent collaboration and WhatsApp bridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ws_router)
    app.include_router(realtime_api_router)
    app.include_router(whatsapp_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _config = get_config()
    uvicorn.run(app, host=_config.server.host, port=_config.server.port)
