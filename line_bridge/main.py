"""LINE ↔ Discord bridge entry point.

Loads config, initializes all services, starts:
- FastAPI server for the LINE webhook
- Discord gateway client
- APScheduler for message-mapping maintenance
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Optional

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pythonjsonlogger.json import JsonFormatter

from line_bridge.bridge.coordinator import BridgeCoordinator
from line_bridge.bridge.discord_to_line import DiscordToLineTranslator
from line_bridge.bridge.events import LineWebhookBody
from line_bridge.bridge.line_to_discord import LineToDiscordTranslator
from line_bridge.channels.discord import DiscordGatewayClient
from line_bridge.channels.line import LineMessagingClient
from line_bridge.config.loader import AppConfig, load_config
from line_bridge.delivery.pipeline import DeliveryPipeline
from line_bridge.errors import MappingStoreError
from line_bridge.media.fetcher import MediaFetcher
from line_bridge.media.resolver import MediaTypeResolver
from line_bridge.scheduling.maintenance import MaintenanceScheduler
from line_bridge.security.signature import SIGNATURE_HEADER, verify_line_signature
from line_bridge.storage.bindings import ConversationBindingStore
from line_bridge.storage.json_store import JsonDocumentStore
from line_bridge.storage.message_map import MessageIdentityMappingStore

BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")

log_handler = logging.StreamHandler(sys.stdout)
log_handler.setFormatter(
    JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        timestamp=True,
    )
)
logging.root.handlers = [log_handler]
logging.root.setLevel(logging.INFO)
for noisy in ("httpx", "discord"):
    logging.getLogger(noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

# Global service references
_config: Optional[AppConfig] = None
_scheduler: Optional[MaintenanceScheduler] = None


def build_coordinator(
    config: AppConfig,
    line: LineMessagingClient,
    discord: DiscordGatewayClient,
) -> tuple[BridgeCoordinator, MessageIdentityMappingStore]:
    """Wire stores, translators and the delivery pipeline around the clients."""
    bindings = ConversationBindingStore(
        JsonDocumentStore(config.storage.bindings_path),
        discord,
        config.discord,
        call_timeout=config.delivery.send_timeout,
    )
    mappings = MessageIdentityMappingStore(
        JsonDocumentStore(config.storage.messages_path),
        max_mappings=config.storage.max_message_mappings,
    )
    resolver = MediaTypeResolver(config.media.category_limits())
    line_translator = LineToDiscordTranslator(
        line=line,
        fetcher=MediaFetcher(line),
        resolver=resolver,
        mappings=mappings,
        webhook=config.webhook,
        guild_id=config.discord.guild_id,
    )
    discord_translator = DiscordToLineTranslator(config.media, mappings)
    pipeline = DeliveryPipeline(
        discord,
        line,
        bindings,
        proxy_name=config.webhook.name,
        send_timeout=config.delivery.send_timeout,
    )
    coordinator = BridgeCoordinator(
        line=line,
        discord=discord,
        bindings=bindings,
        mappings=mappings,
        pipeline=pipeline,
        line_translator=line_translator,
        discord_translator=discord_translator,
        shutdown_timeout=config.settings.shutdown_timeout,
    )
    return coordinator, mappings


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    global _config, _scheduler

    config_path = os.environ.get("BRIDGE_CONFIG", "config.yaml")
    logger.info("Loading config from: %s", config_path)

    try:
        _config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        logger.critical("Failed to load config: %s", str(e))
        sys.exit(1)

    logging.root.setLevel(_config.settings.log_level)

    line = LineMessagingClient(_config.line, _config.media)
    await line.initialize()
    discord = DiscordGatewayClient(_config.discord)

    coordinator, mappings = build_coordinator(_config, line, discord)
    discord.set_callbacks(coordinator.on_discord_ready, coordinator.handle_discord_message)

    retention_days = _config.storage.mapping_retention_days

    async def _prune_mappings() -> None:
        try:
            removed = await mappings.prune_older_than(retention_days)
        except MappingStoreError as e:
            logger.warning("Mapping prune could not persist: %s", e)
            return
        if removed:
            logger.info("Pruned %d message mappings older than %d days", removed, retention_days)

    _scheduler = MaintenanceScheduler(_config)
    _scheduler.set_prune_callback(_prune_mappings)
    _scheduler.setup_jobs()

    app.state.config = _config
    app.state.coordinator = coordinator
    app.state.line = line
    app.state.discord = discord

    # Events received before Discord is ready are buffered.
    coordinator.start()
    await discord.start()
    _scheduler.start()
    logger.info("LINE bridge started for guild %s", _config.discord.guild_id)

    yield

    # Shutdown
    logger.info("Shutting down LINE bridge...")
    if _scheduler:
        _scheduler.stop()
    await coordinator.stop()
    await discord.stop()
    await line.close()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="LINE Discord Bridge",
    description="Relays LINE conversations into Discord channels and back",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check(request: Request) -> dict[str, str]:
    """Health check endpoint for monitoring."""
    coordinator: Optional[BridgeCoordinator] = getattr(request.app.state, "coordinator", None)
    state = coordinator.state.value if coordinator else "starting"
    return {"status": "healthy", "service": "line_bridge", "bridge": state}


@app.get("/api/status")
async def bridge_status(request: Request) -> dict[str, Any]:
    """Coordinator state and counters."""
    coordinator: BridgeCoordinator = request.app.state.coordinator
    return coordinator.status()


@app.post("/webhook/line")
async def line_webhook(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Receive a LINE webhook batch.

    Answers 200 for every authentic, well-formed batch, even when some
    events later fail; LINE would otherwise redeliver the whole batch.
    """
    config: AppConfig = request.app.state.config
    coordinator: BridgeCoordinator = request.app.state.coordinator

    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_line_signature(body, signature, config.line.channel_secret):
        return JSONResponse({"error": "invalid signature"}, status_code=401)

    try:
        payload = LineWebhookBody.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Malformed LINE webhook body: %s", e.errors()[:1])
        return JSONResponse({"error": "malformed body"}, status_code=400)

    if payload.events:
        background_tasks.add_task(coordinator.handle_line_events, payload.events)
    logger.debug("Accepted %d LINE events", len(payload.events))
    return JSONResponse({"status": "ok"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "line_bridge.main:app",
        host=os.environ.get("BRIDGE_HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_level="info",
    )
