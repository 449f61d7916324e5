"""FastAPI WebSocket server for the shedding card game."""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from config import config
from constants import (
    DEFAULT_ROUND_TIME,
    HAND_SIZE,
    MAX_PLAYERS,
    MIN_PLAYERS,
    SUPPORTED_GAME_TIMES,
)
from handlers import HANDLERS, ConnectionContext, game_state_message
from logging_config import session_context, setup_logging
from machine import GameMachine
from services.persistence import PersistenceGateway
from session import GameSession, open_session
from stores.snapshot_store import (
    SnapshotStore,
    SnapshotStoreError,
    SqliteSnapshotStore,
    create_snapshot_store,
)

# Configure logging based on environment
setup_logging(
    level=config.LOG_LEVEL,
    environment=config.ENVIRONMENT,
)
logger = logging.getLogger(__name__)


# =============================================================================
# Services (initialized in lifespan)
# =============================================================================

_snapshot_store: Optional[SnapshotStore] = None
_gateway: Optional[PersistenceGateway] = None
_sessions: set[GameSession] = set()


async def _init_snapshot_store() -> SnapshotStore:
    try:
        return await create_snapshot_store(config)
    except SnapshotStoreError as e:
        logger.warning(f"Snapshot store unavailable: {e} - falling back to SQLite")
        return SqliteSnapshotStore(config.SNAPSHOT_DB_PATH)


async def _shutdown_services():
    """Gracefully shut down all sessions and storage."""
    for session in list(_sessions):
        await session.close()
    _sessions.clear()
    logger.info("All sessions closed")

    if _gateway:
        await _gateway.aclose()
    if _snapshot_store:
        await _snapshot_store.close()
        logger.info("Snapshot store closed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for async service initialization."""
    global _snapshot_store, _gateway

    _snapshot_store = await _init_snapshot_store()
    _gateway = PersistenceGateway(
        _snapshot_store,
        throttle_ms=config.timing.persist_throttle_ms,
    )

    from routers.health import set_health_dependencies
    set_health_dependencies(
        snapshot_store=_snapshot_store,
        session_count=lambda: len(_sessions),
    )

    logger.info(f"Shedding server started (environment={config.ENVIRONMENT})")

    yield

    logger.info("Shutdown initiated...")
    await _shutdown_services()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Shedding Card Game",
    debug=config.DEBUG,
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Routers
# =============================================================================

from routers.health import router as health_router
app.include_router(health_router)


# =============================================================================
# Saved game API
# =============================================================================

class SavedGameResponse(BaseModel):
    exists: bool


@app.get("/api/saved-game", response_model=SavedGameResponse)
async def get_saved_game():
    """Whether a resumable saved game exists (drives the menu's "continue")."""
    exists = await _gateway.has_saved_game() if _gateway else False
    return SavedGameResponse(exists=exists)


@app.delete("/api/saved-game", response_model=SavedGameResponse)
async def delete_saved_game():
    if _gateway:
        await _gateway.clear()
    return SavedGameResponse(exists=False)


# =============================================================================
# Game options
# =============================================================================

class GameOptionsResponse(BaseModel):
    round_times: dict[str, int]
    default_round_time: int
    min_players: int
    max_players: int
    hand_size: int


@app.get("/api/game-options", response_model=GameOptionsResponse)
async def get_game_options():
    """Round lengths and table limits for the setup menu."""
    return GameOptionsResponse(
        round_times=SUPPORTED_GAME_TIMES,
        default_round_time=DEFAULT_ROUND_TIME,
        min_players=MIN_PLAYERS,
        max_players=MAX_PLAYERS,
        hand_size=HAND_SIZE,
    )


# =============================================================================
# WebSocket
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()

    connection_id = str(uuid.uuid4())
    with session_context(connection_id):
        await _serve_connection(websocket, connection_id)


async def _serve_connection(websocket: WebSocket, connection_id: str):
    """Run one table for one connection until it disconnects."""
    resume = websocket.query_params.get("resume") in ("1", "true", "yes")

    session = await open_session(
        gateway=_gateway,
        resume=resume,
        timing=config.timing,
        session_id=connection_id,
    )
    ctx = ConnectionContext(
        websocket=websocket,
        connection_id=connection_id,
        session=session,
        gateway=_gateway,
    )

    async def push_state(machine: GameMachine) -> None:
        await websocket.send_json(game_state_message(machine))

    session.add_listener(push_state)
    session.start()
    _sessions.add(session)
    logger.debug(f"Connection {connection_id[:8]} opened (resume={resume})")

    await websocket.send_json(game_state_message(session.machine))

    try:
        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "message": "Malformed message"})
                continue
            handler = HANDLERS.get(data.get("type"))
            if handler:
                await handler(data, ctx)
            else:
                await websocket.send_json({
                    "type": "error",
                    "message": f"Unknown message type: {data.get('type')!r}",
                })
    except WebSocketDisconnect:
        logger.debug(f"Connection {connection_id[:8]} closed")
    finally:
        session.remove_listener(push_state)
        _sessions.discard(session)
        await session.close()


# Serve static files if client directory exists
client_path = os.path.join(os.path.dirname(__file__), "..", "client")
if os.path.exists(client_path):
    @app.get("/")
    async def serve_index():
        return FileResponse(os.path.join(client_path, "index.html"))

    # Mount static files for everything else (JS, CSS, SVG, etc.)
    app.mount("/", StaticFiles(directory=client_path), name="static")


def run():
    """Run the server using uvicorn."""
    import uvicorn

    logger.info(f"Starting shedding server on {config.HOST}:{config.PORT}")
    logger.info(f"Debug mode: {config.DEBUG}")

    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
