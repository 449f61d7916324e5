"""WebSocket message handlers for the shedding card game.

Each handler corresponds to a single message type from the client.
Handlers are dispatched via the HANDLERS dict in main.py. Game commands
share one handler that forwards them to the connection's session; the
session's listener pushes the new state after each accepted command.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import WebSocket

from machine import GameMachine
from models.events import GameEvent, PUBLIC_EVENT_TYPES, reset_game
from services.persistence import PersistenceGateway
from session import GameSession

logger = logging.getLogger(__name__)


@dataclass
class ConnectionContext:
    """State tracked per WebSocket connection."""

    websocket: WebSocket
    connection_id: str
    session: GameSession
    gateway: Optional[PersistenceGateway] = None


def game_state_message(machine: GameMachine) -> dict:
    return {"type": "game_state", "state": machine.get_state()}


async def send_error(ctx: ConnectionContext, message: str) -> None:
    await ctx.websocket.send_json({"type": "error", "message": message})


# ---------------------------------------------------------------------------
# Game command handler
# ---------------------------------------------------------------------------

async def handle_game_command(data: dict, ctx: ConnectionContext, **kw) -> None:
    try:
        event = GameEvent.from_dict(data)
    except ValueError as e:
        await send_error(ctx, str(e))
        return

    if not event.is_public:
        await send_error(ctx, f"Command not allowed: {event.event_type.value}")
        return

    accepted = await ctx.session.submit(event)
    if not accepted:
        logger.debug(f"Connection {ctx.connection_id[:8]}: {event.event_type.value} rejected")
        await ctx.websocket.send_json({
            "type": "command_rejected",
            "command": event.event_type.value,
        })


# ---------------------------------------------------------------------------
# Query / storage handlers
# ---------------------------------------------------------------------------

async def handle_get_state(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.websocket.send_json(game_state_message(ctx.session.machine))


async def handle_has_saved_game(data: dict, ctx: ConnectionContext, **kw) -> None:
    exists = await ctx.gateway.has_saved_game() if ctx.gateway else False
    await ctx.websocket.send_json({"type": "saved_game", "exists": exists})


async def handle_clear_saved_game(data: dict, ctx: ConnectionContext, **kw) -> None:
    if ctx.gateway:
        await ctx.gateway.clear()
    await ctx.session.submit(reset_game())
    await ctx.websocket.send_json({"type": "saved_game_cleared"})


# ---------------------------------------------------------------------------
# Handler dispatch table
# ---------------------------------------------------------------------------

HANDLERS = {
    **{event_type.value: handle_game_command for event_type in PUBLIC_EVENT_TYPES},
    "get_state": handle_get_state,
    "has_saved_game": handle_has_saved_game,
    "clear_saved_game": handle_clear_saved_game,
}
