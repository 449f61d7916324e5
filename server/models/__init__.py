"""Models package for the shedding game engine."""

from .events import EventType, GameEvent, PUBLIC_EVENT_TYPES

__all__ = [
    "EventType",
    "GameEvent",
    "PUBLIC_EVENT_TYPES",
]
