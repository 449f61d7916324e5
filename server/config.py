"""
Centralized configuration for the shedding card game server.

Configuration is loaded from (in order of precedence):
1. Environment variables
2. .env file (if exists)
3. Default values

Usage:
    from config import config
    print(config.PORT)
    print(config.timing.cpu_turn_ms)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


@dataclass
class GameDefaults:
    """Default game settings."""
    round_time_ms: int = 60000
    cpu_count: int = 3
    human_player_id: str = "You"


@dataclass
class EngineTiming:
    """
    Engine timing in milliseconds.

    tick_ms drives the round clock. The idle/turn delays are the waits
    armed on every entry to the awaiting-action state.
    """
    tick_ms: int = 250
    human_idle_ms: int = 600
    cpu_turn_ms: int = 800
    persist_throttle_ms: int = 1000


@dataclass
class ServerConfig:
    """Server configuration."""
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # Snapshot storage: Redis when REDIS_URL is set, otherwise SQLite
    REDIS_URL: str = ""
    SNAPSHOT_DB_PATH: str = "snapshots.db"

    # 7 players x 7 cards + the initial flip still fits in one deck
    MAX_PLAYERS: int = 7

    game_defaults: GameDefaults = field(default_factory=GameDefaults)
    timing: EngineTiming = field(default_factory=EngineTiming)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        return cls(
            HOST=get_env("HOST", "0.0.0.0"),
            PORT=get_env_int("PORT", 8000),
            DEBUG=get_env_bool("DEBUG", False),
            LOG_LEVEL=get_env("LOG_LEVEL", "INFO"),
            ENVIRONMENT=get_env("ENVIRONMENT", "development"),
            REDIS_URL=get_env("REDIS_URL", ""),
            SNAPSHOT_DB_PATH=get_env("SNAPSHOT_DB_PATH", "snapshots.db"),
            MAX_PLAYERS=get_env_int("MAX_PLAYERS", 7),
            game_defaults=GameDefaults(
                round_time_ms=get_env_int("DEFAULT_ROUND_TIME_MS", 60000),
                cpu_count=get_env_int("DEFAULT_CPU_COUNT", 3),
                human_player_id=get_env("HUMAN_PLAYER_ID", "You"),
            ),
            timing=EngineTiming(
                tick_ms=get_env_int("TICK_MS", 250),
                human_idle_ms=get_env_int("HUMAN_IDLE_MS", 600),
                cpu_turn_ms=get_env_int("CPU_TURN_MS", 800),
                persist_throttle_ms=get_env_int("PERSIST_THROTTLE_MS", 1000),
            ),
        )


# Global config instance - loaded once at module import
config = ServerConfig.from_env()


def reload_config() -> ServerConfig:
    """Reload configuration from environment (useful for testing)."""
    global config
    config = ServerConfig.from_env()
    return config
