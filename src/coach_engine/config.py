"""Centralized application configuration.

All settings are read from environment variables (or a .env.coach file).
Every field has a default, so the engine layer runs unconfigured against a
``stockfish`` binary on PATH.
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env.coach", env_file_encoding="utf-8",
    )

    # Backend selection
    preferred_engine: Literal["local", "cloud"] = "local"
    fallback_to_local: bool = True

    # Local Stockfish
    stockfish_path: str = "stockfish"
    stockfish_handshake_timeout: float = 5.0

    # Cloud engine (chess-api.com WebSocket)
    cloud_engine_url: str = "wss://chess-api.com/v1"
    cloud_max_thinking_time: int = 50
    reconnect_max_attempts: int = 3
    reconnect_base_delay: float = 2.0

    # Search defaults
    default_depth: int = 12
    default_variants: int = 3

    # Match analysis
    position_timeout: float = 2.0
    progress_interval: int = 5

    # Service
    request_timeout: float = 30.0
    event_queue_size: int = 100
    log_level: str = "INFO"
