"""Configuration schema for the signaling server.

Defines Pydantic models for loading and validating signaling server
configuration from YAML files and environment variables.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8000, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=200, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=2**16, ge=1024, description="Maximum size of a single signaling frame"
    )
    ping_interval_s: float | None = Field(
        default=20.0,
        gt=0,
        description="Keepalive ping interval (None disables keepalive)",
    )
    ping_timeout_s: float | None = Field(
        default=20.0,
        gt=0,
        description="Close the connection if a ping is not answered within this time",
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class RoomConfig(BaseModel):
    """Room (session) registry configuration."""

    max_participants: int = Field(
        default=2,
        description="Participants allowed per room (calls are strictly two-party)",
    )
    chat_history_limit: int = Field(
        default=500,
        ge=0,
        description="Chat messages kept in memory per room (oldest dropped first)",
    )
    max_chat_length: int = Field(
        default=4000,
        ge=1,
        description="Maximum characters accepted in a single chat message",
    )
    evict_chat_history_when_empty: bool = Field(
        default=False,
        description="Discard a room's chat history when its last member leaves",
    )

    @field_validator("max_participants")
    @classmethod
    def validate_max_participants(cls, v: int) -> int:
        """Calls pair exactly two participants."""
        if v != 2:
            raise ValueError(f"rooms.max_participants must be 2, got {v}")
        return v


class IceServerConfig(BaseModel):
    """A STUN/TURN server handed to clients by the /ice-servers endpoint."""

    urls: list[str] = Field(..., min_length=1, description="STUN/TURN URLs")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        """Validate that every URL uses a STUN or TURN scheme."""
        valid_schemes = ("stun:", "stuns:", "turn:", "turns:")
        for url in v:
            if not url.startswith(valid_schemes):
                raise ValueError(f"ICE server URL must start with one of {valid_schemes}, got '{url}'")
        return v


class IceConfig(BaseModel):
    """Network traversal configuration published to clients."""

    servers: list[IceServerConfig] = Field(
        default_factory=lambda: [
            IceServerConfig(urls=["stun:stun.l.google.com:19302"]),
        ],
        description="ICE servers returned by GET /ice-servers",
    )


class SignalingConfig(BaseModel):
    """Root signaling server configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    rooms: RoomConfig = Field(default_factory=RoomConfig)
    ice: IceConfig = Field(default_factory=IceConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "SignalingConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "SignalingConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(apply_env_overrides({}))


def apply_env_overrides(data: dict) -> dict:
    """Apply SIGNALING_* environment variables on top of raw config data.

    Args:
        data: Raw configuration mapping (modified in place)

    Returns:
        The same mapping, for chaining
    """
    import os

    if host := os.getenv("SIGNALING_HOST"):
        data.setdefault("transport", {}).setdefault("websocket", {})["host"] = host

    if port := os.getenv("SIGNALING_PORT"):
        data.setdefault("transport", {}).setdefault("websocket", {})["port"] = int(port)

    if log_level := os.getenv("SIGNALING_LOG_LEVEL"):
        data["log_level"] = log_level

    if ice_urls := os.getenv("SIGNALING_ICE_URLS"):
        urls = [url.strip() for url in ice_urls.split(",") if url.strip()]
        data.setdefault("ice", {})["servers"] = [{"urls": urls}]

    return data
