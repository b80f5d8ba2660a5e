"""Configuration schema for the call client."""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from src.client.media import MediaConstraints


class ClientConfig(BaseModel):
    """Call client configuration."""

    server_url: str = Field(default="ws://localhost:8000", description="Signaling WebSocket URL")
    ice_servers_url: str | None = Field(
        default=None,
        description="URL of the server's /ice-servers endpoint (public STUN when unset)",
    )
    auto_call_debounce_s: float = Field(
        default=0.5,
        ge=0.0,
        description="Delay before the arbitrated offerer places the call",
    )
    join_timeout_s: float = Field(default=10.0, gt=0, description="Wait for room:joined")
    media: MediaConstraints = Field(default_factory=MediaConstraints)

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Validate WebSocket URL scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"server_url must start with ws:// or wss://, got '{v}'")
        return v

    @classmethod
    def from_yaml(cls, path: Path) -> "ClientConfig":
        """Load configuration from YAML file.

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(data)
