"""Configuration schema for the streamer.

Defines Pydantic models for loading and validating streamer configuration
from YAML files and environment variables. Configuration is read once at
startup and treated as immutable afterwards.
"""

import os
from pathlib import Path
from typing import Any
from urllib.parse import quote

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, field_validator


class MediaMTXConfig(BaseModel):
    """Media server (WHIP ingest) configuration."""

    host: str = Field(
        default="http://localhost:8889",
        description="Base URL of the media server's WebRTC listener",
    )

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Require an http(s) base URL and drop any trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"mediamtx host must start with http:// or https://, got '{v}'")
        return v.rstrip("/")

    def whip_endpoint(self, stream_id: str) -> str:
        """WHIP ingest URL for a stream (``<host>/<stream_id>/whip``, id percent-encoded)."""
        return f"{self.host}/{quote(stream_id, safe='')}/whip"


class GrpcConfig(BaseModel):
    """Control-plane gRPC server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=50051, ge=1, le=65535, description="Bind port")


class WebRTCConfig(BaseModel):
    """Media transport configuration."""

    ice_servers: list[str] = Field(
        default_factory=lambda: ["stun:stun.l.google.com:19302"],
        min_length=1,
        description="ICE server URLs used during candidate gathering",
    )
    track_queue_size: int = Field(
        default=16,
        ge=1,
        le=500,
        description="Packets held for the RTP sender before the oldest is dropped",
    )

    @field_validator("ice_servers")
    @classmethod
    def validate_ice_servers(cls, v: list[str]) -> list[str]:
        """Validate ICE server URL schemes."""
        valid_schemes = ("stun:", "stuns:", "turn:", "turns:")
        for url in v:
            if not url.startswith(valid_schemes):
                raise ValueError(f"ICE server must use one of {valid_schemes}, got '{url}'")
        return v


class TimeoutsConfig(BaseModel):
    """Bounds on blocking setup steps.

    Frame receipt is never bounded: a silent upstream keeps its session open.
    """

    negotiation_s: float | None = Field(
        default=None,
        gt=0,
        description="Upper bound for the whole WHIP handshake (None = unbounded)",
    )
    upstream_connect_s: float = Field(
        default=5.0,
        gt=0,
        description="Time to wait for the upstream channel to become ready",
    )


class HealthConfig(BaseModel):
    """HTTP health endpoint configuration."""

    enabled: bool = Field(default=False, description="Serve /health, /liveness, /sessions")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int = Field(default=8081, ge=1024, le=65535, description="Bind port")


class StreamerConfig(BaseModel):
    """Root streamer configuration."""

    mediamtx: MediaMTXConfig = Field(default_factory=MediaMTXConfig)
    grpc: GrpcConfig = Field(default_factory=GrpcConfig)
    audio_provider_address: str = Field(
        default="localhost:50052",
        description="Default upstream AudioProvider address (host:port)",
    )
    webrtc: WebRTCConfig = Field(default_factory=WebRTCConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: float = Field(
        default=5.0,
        gt=0,
        description="Time allowed for relay tasks to finish during shutdown",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @field_validator("audio_provider_address")
    @classmethod
    def validate_provider_address(cls, v: str) -> str:
        """Accept host:port, optionally prefixed with grpc://."""
        if v.startswith("grpc://"):
            v = v[len("grpc://") :]
        if not v or ":" not in v:
            raise ValueError(f"audio_provider_address must be host:port, got '{v}'")
        return v

    @classmethod
    def from_yaml(cls, path: Path) -> "StreamerConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "StreamerConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(apply_env_overrides({}))


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay MEDIAMTX_HOST, AUDIO_PROVIDER_ADDRESS, GRPC_PORT and LOG_LEVEL."""
    if mediamtx_host := os.getenv("MEDIAMTX_HOST"):
        data.setdefault("mediamtx", {})["host"] = mediamtx_host

    if provider_address := os.getenv("AUDIO_PROVIDER_ADDRESS"):
        data["audio_provider_address"] = provider_address

    if grpc_port := os.getenv("GRPC_PORT"):
        data.setdefault("grpc", {})["port"] = int(grpc_port)

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    return data
