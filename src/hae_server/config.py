"""Configuration management using pydantic-settings."""

import threading
import warnings
from urllib.parse import quote_plus

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Valid log levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
VALID_SPAN_EXPORTERS = {"otlp", "console", "none"}


class MongoSettings(BaseSettings):
    """MongoDB connection settings."""

    model_config = SettingsConfigDict(env_prefix="MONGO_")

    uri: str | None = Field(default=None, description="Full MongoDB URI (overrides host/port)")
    host: str = Field(default="hae-mongo", description="MongoDB host")
    port: int = Field(default=27017, description="MongoDB port")
    username: str | None = Field(default=None, description="MongoDB username")
    password: str | None = Field(default=None, description="MongoDB password")
    db: str = Field(default="health-auto-export", description="MongoDB database name")
    server_selection_timeout_ms: int = Field(
        default=5000, description="Server selection timeout in milliseconds"
    )

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v

    @field_validator("db")
    @classmethod
    def validate_db(cls, v: str) -> str:
        """Validate database name is usable."""
        if not v or not v.strip():
            raise ValueError("MongoDB database name cannot be empty")
        if any(ch in v for ch in '/\\. "$'):
            raise ValueError(f"Invalid MongoDB database name '{v}'")
        return v

    @field_validator("server_selection_timeout_ms")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """Validate server selection timeout is reasonable."""
        if v < 100:
            raise ValueError(f"Server selection timeout must be at least 100ms, got {v}")
        return v

    def connection_uri(self) -> str:
        """Build the connection URI from the explicit URI or host parts."""
        if self.uri:
            return self.uri
        if self.username:
            credentials = quote_plus(self.username)
            if self.password:
                credentials += ":" + quote_plus(self.password)
            return f"mongodb://{credentials}@{self.host}:{self.port}/?authSource=admin"
        return f"mongodb://{self.host}:{self.port}/"


class HTTPSettings(BaseSettings):
    """HTTP API settings."""

    model_config = SettingsConfigDict(env_prefix="HTTP_")

    enabled: bool = Field(default=True, description="Serve the HTTP API")
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3001, description="Bind port")
    read_token: str = Field(default="", description="Token for query endpoints")
    write_token: str = Field(default="", description="Token for the ingestion endpoint")
    max_request_size: int = Field(
        default=200 * 1024 * 1024, description="Maximum request body in bytes"
    )

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v

    @field_validator("max_request_size")
    @classmethod
    def validate_max_request_size(cls, v: int) -> int:
        """Validate request size limit."""
        if v < 1024:
            raise ValueError(f"Max request size must be at least 1KB, got {v}")
        return v

    @model_validator(mode="after")
    def warn_on_open_endpoints(self) -> "HTTPSettings":
        """Warn when the API is served without tokens."""
        if self.enabled and not self.write_token:
            warnings.warn(
                "HTTP_WRITE_TOKEN is empty; the ingestion endpoint accepts any caller",
                UserWarning,
                stacklevel=2,
            )
        if self.enabled and not self.read_token:
            warnings.warn(
                "HTTP_READ_TOKEN is empty; query endpoints accept any caller",
                UserWarning,
                stacklevel=2,
            )
        return self


class TracingSettings(BaseSettings):
    """OpenTelemetry tracing settings."""

    model_config = SettingsConfigDict(env_prefix="TRACING_")

    enabled: bool = Field(default=False, description="Enable trace export")
    service_name: str = Field(default="hae-server", description="Service name resource attribute")
    exporter: str = Field(default="otlp", description="Span exporter: otlp, console or none")

    @field_validator("exporter")
    @classmethod
    def validate_exporter(cls, v: str) -> str:
        """Validate the span exporter name."""
        normalized = v.strip().lower()
        if normalized not in VALID_SPAN_EXPORTERS:
            raise ValueError(
                f"Invalid span exporter '{v}'. Must be one of: {sorted(VALID_SPAN_EXPORTERS)}"
            )
        return normalized


class AppSettings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_prefix="APP_")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or console")
    default_source: str = Field(
        default="health_auto_export", description="Source used for records without one"
    )
    debug: bool = Field(default=False, description="Log full ingest payloads and outcomes")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        normalized = v.upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
            )
        return normalized

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        normalized = v.lower()
        if normalized not in ("json", "console"):
            raise ValueError(f"Invalid log format '{v}'. Must be 'json' or 'console'")
        return normalized

    @field_validator("default_source")
    @classmethod
    def validate_default_source(cls, v: str) -> str:
        """Validate default source is not blank."""
        if not v.strip():
            raise ValueError("Default source cannot be empty")
        return v.strip()


class Settings(BaseSettings):
    """Combined application settings."""

    mongo: MongoSettings = Field(default_factory=MongoSettings)
    http: HTTPSettings = Field(default_factory=HTTPSettings)
    tracing: TracingSettings = Field(default_factory=TracingSettings)
    app: AppSettings = Field(default_factory=AppSettings)

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from environment variables."""
        return cls(
            mongo=MongoSettings(),
            http=HTTPSettings(),
            tracing=TracingSettings(),
            app=AppSettings(),
        )


# Global settings instance with thread-safe initialization
_settings: Settings | None = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Get or create the global settings instance.

    Thread-safe singleton pattern using double-checked locking.
    """
    global _settings
    if _settings is None:
        with _settings_lock:
            # Double-check after acquiring lock
            if _settings is None:
                _settings = Settings.load()
    return _settings
