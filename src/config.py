"""Centralized configuration using Pydantic BaseSettings"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ONE_MONTH_SECONDS = 30 * 24 * 60 * 60
ONE_DAY_SECONDS = 24 * 60 * 60


class AppConfig(BaseSettings):
    """Application configuration with environment variable support"""

    # Database
    db_path: str = Field(default="./data/repochat.db", description="SQLite database file path")
    db_busy_timeout_seconds: float = Field(
        default=5.0, ge=0.0, description="How long a connection waits on a locked database"
    )

    # GitHub
    github_api_url: str = Field(default="https://api.github.com", description="GitHub API base URL")
    github_token: str | None = Field(default=None, description="GitHub personal access token")

    # Indexing service
    index_api_url: str = Field(
        default="https://sync.trychroma.com/api/v1", description="Indexing sync API base URL"
    )
    index_api_key: str | None = Field(default=None, description="Indexing service API key")
    index_database_name: str = Field(
        default="repochat", description="Database the indexing service writes collections to"
    )
    index_embedding_model: str = Field(
        default="Qwen/Qwen3-Embedding-0.6B", description="Dense embedding model used for sources"
    )
    index_include_globs: list[str] = Field(
        default_factory=lambda: ["**/*"], description="Globs of repository files to index"
    )

    http_timeout_seconds: float = Field(
        default=30.0, ge=1.0, le=300.0, description="Timeout for outbound HTTP calls"
    )

    # Staleness windows
    repo_ttl_seconds: float = Field(
        default=ONE_MONTH_SECONDS, ge=0, description="Max age of repository metadata"
    )
    commit_ttl_seconds: float = Field(
        default=ONE_DAY_SECONDS, ge=0, description="Max age of the branch HEAD commit"
    )
    tree_ttl_seconds: float = Field(
        default=ONE_DAY_SECONDS, ge=0, description="Retry window for trees that were not found"
    )
    invocation_status_ttl_seconds: float = Field(
        default=2.0, ge=0, description="Max age of a non-terminal invocation status"
    )
    refresh_lease_seconds: float = Field(
        default=120.0,
        gt=0,
        description="How long a refresh claim is held before another worker may take it over",
    )

    # Watchlist
    watchlist_path: str = Field(
        default="repos.yaml", description="YAML file listing repositories to keep warm"
    )

    # MCP Server
    mcp_host: str = Field(default="0.0.0.0", description="MCP server bind address")
    mcp_port: int = Field(default=8080, ge=1024, le=65535, description="MCP server port")

    # OpenTelemetry
    otel_logging_enabled: bool = Field(default=True, description="Enable OpenTelemetry logging")
    otel_tracing_enabled: bool = Field(
        default=True, description="Enable OpenTelemetry tracing for HTTP requests"
    )
    otel_endpoint: str = Field(
        default="http://otel-collector.otel.svc.cluster.local:4318",
        description="OpenTelemetry collector endpoint (HTTP/protobuf)",
    )
    otel_service_name: str = Field(default="repochat-sync", description="Service name for OpenTelemetry")
    otel_service_version: str = Field(
        default="1.0.0", description="Service version for OpenTelemetry"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )


# Global config instance
config = AppConfig()
