"""Configuration management using pydantic-settings."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Tenancy settings
    multi_tenant: bool = False
    tenant_domain: str = "ezkan.cloud"
    auto_provision_tenants: bool = True  # Create missing tenant stores on first request

    # Database settings
    db_backend: Literal["sqlite", "postgres", "proxy"] = "sqlite"
    sqlite_data_dir: str = "./data"
    db_server: str = "localhost"
    db_name: str = "kanban"
    db_user: str = "kanban_user"
    db_password: str = ""
    db_port: int = 5432
    db_pool_size: int = 10
    db_max_overflow: int = 20
    sql_echo: bool = False

    # SQLite proxy settings (db_backend="proxy")
    sqlite_proxy_url: str = "http://sqlite-proxy:3001"
    proxy_timeout_seconds: float = 30.0

    # JWT settings (tokens are issued elsewhere, only decoded here)
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # WebSocket settings
    ws_max_connections_per_user: int = 50
    ws_max_message_size: int = 65536

    # Real-time event transport
    event_transport: Literal["redis", "postgres", "local"] = "redis"
    publish_timeout_seconds: float = 2.0

    # Redis settings (event transport="redis")
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 50
    redis_socket_timeout: float = 5.0
    redis_retry_on_timeout: bool = True
    redis_required: bool = False  # Set True for multi-worker deployment

    # Outbound calls to the admin portal
    upstream_timeout_seconds: float = 10.0

    # Inbound calls from the admin portal (shared bearer token)
    instance_token: str = ""
    instance_name: str = "Kanban"
    site_url: str = ""
    app_version: str = "1.0.0"
    environment: str = "development"

    @property
    def database_url(self) -> str:
        """Build PostgreSQL async connection string."""
        from urllib.parse import quote_plus
        return (
            f"postgresql+asyncpg://{self.db_user}:{quote_plus(self.db_password)}"
            f"@{self.db_server}:{self.db_port}/{self.db_name}"
        )

    @property
    def notify_dsn(self) -> str:
        """Build plain PostgreSQL DSN for the LISTEN/NOTIFY connection."""
        from urllib.parse import quote_plus
        return (
            f"postgresql://{self.db_user}:{quote_plus(self.db_password)}"
            f"@{self.db_server}:{self.db_port}/{self.db_name}"
        )


# Global settings instance
settings = Settings()
