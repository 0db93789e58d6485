from pydantic import AnyUrl, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from pathlib import Path
from typing import Literal
import orjson


class ConfigError(RuntimeError):
    """Raised when the server list or settings cannot be loaded."""


class Settings(BaseSettings):
    ENV: str = "dev"
    SERVICE_PORT: int = 3000
    LOG_JSON: bool = True
    LOG_LEVEL: str = "INFO"

    # Persistence
    DATABASE_URL: str = "sqlite:///squadstats.db"
    DB_DEADLOCK_RETRIES: int = 3

    # Game servers (JSON file with a "servers" array)
    SERVERS_FILE: str = "servers.json"
    RECONNECT_DELAY: float = 30.0
    MAX_RECONNECT_ATTEMPTS: int = 10
    CONNECT_TIMEOUT: float = 20.0

    # Event buffer
    FLUSH_INTERVAL: float = 5.0
    MAX_BUFFER_SIZE: int = 100
    MAX_EVENT_AGE: float = 10.0
    MAX_RETRIES: int = 3
    RETRY_BASE_DELAY: float = 1.0
    MAX_RETRY_DELAY: float = 30.0
    DEATH_DELAY: float = 10.0

    # Dead-letter backend: "file" or "redis"
    DEAD_LETTER_ADAPTER: Literal["file", "redis"] = "file"
    DEAD_LETTER_PATH: str = "logs/dead-letter"
    REDIS_URL: AnyUrl | None = None

    # Background maintenance
    WOUND_TTL: float = 600.0
    VERIFICATION_TTL: float = 600.0
    MAINTENANCE_INTERVAL: float = 60.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


class ServerConfig(BaseModel):
    """One game server the connection manager keeps a socket open to."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(..., min_length=1, description="Server identifier tagged onto every event")
    url: str = Field(..., description="Socket endpoint (ws://, wss://, http://, https://)")
    auth_token: str = Field(..., alias="token", min_length=1)
    log_stats: bool = Field(default=True, alias="logStats")

    @field_validator("url")
    @classmethod
    def _check_scheme(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://", "http://", "https://")):
            raise ValueError("url must start with ws://, wss://, http:// or https://")
        return value


def load_servers(path: str | Path) -> list[ServerConfig]:
    """
    Load server descriptors from a JSON file.

    The file holds ``{"servers": [{"id", "url", "token", "logStats"}, ...]}``.

    Raises:
        ConfigError: If the file is missing, malformed, or ids repeat
    """
    path = Path(path)
    try:
        document = orjson.loads(path.read_bytes())
    except FileNotFoundError as e:
        raise ConfigError(f"server configuration not found: {path}") from e
    except orjson.JSONDecodeError as e:
        raise ConfigError(f"server configuration is not valid JSON: {e}") from e

    entries = document.get("servers") if isinstance(document, dict) else None
    if not isinstance(entries, list):
        raise ConfigError("invalid server configuration: servers must be an array")

    servers = []
    for index, entry in enumerate(entries):
        try:
            servers.append(ServerConfig.model_validate(entry))
        except ValidationError as e:
            raise ConfigError(f"invalid server configuration at index {index}: {e}") from e

    ids = [s.id for s in servers]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigError(f"duplicate server ids: {', '.join(duplicates)}")
    return servers


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
