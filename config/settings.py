"""
Polygon Gap-Fill Settings
Configuration management using Pydantic Settings
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.database.models import get_supported_data_types
from data.backfill.errors import ConfigurationError
from data.backfill.range_resolver import parse_query_start


VALID_DATA_TYPES = tuple(get_supported_data_types())


class Settings(BaseSettings):
    """Process settings with environment variable support"""

    # Application
    app_name: str = "PolygonGapFill"
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(default="sqlite:///./marketdata.db")

    # Market Data APIs
    polygon_api_key: Optional[str] = Field(default=None)

    # Path to the JSON fetcher configuration
    fetcher_config_path: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


class FetcherConfig(BaseModel):
    """
    Fetcher configuration, read once at startup.

    Mirrors the options of the polygon background worker. The model is frozen
    so nothing can mutate it after the worker starts.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    # polygon API key for the streaming and REST endpoints
    api_key: str = ""
    # REST base URL in case it is being proxied
    base_url: str = "https://api.polygon.io"
    # websocket servers, "/stocks" is appended
    ws_servers: str = "wss://socket.polygon.io"
    # subset of bars, quotes, trades
    data_types: List[str] = Field(default_factory=list, validate_default=True)
    # symbols to stream and backfill, empty means all
    symbols: List[str] = Field(default_factory=list)
    # first-time start in "YYYY-MM-DD HH:MM" form, otherwise the store decides
    query_start: Optional[str] = None
    # store TickCnt with every bar
    add_bar_tick_count: bool = False

    # Scheduler
    backfill_interval: float = Field(default=30.0, gt=0)
    concurrency_per_cpu: int = Field(default=10, ge=1)
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    max_requeue_attempts: int = Field(default=0, ge=0)
    shutdown_timeout: float = Field(default=60.0, ge=0)

    @field_validator("data_types", mode="before")
    @classmethod
    def _filter_data_types(cls, value: Any) -> List[str]:
        if value is None:
            value = []
        if isinstance(value, str):
            value = [value]
        types = []
        for data_type in value:
            data_type = str(data_type).strip().lower()
            if data_type in VALID_DATA_TYPES and data_type not in types:
                types.append(data_type)
        if not types:
            raise ValueError("at least one valid data_type is required")
        return types

    @field_validator("symbols", mode="before")
    @classmethod
    def _normalize_symbols(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [s.strip().upper() for s in value if s and s.strip() and s.strip() != "*"]

    @field_validator("query_start")
    @classmethod
    def _check_query_start(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        # raises ConfigurationError (a ValueError) when no layout matches
        parse_query_start(value)
        return value.strip()

    @property
    def stream_url(self) -> str:
        return self.ws_servers.rstrip("/") + "/stocks"


def load_fetcher_config(source: Union[Dict[str, Any], str, Path]) -> FetcherConfig:
    """
    Build a FetcherConfig from a mapping or a JSON file.

    Raises:
        ConfigurationError: If the file cannot be read or validation fails
    """
    if isinstance(source, (str, Path)):
        try:
            data = json.loads(Path(source).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"cannot read fetcher config {source}: {e}") from e
    else:
        data = dict(source)

    try:
        return FetcherConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid fetcher config: {e}") from e


# Global settings instance
settings = Settings()
