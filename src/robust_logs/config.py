"""
Provider configuration.

Durations are in seconds. Values can come from keyword arguments or
from ROBUST_LOGS_* environment variables (a .env file is honoured).
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "ROBUST_LOGS_"


class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Filter registry / reaper
    filter_timeout: float = Field(default=300.0, ge=0)
    cleanup_interval: float = Field(default=60.0, gt=0)

    # Retrying executor
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)

    # Fetcher
    max_block_range: int = Field(default=2000, ge=1)
    chunk_delay: float = Field(default=0.1, ge=0)

    # Listener poll loop
    polling_interval: float = Field(default=4.0, gt=0)
    lookback_blocks: int = Field(default=10, ge=0)
    shutdown_timeout: float = Field(default=10.0, ge=0)

    # Gateway
    request_timeout: float = Field(default=30.0, gt=0)
    max_concurrent: int = Field(default=10, ge=1)

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, dotenv_path: Optional[str] = None, **overrides) -> "ProviderConfig":
        """Build a config from <prefix><FIELD_NAME> environment variables."""
        load_dotenv(dotenv_path)
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)


def rpc_urls_from_env(prefix: str = ENV_PREFIX) -> list[str]:
    """Comma-separated endpoint list from <prefix>RPC_URLS."""
    raw = os.getenv(f"{prefix}RPC_URLS", "")
    return [url.strip() for url in raw.split(",") if url.strip()]
