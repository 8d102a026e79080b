"""
Order-Book Recorder Configuration
"""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional, Union
from pydantic import BaseModel, Field, model_validator
from dotenv import load_dotenv

from .logger import get_logger, MODE_LEVELS

logger = get_logger('config')

DEFAULT_WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"


class FeedConfig(BaseModel):
    """Upstream feed connection configuration"""
    ws_url: str = Field(default=DEFAULT_WS_URL, description="Market channel WebSocket URL")
    heartbeat_interval_ms: int = Field(default=25000, gt=0, description="Ping interval in milliseconds")
    reconnect_delay_ms: int = Field(default=5000, gt=0, description="Base reconnect backoff delay")
    max_reconnect_delay_ms: int = Field(default=60000, gt=0, description="Cap on a single backoff delay")
    max_reconnect_attempts: int = Field(default=10, ge=0, description="Consecutive attempts before giving up")
    close_timeout_s: float = Field(default=10.0, gt=0, description="Graceful close handshake timeout")


class StorageConfig(BaseModel):
    """Output log configuration"""
    csv_directory: str = Field(default="./orderbook_logs", description="Directory for per-market CSV logs")


class MarketConfig(BaseModel):
    """One tracked binary market, keyed by its YES token id"""
    name: str = Field(description="Human readable market name, used in log file names")
    yes_token_id: Optional[str] = Field(default=None, description="YES token id (defaults to the mapping key)")


class LoggingConfig(BaseModel):
    """Application logging configuration"""
    mode: str = Field(default="production", description="production, development, quiet, silent or trace")
    log_file: Optional[str] = Field(default=None, description="Optional rotating log file")

    @model_validator(mode="after")
    def _check_mode(self):
        if self.mode.lower() not in MODE_LEVELS:
            raise ValueError(f"log mode must be one of {sorted(MODE_LEVELS)}")
        return self


class Config(BaseModel):
    """Main configuration class"""
    feed: FeedConfig = Field(default_factory=FeedConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    markets: Dict[str, MarketConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fill_token_ids(self):
        for token_id, market in self.markets.items():
            if market.yes_token_id is None:
                market.yes_token_id = token_id
            elif market.yes_token_id != token_id:
                raise ValueError(
                    f"market '{market.name}' is keyed by {token_id} but declares yes_token_id {market.yes_token_id}"
                )
        return self

    @property
    def asset_ids(self):
        """Token ids to subscribe to, in configuration order"""
        return list(self.markets.keys())

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary"""
        return {
            "feed": self.feed.model_dump(),
            "storage": self.storage.model_dump(),
            "logging": self.logging.model_dump(),
            "markets": {token_id: m.model_dump() for token_id, m in self.markets.items()}
        }


def load_config(path: Optional[Union[str, Path]] = None) -> Config:
    """
    Build the configuration from an optional JSON file plus environment overrides

    Lookup order: explicit ``path``, then ``POLYBOOK_CONFIG``. Environment
    variables ``POLYBOOK_WS_URL``, ``POLYBOOK_CSV_DIR`` and ``POLYBOOK_LOG_MODE``
    override the file values. Raises ``pydantic.ValidationError`` on bad values.
    """
    load_dotenv()

    path = path or os.getenv("POLYBOOK_CONFIG")
    data: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        logger.info(f"Loaded configuration from {path}")

    overrides = {
        ("feed", "ws_url"): os.getenv("POLYBOOK_WS_URL"),
        ("storage", "csv_directory"): os.getenv("POLYBOOK_CSV_DIR"),
        ("logging", "mode"): os.getenv("POLYBOOK_LOG_MODE"),
    }
    for (section, key), value in overrides.items():
        if value:
            data.setdefault(section, {})[key] = value

    config = Config.model_validate(data)

    if not config.markets:
        logger.warning("No markets configured - nothing will be recorded")

    return config
