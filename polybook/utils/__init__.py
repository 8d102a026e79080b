"""
Utilities Module for the Order-Book Recorder
===========================================

Configuration management and logging setup.
"""

from .config import Config, FeedConfig, StorageConfig, MarketConfig, LoggingConfig, load_config
from .logger import get_logger, log_config, LogLevel

__all__ = [
    'Config',
    'FeedConfig',
    'StorageConfig',
    'MarketConfig',
    'LoggingConfig',
    'load_config',
    'get_logger',
    'log_config',
    'LogLevel'
]
