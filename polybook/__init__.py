"""
Polymarket Order-Book Recorder
==============================

Streams the Polymarket market channel, derives the complementary (NO) book
of each tracked binary market from its YES book, and appends both to
per-market CSV logs.

Project Structure:
- polybook/streaming: WebSocket transport and connection supervisor
- polybook/data_ingestion: book derivation, CSV level logs and the recorder
- polybook/utils: configuration and logging
"""

__version__ = "1.0.0"

from polybook.data_ingestion import BookRecorder, LevelLogger, derive_books
from polybook.streaming import ConnectionSupervisor, FeedTransport

__all__ = [
    "BookRecorder",
    "LevelLogger",
    "derive_books",
    "ConnectionSupervisor",
    "FeedTransport"
]
