"""
Data Ingestion Module for the Order-Book Recorder
================================================

- YES/NO book derivation from one-sided market channel books
- Append-only per-market CSV level logs
- Ordered, non-blocking persistence of derived books
"""

from .order_book import (
    BookDerivationError,
    BookSide,
    BookSnapshot,
    PriceLevel,
    complement_price,
    derive_books
)
from .level_logger import LevelLogger, CSV_HEADER
from .recorder import BookRecorder

__all__ = [
    'BookDerivationError',
    'BookSide',
    'BookSnapshot',
    'PriceLevel',
    'complement_price',
    'derive_books',
    'LevelLogger',
    'CSV_HEADER',
    'BookRecorder'
]
