"""
Per-Market Level Logs
=====================

Append-only CSV logs, one per (market name, side) pair:

    <csv_directory>/<market name>_<YES|NO>.csv

with the header ``timestamp,asset_id,level,side,price,size``. Rows are written
in arrival order and never rewritten.
"""

import csv
import io
from pathlib import Path
from typing import Dict, Sequence, Union

from .order_book import BookSide, BookSnapshot, PriceLevel
from ..utils.logger import get_logger

CSV_HEADER = ("timestamp", "asset_id", "level", "side", "price", "size")


class LevelLogger:
    """
    Writes ranked book levels to durable per-market CSV logs.

    Not thread-safe: callers must serialize appends (the recorder runs a
    single writer task).
    """

    def __init__(self, csv_directory: Union[str, Path]):
        self.csv_directory = Path(csv_directory)
        self.csv_directory.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger('level_logger')

        self.stats: Dict[str, int] = {
            'rows_written': 0,
            'batches_written': 0,
            'logs_created': 0
        }

    def get_log_path(self, market_name: str, side: BookSide) -> Path:
        """Deterministic log path for a (market, side) pair"""
        return self.csv_directory / f"{market_name}_{side.value}.csv"

    def ensure_log(self, market_name: str, side: BookSide) -> Path:
        """Create the log with its header if it does not exist; no-op otherwise"""
        path = self.get_log_path(market_name, side)

        # Checked on every call so a rotated or deleted log gets a fresh header
        if not path.exists():
            with path.open("w", newline="", encoding="utf-8") as f:
                csv.writer(f, lineterminator="\n").writerow(CSV_HEADER)
            self.stats['logs_created'] += 1
            self.logger.info(f"Created CSV: {path}")

        return path

    def append_levels(self,
                      market_name: str,
                      side: BookSide,
                      instrument_id: str,
                      timestamp: str,
                      bids: Sequence[PriceLevel],
                      asks: Sequence[PriceLevel]) -> int:
        """
        Append one row per level, bids first, as a single write

        Returns:
            Number of rows written (0 when both sides are empty, in which
            case the log is not touched or created)
        """
        if not bids and not asks:
            return 0

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        for rank, level in enumerate(bids, start=1):
            writer.writerow((timestamp, instrument_id, rank, "BID", level.price, level.size))
        for rank, level in enumerate(asks, start=1):
            writer.writerow((timestamp, instrument_id, rank, "ASK", level.price, level.size))

        path = self.ensure_log(market_name, side)
        with path.open("a", newline="", encoding="utf-8") as f:
            f.write(buffer.getvalue())

        rows = len(bids) + len(asks)
        self.stats['rows_written'] += rows
        self.stats['batches_written'] += 1
        self.logger.debug(f"[{market_name} {side.value}] {len(bids)} bids, {len(asks)} asks @ {timestamp}")
        return rows

    def append_snapshot(self, snapshot: BookSnapshot) -> int:
        """Append every level of a snapshot to its (market, side) log"""
        return self.append_levels(
            snapshot.market_name,
            snapshot.side,
            snapshot.instrument_id,
            snapshot.timestamp,
            snapshot.bids,
            snapshot.asks
        )

    def get_statistics(self) -> Dict[str, int]:
        return dict(self.stats)
