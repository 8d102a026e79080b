"""
Book Recorder
=============

Turns raw ``book`` events into YES/NO snapshots and hands them to a single
writer task, so the connection loop never blocks on disk and writes to the
same log always land in arrival order.
"""

import asyncio
from typing import Any, Dict, Mapping, Optional, Tuple

from .level_logger import LevelLogger
from .order_book import BookDerivationError, BookSnapshot, derive_books
from ..utils.config import MarketConfig
from ..utils.logger import get_logger

_STOP = object()


class BookRecorder:
    """
    Derives and persists dual-sided books for the configured markets.

    ``submit`` is synchronous and safe to call from the supervisor loop;
    persistence happens on a writer task started by ``start`` and drained by
    ``stop``.
    """

    def __init__(self, markets: Mapping[str, MarketConfig], level_logger: LevelLogger):
        self.markets = dict(markets)
        self.level_logger = level_logger
        self.logger = get_logger('recorder')

        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None

        self.stats = {
            'books_recorded': 0,
            'rows_written': 0,
            'unknown_assets': 0,
            'derivation_errors': 0,
            'write_errors': 0
        }

    @property
    def is_running(self) -> bool:
        return self._writer_task is not None and not self._writer_task.done()

    def start(self) -> None:
        """Start the writer task on the running event loop"""
        if self.is_running:
            self.logger.warning("Recorder already running")
            return
        self._writer_task = asyncio.create_task(self._writer_loop(), name="book-writer")

    async def stop(self) -> None:
        """Flush every queued batch, then stop the writer"""
        if not self.is_running:
            return
        self._queue.put_nowait(_STOP)
        await self._writer_task
        self._writer_task = None
        self.logger.info(f"Recorder stopped: {self.stats['books_recorded']} books, "
                         f"{self.stats['rows_written']} rows written")

    def submit(self, event: Dict[str, Any]) -> bool:
        """
        Queue one ``book`` event for persistence

        Returns:
            True if the event belonged to a configured market and was queued
        """
        asset_id = event.get("asset_id")
        market = self.markets.get(asset_id)
        if market is None:
            self.stats['unknown_assets'] += 1
            return False

        try:
            snapshots = derive_books(event, market.name)
        except BookDerivationError as e:
            self.stats['derivation_errors'] += 1
            self.logger.error(f"Dropping book for {market.name}: {e}")
            return False

        self._queue.put_nowait(snapshots)
        return True

    async def _writer_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                await self._write(item)
            finally:
                self._queue.task_done()

    async def _write(self, snapshots: Tuple[BookSnapshot, BookSnapshot]) -> None:
        primary, complement = snapshots
        for snapshot in snapshots:
            try:
                rows = await asyncio.to_thread(self.level_logger.append_snapshot, snapshot)
            except Exception as e:
                self.stats['write_errors'] += 1
                self.logger.error(f"Failed to write {snapshot.market_name} {snapshot.side.value} log: {e}")
                continue
            self.stats['rows_written'] += rows

        self.stats['books_recorded'] += 1
        self.logger.info(f"[{primary.market_name}] YES {len(primary.bids)} bids / {len(primary.asks)} asks, "
                         f"NO {len(complement.bids)} bids / {len(complement.asks)} asks @ {primary.timestamp}")

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'queued': self._queue.qsize(),
            'is_running': self.is_running,
            'level_logger': self.level_logger.get_statistics()
        }
