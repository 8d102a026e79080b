"""
Recorder Launcher
=================

Runs the order-book recorder until interrupted:

    python -m polybook --config markets.json
"""

import argparse
import asyncio
import signal
from typing import List, Optional

from pydantic import ValidationError

from .data_ingestion import BookRecorder, LevelLogger
from .streaming import ConnectionState, ConnectionSupervisor
from .utils.config import Config, load_config
from .utils.logger import get_logger, log_config

logger = get_logger('main')

EXIT_OK = 0
EXIT_RECONNECTS_EXHAUSTED = 1
EXIT_BAD_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Record Polymarket YES/NO order books to CSV")
    parser.add_argument("--config", help="JSON configuration file (default: $POLYBOOK_CONFIG)")
    parser.add_argument("--csv-dir", help="Override the CSV output directory")
    parser.add_argument("--log-mode", help="production, development, quiet, silent or trace")
    parser.add_argument("--log-file", help="Also write logs to this rotating file")
    return parser


async def run_recorder(config: Config) -> int:
    """Run supervisor and recorder until stopped; returns the process exit code"""
    level_logger = LevelLogger(config.storage.csv_directory)
    recorder = BookRecorder(config.markets, level_logger)
    supervisor = ConnectionSupervisor(config.feed, config.asset_ids, on_book=recorder.submit)

    loop = asyncio.get_running_loop()

    def _request_shutdown(signame: str) -> None:
        logger.info(f"Received {signame}, shutting down gracefully...")
        supervisor.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(_request_shutdown, "signal"))

    logger.info("Polymarket Orderbook Logger Started")
    logger.info(f"CSV Directory: {config.storage.csv_directory}")
    logger.info(f"Tracking {len(config.markets)} markets")

    recorder.start()
    try:
        final_state = await supervisor.run()
    finally:
        await recorder.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass

    stats = supervisor.get_connection_stats()
    logger.info(f"Connection stats: {stats['connects']} connects, {stats['book_events']} book events, "
                f"{stats['parse_errors']} parse errors")

    if final_state is ConnectionState.CLOSED:
        return EXIT_OK
    logger.critical("Reconnect attempts exhausted - operator intervention required")
    return EXIT_RECONNECTS_EXHAUSTED


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_BAD_CONFIG

    if args.csv_dir:
        config.storage.csv_directory = args.csv_dir
    if args.log_mode:
        config.logging.mode = args.log_mode
    if args.log_file:
        config.logging.log_file = args.log_file

    try:
        log_config.set_mode(config.logging.mode)
    except ValueError as e:
        logger.error(str(e))
        return EXIT_BAD_CONFIG
    if config.logging.log_file:
        log_config.add_file_logging(config.logging.log_file)

    return asyncio.run(run_recorder(config))
