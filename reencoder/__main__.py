#!/usr/bin/env python3
"""
Re-encoder main entry point.

    python3 -m reencoder [-c config.yaml] [--mode stdout|rtsp]

Logs always go to stderr so that stdout mode carries only the H.264 stream.
"""

import argparse
import logging
import logging.handlers
import os
import signal
import sys
import threading
from typing import List, Optional

from reencoder.config import VALID_OUTPUT_MODES, load_config
from reencoder.errors import ConfigError, StartError
from reencoder.service import PipelineLifecycleManager

logger = logging.getLogger("reencoder")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class _SafeWatchedFileHandler(logging.handlers.WatchedFileHandler):
    """Rotation-tolerant file handler whose write failures never reach the caller."""

    def handleError(self, record):
        pass


def _configure_logging(level: str, log_file: Optional[str]) -> None:
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))
    if not log_file:
        return
    try:
        handler = _SafeWatchedFileHandler(log_file, mode="a")
    except OSError as e:
        logger.warning(f"Cannot open log file {log_file}: {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def _init_gstreamer() -> None:
    import gi

    gi.require_version("Gst", "1.0")
    from gi.repository import Gst

    Gst.init(None)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rtsp-reencoder",
        description="Resilient RTSP re-encoder for Jetson hardware",
    )
    parser.add_argument("-c", "--config", default=None, help="YAML config file (default: config.yaml)")
    parser.add_argument("--mode", choices=VALID_OUTPUT_MODES, default=None,
                        help="Output mode, overrides output.mode")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    if args.mode:
        config.output.mode = args.mode

    _configure_logging(config.log_level, config.log_file)

    for line in config.summary_lines():
        logger.info(line)

    _init_gstreamer()

    stop_event = threading.Event()

    def _on_signal(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    manager = PipelineLifecycleManager(config, stop_event=stop_event)
    try:
        manager.start(config.output.mode)
    except StartError as e:
        logger.error(f"Re-encoder failed to start: {e}")
        return 1

    logger.info("Running. Press Ctrl+C to stop.")
    while not stop_event.wait(1.0):
        pass

    exit_code = 1 if manager.failed else 0

    # Hardware teardown can hang; don't let it keep the process alive
    grace = config.resilience.shutdown_grace_s
    timer = threading.Timer(grace, os._exit, args=(exit_code,))
    timer.daemon = True
    timer.start()

    manager.stop()
    manager.telemetry.report(prefix="Final: ")
    logger.info("Re-encoder shutdown complete")
    timer.cancel()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
