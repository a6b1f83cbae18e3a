#!/usr/bin/env python3
"""
Watchdog Runner - Detached timer process for one armed watchdog.

Spawned by ``Watchdog.arm()`` in its own session, so it keeps running after
the foreground exits or loses its terminal.
"""

import argparse
import logging
import signal
import sys

from ..config import DEFAULT_CONFIG_PATH, load_config, setup_logging
from .watchdog import Watchdog


def main(argv=None) -> int:
    """Main entry point for the watchdog runner."""
    parser = argparse.ArgumentParser(description="revertguard watchdog timer")
    parser.add_argument("record", help="Watchdog record file")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Configuration file path"
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except RuntimeError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config)
    logger = logging.getLogger(__name__)

    # the session leader may still get SIGHUP when the controlling tty goes away
    signal.signal(signal.SIGHUP, signal.SIG_IGN)

    try:
        watchdog = Watchdog.from_record(args.record, config)
    except (OSError, ValueError, KeyError) as e:
        logger.critical(f"Cannot load watchdog record {args.record}: {e}")
        return 1

    if watchdog.marker.is_resolved():
        logger.info(f"Watchdog {watchdog.watchdog_id} already resolved ({watchdog.marker.outcome()})")
        return 0

    logger.info(f"Watchdog {watchdog.watchdog_id} waiting {watchdog.remaining():.0f}s "
                f"for {watchdog.record.artifact_path}")
    watchdog.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
