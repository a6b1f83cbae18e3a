#!/usr/bin/env python3
"""
revertguard Daemon - Supervises watchdogs, stale transactions and retention.
"""

import os
import sys
import signal
import time
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any

from croniter import croniter

from ..backup.store import BackupStore
from ..config import (DEFAULT_CONFIG_PATH, load_config, setup_logging, state_path,
                      write_default_config)
from ..errors import StateError
from ..ledger.transaction import TransactionManager
from ..snapshot.manager import SnapshotManager
from ..timeout.watchdog import Watchdog, list_watchdogs, prune_watchdogs


class RevertGuardDaemon:
    """Main daemon class for revertguard."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH):
        """Initialize the daemon with configuration."""
        self.config_path = config_path
        self.config: Dict[str, Any] = {}
        self.running = False
        self.logger: Optional[logging.Logger] = None

        # Core components
        self.snapshot_manager: Optional[SnapshotManager] = None
        self.backup_store: Optional[BackupStore] = None
        self.transaction_manager: Optional[TransactionManager] = None

        # Adopted watchdogs, by id
        self.adopted: Dict[str, threading.Thread] = {}
        self.next_sweep: Optional[datetime] = None

    def load_config(self) -> None:
        """Load configuration, writing the defaults if no file exists."""
        if not Path(self.config_path).exists():
            write_default_config(self.config_path)
        self.config = load_config(self.config_path)

    def write_pid_file(self) -> None:
        """Write process ID to PID file."""
        pid_file = self.config['global']['pid_file']
        pid_dir = os.path.dirname(pid_file)
        os.makedirs(pid_dir, exist_ok=True)

        with open(pid_file, 'w') as f:
            f.write(str(os.getpid()))

    def remove_pid_file(self) -> None:
        """Remove PID file."""
        pid_file = self.config['global']['pid_file']
        try:
            os.unlink(pid_file)
        except FileNotFoundError:
            pass

    def initialize_components(self) -> None:
        """Initialize all daemon components."""
        self.logger.info("Initializing daemon components")

        self.snapshot_manager = SnapshotManager(self.config['snapshot'])
        self.backup_store = BackupStore(self.config['backup'], self.snapshot_manager)
        self.transaction_manager = TransactionManager(self.config, self.backup_store)

        self.schedule_next_sweep()
        self.logger.info("All components initialized successfully")

    def recover_transactions(self) -> None:
        """Replay a ledger left behind by a crashed process."""
        try:
            report = self.transaction_manager.recover()
        except StateError as e:
            self.logger.warning(f"Skipping transaction recovery: {e}")
            return

        if report is not None:
            self.logger.warning(f"Recovered abandoned transaction: {report}")

    def adopt_orphaned_watchdogs(self) -> int:
        """Run watchdogs whose runner process has died."""
        watchdog_dir = state_path(self.config, 'watchdogs')
        adopted = 0

        for entry in list_watchdogs(watchdog_dir):
            if entry['outcome'] != 'pending' or entry['runner_alive']:
                continue
            thread = self.adopted.get(entry['id'])
            if thread is not None and thread.is_alive():
                continue

            try:
                watchdog = Watchdog.from_record(entry['record_path'], self.config)
            except (OSError, ValueError, KeyError) as e:
                self.logger.error(f"Cannot adopt watchdog {entry['id']}: {e}")
                continue

            watchdog.record.runner_pid = os.getpid()
            watchdog.record.save(watchdog.record_path)

            thread = threading.Thread(target=watchdog.run, daemon=True,
                                      name=f"watchdog-{entry['id']}")
            thread.start()
            self.adopted[entry['id']] = thread
            adopted += 1

            self.logger.warning(f"Adopted orphaned watchdog {entry['id']} for {entry['artifact_path']} "
                                f"({entry['remaining_seconds']}s left)")

        return adopted

    def schedule_next_sweep(self) -> None:
        schedule = self.config['daemon'].get('retention_schedule', '0 3 * * *')
        self.next_sweep = croniter(schedule, datetime.now()).get_next(datetime)
        self.logger.debug(f"Next retention sweep at {self.next_sweep}")

    def run_sweep(self) -> int:
        """Apply the retention policy to backups, snapshots, watchdogs and history."""
        days = self.config['backup'].get('retention_days', 30)
        removed = self.backup_store.sweep(days)
        removed += prune_watchdogs(state_path(self.config, 'watchdogs'), days)
        removed += self.transaction_manager.cleanup(days)
        self.logger.info(f"Retention sweep removed {removed} entries")
        return removed

    def tick(self) -> None:
        """One pass of the main loop."""
        self.adopt_orphaned_watchdogs()

        self.adopted = {wid: t for wid, t in self.adopted.items() if t.is_alive()}

        if self.next_sweep is not None and datetime.now() >= self.next_sweep:
            try:
                self.run_sweep()
            except OSError as e:
                self.logger.error(f"Retention sweep failed: {e}")
            self.schedule_next_sweep()

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, shutting down gracefully")
            self.stop()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

    def start(self) -> None:
        """Start the daemon."""
        try:
            self.load_config()

            setup_logging(self.config)
            self.logger = logging.getLogger(__name__)
            self.logger.info("revertguard daemon starting")

            self.write_pid_file()
            self.setup_signal_handlers()
            self.initialize_components()

            if self.config['daemon'].get('recover_on_start', True):
                self.recover_transactions()

            self.running = True
            self.logger.info("revertguard daemon started successfully")

            poll_interval = self.config['daemon'].get('poll_interval', 5)
            while self.running:
                self.tick()
                time.sleep(poll_interval)

        except Exception as e:
            if self.logger:
                self.logger.critical(f"Critical error in daemon: {e}")
            else:
                print(f"Critical error in daemon: {e}", file=sys.stderr)
            self.stop()
            sys.exit(1)

    def stop(self) -> None:
        """Stop the daemon."""
        self.running = False

        if self.logger:
            self.logger.info("Stopping revertguard daemon")

        # adopted timers die with us; the next start adopts them again
        pending = [wid for wid, t in self.adopted.items() if t.is_alive()]
        if pending and self.logger:
            self.logger.warning(f"Leaving {len(pending)} watchdog(s) to the next daemon start")

        if self.config:
            self.remove_pid_file()

        if self.logger:
            self.logger.info("revertguard daemon stopped")


def main():
    """Main entry point for the daemon."""
    import argparse

    parser = argparse.ArgumentParser(description="revertguard Daemon")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Configuration file path"
    )
    parser.add_argument(
        "--foreground",
        action="store_true",
        help="Run in foreground (don't daemonize)"
    )

    args = parser.parse_args()

    daemon = RevertGuardDaemon(config_path=args.config)

    if not args.foreground:
        # Daemonize process
        if os.fork() > 0:
            sys.exit(0)

        os.setsid()

        if os.fork() > 0:
            sys.exit(0)

        # Redirect standard file descriptors
        devnull = os.open(os.devnull, os.O_RDWR)
        for fd in (0, 1, 2):
            os.dup2(devnull, fd)
        os.close(devnull)

    daemon.start()


if __name__ == "__main__":
    main()
