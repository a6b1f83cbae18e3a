#!/usr/bin/env python3
"""
revertguard CLI - Inspect and restore backups, snapshots, watchdogs and history.
"""

import sys
import argparse
import logging
import shutil
from pathlib import Path
from typing import Dict, Any, Optional

import psutil

from ..backup.store import BackupStore
from ..config import DEFAULT_CONFIG_PATH, load_config, state_path
from ..errors import RevertGuardError, StateError
from ..ledger.transaction import TransactionManager
from ..safeapply.orchestrator import SafeApplyOrchestrator
from ..snapshot.manager import SnapshotManager
from ..timeout.watchdog import list_watchdogs, prune_watchdogs


class RevertGuardCLI:
    """Command-line interface for revertguard."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH):
        """Initialize CLI."""
        self.config_path = config_path
        self.config: Optional[Dict[str, Any]] = None
        self.logger = None

    def setup_logging(self, verbose: bool = False) -> None:
        """Setup logging for CLI operations."""
        level = logging.DEBUG if verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format='%(asctime)s - %(levelname)s - %(message)s'
        )
        self.logger = logging.getLogger(__name__)

    def load_config(self) -> Dict[str, Any]:
        """Load configuration file (defaults when missing)."""
        if self.config is None:
            self.config = load_config(self.config_path)
        return self.config

    def _backup_store(self) -> BackupStore:
        config = self.load_config()
        snapshot_manager = SnapshotManager(config.get('snapshot', {}))
        return BackupStore(config.get('backup', {}), snapshot_manager)

    def _transaction_manager(self) -> TransactionManager:
        config = self.load_config()
        return TransactionManager(config, BackupStore(config.get('backup', {})))

    def _confirm(self, message: str, assume_yes: bool) -> bool:
        if assume_yes:
            return True
        print(f"WARNING: {message}")
        response = input("Are you sure you want to continue? (yes/no): ")
        return response.lower() in ['yes', 'y']

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    def cmd_status(self, args) -> int:
        """Show daemon, transaction and watchdog status."""
        config = self.load_config()

        print("revertguard Status")
        print("=" * 40)

        pid_file = config.get('global', {}).get('pid_file', '/var/run/revertguard.pid')
        if Path(pid_file).exists():
            try:
                with open(pid_file, 'r') as f:
                    pid = int(f.read().strip())
                if psutil.pid_exists(pid):
                    print(f"✓ Daemon running (PID: {pid})")
                else:
                    print("✗ Daemon not running (stale PID file)")
            except (OSError, ValueError) as e:
                print(f"✗ Error reading PID file: {e}")
        else:
            print("✗ Daemon not running")

        current = Path(state_path(config, 'current_transaction'))
        if current.exists():
            print(f"⚠ Open transaction state: {current.read_text().strip()}")
        else:
            print("✓ No open transaction")

        pending = [w for w in list_watchdogs(state_path(config, 'watchdogs'))
                   if w['outcome'] == 'pending']
        print(f"{'⚠' if pending else '✓'} Pending watchdogs: {len(pending)}")

        if Path(self.config_path).exists():
            print(f"✓ Configuration: {self.config_path}")
        else:
            print(f"✗ Configuration file missing, using defaults: {self.config_path}")

        return 0

    # ------------------------------------------------------------------
    # backups
    # ------------------------------------------------------------------

    def cmd_backups(self, args) -> int:
        """List or restore backups."""
        try:
            store = self._backup_store()
            if args.backup_action == 'list':
                return self._list_backups(store, args.filter)
            return self._restore_backup(store, args.backup_path, args.target, args.yes)
        except RevertGuardError as e:
            print(f"Backup operation failed: {e}")
            return 1

    def _list_backups(self, store: BackupStore, filter_text: Optional[str]) -> int:
        rows = [r for r in store.list_backups(filter_text) if r['type'] != 'SNAPSHOT']

        if not rows:
            print("No backups found")
            return 0

        print("Available Backups:")
        print("-" * 100)
        print(f"{'Timestamp':<20} {'Type':<5} {'Source':<35} {'Backup'}")
        print("-" * 100)

        for row in rows:
            print(f"{row['timestamp']:<20} {row['type']:<5} {row['source_path']:<35} {row['backup_path']}")

        return 0

    def _restore_backup(self, store: BackupStore, backup_path: Optional[str],
                        target: Optional[str], assume_yes: bool) -> int:
        if not backup_path:
            print("Backup path is required for restoration")
            return 1

        handle = store.find_backup(backup_path)
        destination = target or handle.source_path

        if not self._confirm(f"This will overwrite {destination} with {backup_path}", assume_yes):
            print("Restoration cancelled")
            return 0

        store.restore(handle, target=destination)
        print(f"Restored {backup_path} -> {destination}")
        return 0

    # ------------------------------------------------------------------
    # snapshots
    # ------------------------------------------------------------------

    def cmd_snapshots(self, args) -> int:
        """Manage snapshots."""
        try:
            store = self._backup_store()
            snapshot_manager = store.snapshot_manager

            if args.snapshot_action == 'list':
                return self._list_snapshots(snapshot_manager)
            elif args.snapshot_action == 'create':
                return self._create_snapshot(store, args.description)
            elif args.snapshot_action == 'delete':
                return self._delete_snapshot(snapshot_manager, args.snapshot_id, args.yes)
            elif args.snapshot_action == 'restore':
                return self._restore_snapshot(snapshot_manager, args.snapshot_id, args.yes)
            else:
                print(f"Unknown snapshot action: {args.snapshot_action}")
                return 1

        except (OSError, RevertGuardError) as e:
            print(f"Snapshot operation failed: {e}")
            return 1

    def _list_snapshots(self, snapshot_manager: SnapshotManager) -> int:
        """List all snapshots."""
        snapshots = snapshot_manager.list_snapshots()

        if not snapshots:
            print("No snapshots found")
            return 0

        print("Available Snapshots:")
        print("-" * 80)
        print(f"{'ID':<30} {'Type':<10} {'Timestamp':<20} {'Description'}")
        print("-" * 80)

        for snapshot in snapshots:
            print(f"{snapshot['id']:<30} {snapshot.get('type', 'system'):<10} "
                  f"{snapshot.get('timestamp', 'unknown')[:19]:<20} "
                  f"{snapshot.get('description') or 'No description'}")

        return 0

    def _create_snapshot(self, store: BackupStore, description: Optional[str] = None) -> int:
        """Create a new snapshot."""
        snapshot_id = store.snapshot(description=description or "Manual snapshot created via CLI")
        print(f"Created snapshot: {snapshot_id}")
        return 0

    def _delete_snapshot(self, snapshot_manager: SnapshotManager, snapshot_id: Optional[str],
                         assume_yes: bool) -> int:
        """Delete a snapshot."""
        if not snapshot_id:
            print("Snapshot ID is required for deletion")
            return 1

        if not self._confirm(f"This will delete snapshot {snapshot_id}", assume_yes):
            print("Deletion cancelled")
            return 0

        if snapshot_manager.delete_snapshot(snapshot_id):
            print(f"Deleted snapshot: {snapshot_id}")
            return 0

        print(f"Failed to delete snapshot: {snapshot_id}")
        return 1

    def _restore_snapshot(self, snapshot_manager: SnapshotManager, snapshot_id: Optional[str],
                          assume_yes: bool) -> int:
        """Restore from a snapshot."""
        if not snapshot_id:
            print("Snapshot ID is required for restoration")
            return 1

        if not self._confirm(f"This will restore system configuration from snapshot: {snapshot_id}",
                             assume_yes):
            print("Restoration cancelled")
            return 0

        if snapshot_manager.restore_snapshot(snapshot_id):
            print(f"Successfully restored from snapshot: {snapshot_id}")
            return 0

        print(f"Failed to restore from snapshot: {snapshot_id}")
        return 1

    # ------------------------------------------------------------------
    # history, watchdogs, sweep, recover
    # ------------------------------------------------------------------

    def cmd_history(self, args) -> int:
        """Show the rollback history log."""
        rows = self._transaction_manager().history(args.limit)

        if not rows:
            print("No transaction history")
            return 0

        print(f"{'Timestamp':<20} {'Event':<12} {'Transaction':<45} {'Reason'}")
        print("-" * 100)
        for row in rows:
            print(f"{row['timestamp']:<20} {row['event']:<12} {row['transaction_id']:<45} {row['reason']}")

        return 0

    def cmd_watchdogs(self, args) -> int:
        """List watchdog records and their outcomes."""
        entries = list_watchdogs(state_path(self.load_config(), 'watchdogs'))

        if not entries:
            print("No watchdogs")
            return 0

        print(f"{'ID':<26} {'Outcome':<14} {'Left':>6}  {'Runner':<14} {'Artifact'}")
        print("-" * 90)
        for entry in entries:
            runner = f"{entry['runner_pid']}{'' if entry['runner_alive'] else ' (dead)'}"
            left = f"{entry['remaining_seconds']}s" if entry['outcome'] == 'pending' else '-'
            print(f"{entry['id']:<26} {entry['outcome']:<14} {left:>6}  {runner:<14} {entry['artifact_path']}")

        return 0

    def cmd_sweep(self, args) -> int:
        """Run the retention sweep now."""
        config = self.load_config()
        days = args.days if args.days is not None else config.get('backup', {}).get('retention_days', 30)

        try:
            removed = self._backup_store().sweep(days)
            removed += prune_watchdogs(state_path(config, 'watchdogs'), days)
            removed += self._transaction_manager().cleanup(days)
        except OSError as e:
            print(f"Retention sweep failed: {e}")
            return 1

        print(f"Removed {removed} entries older than {days} days")
        return 0

    def cmd_recover(self, args) -> int:
        """Replay the ledger of a transaction abandoned by a dead process."""
        try:
            report = self._transaction_manager().recover()
        except StateError as e:
            print(f"Cannot recover: {e}")
            return 1

        if report is None:
            print("No abandoned transaction found")
            return 0

        print(f"Undid {len(report.executed)} action(s), skipped {len(report.skipped)}")
        for action, error in report.failed:
            print(f"✗ {action.describe()}: {error}")
        return 0 if report.ok else 1

    # ------------------------------------------------------------------
    # apply
    # ------------------------------------------------------------------

    def cmd_apply(self, args) -> int:
        """Safely replace an artifact with the contents of a prepared file."""
        config = self.load_config()
        source = Path(args.source)
        if not source.is_file():
            print(f"Source file not found: {source}")
            return 1

        def mutate(scratch_path: str) -> None:
            shutil.copyfile(source, scratch_path)

        store = BackupStore(config.get('backup', {}))
        orchestrator = SafeApplyOrchestrator(config, store)
        result = orchestrator.apply(args.artifact, mutate, profile=args.profile,
                                    deadline=args.deadline, dry_run=args.dry_run)

        if result.success and result.dry_run:
            print(f"✓ Changes to {args.artifact} validated (dry run, nothing applied)")
            return 0
        if result.success:
            print(f"✓ Applied {args.artifact} (backup: {result.backup.stored_path})")
            return 0

        print(f"✗ Apply failed at {result.stage}: {result.reason}")
        if result.rolled_back:
            print(f"  {args.artifact} was restored to its previous content")
        return 1


def main(argv=None):
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="revertguard - Safe, reversible configuration changes for remote Linux hosts"
    )

    parser.add_argument(
        '--config',
        default=DEFAULT_CONFIG_PATH,
        help='Configuration file path'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('status', help='Show system status')

    # Backup commands
    backup_parser = subparsers.add_parser('backups', help='List or restore backups')
    backup_parser.add_argument('backup_action', choices=['list', 'restore'], help='Backup action')
    backup_parser.add_argument('backup_path', nargs='?', help='Stored backup path to restore')
    backup_parser.add_argument('--filter', help='Only rows containing this text')
    backup_parser.add_argument('--target', help='Restore to this path instead of the original')
    backup_parser.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')

    # Snapshot management commands
    snapshot_parser = subparsers.add_parser('snapshots', help='Manage snapshots')
    snapshot_parser.add_argument(
        'snapshot_action',
        choices=['list', 'create', 'delete', 'restore'],
        help='Snapshot action to perform'
    )
    snapshot_parser.add_argument('--snapshot-id', help='Snapshot ID for delete/restore operations')
    snapshot_parser.add_argument('--description', help='Description for new snapshot')
    snapshot_parser.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')

    history_parser = subparsers.add_parser('history', help='Show transaction history')
    history_parser.add_argument('--limit', type=int, default=20, help='Number of rows to show')

    subparsers.add_parser('watchdogs', help='List watchdogs')

    sweep_parser = subparsers.add_parser('sweep', help='Delete backups and records past retention')
    sweep_parser.add_argument('--days', type=int, help='Retention age in days')

    subparsers.add_parser('recover', help='Roll back a transaction left open by a dead process')

    apply_parser = subparsers.add_parser('apply', help='Safely replace a configuration file')
    apply_parser.add_argument('artifact', help='Live file to replace')
    apply_parser.add_argument('source', help='File holding the new content')
    apply_parser.add_argument('--profile', help='Validation/reload profile (e.g. sshd, firewall)')
    apply_parser.add_argument('--deadline', type=float, help='Watchdog deadline in seconds')
    apply_parser.add_argument('--dry-run', action='store_true',
                              help='Validate the new content without applying it')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    cli = RevertGuardCLI(config_path=args.config)
    cli.setup_logging(args.verbose)

    try:
        cli.load_config()
    except RuntimeError as e:
        print(f"Configuration error: {e}")
        return 1

    # Route to appropriate command handler
    command_handlers = {
        'status': cli.cmd_status,
        'backups': cli.cmd_backups,
        'snapshots': cli.cmd_snapshots,
        'history': cli.cmd_history,
        'watchdogs': cli.cmd_watchdogs,
        'sweep': cli.cmd_sweep,
        'recover': cli.cmd_recover,
        'apply': cli.cmd_apply
    }

    handler = command_handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        print(f"Unknown command: {args.command}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
