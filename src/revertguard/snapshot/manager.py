#!/usr/bin/env python3
"""
Snapshot Manager - Broad point-in-time captures of critical system state.

A snapshot is independent of any transaction ledger: it copies a fixed set of
critical configuration files and records firewall rules, kernel parameters,
processes, mounts and listening sockets so an operator can inspect or restore
the host state from before a risky run.
"""

import json
import logging
import os
import shutil
import socket
import subprocess
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil


class SnapshotManager:
    """Manages system snapshots for configuration reversion."""

    def __init__(self, config: Dict[str, Any]):
        """Initialize snapshot manager with configuration."""
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.snapshot_location = Path(config.get('snapshot_dir', '/var/backups/revertguard/snapshots'))
        self.capture_state = config.get('capture_state', True)
        self.critical_files = config.get('critical_files', [])
        self.critical_dirs = config.get('critical_dirs', [])
        self.post_restore_commands = config.get('post_restore_commands', [])
        self.command_timeout = config.get('command_timeout', 60)
        self._manifest_recorder: Optional[Callable[[str, str], None]] = None

        # Ensure snapshot directory exists
        self.snapshot_location.mkdir(parents=True, exist_ok=True)

        self.logger.debug(f"Snapshot manager initialized at {self.snapshot_location}")

    def attach_manifest(self, recorder: Callable[[str, str], None]) -> None:
        """Register the callback that records snapshots in the backup manifest."""
        self._manifest_recorder = recorder

    def create_snapshot(self, description: Optional[str] = None,
                        snapshot_id: Optional[str] = None) -> str:
        """Create a new system snapshot."""
        now = datetime.now()
        snapshot_id = snapshot_id or now.strftime('%Y%m%d-%H%M%S-%f')
        snapshot_dir = self.snapshot_location / snapshot_id

        if snapshot_dir.exists():
            raise FileExistsError(f"Snapshot already exists: {snapshot_id}")

        if description is None:
            description = f"revertguard snapshot created at {now.isoformat()}"

        self.logger.info(f"Creating system snapshot: {snapshot_id}")
        snapshot_dir.mkdir(parents=True)

        metadata = {
            'id': snapshot_id,
            'description': description,
            'timestamp': now.isoformat(),
            'hostname': socket.gethostname(),
            'kernel': os.uname().release,
            'type': 'system',
            'files': [],
            'states': []
        }

        for file_path in list(self.critical_files) + list(self.critical_dirs):
            if os.path.exists(file_path):
                try:
                    self._backup_path(file_path, snapshot_dir, metadata)
                except OSError as e:
                    self.logger.warning(f"Failed to backup {file_path}: {e}")
            else:
                self.logger.debug(f"Skipping missing path: {file_path}")

        if self.capture_state:
            self._capture_system_state(snapshot_dir, metadata)

        # Save metadata
        metadata_file = snapshot_dir / 'metadata.json'
        with open(metadata_file, 'w') as f:
            json.dump(metadata, f, indent=2)
            f.flush()
            os.fsync(f.fileno())

        if self._manifest_recorder:
            self._manifest_recorder(snapshot_id, str(snapshot_dir))

        self.logger.info(f"System snapshot created: {snapshot_dir}")
        return snapshot_id

    def _backup_path(self, source_path: str, snapshot_dir: Path, metadata: Dict) -> None:
        """Backup a file or directory to the snapshot."""
        source = Path(source_path)

        if not source.exists():
            return

        # Create relative path structure in snapshot
        if source.is_absolute():
            relative_path = source.relative_to('/')
        else:
            relative_path = source

        target = snapshot_dir / 'files' / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)

        if source.is_file():
            shutil.copy2(source, target)
            metadata['files'].append({
                'path': str(source),
                'type': 'file',
                'size': source.stat().st_size,
                'mode': oct(source.stat().st_mode & 0o7777)
            })
        elif source.is_dir():
            shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
            metadata['files'].append({
                'path': str(source),
                'type': 'directory',
                'mode': oct(source.stat().st_mode & 0o7777)
            })

    # ------------------------------------------------------------------
    # State capture
    # ------------------------------------------------------------------

    def _capture_system_state(self, snapshot_dir: Path, metadata: Dict) -> None:
        """Capture firewall rules, sysctl values, processes, mounts and sockets."""
        self.logger.debug("Capturing system state")

        for tool, filename, state in (('iptables-save', 'iptables.rules', 'iptables'),
                                      ('ip6tables-save', 'ip6tables.rules', 'ip6tables')):
            if self._save_command_output([tool], snapshot_dir / filename):
                metadata['states'].append({'name': state, 'file': filename})

        if self._save_command_output(['sysctl', '-a'], snapshot_dir / 'sysctl.current'):
            metadata['states'].append({'name': 'sysctl', 'file': 'sysctl.current'})

        collectors = (
            ('processes', 'processes.json', self._collect_processes),
            ('mounts', 'mounts.json', self._collect_mounts),
            ('listening_sockets', 'sockets.json', self._collect_listening_sockets)
        )
        for state, filename, collector in collectors:
            try:
                data = collector()
            except psutil.Error as e:
                self.logger.warning(f"Could not capture {state}: {e}")
                continue
            with open(snapshot_dir / filename, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            metadata['states'].append({'name': state, 'file': filename})

    def _save_command_output(self, command: List[str], target: Path) -> bool:
        """Run a command if available and store its stdout."""
        if not shutil.which(command[0]):
            self.logger.debug(f"{command[0]} not available, skipping")
            return False

        try:
            result = subprocess.run(command, capture_output=True, text=True,
                                    check=True, timeout=self.command_timeout)
        except subprocess.CalledProcessError as e:
            self.logger.warning(f"{command[0]} failed: {e.stderr}")
            return False
        except subprocess.TimeoutExpired:
            self.logger.warning(f"{command[0]} timed out")
            return False

        target.write_text(result.stdout)
        return True

    def _collect_processes(self) -> List[Dict[str, Any]]:
        processes = []
        for proc in psutil.process_iter(['pid', 'ppid', 'name', 'username', 'cmdline']):
            processes.append(proc.info)
        return processes

    def _collect_mounts(self) -> List[Dict[str, Any]]:
        return [part._asdict() for part in psutil.disk_partitions(all=True)]

    def _collect_listening_sockets(self) -> List[Dict[str, Any]]:
        sockets = []
        for conn in psutil.net_connections(kind='inet'):
            if conn.status != psutil.CONN_LISTEN:
                continue
            sockets.append({
                'family': str(conn.family),
                'type': str(conn.type),
                'address': f"{conn.laddr.ip}:{conn.laddr.port}" if conn.laddr else '',
                'pid': conn.pid
            })
        return sockets

    # ------------------------------------------------------------------
    # Listing and deletion
    # ------------------------------------------------------------------

    def list_snapshots(self) -> List[Dict[str, Any]]:
        """List all available snapshots, newest first."""
        snapshots = []

        if not self.snapshot_location.exists():
            return snapshots

        for item in self.snapshot_location.iterdir():
            if not item.is_dir():
                continue

            snapshot_info = {
                'id': item.name,
                'type': 'system',
                'timestamp': '',
                'description': 'System snapshot'
            }

            metadata_file = item / 'metadata.json'
            if metadata_file.exists():
                try:
                    with open(metadata_file, 'r') as f:
                        snapshot_info.update(json.load(f))
                except (OSError, ValueError) as e:
                    self.logger.warning(f"Failed to load metadata for {item.name}: {e}")

            snapshots.append(snapshot_info)

        snapshots.sort(key=lambda x: x.get('timestamp', ''), reverse=True)
        return snapshots

    def get_snapshot_info(self, snapshot_id: str) -> Optional[Dict[str, Any]]:
        """Get detailed information about a specific snapshot."""
        return next((s for s in self.list_snapshots() if s['id'] == snapshot_id), None)

    def delete_snapshot(self, snapshot_id: str) -> bool:
        """Delete a specific snapshot."""
        snapshot_dir = self.snapshot_location / snapshot_id

        if not snapshot_dir.is_dir():
            self.logger.debug(f"Snapshot not found for deletion: {snapshot_id}")
            return False

        try:
            shutil.rmtree(snapshot_dir)
            self.logger.info(f"Snapshot deleted: {snapshot_id}")
            return True
        except OSError as e:
            self.logger.error(f"Failed to delete snapshot {snapshot_id}: {e}")
            return False

    def cleanup_old_snapshots(self, retention_days: int) -> int:
        """Delete snapshots older than the retention age."""
        cutoff = datetime.now() - timedelta(days=retention_days)
        removed = 0

        for snapshot in self.list_snapshots():
            try:
                created = datetime.fromisoformat(snapshot.get('timestamp', ''))
            except ValueError:
                self.logger.debug(f"Snapshot without timestamp: {snapshot['id']}")
                continue

            if created < cutoff and self.delete_snapshot(snapshot['id']):
                removed += 1

        if removed:
            self.logger.info(f"Cleaned up {removed} old snapshots")
        return removed

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_snapshot(self, snapshot_id: str) -> bool:
        """Restore captured files and firewall rules from a snapshot."""
        snapshot_dir = self.snapshot_location / snapshot_id
        metadata_file = snapshot_dir / 'metadata.json'

        if not metadata_file.exists():
            self.logger.error(f"Snapshot not found: {snapshot_id}")
            return False

        try:
            with open(metadata_file, 'r') as f:
                metadata = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to load snapshot metadata: {e}")
            return False

        self.logger.warning(f"Restoring system from snapshot: {snapshot_id}")

        pre_restore_id = self.create_snapshot(
            description=f"Pre-restore state before restoring {snapshot_id}",
            snapshot_id=f"pre-restore-{datetime.now().strftime('%Y%m%d-%H%M%S-%f')}"
        )
        self.logger.info(f"Created pre-restore snapshot: {pre_restore_id}")

        success = True
        for file_info in metadata.get('files', []):
            try:
                self._restore_file(file_info, snapshot_dir)
            except OSError as e:
                self.logger.error(f"Failed to restore {file_info['path']}: {e}")
                success = False

        for tool, filename in (('iptables-restore', 'iptables.rules'),
                               ('ip6tables-restore', 'ip6tables.rules')):
            rules = snapshot_dir / filename
            if rules.exists() and not self._run_with_input([tool], rules):
                success = False

        for command in self.post_restore_commands:
            if not self._run_post_restore(command):
                success = False

        self.logger.info(f"System restore completed from snapshot: {snapshot_id}")
        return success

    def _restore_file(self, file_info: Dict[str, Any], snapshot_dir: Path) -> None:
        """Restore individual file from snapshot."""
        target_path = Path(file_info['path'])

        if target_path.is_absolute():
            relative_path = target_path.relative_to('/')
        else:
            relative_path = target_path

        source_file = snapshot_dir / 'files' / relative_path

        if not source_file.exists():
            self.logger.warning(f"Source file not found in snapshot: {source_file}")
            return

        target_path.parent.mkdir(parents=True, exist_ok=True)

        if file_info['type'] == 'file':
            shutil.copy2(source_file, target_path)
        elif file_info['type'] == 'directory':
            if target_path.exists():
                shutil.rmtree(target_path)
            shutil.copytree(source_file, target_path, symlinks=True)

        try:
            os.chmod(target_path, int(file_info['mode'], 8))
        except (KeyError, ValueError, OSError) as e:
            self.logger.warning(f"Failed to restore permissions for {target_path}: {e}")

        self.logger.info(f"Restored file: {target_path}")

    def _run_with_input(self, command: List[str], input_file: Path) -> bool:
        if not shutil.which(command[0]):
            self.logger.warning(f"{command[0]} not available, cannot restore {input_file.name}")
            return False

        try:
            with open(input_file, 'r') as f:
                subprocess.run(command, stdin=f, capture_output=True, text=True,
                               check=True, timeout=self.command_timeout)
            self.logger.info(f"Restored {input_file.name} with {command[0]}")
            return True
        except subprocess.CalledProcessError as e:
            self.logger.error(f"{command[0]} failed: {e.stderr}")
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.error(f"{command[0]} could not run: {e}")
        return False

    def _run_post_restore(self, command: List[str]) -> bool:
        try:
            subprocess.run(command, capture_output=True, text=True,
                           check=True, timeout=self.command_timeout)
            return True
        except subprocess.CalledProcessError as e:
            self.logger.error(f"Post-restore command failed: {' '.join(command)}: {e.stderr}")
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.error(f"Post-restore command could not run: {' '.join(command)}: {e}")
        return False
