#!/usr/bin/env python3
"""
Backup Store - Timestamped, checksummed copies of artifacts with a manifest.
"""

import hashlib
import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import BackupError

MANIFEST_TIME_FORMAT = '%Y-%m-%d-%H:%M:%S'
BACKUP_TIME_FORMAT = '%Y%m%d-%H%M%S-%f'


def fsync_path(path: Path) -> None:
    """Flush a file or directory entry to disk."""
    flags = os.O_RDONLY
    if path.is_dir():
        flags |= getattr(os, 'O_DIRECTORY', 0)
    fd = os.open(str(path), flags)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def compute_checksum(path: Path) -> str:
    """sha256 of a file, or of the sorted relative paths and contents of a tree."""
    digest = hashlib.sha256()

    if path.is_dir():
        for item in sorted(path.rglob('*')):
            relative = item.relative_to(path).as_posix()
            digest.update(relative.encode('utf-8'))
            if item.is_file():
                _update_digest(digest, item)
        return digest.hexdigest()

    _update_digest(digest, path)
    return digest.hexdigest()


def _update_digest(digest, path: Path) -> None:
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            digest.update(chunk)


class BackupHandle:
    """Reference to one immutable backup."""

    def __init__(self, source_path: str, stored_path: str, timestamp: str,
                 checksum: str, permissions: Dict[str, int], kind: str = 'FILE'):
        self.source_path = source_path
        self.stored_path = stored_path
        self.timestamp = timestamp
        self.checksum = checksum
        self.permissions = permissions
        self.kind = kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_path': self.source_path,
            'stored_path': self.stored_path,
            'timestamp': self.timestamp,
            'checksum': self.checksum,
            'permissions': dict(self.permissions),
            'kind': self.kind
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupHandle':
        return cls(
            source_path=data['source_path'],
            stored_path=data['stored_path'],
            timestamp=data['timestamp'],
            checksum=data['checksum'],
            permissions=data.get('permissions', {}),
            kind=data.get('kind', 'FILE')
        )

    def __repr__(self) -> str:
        return f"BackupHandle({self.source_path!r} -> {self.stored_path!r})"


class BackupStore:
    """Captures and restores artifacts, indexed by an append-only manifest."""

    def __init__(self, config: Dict[str, Any], snapshot_manager=None):
        """Initialize backup store with configuration."""
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.backup_dir = Path(config.get('backup_dir', '/var/backups/revertguard'))
        self.retention_days = config.get('retention_days', 30)
        self.min_free_bytes = config.get('min_free_bytes', 100 * 1024 * 1024)
        self.manifest_path = self.backup_dir / 'manifest'
        self.snapshot_manager = snapshot_manager

        self.backup_dir.mkdir(parents=True, exist_ok=True)

        if snapshot_manager is not None:
            snapshot_manager.attach_manifest(self.record_snapshot)

        self.logger.debug(f"Backup store initialized at {self.backup_dir}")

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def capture(self, path: str) -> BackupHandle:
        """Copy a file or directory into the store and record it in the manifest."""
        source = Path(path)

        if not source.exists():
            raise BackupError(f"Source does not exist: {source}", step='capture')
        if not os.access(source, os.R_OK):
            raise BackupError(f"Source is not readable: {source}", step='capture')

        self._check_free_space(source)

        now = datetime.now()
        kind = 'DIR' if source.is_dir() else 'FILE'
        suffix = '.bak.d' if kind == 'DIR' else '.bak'
        stored = self.backup_dir / f"{source.name}.{now.strftime(BACKUP_TIME_FORMAT)}{suffix}"

        try:
            if kind == 'DIR':
                shutil.copytree(source, stored, symlinks=True)
            else:
                shutil.copy2(source, stored)
            stat = source.stat()
            self._copy_ownership(stat, stored)
            permissions = {'mode': stat.st_mode & 0o7777, 'uid': stat.st_uid, 'gid': stat.st_gid}
            checksum = compute_checksum(stored)

            Path(f"{stored}.sha256").write_text(checksum + '\n')
            Path(f"{stored}.meta").write_text(json.dumps({
                'source_path': str(source),
                'kind': kind,
                'permissions': permissions,
                'size': stat.st_size
            }, indent=2))

            if kind == 'FILE':
                fsync_path(stored)
            fsync_path(Path(f"{stored}.sha256"))
            fsync_path(Path(f"{stored}.meta"))
            fsync_path(self.backup_dir)
        except OSError as e:
            if stored.is_dir():
                shutil.rmtree(stored, ignore_errors=True)
            elif stored.exists():
                stored.unlink()
            raise BackupError(f"Failed to back up {source}: {e}", step='capture') from e

        handle = BackupHandle(
            source_path=str(source),
            stored_path=str(stored),
            timestamp=now.strftime(MANIFEST_TIME_FORMAT),
            checksum=checksum,
            permissions=permissions,
            kind=kind
        )
        self._append_manifest(handle.timestamp, kind, str(source), str(stored))

        self.logger.info(f"Backed up: {source} -> {stored}")
        return handle

    def _check_free_space(self, source: Path) -> None:
        """Refuse to capture when the backup volume is nearly full."""
        try:
            free = shutil.disk_usage(self.backup_dir).free
        except OSError as e:
            self.logger.warning(f"Could not determine free space in {self.backup_dir}: {e}")
            return

        needed = self._tree_size(source)
        if free < needed or free < self.min_free_bytes:
            raise BackupError(
                f"Insufficient space for backup in {self.backup_dir} "
                f"(need {max(needed, self.min_free_bytes)} bytes, have {free})",
                step='capture'
            )

    def _tree_size(self, source: Path) -> int:
        if source.is_dir():
            return sum(p.stat().st_size for p in source.rglob('*') if p.is_file())
        return source.stat().st_size

    def _copy_ownership(self, stat: os.stat_result, target: Path) -> None:
        """Apply uid/gid, tolerating unprivileged runs."""
        try:
            os.chown(target, stat.st_uid, stat.st_gid)
        except PermissionError:
            self.logger.debug(f"Not permitted to preserve ownership on {target}")

    def _append_manifest(self, timestamp: str, entry_type: str,
                         source_path: str, backup_path: str) -> None:
        """Append one row to the manifest and flush it."""
        row = f"{timestamp}|{entry_type}|{source_path}|{backup_path}\n"
        with open(self.manifest_path, 'a') as f:
            f.write(row)
            f.flush()
            os.fsync(f.fileno())

    def record_snapshot(self, snapshot_id: str, snapshot_path: str) -> None:
        """Record a system snapshot in the manifest."""
        self._append_manifest(datetime.now().strftime(MANIFEST_TIME_FORMAT),
                              'SNAPSHOT', snapshot_id, snapshot_path)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, handle: BackupHandle, target: Optional[str] = None) -> bool:
        """Copy backup content back onto the target (default: its source)."""
        stored = Path(handle.stored_path)
        target_path = Path(target or handle.source_path)

        if not stored.exists():
            raise BackupError(f"Backup not found: {stored}", step='restore')

        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            if handle.kind == 'DIR':
                if target_path.exists():
                    shutil.rmtree(target_path)
                shutil.copytree(stored, target_path, symlinks=True)
            else:
                self._replace_file(stored, target_path)
            self._apply_permissions(handle.permissions, target_path)
        except OSError as e:
            raise BackupError(f"Failed to restore {stored} -> {target_path}: {e}",
                              step='restore') from e

        self.logger.info(f"Restored: {stored} -> {target_path}")

        actual = compute_checksum(target_path)
        if actual != handle.checksum:
            self.logger.warning(f"Checksum mismatch after restore of {target_path}: "
                                f"expected {handle.checksum}, got {actual}")
        return True

    def _replace_file(self, stored: Path, target_path: Path) -> None:
        """Atomically replace target_path with a copy of stored."""
        fd, tmp_name = tempfile.mkstemp(dir=str(target_path.parent),
                                        prefix=f".{target_path.name}.", suffix='.restore')
        os.close(fd)
        try:
            shutil.copy2(stored, tmp_name)
            with open(tmp_name, 'rb') as f:
                os.fsync(f.fileno())
            os.replace(tmp_name, target_path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _apply_permissions(self, permissions: Dict[str, int], target_path: Path) -> None:
        if 'mode' in permissions:
            os.chmod(target_path, permissions['mode'])
        if 'uid' in permissions and 'gid' in permissions:
            try:
                os.chown(target_path, permissions['uid'], permissions['gid'])
            except PermissionError:
                self.logger.debug(f"Not permitted to restore ownership on {target_path}")

    # ------------------------------------------------------------------
    # Listing and lookup
    # ------------------------------------------------------------------

    def list_backups(self, filter_text: Optional[str] = None) -> List[Dict[str, str]]:
        """Return manifest rows, optionally filtered by substring."""
        rows = []

        if not self.manifest_path.exists():
            return rows

        with open(self.manifest_path, 'r') as f:
            for line in f:
                line = line.rstrip('\n')
                if not line or (filter_text and filter_text not in line):
                    continue
                parts = line.split('|', 3)
                if len(parts) != 4:
                    self.logger.debug(f"Skipping malformed manifest row: {line}")
                    continue
                rows.append({
                    'timestamp': parts[0],
                    'type': parts[1],
                    'source_path': parts[2],
                    'backup_path': parts[3]
                })

        return rows

    def find_backup(self, stored_path: str) -> BackupHandle:
        """Rebuild a handle for a stored backup from the manifest and sidecars."""
        rows = [r for r in self.list_backups() if r['backup_path'] == stored_path
                and r['type'] in ('FILE', 'DIR')]
        if not rows:
            raise BackupError(f"Backup not in manifest: {stored_path}", step='lookup')
        row = rows[-1]

        meta: Dict[str, Any] = {}
        meta_file = Path(f"{stored_path}.meta")
        if meta_file.exists():
            try:
                meta = json.loads(meta_file.read_text())
            except ValueError as e:
                self.logger.warning(f"Corrupt metadata for {stored_path}: {e}")

        checksum_file = Path(f"{stored_path}.sha256")
        if checksum_file.exists():
            checksum = checksum_file.read_text().strip()
        else:
            checksum = compute_checksum(Path(stored_path))

        return BackupHandle(
            source_path=row['source_path'],
            stored_path=stored_path,
            timestamp=row['timestamp'],
            checksum=checksum,
            permissions=meta.get('permissions', {}),
            kind=row['type']
        )

    # ------------------------------------------------------------------
    # Snapshots and retention
    # ------------------------------------------------------------------

    def snapshot(self, snapshot_id: Optional[str] = None,
                 description: Optional[str] = None) -> str:
        """Capture a broad point-in-time system snapshot."""
        if self.snapshot_manager is None:
            raise BackupError("No snapshot manager configured", step='snapshot')
        return self.snapshot_manager.create_snapshot(description=description,
                                                     snapshot_id=snapshot_id)

    def sweep(self, retention_days: Optional[int] = None) -> int:
        """Delete backups and snapshots older than the retention age."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = datetime.now() - timedelta(days=days)
        removed = 0
        kept_rows = []

        self.logger.info(f"Cleaning backups older than {days} days")

        for row in self.list_backups():
            try:
                row_time = datetime.strptime(row['timestamp'], MANIFEST_TIME_FORMAT)
            except ValueError:
                self.logger.warning(f"Unparseable manifest timestamp: {row['timestamp']}")
                kept_rows.append(row)
                continue

            if row_time >= cutoff:
                kept_rows.append(row)
                continue

            # snapshot directories are swept by the snapshot manager below
            if row['type'] != 'SNAPSHOT':
                self._delete_backup(row['backup_path'])
                removed += 1

        self._rewrite_manifest(kept_rows)

        if self.snapshot_manager is not None:
            removed += self.snapshot_manager.cleanup_old_snapshots(days)

        self.logger.info(f"Backup cleanup completed ({removed} entries removed)")
        return removed

    def _delete_backup(self, backup_path: str) -> None:
        stored = Path(backup_path)
        try:
            if stored.is_dir():
                shutil.rmtree(stored)
            elif stored.exists():
                stored.unlink()
            for sidecar in (Path(f"{backup_path}.sha256"), Path(f"{backup_path}.meta")):
                if sidecar.exists():
                    sidecar.unlink()
            self.logger.debug(f"Deleted backup: {backup_path}")
        except OSError as e:
            self.logger.error(f"Failed to delete backup {backup_path}: {e}")

    def _rewrite_manifest(self, rows: List[Dict[str, str]]) -> None:
        """Atomically replace the manifest with the given rows."""
        tmp_path = Path(f"{self.manifest_path}.tmp")
        with open(tmp_path, 'w') as f:
            for row in rows:
                f.write(f"{row['timestamp']}|{row['type']}|{row['source_path']}|{row['backup_path']}\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.manifest_path)
