#!/usr/bin/env python3
"""
Connectivity Watchdog - Dead-man's switch that restores a backup unless disarmed.

The foreground arms a watchdog before it touches a live artifact. The timer
runs either in a detached ``revertguard.timeout.runner`` process or in a
daemon thread, and only ever reads durable state: the JSON record written by
``arm`` and the backup it points at. Whoever first creates the resolved
marker (synchronous check, timer, or manual rollback) decides the outcome;
every other path sees the marker and does nothing.
"""

import json
import logging
import os
import subprocess
import sys
import tempfile
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..backup.store import BackupHandle, BackupStore
from ..config import state_path
from ..probes.checks import LivenessCheck, Reloader, build_liveness_check, build_reloader

OUTCOME_DISARMED = 'disarmed'
OUTCOME_EXPIRED_ALIVE = 'expired_alive'
OUTCOME_FIRED = 'fired'
OUTCOME_ROLLED_BACK = 'rolled_back'

# outcomes under which the applied change stays in place
POSITIVE_OUTCOMES = (OUTCOME_DISARMED, OUTCOME_EXPIRED_ALIVE)


def _write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ResolvedMarker:
    """Single-assignment completion flag shared between processes."""

    def __init__(self, path):
        self.path = Path(path)

    def try_resolve(self, outcome: str) -> bool:
        """Claim the marker. Returns False if someone else already did."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent),
                                        prefix=f".{self.path.name}.", suffix='.claim')
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump({'outcome': outcome, 'pid': os.getpid(),
                           'time': datetime.now().isoformat()}, f)
                f.flush()
                os.fsync(f.fileno())
            # link() fails if the marker exists, so exactly one claimant wins
            os.link(tmp_name, self.path)
            return True
        except FileExistsError:
            return False
        finally:
            os.unlink(tmp_name)

    def is_resolved(self) -> bool:
        return self.path.exists()

    def outcome(self) -> Optional[str]:
        try:
            with open(self.path, 'r') as f:
                return json.load(f).get('outcome')
        except FileNotFoundError:
            return None
        except ValueError:
            # a marker that exists is resolved even if its body is unreadable
            return 'unknown'


class WatchdogRecord:
    """Everything the timer needs, persisted before the watchdog is armed."""

    def __init__(self, watchdog_id: str, artifact_path: str, backup: Dict[str, Any],
                 backup_dir: str, deadline: float, liveness: Optional[Dict[str, Any]] = None,
                 reload: Optional[Dict[str, Any]] = None, owner_transaction: Optional[str] = None,
                 runner_pid: Optional[int] = None, created: Optional[str] = None,
                 poll_interval: float = 1.0):
        self.watchdog_id = watchdog_id
        self.artifact_path = artifact_path
        self.backup = backup
        self.backup_dir = backup_dir
        self.deadline = deadline
        self.liveness = liveness
        self.reload = reload
        self.owner_transaction = owner_transaction
        self.runner_pid = runner_pid
        self.created = created or datetime.now().isoformat()
        self.poll_interval = poll_interval

    @classmethod
    def create(cls, artifact_path: str, handle: BackupHandle, backup_dir: str,
               timeout_seconds: float, **kwargs) -> 'WatchdogRecord':
        watchdog_id = f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"
        return cls(watchdog_id, str(artifact_path), handle.to_dict(), str(backup_dir),
                   time.time() + timeout_seconds, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.watchdog_id,
            'artifact_path': self.artifact_path,
            'backup': self.backup,
            'backup_dir': self.backup_dir,
            'deadline': self.deadline,
            'liveness': self.liveness,
            'reload': self.reload,
            'owner_transaction': self.owner_transaction,
            'runner_pid': self.runner_pid,
            'created': self.created,
            'poll_interval': self.poll_interval
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WatchdogRecord':
        return cls(
            watchdog_id=data['id'],
            artifact_path=data['artifact_path'],
            backup=data['backup'],
            backup_dir=data['backup_dir'],
            deadline=data['deadline'],
            liveness=data.get('liveness'),
            reload=data.get('reload'),
            owner_transaction=data.get('owner_transaction'),
            runner_pid=data.get('runner_pid'),
            created=data.get('created'),
            poll_interval=data.get('poll_interval', 1.0)
        )

    def save(self, path: Path) -> None:
        _write_json_atomic(path, self.to_dict())

    @classmethod
    def load(cls, path) -> 'WatchdogRecord':
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))


class MarkerEventHandler(FileSystemEventHandler):
    """Sets the cancellation token as soon as the marker file appears."""

    def __init__(self, marker_path: Path, token: threading.Event):
        super().__init__()
        self.marker_path = str(marker_path)
        self.token = token

    def on_created(self, event):
        if not event.is_directory and event.src_path == self.marker_path:
            self.token.set()

    def on_moved(self, event):
        if not event.is_directory and event.dest_path == self.marker_path:
            self.token.set()


class Watchdog:
    """Deadline timer around one applied artifact."""

    def __init__(self, record: WatchdogRecord, config: Dict[str, Any],
                 liveness: Optional[LivenessCheck] = None, reloader: Optional[Reloader] = None,
                 backup_store: Optional[BackupStore] = None, watchdog_dir=None):
        self.record = record
        self.config = config
        self.logger = logging.getLogger(__name__)

        watchdog_config = config.get('watchdog', {})
        self.mode = watchdog_config.get('mode', 'process')
        self.poll_interval = record.poll_interval or watchdog_config.get('poll_interval', 1.0)

        self.watchdog_dir = Path(watchdog_dir or state_path(config, 'watchdogs'))
        self.record_path = self.watchdog_dir / f"{record.watchdog_id}.json"
        self.marker = ResolvedMarker(self.watchdog_dir / f"{record.watchdog_id}.resolved")

        self.liveness = liveness or build_liveness_check(record.liveness)
        self.reloader = reloader or build_reloader(record.reload)
        self.backup_store = backup_store or BackupStore({'backup_dir': record.backup_dir})

        self.cancelled = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self.process: Optional[subprocess.Popen] = None

    @classmethod
    def from_record(cls, record_path, config: Dict[str, Any]) -> 'Watchdog':
        """Rebuild a watchdog from its durable record alone."""
        record_path = Path(record_path)
        record = WatchdogRecord.load(record_path)
        return cls(record, config, watchdog_dir=record_path.parent)

    @property
    def watchdog_id(self) -> str:
        return self.record.watchdog_id

    def remaining(self) -> float:
        return max(0.0, self.record.deadline - time.time())

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------

    def arm(self, mode: Optional[str] = None) -> None:
        """Persist the record, then start exactly one background timer."""
        mode = mode or self.mode
        if mode not in ('thread', 'process'):
            raise ValueError(f"Unknown watchdog mode: {mode}")

        self.watchdog_dir.mkdir(parents=True, exist_ok=True)
        if mode == 'thread':
            self.record.runner_pid = os.getpid()
        self.record.save(self.record_path)

        if mode == 'thread':
            self.thread = threading.Thread(target=self.run, daemon=True,
                                           name=f"watchdog-{self.watchdog_id}")
            self.thread.start()
        elif mode == 'process':
            self.process = self._spawn_runner()
            self.record.runner_pid = self.process.pid
            self.record.save(self.record_path)

        self.logger.warning(f"Watchdog {self.watchdog_id} armed for {self.record.artifact_path} "
                            f"({self.remaining():.0f}s, {mode})")

    def _spawn_runner(self) -> subprocess.Popen:
        command = [sys.executable, '-m', 'revertguard.timeout.runner', str(self.record_path)]
        config_path = self.config.get('config_path')
        if config_path:
            command.extend(['--config', config_path])

        return subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            start_new_session=True
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def disarm(self) -> bool:
        """Cancel the timer. True if the change is to stay in place."""
        claimed = self.marker.try_resolve(OUTCOME_DISARMED)
        self.cancelled.set()
        outcome = self.marker.outcome()

        if claimed:
            self.logger.info(f"Watchdog {self.watchdog_id} disarmed")
        else:
            self.logger.info(f"Watchdog {self.watchdog_id} already resolved ({outcome})")

        return outcome in POSITIVE_OUTCOMES

    def claim_rollback(self) -> bool:
        """Let a foreground rollback take over. Disarms the timer."""
        claimed = self.marker.try_resolve(OUTCOME_ROLLED_BACK)
        self.cancelled.set()
        if not claimed:
            self.logger.info(f"Watchdog {self.watchdog_id} already resolved ({self.marker.outcome()})")
        return claimed

    def fire(self) -> bool:
        """Deadline reached: restore unless resolved or still alive."""
        if self.marker.is_resolved():
            self.logger.debug(f"Watchdog {self.watchdog_id} resolved ({self.marker.outcome()}), not firing")
            return False

        self.logger.warning(f"Watchdog {self.watchdog_id} deadline reached, re-checking liveness")

        if self.liveness is not None and self.liveness():
            if self.marker.try_resolve(OUTCOME_EXPIRED_ALIVE):
                self.logger.warning(f"Watchdog {self.watchdog_id} expired but liveness passes; "
                                    f"keeping {self.record.artifact_path}")
            return False

        if not self.marker.try_resolve(OUTCOME_FIRED):
            self.logger.info(f"Watchdog {self.watchdog_id} resolved concurrently "
                             f"({self.marker.outcome()}), not restoring")
            return False

        self.logger.critical(f"Liveness lost, restoring {self.record.artifact_path} from backup")
        return self._restore()

    def _restore(self) -> bool:
        handle = BackupHandle.from_dict(self.record.backup)
        try:
            self.backup_store.restore(handle, target=self.record.artifact_path)
        except OSError as e:
            self.logger.critical(f"Watchdog restore of {self.record.artifact_path} failed: {e}")
            return False

        if self.reloader is not None and not self.reloader.reload(self.record.artifact_path):
            self.logger.error(f"Reload after restore failed ({self.reloader.describe()})")

        self.logger.warning(f"Watchdog {self.watchdog_id} restored {self.record.artifact_path}")
        return True

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def run(self) -> bool:
        """Wait for the deadline or cancellation. True if a restore happened."""
        observer = self._start_observer()
        try:
            while not self.cancelled.is_set() and not self.marker.is_resolved():
                remaining = self.remaining()
                if remaining <= 0:
                    return self.fire()
                self.cancelled.wait(min(remaining, self.poll_interval))
        finally:
            if observer is not None:
                observer.stop()
                observer.join(timeout=5)

        self.logger.debug(f"Watchdog {self.watchdog_id} timer cancelled")
        return False

    def _start_observer(self):
        """Watch the watchdog directory for the marker. Polling covers failures."""
        try:
            observer = Observer()
            observer.schedule(MarkerEventHandler(self.marker.path, self.cancelled),
                              str(self.watchdog_dir), recursive=False)
            observer.start()
            return observer
        except OSError as e:
            self.logger.warning(f"Marker observer unavailable, polling only: {e}")
            return None

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the background timer to finish."""
        if self.thread is not None:
            self.thread.join(timeout)
        elif self.process is not None:
            try:
                self.process.wait(timeout)
            except subprocess.TimeoutExpired:
                self.logger.debug(f"Watchdog runner {self.process.pid} still running")


def runner_alive(record: WatchdogRecord) -> bool:
    """True if the record's runner process is still running."""
    if not record.runner_pid:
        return False
    try:
        proc = psutil.Process(record.runner_pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False


def list_watchdogs(watchdog_dir) -> List[Dict[str, Any]]:
    """Describe every watchdog record in a directory, oldest first."""
    watchdog_dir = Path(watchdog_dir)
    entries = []

    if not watchdog_dir.exists():
        return entries

    for record_path in sorted(watchdog_dir.glob('*.json')):
        try:
            record = WatchdogRecord.load(record_path)
        except (OSError, ValueError, KeyError) as e:
            logging.getLogger(__name__).warning(f"Unreadable watchdog record {record_path}: {e}")
            continue

        marker = ResolvedMarker(watchdog_dir / f"{record.watchdog_id}.resolved")
        entries.append({
            'id': record.watchdog_id,
            'artifact_path': record.artifact_path,
            'deadline': datetime.fromtimestamp(record.deadline).isoformat(),
            'remaining_seconds': max(0, int(record.deadline - time.time())),
            'outcome': marker.outcome() or 'pending',
            'runner_pid': record.runner_pid,
            'runner_alive': runner_alive(record),
            'record_path': str(record_path)
        })

    return entries


def prune_watchdogs(watchdog_dir, retention_days: int) -> int:
    """Remove resolved records (and their markers) older than retention_days."""
    watchdog_dir = Path(watchdog_dir)
    cutoff = time.time() - retention_days * 86400
    removed = 0

    for entry in list_watchdogs(watchdog_dir):
        if entry['outcome'] == 'pending':
            continue
        record_path = Path(entry['record_path'])
        if record_path.stat().st_mtime >= cutoff:
            continue
        record_path.unlink()
        (watchdog_dir / f"{entry['id']}.resolved").unlink()
        removed += 1

    return removed
