#!/usr/bin/env python3
"""
Transaction Manager - begin/commit/rollback around a ledger of undo actions.

A transaction is an explicit handle returned by ``begin``; every ledger
operation takes it. The ledger lives in memory and is mirrored to an
append-only JSON-lines file so that ``recover`` can replay it after a crash.
"""

import atexit
import json
import logging
import os
import shutil
import signal
import sys
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psutil

from ..backup.store import BackupHandle
from ..config import state_path
from ..errors import StateError
from .actions import ActionType, RollbackAction, RollbackReport, UndoExecutor

HISTORY_TIME_FORMAT = '%Y-%m-%d-%H:%M:%S'

GUARDED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)

_system_exit = sys.exit


def exit_code(status) -> int:
    """Process exit status for a sys.exit() argument."""
    if status is None:
        return 0
    if isinstance(status, int):
        return status
    return 1


class Checkpoint:
    """Immutable copy of a ledger at a named point."""

    def __init__(self, name: str, ledger_snapshot: Tuple[RollbackAction, ...],
                 created: Optional[str] = None):
        self.name = name
        self.ledger_snapshot = tuple(ledger_snapshot)
        self.created = created or datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'created': self.created,
            'ledger': [action.to_dict() for action in self.ledger_snapshot]
        }

    def __len__(self) -> int:
        return len(self.ledger_snapshot)


class Transaction:
    """Handle for one open unit of work.

    Use it as a context manager to get the exit guard's semantics on a
    block: a clean exit commits, an exception or nonzero ``SystemExit``
    rolls back.
    """

    OPEN = 'open'
    COMMITTED = 'committed'
    ROLLEDBACK = 'rolledback'

    def __init__(self, manager: 'TransactionManager', txn_id: str, name: str,
                 start_time: datetime):
        self.manager = manager
        self.id = txn_id
        self.name = name
        self.start_time = start_time
        self.status = self.OPEN
        self.ledger: List[RollbackAction] = []
        self.checkpoints: List[Checkpoint] = []
        self.next_sequence = 1

    @property
    def is_open(self) -> bool:
        return self.status == self.OPEN

    def register(self, action_type: str, payload: Dict[str, Any]) -> RollbackAction:
        return self.manager.register(self, action_type, payload)

    def checkpoint(self, name: str) -> Checkpoint:
        return self.manager.checkpoint(self, name)

    def rollback_to(self, name: str) -> RollbackReport:
        return self.manager.rollback_to(self, name)

    def commit(self) -> bool:
        return self.manager.commit(self)

    def rollback(self, reason: str = 'manual') -> RollbackReport:
        return self.manager.rollback(self, reason)

    def __enter__(self) -> 'Transaction':
        return self

    def __exit__(self, exc_type, exc_value, tb) -> bool:
        if not self.is_open:
            return False

        if exc_type is None:
            self.manager.commit(self)
        elif issubclass(exc_type, SystemExit) and exit_code(exc_value.code) == 0:
            self.manager.commit(self)
        elif issubclass(exc_type, SystemExit):
            self.manager.finish_on_exit(self, f"exit_code_{exit_code(exc_value.code)}")
        else:
            self.manager.finish_on_exit(self, exc_type.__name__)
        return False

    def __repr__(self) -> str:
        return f"Transaction({self.id!r}, {self.status}, {len(self.ledger)} actions)"


class ExitGuard:
    """Rolls back or commits a transaction still open at process exit.

    While installed, SIGTERM and SIGHUP are turned into ``SystemExit`` so
    that ``with`` blocks and ``finally`` clauses run on signal termination,
    and ``sys.exit`` records the status it was called with. The interpreter
    does not expose its exit status to ``atexit`` hooks, so only a recorded
    zero status commits; an unknown status is treated as a failure.
    """

    def __init__(self, manager: 'TransactionManager', txn: Transaction):
        self.manager = manager
        self.txn = txn
        self.exit_status: Optional[int] = None
        self.previous_handlers: Dict[int, Any] = {}
        self.previous_excepthook = None
        self.previous_exit = None
        self.logger = logging.getLogger(__name__)

    def install(self) -> None:
        for signum in GUARDED_SIGNALS:
            try:
                self.previous_handlers[signum] = signal.signal(signum, self._on_signal)
            except ValueError:
                # only the main thread may install signal handlers
                self.logger.debug(f"Cannot guard signal {signum} outside the main thread")

        self.previous_excepthook = sys.excepthook
        sys.excepthook = self._on_uncaught
        self.previous_exit = sys.exit
        sys.exit = self._on_exit
        atexit.register(self._at_exit)

    def remove(self) -> None:
        for signum, handler in self.previous_handlers.items():
            try:
                signal.signal(signum, handler)
            except ValueError:
                self.logger.debug(f"Cannot restore handler for signal {signum}")
        self.previous_handlers = {}

        if self.previous_excepthook is not None:
            sys.excepthook = self.previous_excepthook
            self.previous_excepthook = None
        if self.previous_exit is not None:
            sys.exit = self.previous_exit
            self.previous_exit = None
        atexit.unregister(self._at_exit)

    def _on_signal(self, signum, frame):
        self.exit_status = 128 + signum
        self.logger.warning(f"Received signal {signum} with transaction {self.txn.id} open")
        raise SystemExit(self.exit_status)

    def _on_uncaught(self, exc_type, exc_value, tb):
        self.exit_status = 1
        if self.previous_excepthook is not None:
            self.previous_excepthook(exc_type, exc_value, tb)

    def _on_exit(self, status=None):
        self.exit_status = exit_code(status)
        (self.previous_exit or _system_exit)(status)

    def _at_exit(self) -> None:
        if not self.txn.is_open:
            return
        if self.exit_status == 0:
            self.logger.info(f"Process exiting cleanly, committing {self.txn.id}")
            self.manager.commit(self.txn)
        elif self.exit_status is None:
            self.logger.warning(f"Process exiting with {self.txn.id} open and no exit status recorded")
            self.manager.finish_on_exit(self.txn, 'exit_status_unknown')
        else:
            self.manager.finish_on_exit(self.txn, f"exit_code_{self.exit_status}")


class TransactionManager:
    """Owns at most one open transaction and its durable ledger."""

    def __init__(self, config: Dict[str, Any], backup_store, undo_executor=None,
                 services=None):
        """Initialize transaction manager."""
        self.config = config
        self.backup_store = backup_store
        self.logger = logging.getLogger(__name__)

        txn_config = config.get('transaction', {})
        self.rollback_on_failure = txn_config.get('rollback_on_failure', True)
        self.history_limit = txn_config.get('history_limit', 20)
        command_timeout = txn_config.get('command_timeout', 30)

        self.undo_executor = undo_executor or UndoExecutor(backup_store, services, command_timeout)
        self.services = self.undo_executor.services

        self.state_dir = Path(state_path(config))
        self.ledger_path = self.state_dir / 'ledger.jsonl'
        self.current_path = self.state_dir / 'current_transaction'
        self.history_path = self.state_dir / 'history.log'
        self.checkpoint_dir = self.state_dir / 'checkpoints'

        self.state_dir.mkdir(parents=True, exist_ok=True)

        self.current: Optional[Transaction] = None
        self.guard: Optional[ExitGuard] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin(self, name: str = 'change') -> Transaction:
        """Open a transaction. Nesting is not allowed."""
        if self.current is not None and self.current.is_open:
            raise StateError(f"Transaction {self.current.id} is already open", step='begin')

        stale = self._read_current_state()
        if stale:
            pid = stale.get('pid')
            if pid and psutil.pid_exists(pid):
                raise StateError(f"Transaction {stale.get('id')} is open in process {pid}",
                                 step='begin')
            raise StateError(f"Transaction {stale.get('id')} was left open by dead process {pid}; "
                             f"run 'revertguard recover' first", step='begin')

        start_time = datetime.now()
        txn_id = f"{start_time.strftime('%Y%m%d-%H%M%S')}-{os.getpid()}-{name}-{uuid.uuid4().hex[:6]}"
        txn = Transaction(self, txn_id, name, start_time)

        self._truncate_ledger()
        self._write_json_atomic(self.current_path, {
            'id': txn_id,
            'name': name,
            'pid': os.getpid(),
            'start_time': start_time.isoformat()
        })
        self._append_history('BEGIN', txn_id, name)

        self.current = txn
        self.guard = ExitGuard(self, txn)
        self.guard.install()

        self.logger.info(f"Transaction started: {txn_id}")
        return txn

    def commit(self, txn: Optional[Transaction]) -> bool:
        """Accept every registered change and close the transaction."""
        if txn is None or not txn.is_open:
            self.logger.warning(f"Commit ignored, no open transaction ({txn!r})")
            return False

        count = len(txn.ledger)
        txn.ledger.clear()
        txn.status = Transaction.COMMITTED
        self._close(txn, 'COMMIT', f"{count} actions")

        self.logger.info(f"Transaction committed: {txn.id} ({count} actions)")
        return True

    def rollback(self, txn: Optional[Transaction], reason: str = 'manual') -> RollbackReport:
        """Undo every registered change, newest first, and close the transaction."""
        if txn is None or not txn.is_open:
            self.logger.warning(f"Rollback ignored, no open transaction ({txn!r})")
            return RollbackReport(reason)

        self._append_history('ROLLBACK', txn.id, reason)
        self.logger.warning(f"Rolling back transaction {txn.id} ({len(txn.ledger)} actions): {reason}")

        report = self.undo_executor.replay(list(txn.ledger), reason)

        txn.ledger.clear()
        txn.status = Transaction.ROLLEDBACK
        self._close(txn, None, reason)

        if report.ok:
            self.logger.info(f"Rollback of {txn.id} completed")
        else:
            self.logger.error(f"Rollback of {txn.id} completed with {len(report.failed)} failures")
        return report

    def finish_on_exit(self, txn: Transaction, reason: str) -> Optional[RollbackReport]:
        """Close a transaction abandoned by a failing exit path."""
        if not self.rollback_on_failure:
            self.logger.error(f"Transaction {txn.id} ended with {reason}; "
                              f"automatic rollback disabled, keeping changes")
            self.commit(txn)
            return None
        return self.rollback(txn, reason)

    def _close(self, txn: Transaction, event: Optional[str], reason: str) -> None:
        if event:
            self._append_history(event, txn.id, reason)

        self._truncate_ledger()
        if self.current_path.exists():
            self.current_path.unlink()
        shutil.rmtree(self.checkpoint_dir / txn.id, ignore_errors=True)
        txn.checkpoints.clear()

        if self.guard is not None and self.guard.txn is txn:
            self.guard.remove()
            self.guard = None
        if self.current is txn:
            self.current = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, txn: Optional[Transaction], action_type: str,
                 payload: Dict[str, Any]) -> RollbackAction:
        """Append an undo action to the ledger of an open transaction."""
        self._require_open(txn, 'register')
        if not payload:
            raise StateError("Cannot register an action with an empty payload", step='register')
        if action_type not in ActionType.ALL:
            raise ValueError(f"Unknown action type: {action_type}")

        action = RollbackAction(action_type, dict(payload), txn.next_sequence)
        txn.next_sequence += 1
        txn.ledger.append(action)
        self._append_ledger(txn, action)

        self.logger.debug(f"Registered #{action.sequence_no} in {txn.id}: {action.describe()}")
        return action

    def register_file(self, txn: Transaction, handle: BackupHandle,
                      target: Optional[str] = None, marker: Optional[str] = None) -> RollbackAction:
        payload = {'handle': handle.to_dict()}
        if target:
            payload['target'] = target
        if marker:
            payload['marker'] = str(marker)
        return self.register(txn, ActionType.FILE_RESTORE, payload)

    def register_command(self, txn: Transaction, argv: Optional[List[str]] = None,
                         shell: Optional[str] = None) -> RollbackAction:
        """Record the inverse command of a change just made."""
        if argv:
            return self.register(txn, ActionType.COMMAND, {'argv': list(argv)})
        return self.register(txn, ActionType.COMMAND, {'shell': shell} if shell else {})

    def register_service(self, txn: Transaction, service: str,
                         prior_state: Optional[str] = None) -> RollbackAction:
        """Record the running/stopped state a service should return to."""
        self._require_open(txn, 'register')
        state = prior_state or self.services.current_state(service)
        return self.register(txn, ActionType.SERVICE_STATE, {'service': service, 'state': state})

    def register_firewall(self, txn: Transaction, argv: Optional[List[str]] = None,
                          restore_file: Optional[str] = None,
                          restore_command: str = 'iptables-restore') -> RollbackAction:
        """Record either an inverse rule command or a saved ruleset to restore."""
        if argv:
            return self.register(txn, ActionType.FIREWALL_RULE, {'argv': list(argv)})
        if restore_file:
            return self.register(txn, ActionType.FIREWALL_RULE,
                                 {'restore_file': restore_file, 'restore_command': restore_command})
        return self.register(txn, ActionType.FIREWALL_RULE, {})

    def register_sysctl(self, txn: Transaction, param: str,
                        prior_value: Optional[str] = None) -> RollbackAction:
        """Record the value a kernel parameter should be rewritten to."""
        self._require_open(txn, 'register')
        if prior_value is None:
            prior_value = self._read_sysctl(param)
        return self.register(txn, ActionType.SYSCTL_PARAM, {'param': param, 'value': prior_value})

    def _read_sysctl(self, param: str) -> str:
        proc_path = Path('/proc/sys') / param.replace('.', '/')
        try:
            return ' '.join(proc_path.read_text().split())
        except OSError as e:
            raise StateError(f"Cannot read current value of {param}: {e}", step='register')

    def _require_open(self, txn: Optional[Transaction], step: str) -> None:
        if txn is None or not txn.is_open:
            raise StateError(f"No open transaction ({txn!r})", step=step)
        if txn is not self.current:
            raise StateError(f"Transaction {txn.id} does not belong to this manager", step=step)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def checkpoint(self, txn: Transaction, name: str) -> Checkpoint:
        """Store an immutable copy of the current ledger under a name."""
        self._require_open(txn, 'checkpoint')

        checkpoint = Checkpoint(name, tuple(txn.ledger))
        txn.checkpoints = [cp for cp in txn.checkpoints if cp.name != name]
        txn.checkpoints.append(checkpoint)

        checkpoint_dir = self.checkpoint_dir / txn.id
        checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self._write_json_atomic(checkpoint_dir / f"{name}.json", checkpoint.to_dict())

        self.logger.info(f"Checkpoint {name} in {txn.id} at {len(checkpoint)} actions")
        return checkpoint

    def rollback_to(self, txn: Transaction, name: str) -> RollbackReport:
        """Undo only the actions registered after a checkpoint. Stays open."""
        self._require_open(txn, 'rollback_to')

        index = next((i for i, cp in enumerate(txn.checkpoints) if cp.name == name), None)
        if index is None:
            raise StateError(f"No checkpoint named {name} in {txn.id}", step='rollback_to')

        checkpoint = txn.checkpoints[index]
        suffix = txn.ledger[len(checkpoint):]

        self._append_history('ROLLBACK_TO', txn.id, name)
        self.logger.warning(f"Rolling back {txn.id} to checkpoint {name} ({len(suffix)} actions)")

        report = self.undo_executor.replay(suffix, f"rollback_to {name}")

        txn.ledger = list(checkpoint.ledger_snapshot)
        self._rewrite_ledger(txn)

        for later in txn.checkpoints[index + 1:]:
            later_path = self.checkpoint_dir / txn.id / f"{later.name}.json"
            if later_path.exists():
                later_path.unlink()
        txn.checkpoints = txn.checkpoints[:index + 1]

        return report

    # ------------------------------------------------------------------
    # Recovery, history and cleanup
    # ------------------------------------------------------------------

    def recover(self) -> Optional[RollbackReport]:
        """Replay a ledger left behind by a process that died mid-transaction."""
        stale = self._read_current_state()
        if not stale:
            self.logger.info("No abandoned transaction to recover")
            return None

        pid = stale.get('pid')
        if pid and pid != os.getpid() and psutil.pid_exists(pid):
            raise StateError(f"Transaction {stale.get('id')} is still owned by running process {pid}",
                             step='recover')
        if self.current is not None and self.current.id == stale.get('id'):
            raise StateError(f"Transaction {self.current.id} is open in this process", step='recover')

        actions = self._load_ledger()
        txn_id = stale.get('id', 'unknown')
        self.logger.warning(f"Recovering abandoned transaction {txn_id} ({len(actions)} actions)")
        self._append_history('ROLLBACK', txn_id, 'recovered')

        report = self.undo_executor.replay(actions, 'recovered')

        self._truncate_ledger()
        self.current_path.unlink()
        shutil.rmtree(self.checkpoint_dir / txn_id, ignore_errors=True)
        return report

    def history(self, limit: Optional[int] = None) -> List[Dict[str, str]]:
        """Return the most recent history rows, oldest first."""
        limit = self.history_limit if limit is None else limit
        rows = self._read_history()
        return rows[-limit:] if limit else rows

    def cleanup(self, days: int) -> int:
        """Drop history rows and orphaned checkpoint files older than days."""
        cutoff = datetime.now() - timedelta(days=days)
        removed = 0

        if self.checkpoint_dir.exists():
            for entry in self.checkpoint_dir.iterdir():
                if self.current is not None and entry.name == self.current.id:
                    continue
                if datetime.fromtimestamp(entry.stat().st_mtime) < cutoff:
                    shutil.rmtree(entry, ignore_errors=True)
                    removed += 1

        rows = self._read_history()
        kept = []
        for row in rows:
            try:
                if datetime.strptime(row['timestamp'], HISTORY_TIME_FORMAT) < cutoff:
                    continue
            except ValueError:
                pass
            kept.append(row)

        if len(kept) != len(rows):
            removed += len(rows) - len(kept)
            tmp_path = Path(f"{self.history_path}.tmp")
            with open(tmp_path, 'w') as f:
                for row in kept:
                    f.write(f"{row['timestamp']}|{row['event']}|{row['transaction_id']}|{row['reason']}\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.history_path)

        self.logger.info(f"Transaction cleanup removed {removed} entries older than {days} days")
        return removed

    # ------------------------------------------------------------------
    # Durable state
    # ------------------------------------------------------------------

    def _append_history(self, event: str, txn_id: str, reason: str) -> None:
        reason = (reason or '').replace('|', '/').replace('\n', ' ')
        timestamp = datetime.now().strftime(HISTORY_TIME_FORMAT)
        with open(self.history_path, 'a') as f:
            f.write(f"{timestamp}|{event}|{txn_id}|{reason}\n")
            f.flush()
            os.fsync(f.fileno())

    def _read_history(self) -> List[Dict[str, str]]:
        rows = []
        if not self.history_path.exists():
            return rows

        with open(self.history_path, 'r') as f:
            for line in f:
                parts = line.rstrip('\n').split('|', 3)
                if len(parts) != 4:
                    continue
                rows.append({
                    'timestamp': parts[0],
                    'event': parts[1],
                    'transaction_id': parts[2],
                    'reason': parts[3]
                })
        return rows

    def _append_ledger(self, txn: Transaction, action: RollbackAction) -> None:
        entry = action.to_dict()
        entry['transaction_id'] = txn.id
        with open(self.ledger_path, 'a') as f:
            f.write(json.dumps(entry) + '\n')
            f.flush()
            os.fsync(f.fileno())

    def _rewrite_ledger(self, txn: Transaction) -> None:
        tmp_path = Path(f"{self.ledger_path}.tmp")
        with open(tmp_path, 'w') as f:
            for action in txn.ledger:
                entry = action.to_dict()
                entry['transaction_id'] = txn.id
                f.write(json.dumps(entry) + '\n')
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.ledger_path)

    def _truncate_ledger(self) -> None:
        with open(self.ledger_path, 'w') as f:
            f.flush()
            os.fsync(f.fileno())

    def _load_ledger(self) -> List[RollbackAction]:
        actions = []
        if not self.ledger_path.exists():
            return actions

        with open(self.ledger_path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    actions.append(RollbackAction.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    # a torn final line from a crash mid-append
                    self.logger.warning(f"Skipping unreadable ledger entry: {e}")
        return actions

    def _read_current_state(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.current_path, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except ValueError as e:
            self.logger.warning(f"Corrupt transaction state file {self.current_path}: {e}")
            return {'id': 'unknown', 'pid': None}

    def _write_json_atomic(self, path: Path, data: Dict[str, Any]) -> None:
        tmp_path = Path(f"{path}.tmp")
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
