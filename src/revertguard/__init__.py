"""
revertguard - Safe, reversible configuration changes for remote Linux hosts.

This module lets an operator change configuration that can sever the
administrative channel (sshd configuration, packet-filter rules) with a
guarantee that the change is undone within a bounded time window, even if
the applying process dies or is disconnected mid-operation.
"""

__version__ = "1.0.0"
__author__ = "MeshAdmin"
__email__ = "admin@meshadmin.com"

from .backup.store import BackupStore, BackupHandle
from .snapshot.manager import SnapshotManager
from .ledger.actions import ActionType, RollbackAction, RollbackReport
from .ledger.transaction import Transaction, TransactionManager, Checkpoint
from .timeout.watchdog import Watchdog, WatchdogRecord, ResolvedMarker
from .safeapply.orchestrator import SafeApplyOrchestrator, SafeApplyResult
from .errors import (
    RevertGuardError,
    ValidationError,
    ApplyError,
    LivenessLost,
    RollbackPartialFailure,
    BackupError,
    StateError,
    InvalidState
)

__all__ = [
    "BackupStore",
    "BackupHandle",
    "SnapshotManager",
    "ActionType",
    "RollbackAction",
    "RollbackReport",
    "Transaction",
    "TransactionManager",
    "Checkpoint",
    "Watchdog",
    "WatchdogRecord",
    "ResolvedMarker",
    "SafeApplyOrchestrator",
    "SafeApplyResult",
    "RevertGuardError",
    "ValidationError",
    "ApplyError",
    "LivenessLost",
    "RollbackPartialFailure",
    "BackupError",
    "StateError",
    "InvalidState"
]
