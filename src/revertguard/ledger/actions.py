#!/usr/bin/env python3
"""
Rollback Actions - Typed undo records and the handlers that replay them.
"""

import logging
import subprocess
from typing import Any, Dict, List, Optional, Tuple

from ..backup.store import BackupHandle
from ..errors import RevertGuardError, RollbackPartialFailure
from ..services import ServiceController
from ..timeout.watchdog import OUTCOME_FIRED, OUTCOME_ROLLED_BACK, ResolvedMarker


class ActionType:
    """Kinds of undo action a transaction can record."""

    FILE_RESTORE = 'FileRestore'
    COMMAND = 'Command'
    SERVICE_STATE = 'ServiceState'
    FIREWALL_RULE = 'FirewallRule'
    SYSCTL_PARAM = 'SysctlParam'

    ALL = (FILE_RESTORE, COMMAND, SERVICE_STATE, FIREWALL_RULE, SYSCTL_PARAM)


class RollbackAction:
    """One entry of the ledger."""

    def __init__(self, action_type: str, payload: Dict[str, Any], sequence_no: int):
        self.action_type = action_type
        self.payload = payload
        self.sequence_no = sequence_no

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.action_type,
            'payload': self.payload,
            'sequence_no': self.sequence_no
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RollbackAction':
        return cls(data['type'], data['payload'], data['sequence_no'])

    def describe(self) -> str:
        payload = self.payload
        if self.action_type == ActionType.FILE_RESTORE:
            return f"restore {payload.get('target') or payload['handle']['source_path']}"
        if self.action_type == ActionType.SERVICE_STATE:
            return f"service {payload['service']} -> {payload['state']}"
        if self.action_type == ActionType.SYSCTL_PARAM:
            return f"sysctl {payload['param']}={payload['value']}"
        if 'argv' in payload:
            return f"{self.action_type.lower()} {' '.join(payload['argv'])}"
        if 'shell' in payload:
            return f"command {payload['shell']}"
        if 'restore_file' in payload:
            return f"firewall restore {payload['restore_file']}"
        return self.action_type

    def __eq__(self, other) -> bool:
        if not isinstance(other, RollbackAction):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"RollbackAction(#{self.sequence_no} {self.describe()})"


class RollbackReport:
    """Outcome of one rollback pass."""

    def __init__(self, reason: str = ''):
        self.reason = reason
        self.executed: List[RollbackAction] = []
        self.skipped: List[RollbackAction] = []
        self.failed: List[Tuple[RollbackAction, str]] = []

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise RollbackPartialFailure if any undo handler failed."""
        if self.failed:
            names = ', '.join(action.describe() for action, _ in self.failed)
            raise RollbackPartialFailure(
                f"{len(self.failed)} undo action(s) failed: {names}",
                failures=list(self.failed),
                step='rollback'
            )

    def __repr__(self) -> str:
        return (f"RollbackReport(executed={len(self.executed)}, "
                f"skipped={len(self.skipped)}, failed={len(self.failed)})")


class UndoExecutor:
    """Replays ledger entries through type-specific undo handlers."""

    def __init__(self, backup_store, services: Optional[ServiceController] = None,
                 command_timeout: int = 30):
        self.backup_store = backup_store
        self.services = services or ServiceController({'command_timeout': command_timeout})
        self.command_timeout = command_timeout
        self.logger = logging.getLogger(__name__)

        self.handlers = {
            ActionType.FILE_RESTORE: self._undo_file_restore,
            ActionType.COMMAND: self._undo_command,
            ActionType.SERVICE_STATE: self._undo_service_state,
            ActionType.FIREWALL_RULE: self._undo_firewall_rule,
            ActionType.SYSCTL_PARAM: self._undo_sysctl_param,
        }

    def replay(self, actions: List[RollbackAction], reason: str = '') -> RollbackReport:
        """Undo actions newest first, continuing past individual failures."""
        report = RollbackReport(reason)

        for action in reversed(actions):
            handler = self.handlers.get(action.action_type)
            if handler is None:
                self.logger.error(f"No undo handler for action type {action.action_type}")
                report.failed.append((action, 'unknown action type'))
                continue

            try:
                if handler(action.payload) is False:
                    report.skipped.append(action)
                    continue
                report.executed.append(action)
                self.logger.info(f"Undid #{action.sequence_no}: {action.describe()}")
            except Exception as e:
                self.logger.error(f"Undo of #{action.sequence_no} ({action.describe()}) failed: {e}")
                report.failed.append((action, str(e)))

        return report

    def _run(self, command: List[str], **kwargs) -> None:
        try:
            subprocess.run(command, capture_output=True, text=True, check=True,
                           timeout=self.command_timeout, **kwargs)
        except subprocess.CalledProcessError as e:
            raise RevertGuardError(f"{command[0]} exited {e.returncode}: {(e.stderr or '').strip()}",
                                   step='undo') from e
        except subprocess.TimeoutExpired as e:
            raise RevertGuardError(f"{command[0]} timed out after {self.command_timeout}s",
                                   step='undo') from e

    def _undo_file_restore(self, payload: Dict[str, Any]) -> bool:
        marker_path = payload.get('marker')
        if marker_path:
            marker = ResolvedMarker(marker_path)
            if not marker.try_resolve(OUTCOME_ROLLED_BACK) and marker.outcome() == OUTCOME_FIRED:
                self.logger.info(f"Watchdog already restored {payload['handle']['source_path']}, skipping")
                return False

        handle = BackupHandle.from_dict(payload['handle'])
        return self.backup_store.restore(handle, target=payload.get('target'))

    def _undo_command(self, payload: Dict[str, Any]) -> bool:
        if 'shell' in payload:
            self._run(['/bin/sh', '-c', payload['shell']])
        else:
            self._run(list(payload['argv']))
        return True

    def _undo_service_state(self, payload: Dict[str, Any]) -> bool:
        service = payload['service']
        state = payload['state']
        if not self.services.ensure_state(service, state):
            raise RevertGuardError(f"Could not return {service} to {state}", step='undo')
        return True

    def _undo_firewall_rule(self, payload: Dict[str, Any]) -> bool:
        if 'restore_file' in payload:
            command = payload.get('restore_command', 'iptables-restore')
            with open(payload['restore_file'], 'r') as f:
                self._run([command], stdin=f)
        else:
            self._run(list(payload['argv']))
        return True

    def _undo_sysctl_param(self, payload: Dict[str, Any]) -> bool:
        self._run(['sysctl', '-w', f"{payload['param']}={payload['value']}"])
        return True
