#!/usr/bin/env python3
"""
Safe-Apply Orchestrator - Applies one change to a live artifact under a watchdog.

    preflight -> scratch copy -> mutate -> validate -> backup -> arm watchdog
    -> atomic replace -> reload -> settle -> liveness -> disarm | roll back

Validation runs on a scratch copy, so a rejected change never reaches the
live artifact and needs no backup. Once the live artifact has been replaced,
every failure restores the backup before returning.
A dry run stops after validation and discards the scratch copy.
"""

import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..backup.store import BackupHandle, BackupStore, fsync_path
from ..errors import (ApplyError, BackupError, LivenessLost, RevertGuardError, StateError,
                      ValidationError)
from ..probes.checks import build_liveness_check, build_reloader, build_validator
from ..services import ServiceController
from ..timeout.watchdog import OUTCOME_FIRED, Watchdog, WatchdogRecord


class SafeApplyResult:
    """What happened to one safe-apply call."""

    def __init__(self, artifact_path: str):
        self.artifact_path = artifact_path
        self.success = False
        self.stage: Optional[str] = None
        self.error: Optional[RevertGuardError] = None
        self.reason = ''
        self.backup: Optional[BackupHandle] = None
        self.rolled_back = False
        self.watchdog_id: Optional[str] = None
        self.dry_run = False

    def fail(self, error: RevertGuardError) -> 'SafeApplyResult':
        self.success = False
        self.error = error
        self.stage = error.step
        self.reason = str(error)
        return self

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'artifact_path': self.artifact_path,
            'stage': self.stage,
            'error': type(self.error).__name__ if self.error else None,
            'reason': self.reason,
            'backup': self.backup.stored_path if self.backup else None,
            'rolled_back': self.rolled_back,
            'watchdog_id': self.watchdog_id,
            'dry_run': self.dry_run
        }

    def __bool__(self) -> bool:
        return self.success

    def __repr__(self) -> str:
        state = 'ok' if self.success else f"failed at {self.stage}: {self.reason}"
        return f"SafeApplyResult({self.artifact_path!r}, {state})"


class SafeApplyOrchestrator:
    """Runs the safe-apply protocol for sshd, firewall or custom profiles."""

    def __init__(self, config: Dict[str, Any], backup_store: BackupStore,
                 transaction_manager=None, services: Optional[ServiceController] = None):
        """Initialize orchestrator."""
        self.config = config
        self.backup_store = backup_store
        self.transaction_manager = transaction_manager
        self.services = services or ServiceController(config.get('transaction', {}))
        self.logger = logging.getLogger(__name__)

        apply_config = config.get('safe_apply', {})
        self.settle_time = apply_config.get('settle_time', 3)
        self.preflight_check = apply_config.get('preflight_check', True)

        watchdog_config = config.get('watchdog', {})
        self.default_deadline = watchdog_config.get('default_deadline', 120)
        self.poll_interval = watchdog_config.get('poll_interval', 1.0)

        self.profiles = config.get('profiles', {})

    def apply(self, artifact_path: str, mutate: Callable[[str], Any],
              profile: Optional[str] = None, validator=None, liveness=None, reloader=None,
              deadline: Optional[float] = None, transaction=None,
              mode: Optional[str] = None, dry_run: bool = False) -> SafeApplyResult:
        """Apply mutate() to artifact_path. Never raises the error taxonomy.

        With dry_run the change is made and validated on the scratch copy
        only; nothing is backed up, armed or replaced.
        """
        artifact = Path(artifact_path)
        result = SafeApplyResult(str(artifact))
        result.dry_run = dry_run

        try:
            settings = self._profile(profile)
            validator = build_validator(validator if validator is not None else settings.get('validator'))
            liveness_spec = liveness if liveness is not None else settings.get('liveness')
            liveness = build_liveness_check(liveness_spec)
            reload_spec = reloader if reloader is not None else settings.get('reload')
            reloader = build_reloader(reload_spec, self.services)
        except (KeyError, ValueError) as e:
            error = ApplyError(f"Invalid safe-apply settings: {e}", step='profile')
            self.logger.error(f"Safe-apply of {artifact} aborted: {error}")
            return result.fail(error)

        if deadline is None:
            deadline = settings.get('deadline', self.default_deadline)

        self.logger.info(f"Safe-apply of {artifact} (profile {profile or 'custom'}, deadline {deadline}s"
                         f"{', dry run' if dry_run else ''})")

        # Nothing live is touched until validation has passed.
        scratch = None
        try:
            if not dry_run:
                self._check_transaction(transaction)
            self._preflight(liveness)
            scratch = self._make_scratch(artifact)
            self._mutate(mutate, scratch)
            self._validate(validator, scratch)
            if dry_run:
                self._discard(scratch)
                result.success = True
                self.logger.info(f"Dry run: changes to {artifact} validated, not applied")
                return result
            result.backup = self.backup_store.capture(str(artifact))
        except RevertGuardError as e:
            self._discard(scratch)
            self.logger.error(f"Safe-apply of {artifact} aborted: {e}")
            return result.fail(e)

        watchdog = Watchdog(
            WatchdogRecord.create(
                artifact, result.backup, self.backup_store.backup_dir, deadline,
                liveness=liveness.to_dict() if liveness else None,
                reload=reloader.to_dict() if reloader else None,
                owner_transaction=transaction.id if transaction is not None else None,
                poll_interval=self.poll_interval
            ),
            self.config, liveness=liveness, reloader=reloader, backup_store=self.backup_store
        )
        result.watchdog_id = watchdog.watchdog_id

        try:
            if transaction is not None:
                transaction.manager.register_file(transaction, result.backup,
                                                  marker=str(watchdog.marker.path))
        except StateError as e:
            self._discard(scratch)
            self.logger.error(f"Safe-apply of {artifact} aborted: {e}")
            return result.fail(e)

        try:
            watchdog.arm(mode)
        except (OSError, ValueError) as e:
            self._discard(scratch)
            # resolve the record so no one adopts a watchdog for an unapplied change
            watchdog.claim_rollback()
            error = ApplyError(f"Could not arm watchdog: {e}", step='arm')
            self.logger.error(f"Safe-apply of {artifact} aborted: {error}")
            return result.fail(error)

        try:
            self._replace(scratch, artifact, result.backup)
            self._reload(reloader, artifact)
            if self.settle_time:
                time.sleep(self.settle_time)
            if liveness is not None and not liveness():
                raise LivenessLost(f"{liveness.describe()} failed after reload", step='liveness')
        except RevertGuardError as e:
            self._discard(scratch)
            self.logger.error(f"Safe-apply of {artifact} failed: {e}")
            self._roll_back(watchdog, result.backup, artifact, reloader, result)
            return result.fail(e)
        except Exception as e:
            self._discard(scratch)
            error = ApplyError(f"Unexpected error: {e}", step='apply')
            self.logger.error(f"Safe-apply of {artifact} failed: {error}")
            self._roll_back(watchdog, result.backup, artifact, reloader, result)
            return result.fail(error)

        if not watchdog.disarm():
            # the timer got there first and has restored the backup
            result.rolled_back = watchdog.marker.outcome() == OUTCOME_FIRED
            return result.fail(LivenessLost(
                f"Watchdog resolved as {watchdog.marker.outcome()} before disarm", step='disarm'))

        result.success = True
        self.logger.info(f"Safe-apply of {artifact} succeeded")
        return result

    def _profile(self, profile: Optional[str]) -> Dict[str, Any]:
        if profile is None:
            return {}
        if profile not in self.profiles:
            raise ValueError(f"Unknown safe-apply profile: {profile}")
        return self.profiles[profile]

    def _check_transaction(self, transaction) -> None:
        """The FileRestore must land in an open ledger before anything is backed up."""
        if transaction is None:
            return
        if not transaction.is_open:
            raise StateError(f"Transaction {transaction.id} is {transaction.status}, not open",
                             step='register')
        if self.transaction_manager is not None and transaction.manager is not self.transaction_manager:
            raise StateError(f"Transaction {transaction.id} belongs to another manager", step='register')

    def _preflight(self, liveness) -> None:
        """Refuse to start if the channel is already down."""
        if not self.preflight_check or liveness is None:
            return
        if not liveness():
            raise LivenessLost(f"{liveness.describe()} fails before any change", step='preflight')

    def _make_scratch(self, artifact: Path) -> Path:
        if not artifact.is_file():
            raise ApplyError(f"Artifact is not a regular file: {artifact}", step='scratch')

        try:
            fd, scratch_name = tempfile.mkstemp(dir=str(artifact.parent),
                                                prefix=f".{artifact.name}.", suffix='.scratch')
            os.close(fd)
            shutil.copy2(artifact, scratch_name)
        except OSError as e:
            raise ApplyError(f"Cannot create scratch copy of {artifact}: {e}", step='scratch') from e

        return Path(scratch_name)

    def _mutate(self, mutate: Callable[[str], Any], scratch: Path) -> None:
        try:
            mutate(str(scratch))
        except RevertGuardError:
            raise
        except Exception as e:
            raise ApplyError(f"Mutation failed: {e}", step='mutate') from e

    def _validate(self, validator, scratch: Path) -> None:
        if validator is None:
            self.logger.warning(f"No validator configured for {scratch}, skipping syntax check")
            return

        try:
            ok, output = validator.validate(str(scratch))
        except Exception as e:
            raise ValidationError(f"{validator.describe()} could not run: {e}", step='validate') from e
        if not ok:
            raise ValidationError(f"{validator.describe()} rejected the change: {output}",
                                  step='validate')
        self.logger.debug(f"Validation passed: {validator.describe()}")

    def _replace(self, scratch: Path, artifact: Path, backup: BackupHandle) -> None:
        """Swap the validated scratch copy into place with the original's metadata."""
        try:
            permissions = backup.permissions
            os.chmod(scratch, permissions.get('mode', 0o644))
            try:
                os.chown(scratch, permissions.get('uid', -1), permissions.get('gid', -1))
            except PermissionError:
                self.logger.debug(f"Not permitted to preserve ownership on {artifact}")
            fsync_path(scratch)
            os.replace(scratch, artifact)
            fsync_path(artifact.parent)
        except OSError as e:
            raise ApplyError(f"Cannot replace {artifact}: {e}", step='replace') from e

        self.logger.info(f"Replaced {artifact}")

    def _reload(self, reloader, artifact: Path) -> None:
        if reloader is None:
            return
        if not reloader.reload(str(artifact)):
            raise ApplyError(f"Reload failed: {reloader.describe()}", step='reload')

    def _discard(self, scratch: Optional[Path]) -> None:
        if scratch is not None and scratch.exists():
            scratch.unlink()

    def _roll_back(self, watchdog: Watchdog, backup: BackupHandle, artifact: Path,
                   reloader, result: SafeApplyResult) -> None:
        """Restore the backup now instead of waiting for the watchdog."""
        if not watchdog.claim_rollback() and watchdog.marker.outcome() == OUTCOME_FIRED:
            self.logger.warning(f"Watchdog already restored {artifact}")
            result.rolled_back = True
            return

        try:
            self.backup_store.restore(backup, target=str(artifact))
        except BackupError as e:
            self.logger.critical(f"Could not restore {artifact} from {backup.stored_path}: {e}")
            return

        if reloader is not None and not reloader.reload(str(artifact)):
            self.logger.error(f"Reload after rollback failed: {reloader.describe()}")

        result.rolled_back = True
        self.logger.warning(f"Rolled back {artifact} to {backup.stored_path}")
