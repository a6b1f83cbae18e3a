#!/usr/bin/env python3
"""
Tests for the safe-apply orchestrator.
"""

import unittest
from unittest.mock import MagicMock, patch
import tempfile
import shutil
import os
import glob
from pathlib import Path

import yaml

from revertguard.backup.store import BackupStore
from revertguard.config import get_default_config, merge_config
from revertguard.errors import ApplyError, BackupError, LivenessLost, StateError, ValidationError
from revertguard.ledger.actions import UndoExecutor
from revertguard.ledger.transaction import TransactionManager
from revertguard.safeapply.orchestrator import SafeApplyOrchestrator
from revertguard.timeout import runner
from revertguard.timeout.watchdog import (OUTCOME_DISARMED, OUTCOME_EXPIRED_ALIVE, OUTCOME_FIRED,
                                          OUTCOME_ROLLED_BACK, list_watchdogs)


def change_port(path):
    with open(path, 'w') as f:
        f.write("Port 2222\n")


class TestSafeApply(unittest.TestCase):
    """Test cases for SafeApplyOrchestrator."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config = merge_config(get_default_config(), {
            'global': {'state_dir': os.path.join(self.temp_dir, 'state'),
                       'log_file': os.path.join(self.temp_dir, 'revertguard.log')},
            'backup': {'backup_dir': os.path.join(self.temp_dir, 'backups'), 'min_free_bytes': 0},
            'watchdog': {'mode': 'thread', 'poll_interval': 0.05},
            'safe_apply': {'settle_time': 0},
            'profiles': {
                'custom': {
                    'deadline': 30,
                    'validator': {'type': 'command', 'argv': ['grep', '-q', '^Port ', '{path}']},
                    'reload': {'type': 'command', 'argv': ['true']},
                    'liveness': {'type': 'command', 'argv': ['true']}
                }
            }
        })
        self.store = BackupStore(self.config['backup'])
        self.orchestrator = SafeApplyOrchestrator(self.config, self.store, services=MagicMock())
        self.watchdog_dir = os.path.join(self.temp_dir, 'state', 'watchdogs')

        self.artifact = Path(self.temp_dir) / 'sshd_config'
        self.artifact.write_text("Port 22\n")
        os.chmod(self.artifact, 0o600)

        self.reloads = []

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def reload(self, path):
        self.reloads.append(Path(path).read_text())

    def outcome(self, result):
        entries = {e['id']: e for e in list_watchdogs(self.watchdog_dir)}
        return entries[result.watchdog_id]['outcome']

    def leftover_scratch(self):
        return [name for name in os.listdir(self.temp_dir) if name.endswith('.scratch')]

    def test_success(self):
        """A valid change that keeps the channel alive stays in place."""
        result = self.orchestrator.apply(
            str(self.artifact), change_port,
            validator=lambda path: 'Port' in Path(path).read_text(),
            liveness=lambda: True, reloader=self.reload, deadline=30)

        self.assertTrue(result)
        self.assertIsNone(result.error)
        self.assertEqual(self.artifact.read_text(), "Port 2222\n")
        self.assertEqual(os.stat(self.artifact).st_mode & 0o7777, 0o600)
        self.assertEqual(self.reloads, ["Port 2222\n"])
        self.assertEqual(self.outcome(result), OUTCOME_DISARMED)
        self.assertEqual(Path(result.backup.stored_path).read_text(), "Port 22\n")
        self.assertEqual(self.leftover_scratch(), [])

    def test_profile(self):
        """Profiles supply validator, reload, liveness and deadline."""
        result = self.orchestrator.apply(str(self.artifact), change_port, profile='custom')

        self.assertTrue(result)
        self.assertEqual(self.artifact.read_text(), "Port 2222\n")

    def test_unknown_profile(self):
        """A profile that is not configured fails the apply without touching anything."""
        result = self.orchestrator.apply(str(self.artifact), change_port, profile='nginx')

        self.assertFalse(result)
        self.assertIsInstance(result.error, ApplyError)
        self.assertEqual(result.stage, 'profile')
        self.assertIn('nginx', result.reason)
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(self.leftover_scratch(), [])

    def test_explicit_zero_deadline(self):
        """deadline=0 is honoured instead of falling back to the default."""
        result = self.orchestrator.apply(str(self.artifact), change_port,
                                         validator=lambda path: True, liveness=lambda: True,
                                         deadline=0)

        self.assertTrue(result)
        self.assertEqual(self.artifact.read_text(), "Port 2222\n")
        entries = list_watchdogs(self.watchdog_dir)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]['remaining_seconds'], 0)
        self.assertIn(entries[0]['outcome'], (OUTCOME_DISARMED, OUTCOME_EXPIRED_ALIVE))

    def test_dry_run(self):
        """A dry run validates the change and leaves no trace."""
        validated = []

        def validator(path):
            validated.append(Path(path).read_text())
            return True

        result = self.orchestrator.apply(str(self.artifact), change_port, validator=validator,
                                         liveness=lambda: True, reloader=self.reload,
                                         dry_run=True)

        self.assertTrue(result)
        self.assertTrue(result.dry_run)
        self.assertIsNone(result.backup)
        self.assertIsNone(result.watchdog_id)
        self.assertEqual(validated, ["Port 2222\n"])
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(self.store.list_backups(), [])
        self.assertEqual(self.reloads, [])
        self.assertEqual(list_watchdogs(self.watchdog_dir), [])
        self.assertEqual(self.leftover_scratch(), [])

    def test_dry_run_rejected(self):
        """A dry run still reports a rejected change."""
        result = self.orchestrator.apply(str(self.artifact), change_port,
                                         validator=lambda path: (False, 'bad option'),
                                         dry_run=True)

        self.assertFalse(result)
        self.assertIsInstance(result.error, ValidationError)
        self.assertEqual(self.leftover_scratch(), [])

    def test_validator_cannot_run(self):
        """A validator that cannot be executed rejects the change and cleans up."""
        checker = Path(self.temp_dir) / 'checker'
        checker.write_text("#!/bin/sh\nexit 0\n")
        os.chmod(checker, 0o644)

        result = self.orchestrator.apply(
            str(self.artifact), change_port,
            validator={'type': 'command', 'argv': [str(checker), '{path}']},
            liveness=lambda: True)

        self.assertIsInstance(result.error, ValidationError)
        self.assertEqual(result.stage, 'validate')
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(self.store.list_backups(), [])
        self.assertEqual(self.leftover_scratch(), [])

    def test_validator_raises(self):
        """An exception from a validator function is a validation failure."""
        def validator(path):
            raise OSError("checker crashed")

        result = self.orchestrator.apply(str(self.artifact), change_port, validator=validator)

        self.assertIsInstance(result.error, ValidationError)
        self.assertIn('checker crashed', result.reason)
        self.assertEqual(self.leftover_scratch(), [])

    def test_validation_rejects(self):
        """A rejected change never touches the artifact or the backup store."""
        result = self.orchestrator.apply(
            str(self.artifact), change_port,
            validator=lambda path: (False, 'Bad configuration option: Prot'),
            liveness=lambda: True, reloader=self.reload)

        self.assertFalse(result)
        self.assertIsInstance(result.error, ValidationError)
        self.assertEqual(result.stage, 'validate')
        self.assertIn('Prot', result.reason)
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(self.store.list_backups(), [])
        self.assertEqual(self.reloads, [])
        self.assertEqual(list_watchdogs(self.watchdog_dir), [])
        self.assertEqual(self.leftover_scratch(), [])

        with self.assertRaises(ValidationError):
            result.raise_for_error()

    def test_mutation_failure(self):
        """An exception from the mutation is an ApplyError before any backup."""
        def broken(path):
            raise KeyError('PermitRootLogin')

        result = self.orchestrator.apply(str(self.artifact), broken, liveness=lambda: True)

        self.assertIsInstance(result.error, ApplyError)
        self.assertEqual(result.stage, 'mutate')
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(self.store.list_backups(), [])

    def test_preflight_failure(self):
        """A channel that is already down stops the apply before anything happens."""
        result = self.orchestrator.apply(str(self.artifact), change_port,
                                         liveness=lambda: False, reloader=self.reload)

        self.assertIsInstance(result.error, LivenessLost)
        self.assertEqual(result.stage, 'preflight')
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(self.store.list_backups(), [])

    def test_missing_artifact(self):
        """Only existing regular files can be applied to."""
        result = self.orchestrator.apply(os.path.join(self.temp_dir, 'absent'), change_port)

        self.assertIsInstance(result.error, ApplyError)
        self.assertEqual(result.stage, 'scratch')

    def test_backup_failure(self):
        """A failed backup aborts before the artifact is replaced."""
        with patch.object(self.store, 'capture', side_effect=BackupError("disk full", step='capture')):
            result = self.orchestrator.apply(str(self.artifact), change_port,
                                             liveness=lambda: True, reloader=self.reload)

        self.assertIsInstance(result.error, BackupError)
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(self.reloads, [])
        self.assertEqual(self.leftover_scratch(), [])

    def test_liveness_lost_after_reload(self):
        """Passing preflight, then failing after reload, restores the original."""
        answers = iter([True, False])

        result = self.orchestrator.apply(
            str(self.artifact), change_port, validator=lambda path: True,
            liveness=lambda: next(answers, False), reloader=self.reload, deadline=30)

        self.assertFalse(result)
        self.assertIsInstance(result.error, LivenessLost)
        self.assertEqual(result.stage, 'liveness')
        self.assertTrue(result.rolled_back)
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(self.reloads, ["Port 2222\n", "Port 22\n"])
        self.assertEqual(self.outcome(result), OUTCOME_ROLLED_BACK)

    def test_reload_failure(self):
        """A failing reload restores the original."""
        result = self.orchestrator.apply(str(self.artifact), change_port,
                                         validator=lambda path: True, liveness=lambda: True,
                                         reloader=lambda path: False)

        self.assertIsInstance(result.error, ApplyError)
        self.assertEqual(result.stage, 'reload')
        self.assertTrue(result.rolled_back)
        self.assertEqual(self.artifact.read_text(), "Port 22\n")

    def test_timer_expires_while_alive(self):
        """A deadline passing while the channel is up keeps the change."""
        self.orchestrator.settle_time = 0.5

        result = self.orchestrator.apply(str(self.artifact), change_port,
                                         validator=lambda path: True, liveness=lambda: True,
                                         deadline=0.1)

        self.assertTrue(result)
        self.assertEqual(self.artifact.read_text(), "Port 2222\n")
        self.assertEqual(self.outcome(result), OUTCOME_EXPIRED_ALIVE)

    def test_timer_fires_before_check(self):
        """When the timer restores first, the foreground does not restore again."""
        self.orchestrator.settle_time = 0.5
        self.orchestrator.preflight_check = False
        restore = MagicMock(wraps=self.store.restore)

        with patch.object(self.store, 'restore', restore):
            result = self.orchestrator.apply(str(self.artifact), change_port,
                                             validator=lambda path: True, liveness=lambda: False,
                                             reloader=self.reload, deadline=0.1)

        self.assertIsInstance(result.error, LivenessLost)
        self.assertTrue(result.rolled_back)
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(restore.call_count, 1)
        self.assertEqual(self.outcome(result), OUTCOME_FIRED)

    def test_transaction_rollback_undoes_apply(self):
        """A successful apply inside a transaction is undone by its rollback."""
        manager = TransactionManager(self.config, self.store,
                                     undo_executor=UndoExecutor(self.store, MagicMock()))
        orchestrator = SafeApplyOrchestrator(self.config, self.store, manager, services=MagicMock())

        txn = manager.begin('sshd')
        result = orchestrator.apply(str(self.artifact), change_port, validator=lambda path: True,
                                    liveness=lambda: True, transaction=txn)
        self.assertTrue(result)
        self.assertEqual(len(txn.ledger), 1)

        report = manager.rollback(txn, 'operator')

        self.assertTrue(report.ok)
        self.assertEqual(self.artifact.read_text(), "Port 22\n")

    def test_closed_transaction(self):
        """A committed transaction is refused before any scratch copy or backup."""
        manager = TransactionManager(self.config, self.store,
                                     undo_executor=UndoExecutor(self.store, MagicMock()))
        orchestrator = SafeApplyOrchestrator(self.config, self.store, manager, services=MagicMock())
        txn = manager.begin('sshd')
        manager.commit(txn)

        result = orchestrator.apply(str(self.artifact), change_port, validator=lambda path: True,
                                    liveness=lambda: True, reloader=self.reload, transaction=txn)

        self.assertFalse(result)
        self.assertIsInstance(result.error, StateError)
        self.assertEqual(result.stage, 'register')
        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(self.store.list_backups(), [])
        self.assertEqual(self.reloads, [])
        self.assertEqual(self.leftover_scratch(), [])

    def test_transaction_without_manager(self):
        """The undo is registered through the transaction's own manager."""
        manager = TransactionManager(self.config, self.store,
                                     undo_executor=UndoExecutor(self.store, MagicMock()))

        txn = manager.begin('sshd')
        result = self.orchestrator.apply(str(self.artifact), change_port,
                                         validator=lambda path: True, liveness=lambda: True,
                                         transaction=txn)

        self.assertTrue(result)
        self.assertEqual(len(txn.ledger), 1)

        manager.rollback(txn, 'operator')
        self.assertEqual(self.artifact.read_text(), "Port 22\n")

    @patch('revertguard.timeout.runner.signal.signal')
    @patch('revertguard.timeout.watchdog.subprocess.Popen')
    def test_foreground_killed_after_reload(self, mock_popen, mock_signal):
        """The detached runner restores a change whose foreground died mid-apply."""
        mock_popen.return_value = MagicMock(pid=999999)
        self.orchestrator.preflight_check = False

        def killed(path):
            raise SystemExit(137)

        with self.assertRaises(SystemExit):
            self.orchestrator.apply(str(self.artifact), change_port, validator=lambda path: True,
                                    liveness={'type': 'command', 'argv': ['false']},
                                    reloader=killed, deadline=0.3, mode='process')

        self.assertEqual(self.artifact.read_text(), "Port 2222\n")
        records = glob.glob(os.path.join(self.watchdog_dir, '*.json'))
        self.assertEqual(len(records), 1)
        self.assertEqual(mock_popen.call_args[0][0][3], records[0])

        config_path = os.path.join(self.temp_dir, 'config.yaml')
        with open(config_path, 'w') as f:
            yaml.safe_dump({'global': self.config['global']}, f)

        self.assertEqual(runner.main([records[0], '--config', config_path]), 0)

        self.assertEqual(self.artifact.read_text(), "Port 22\n")
        self.assertEqual(list_watchdogs(self.watchdog_dir)[0]['outcome'], OUTCOME_FIRED)


if __name__ == '__main__':
    unittest.main()
