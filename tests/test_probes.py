#!/usr/bin/env python3
"""
Tests for liveness checks, validators and reloaders.
"""

import unittest
from unittest.mock import MagicMock, patch
import tempfile
import shutil
import os
import socket

from revertguard.probes.checks import (AllCheck, CallableCheck, CallableReloader,
                                       CommandCheck, CommandReloader, CommandValidator,
                                       ProcessCheck, ServiceReloader, SignalReloader,
                                       TcpCheck, build_liveness_check, build_reloader,
                                       build_validator)


class TestLivenessChecks(unittest.TestCase):
    """Test cases for liveness checks."""

    def test_tcp_check_open_port(self):
        """A listening port passes."""
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(('127.0.0.1', 0))
        server.listen(1)
        try:
            check = TcpCheck('127.0.0.1', server.getsockname()[1], timeout=2)
            self.assertTrue(check())
        finally:
            server.close()

    def test_tcp_check_closed_port(self):
        """A port nobody listens on fails."""
        probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        probe.bind(('127.0.0.1', 0))
        port = probe.getsockname()[1]
        probe.close()

        self.assertFalse(TcpCheck('127.0.0.1', port, timeout=2)())

    @patch('revertguard.probes.checks.socket.create_connection')
    def test_tcp_check_banner(self, mock_connect):
        """The banner must start with the expected prefix."""
        sock = mock_connect.return_value.__enter__.return_value

        sock.recv.return_value = b'SSH-2.0-OpenSSH_9.6\r\n'
        self.assertTrue(TcpCheck(port=22, expect_banner='SSH-')())

        sock.recv.return_value = b'HTTP/1.1 400 Bad Request\r\n'
        self.assertFalse(TcpCheck(port=22, expect_banner='SSH-')())

    def test_command_check(self):
        """Exit status decides the command check."""
        self.assertTrue(CommandCheck(['true'])())
        self.assertFalse(CommandCheck(['false'])())
        self.assertFalse(CommandCheck(['/nonexistent/probe'])())

    @patch('revertguard.probes.checks.psutil.process_iter')
    def test_process_check(self, mock_iter):
        """A running process with the name passes."""
        mock_iter.return_value = [MagicMock(info={'name': 'cron'}), MagicMock(info={'name': 'sshd'})]

        self.assertTrue(ProcessCheck('sshd')())
        self.assertFalse(ProcessCheck('nginx')())

    def test_all_check(self):
        """AllCheck needs every sub-check to pass."""
        self.assertTrue(AllCheck([CommandCheck(['true']), CallableCheck(lambda: True)])())
        self.assertFalse(AllCheck([CommandCheck(['true']), CallableCheck(lambda: False)])())

    def test_raising_check_counts_as_failure(self):
        """An exception inside a probe is a failed probe."""
        def broken():
            raise RuntimeError("probe crashed")

        self.assertFalse(CallableCheck(broken)())

    def test_build_from_dict(self):
        """Durable descriptions rebuild the same checks."""
        check = build_liveness_check({'type': 'tcp', 'port': 2222, 'expect_banner': 'SSH-'})
        self.assertIsInstance(check, TcpCheck)
        self.assertEqual(check.port, 2222)
        self.assertEqual(build_liveness_check(check.to_dict()).to_dict(), check.to_dict())

        combined = build_liveness_check({'type': 'all', 'checks': [
            {'type': 'command', 'argv': ['true']},
            {'type': 'process', 'name': 'sshd'}
        ]})
        self.assertIsInstance(combined, AllCheck)
        self.assertEqual(len(combined.checks), 2)

    def test_build_from_callable(self):
        """Callables are wrapped but cannot be persisted."""
        check = build_liveness_check(lambda: True)
        self.assertIsInstance(check, CallableCheck)
        self.assertIsNone(check.to_dict())
        self.assertIsNone(AllCheck([check, CommandCheck(['true'])]).to_dict())

    def test_build_unknown_type(self):
        """Unknown check types are rejected."""
        with self.assertRaises(ValueError):
            build_liveness_check({'type': 'carrier-pigeon'})
        self.assertIsNone(build_liveness_check(None))


class TestValidators(unittest.TestCase):
    """Test cases for validators."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, 'candidate.conf')
        with open(self.path, 'w') as f:
            f.write('Port 22\n')

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_command_validator_substitutes_path(self):
        """{path} is replaced by the scratch copy."""
        validator = CommandValidator(['grep', '-q', 'Port 22', '{path}'])
        ok, _ = validator.validate(self.path)
        self.assertTrue(ok)

        validator = CommandValidator(['grep', '-q', 'Port 2222', '{path}'])
        ok, _ = validator.validate(self.path)
        self.assertFalse(ok)

    def test_command_validator_reports_output(self):
        """The checker's stderr is returned as the reason."""
        validator = CommandValidator(['sh', '-c', 'echo "line 1: bad option" >&2; exit 255'])
        ok, output = validator.validate(self.path)

        self.assertFalse(ok)
        self.assertEqual(output, 'line 1: bad option')

    def test_command_validator_missing_binary(self):
        """A missing checker rejects rather than passes."""
        ok, output = CommandValidator(['/nonexistent/sshd', '-t']).validate(self.path)

        self.assertFalse(ok)
        self.assertIn('not found', output)

    def test_command_validator_not_executable(self):
        """A checker without execute permission rejects rather than raises."""
        checker = os.path.join(self.temp_dir, 'checker')
        with open(checker, 'w') as f:
            f.write("#!/bin/sh\nexit 0\n")
        os.chmod(checker, 0o644)

        ok, output = CommandValidator([checker, '{path}']).validate(self.path)

        self.assertFalse(ok)
        self.assertIn('cannot run validator', output)

    def test_callable_validator(self):
        """Callables may return a bool or a (bool, message) tuple."""
        self.assertEqual(build_validator(lambda path: True).validate(self.path), (True, ''))
        self.assertEqual(build_validator(lambda path: (False, 'nope')).validate(self.path),
                         (False, 'nope'))

    def test_build_validator(self):
        """Dict descriptions build command validators."""
        validator = build_validator({'type': 'command', 'argv': ['sshd', '-t', '-f', '{path}']})
        self.assertIsInstance(validator, CommandValidator)

        with self.assertRaises(ValueError):
            build_validator({'type': 'xml-schema'})


class TestReloaders(unittest.TestCase):
    """Test cases for reloaders."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_command_reloader(self):
        """Exit status decides the command reloader."""
        self.assertTrue(CommandReloader(['true']).reload('/etc/x'))
        self.assertFalse(CommandReloader(['false']).reload('/etc/x'))
        self.assertFalse(CommandReloader(['/nonexistent/reload']).reload('/etc/x'))

    def test_service_reloader(self):
        """Service reloads go through the controller."""
        controller = MagicMock()
        controller.run_action.return_value = True

        self.assertTrue(ServiceReloader('ssh', controller=controller).reload('/etc/ssh/sshd_config'))
        controller.run_action.assert_called_once_with('ssh', 'reload')

    @patch('revertguard.probes.checks.psutil.Process')
    def test_signal_reloader(self, mock_process):
        """The pid from the pidfile gets the signal."""
        pidfile = os.path.join(self.temp_dir, 'sshd.pid')
        with open(pidfile, 'w') as f:
            f.write('4242\n')

        self.assertTrue(SignalReloader(pidfile).reload('/etc/ssh/sshd_config'))

        mock_process.assert_called_once_with(4242)
        mock_process.return_value.send_signal.assert_called_once()

    def test_signal_reloader_fallback(self):
        """Without a readable pidfile the fallback is used."""
        fallback = MagicMock()
        fallback.reload.return_value = True
        reloader = SignalReloader(os.path.join(self.temp_dir, 'absent.pid'), fallback=fallback)

        self.assertTrue(reloader.reload('/etc/ssh/sshd_config'))
        fallback.reload.assert_called_once_with('/etc/ssh/sshd_config')

        self.assertFalse(SignalReloader(os.path.join(self.temp_dir, 'absent.pid')).reload('/x'))

    def test_callable_reloader(self):
        """A None return counts as success."""
        self.assertTrue(CallableReloader(lambda path: None).reload('/x'))
        self.assertFalse(CallableReloader(lambda path: False).reload('/x'))

    def test_build_reloader(self):
        """Nested signal descriptions rebuild their fallback."""
        controller = MagicMock()
        reloader = build_reloader({
            'type': 'signal',
            'pidfile': '/var/run/sshd.pid',
            'fallback': {'type': 'service', 'service': 'ssh'}
        }, controller)

        self.assertIsInstance(reloader, SignalReloader)
        self.assertIsInstance(reloader.fallback, ServiceReloader)
        self.assertIs(reloader.fallback.controller, controller)
        self.assertEqual(reloader.to_dict()['fallback'],
                         {'type': 'service', 'service': 'ssh', 'action': 'reload'})

        with self.assertRaises(ValueError):
            build_reloader({'type': 'telepathy'})


if __name__ == '__main__':
    unittest.main()
