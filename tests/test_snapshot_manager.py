#!/usr/bin/env python3
"""
Tests for SnapshotManager functionality.
"""

import unittest
from unittest.mock import MagicMock, patch
import tempfile
import shutil
import os
import json
from datetime import datetime, timedelta
from pathlib import Path

from revertguard.snapshot.manager import SnapshotManager


class TestSnapshotManager(unittest.TestCase):
    """Test cases for SnapshotManager."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()

        self.test_file = os.path.join(self.temp_dir, 'etc', 'sysctl.conf')
        os.makedirs(os.path.dirname(self.test_file))
        with open(self.test_file, 'w') as f:
            f.write('net.ipv4.ip_forward = 0\n')

        self.test_dir = os.path.join(self.temp_dir, 'etc', 'pam.d')
        os.makedirs(self.test_dir)
        with open(os.path.join(self.test_dir, 'sshd'), 'w') as f:
            f.write('auth required pam_unix.so\n')

        self.config = {
            'snapshot_dir': os.path.join(self.temp_dir, 'snapshots'),
            'capture_state': False,
            'critical_files': [self.test_file, os.path.join(self.temp_dir, 'missing.conf')],
            'critical_dirs': [self.test_dir],
            'post_restore_commands': []
        }

        self.snapshot_manager = SnapshotManager(self.config)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_init(self):
        """Test SnapshotManager initialization."""
        self.assertEqual(self.snapshot_manager.config, self.config)
        self.assertFalse(self.snapshot_manager.capture_state)

        # Check that snapshot directory was created
        self.assertTrue(os.path.exists(self.config['snapshot_dir']))

    def test_create_snapshot(self):
        """Test creating a snapshot of critical files and directories."""
        snapshot_id = self.snapshot_manager.create_snapshot('Test snapshot')

        snapshot_dir = Path(self.config['snapshot_dir']) / snapshot_id
        copied = snapshot_dir / 'files' / Path(self.test_file).relative_to('/')
        self.assertEqual(copied.read_text(), 'net.ipv4.ip_forward = 0\n')
        self.assertTrue((snapshot_dir / 'files' / Path(self.test_dir).relative_to('/') / 'sshd').exists())

        with open(snapshot_dir / 'metadata.json', 'r') as f:
            metadata = json.load(f)

        self.assertEqual(metadata['id'], snapshot_id)
        self.assertEqual(metadata['description'], 'Test snapshot')
        self.assertEqual(sorted(entry['type'] for entry in metadata['files']), ['directory', 'file'])
        self.assertEqual(metadata['states'], [])

    def test_create_snapshot_duplicate_id(self):
        """A snapshot id can only be used once."""
        self.snapshot_manager.create_snapshot(snapshot_id='fixed')

        with self.assertRaises(FileExistsError):
            self.snapshot_manager.create_snapshot(snapshot_id='fixed')

    def test_create_snapshot_notifies_manifest(self):
        """The attached recorder hears about every new snapshot."""
        recorder = MagicMock()
        self.snapshot_manager.attach_manifest(recorder)

        snapshot_id = self.snapshot_manager.create_snapshot()

        recorder.assert_called_once_with(
            snapshot_id, str(Path(self.config['snapshot_dir']) / snapshot_id))

    @patch('revertguard.snapshot.manager.shutil.which')
    @patch('revertguard.snapshot.manager.psutil.net_connections')
    @patch('revertguard.snapshot.manager.psutil.disk_partitions')
    @patch('revertguard.snapshot.manager.psutil.process_iter')
    def test_capture_system_state(self, mock_iter, mock_partitions, mock_connections, mock_which):
        """System state is written next to the copied files."""
        mock_which.return_value = None
        mock_iter.return_value = [MagicMock(info={'pid': 1, 'name': 'init'})]
        mock_partitions.return_value = []
        mock_connections.return_value = []

        self.snapshot_manager.capture_state = True
        snapshot_id = self.snapshot_manager.create_snapshot()

        snapshot_dir = Path(self.config['snapshot_dir']) / snapshot_id
        with open(snapshot_dir / 'processes.json', 'r') as f:
            self.assertEqual(json.load(f), [{'pid': 1, 'name': 'init'}])
        self.assertFalse((snapshot_dir / 'iptables.rules').exists())

        info = self.snapshot_manager.get_snapshot_info(snapshot_id)
        self.assertEqual([s['name'] for s in info['states']],
                         ['processes', 'mounts', 'listening_sockets'])

    @patch('revertguard.snapshot.manager.subprocess.run')
    @patch('revertguard.snapshot.manager.shutil.which')
    def test_save_command_output(self, mock_which, mock_run):
        """Available tools have their stdout stored."""
        mock_which.return_value = '/usr/sbin/iptables-save'
        mock_run.return_value = MagicMock(stdout='*filter\nCOMMIT\n')
        target = Path(self.temp_dir) / 'iptables.rules'

        self.assertTrue(self.snapshot_manager._save_command_output(['iptables-save'], target))
        self.assertEqual(target.read_text(), '*filter\nCOMMIT\n')

    def test_list_snapshots(self):
        """Snapshots are listed newest first."""
        first = self.snapshot_manager.create_snapshot(snapshot_id='first')
        second = self.snapshot_manager.create_snapshot(snapshot_id='second')

        snapshots = self.snapshot_manager.list_snapshots()

        self.assertEqual([s['id'] for s in snapshots], [second, first])

    def test_delete_snapshot(self):
        """Test deleting a snapshot."""
        snapshot_id = self.snapshot_manager.create_snapshot()

        self.assertTrue(self.snapshot_manager.delete_snapshot(snapshot_id))
        self.assertIsNone(self.snapshot_manager.get_snapshot_info(snapshot_id))
        self.assertFalse(self.snapshot_manager.delete_snapshot(snapshot_id))

    def test_cleanup_old_snapshots(self):
        """Snapshots older than the retention age are removed."""
        old_id = self.snapshot_manager.create_snapshot(snapshot_id='old')
        new_id = self.snapshot_manager.create_snapshot(snapshot_id='new')

        metadata_file = Path(self.config['snapshot_dir']) / old_id / 'metadata.json'
        metadata = json.loads(metadata_file.read_text())
        metadata['timestamp'] = (datetime.now() - timedelta(days=40)).isoformat()
        metadata_file.write_text(json.dumps(metadata))

        removed = self.snapshot_manager.cleanup_old_snapshots(30)

        self.assertEqual(removed, 1)
        self.assertEqual([s['id'] for s in self.snapshot_manager.list_snapshots()], [new_id])

    def test_restore_snapshot(self):
        """Restoring puts files back and keeps a pre-restore snapshot."""
        snapshot_id = self.snapshot_manager.create_snapshot()

        with open(self.test_file, 'w') as f:
            f.write('net.ipv4.ip_forward = 1\n')
        os.unlink(os.path.join(self.test_dir, 'sshd'))

        self.assertTrue(self.snapshot_manager.restore_snapshot(snapshot_id))

        with open(self.test_file, 'r') as f:
            self.assertEqual(f.read(), 'net.ipv4.ip_forward = 0\n')
        self.assertTrue(os.path.exists(os.path.join(self.test_dir, 'sshd')))

        ids = [s['id'] for s in self.snapshot_manager.list_snapshots()]
        self.assertEqual(len(ids), 2)
        self.assertTrue(any(i.startswith('pre-restore-') for i in ids))

    @patch('revertguard.snapshot.manager.subprocess.run')
    def test_restore_runs_post_restore_commands(self, mock_run):
        """Post-restore commands run after files are back."""
        self.snapshot_manager.post_restore_commands = [['sysctl', '-p', self.test_file]]
        snapshot_id = self.snapshot_manager.create_snapshot()

        self.assertTrue(self.snapshot_manager.restore_snapshot(snapshot_id))

        mock_run.assert_called_once()
        self.assertEqual(mock_run.call_args[0][0], ['sysctl', '-p', self.test_file])

    def test_restore_missing_snapshot(self):
        """Test restoring an unknown snapshot."""
        self.assertFalse(self.snapshot_manager.restore_snapshot('nonexistent'))


if __name__ == '__main__':
    unittest.main()
