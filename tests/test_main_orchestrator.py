#!/usr/bin/env python3
"""
Unit tests for the main sync orchestrator.

Tests the end-to-end run with mocked directory and Mailchimp clients and the
mapping of each failure onto its exit code.
"""

import os
import sys
import copy
import shutil
import tempfile
import unittest
from io import StringIO
from unittest.mock import Mock, patch

# Add parent directory to path to import the package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_mailchimp_sync.config import ConfigMissing, ConfigCorrupt, DEFAULT_MERGE_FIELDS
from ldap_mailchimp_sync.errors import SourceUnavailable, DestinationUnavailable
from ldap_mailchimp_sync.main import (
    SyncOrchestrator, main, EXIT_SUCCESS, EXIT_CONFIG, EXIT_SOURCE_UNAVAILABLE,
    EXIT_DESTINATION_UNAVAILABLE, EXIT_NOT_FOUND, EXIT_UPSERT_FAILED, EXIT_UNEXPECTED
)
from ldap_mailchimp_sync.models import Collection, MailingList, MemberRecord

TEST_CONFIG = {
    'directory': {
        'server_url': 'ldaps://ldap.example.com',
        'key_id': 'cn=sync,dc=example,dc=com',
        'key_secret': 'bindpass',
    },
    'mailchimp': {
        'api_key': 'abc123-us6',
        'timeout': 30,
        'merge_fields': dict(DEFAULT_MERGE_FIELDS),
    },
    'sync': {'concurrency': 1},
    'logging': {'level': 'INFO', 'log_dir': 'test_logs'},
}


@patch('ldap_mailchimp_sync.main.setup_logging')
@patch('ldap_mailchimp_sync.main.MailchimpClient')
@patch('ldap_mailchimp_sync.main.DirectoryClient')
@patch('ldap_mailchimp_sync.main.load_config')
class TestSyncOrchestrator(unittest.TestCase):
    """Test cases for SyncOrchestrator class."""

    def setUp(self):
        """Set up test fixtures."""
        self.directory = Mock()
        self.directory.find_collections.return_value = iter([Collection(id='cn=users,dc=example,dc=com', name='Users')])
        self.directory.iter_members.side_effect = lambda collection: iter([
            MemberRecord(email='a@example.com', given_name='Ann', collection_id=collection.id),
            MemberRecord(email='b@example.com', given_name='Ben', collection_id=collection.id),
        ])

        self.mailchimp = Mock()
        self.mailchimp.list_all_lists.return_value = [MailingList(id='list1', name='Newsletter')]

        self.stdout_patcher = patch('sys.stdout', new_callable=StringIO)
        self.stdout = self.stdout_patcher.start()
        self.addCleanup(self.stdout_patcher.stop)

    def _wire(self, mock_load_config, mock_directory_class, mock_mailchimp_class):
        mock_load_config.return_value = copy.deepcopy(TEST_CONFIG)
        mock_directory_class.return_value = self.directory
        mock_mailchimp_class.return_value = self.mailchimp

    def _run(self):
        return SyncOrchestrator(config_path='config.yaml', collection_name='users', list_name='NEWSLETTER').run()

    def test_successful_sync(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test successful synchronization run."""
        self._wire(mock_load_config, mock_directory_class, mock_mailchimp_class)

        orchestrator = SyncOrchestrator(config_path='config.yaml', collection_name='users', list_name='NEWSLETTER')
        exit_code = orchestrator.run()

        self.assertEqual(exit_code, EXIT_SUCCESS)
        self.assertEqual(orchestrator.report.attempted, 2)
        self.assertEqual(orchestrator.report.succeeded, 2)
        self.assertEqual(self.mailchimp.upsert_subscriber.call_count, 2)
        self.directory.connect.assert_called_once()
        self.directory.disconnect.assert_called_once()
        self.mailchimp.close.assert_called_once()
        mock_mailchimp_class.assert_called_once_with('abc123-us6', timeout=30)
        credentials = mock_directory_class.call_args[0][1]
        self.assertEqual(credentials.source_key_id, 'cn=sync,dc=example,dc=com')
        self.assertIn("Synced 2 members", self.stdout.getvalue())

    def test_missing_config(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test that a missing config fails before any client is built."""
        mock_load_config.side_effect = ConfigMissing("Configuration file not found. Run 'ldap-mailchimp-sync configure'")

        exit_code = self._run()

        self.assertEqual(exit_code, EXIT_CONFIG)
        mock_directory_class.assert_not_called()
        mock_mailchimp_class.assert_not_called()
        self.assertIn('configure', self.stdout.getvalue())

    def test_corrupt_config(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test that a corrupt config fails before any client is built."""
        mock_load_config.side_effect = ConfigCorrupt("Invalid YAML")

        exit_code = self._run()

        self.assertEqual(exit_code, EXIT_CONFIG)
        mock_directory_class.assert_not_called()
        mock_mailchimp_class.assert_not_called()

    def test_directory_unavailable(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test that a failed bind exits with the source code."""
        self._wire(mock_load_config, mock_directory_class, mock_mailchimp_class)
        self.directory.connect.side_effect = SourceUnavailable("Bind failed")

        self.assertEqual(self._run(), EXIT_SOURCE_UNAVAILABLE)
        self.mailchimp.list_all_lists.assert_not_called()

    def test_mailchimp_unavailable(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test that a failed list call exits with the destination code."""
        self._wire(mock_load_config, mock_directory_class, mock_mailchimp_class)
        self.mailchimp.list_all_lists.side_effect = DestinationUnavailable("HTTP 401: API Key Invalid", status_code=401)

        self.assertEqual(self._run(), EXIT_DESTINATION_UNAVAILABLE)
        self.directory.iter_members.assert_not_called()

    def test_group_not_found(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test that an unknown group exits with the not-found code."""
        self._wire(mock_load_config, mock_directory_class, mock_mailchimp_class)
        self.directory.find_collections.return_value = iter([])

        self.assertEqual(self._run(), EXIT_NOT_FOUND)
        self.assertIn("'users'", self.stdout.getvalue())
        self.mailchimp.list_all_lists.assert_not_called()

    def test_list_not_found(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test that an unknown list exits with the not-found code."""
        self._wire(mock_load_config, mock_directory_class, mock_mailchimp_class)
        self.mailchimp.list_all_lists.return_value = [MailingList(id='x', name='Other')]

        self.assertEqual(self._run(), EXIT_NOT_FOUND)
        self.assertIn("'NEWSLETTER'", self.stdout.getvalue())

    def test_upsert_failure(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test that the first failed upsert aborts with the failing email."""
        self._wire(mock_load_config, mock_directory_class, mock_mailchimp_class)
        self.mailchimp.upsert_subscriber.side_effect = DestinationUnavailable("HTTP 400: Member Exists", status_code=400)

        self.assertEqual(self._run(), EXIT_UPSERT_FAILED)
        self.assertEqual(self.mailchimp.upsert_subscriber.call_count, 1)
        self.assertIn('a@example.com', self.stdout.getvalue())
        self.directory.disconnect.assert_called_once()

    def test_unexpected_error(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test that unexpected exceptions map to exit code 1."""
        self._wire(mock_load_config, mock_directory_class, mock_mailchimp_class)
        self.directory.connect.side_effect = RuntimeError("boom")

        self.assertEqual(self._run(), EXIT_UNEXPECTED)

    def test_health_check_healthy(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test the health check with both services reachable."""
        self._wire(mock_load_config, mock_directory_class, mock_mailchimp_class)
        self.mailchimp.ping.return_value = True

        status = SyncOrchestrator(config_path='config.yaml').health_check()

        self.assertEqual(status['status'], 'healthy')
        self.assertEqual(status['checks']['directory']['status'], 'pass')
        self.assertEqual(status['checks']['mailchimp']['status'], 'pass')

    def test_health_check_unhealthy(self, mock_load_config, mock_directory_class, mock_mailchimp_class, mock_logging):
        """Test the health check with the directory down."""
        self._wire(mock_load_config, mock_directory_class, mock_mailchimp_class)
        self.directory.connect.side_effect = SourceUnavailable("unreachable")
        self.mailchimp.ping.return_value = True

        status = SyncOrchestrator(config_path='config.yaml').health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['directory']['status'], 'fail')


class TestUnreadableConfig(unittest.TestCase):
    """Test cases for config files that exist but cannot be decoded."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='sync_main_test_')
        self.config_path = os.path.join(self.temp_dir, 'config.yaml')
        with open(self.config_path, 'wb') as f:
            f.write(b'directory:\n  server_url: \xff\xfe\n')
        self.addCleanup(shutil.rmtree, self.temp_dir, True)

        self.stdout_patcher = patch('sys.stdout', new_callable=StringIO)
        self.stdout = self.stdout_patcher.start()
        self.addCleanup(self.stdout_patcher.stop)

    @patch('ldap_mailchimp_sync.main.DirectoryClient')
    def test_sync_exits_with_config_error(self, mock_directory_class):
        """Test that an undecodable file exits 2 with the configure hint."""
        orchestrator = SyncOrchestrator(config_path=self.config_path, collection_name='users', list_name='news')

        self.assertEqual(orchestrator.run(), EXIT_CONFIG)
        self.assertIn('configure', self.stdout.getvalue())
        mock_directory_class.assert_not_called()

    def test_health_check_reports_config_failure(self):
        """Test that the health check reports the file instead of raising."""
        status = SyncOrchestrator(config_path=self.config_path).health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['configuration']['status'], 'fail')


class TestMainEntryPoint(unittest.TestCase):
    """Test cases for the command line entry point."""

    @patch('ldap_mailchimp_sync.main.SyncOrchestrator')
    def test_sync_command(self, mock_orchestrator_class):
        """Test that sync passes names through and exits with the run's code."""
        mock_orchestrator_class.return_value.run.return_value = EXIT_UPSERT_FAILED

        with self.assertRaises(SystemExit) as context:
            main(['--config', 'c.yaml', 'sync', '--collection', 'Users', '--list', 'Newsletter'])

        self.assertEqual(context.exception.code, EXIT_UPSERT_FAILED)
        mock_orchestrator_class.assert_called_once_with(
            config_path='c.yaml', collection_name='Users', list_name='Newsletter'
        )

    def test_sync_requires_names(self):
        """Test that sync without names is a usage error."""
        with patch('sys.stderr', new_callable=StringIO):
            with self.assertRaises(SystemExit) as context:
                main(['sync', '--collection', 'Users'])

        self.assertEqual(context.exception.code, 2)

    @patch('ldap_mailchimp_sync.main.run_configure')
    def test_configure_command(self, mock_run_configure):
        """Test that configure runs the interactive setup."""
        with self.assertRaises(SystemExit) as context:
            main(['configure'])

        self.assertEqual(context.exception.code, 0)
        mock_run_configure.assert_called_once_with(None)


if __name__ == '__main__':
    unittest.main()
