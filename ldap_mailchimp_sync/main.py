"""
Main orchestrator for LDAP Mailchimp Sync.

This module wires configuration, the LDAP directory client and the Mailchimp
client together, runs the bulk upsert for one group and one list, and maps
the outcome onto a process exit code.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_mailchimp_sync.config import load_config, credentials_from_config, ConfigurationError
from ldap_mailchimp_sync.configure import run_configure
from ldap_mailchimp_sync.directory_client import DirectoryClient
from ldap_mailchimp_sync.errors import (
    SourceUnavailable, DestinationUnavailable, NotFound, UpsertFailed
)
from ldap_mailchimp_sync.logging_setup import setup_logging
from ldap_mailchimp_sync.mailchimp_client import MailchimpClient
from ldap_mailchimp_sync.pipeline import BulkUpsertPipeline
from ldap_mailchimp_sync.resolver import resolve_collection, resolve_list

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIG = 2
EXIT_SOURCE_UNAVAILABLE = 3
EXIT_DESTINATION_UNAVAILABLE = 4
EXIT_NOT_FOUND = 5
EXIT_UPSERT_FAILED = 6


class SyncOrchestrator:
    """
    Runs one sync of an LDAP group into a Mailchimp list.

    Clients are built once from the loaded configuration and handed to the
    pipeline explicitly.
    """

    def __init__(self, config_path: Optional[str] = None, collection_name: Optional[str] = None,
                 list_name: Optional[str] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            collection_name: Name of the LDAP group to read
            list_name: Name of the Mailchimp list to write
        """
        self.config = None
        self.config_path = config_path
        self.collection_name = collection_name
        self.list_name = list_name
        self.directory_client = None
        self.mailchimp_client = None
        self.report = None

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            self._setup_logging()

            logger.info(f"Starting LDAP Mailchimp Sync: '{self.collection_name}' -> '{self.list_name}'")

            self._create_clients()
            self.directory_client.connect()

            collection = resolve_collection(self.directory_client, self.collection_name)
            mailing_list = resolve_list(self.mailchimp_client, self.list_name)

            pipeline = BulkUpsertPipeline(
                self.directory_client,
                self.mailchimp_client,
                merge_field_map=self.config['mailchimp']['merge_fields'],
                concurrency=self.config['sync']['concurrency']
            )
            self.report = pipeline.run(collection, mailing_list)

            self._log_sync_summary()
            print(f"Synced {self.report.succeeded} members of '{collection.name}' "
                  f"into '{mailing_list.name}'")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            return self._fail(EXIT_CONFIG, "Configuration error", e)
        except SourceUnavailable as e:
            return self._fail(EXIT_SOURCE_UNAVAILABLE, "LDAP directory error", e)
        except DestinationUnavailable as e:
            return self._fail(EXIT_DESTINATION_UNAVAILABLE, "Mailchimp error", e)
        except NotFound as e:
            return self._fail(EXIT_NOT_FOUND, "Lookup failed", e)
        except UpsertFailed as e:
            return self._fail(EXIT_UPSERT_FAILED, "Sync aborted", e)
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            print(f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _fail(self, exit_code: int, title: str, error: Exception) -> int:
        logger.error(f"{title}: {error}")
        print(f"{title}: {error}")
        return exit_code

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)

    def _setup_logging(self):
        """Configure logging based on configuration."""
        setup_logging(self.config.get('logging', {}))

    def _create_clients(self):
        """Build the directory and Mailchimp clients from the credential bundle."""
        credentials = credentials_from_config(self.config)
        self.directory_client = DirectoryClient(self.config['directory'], credentials)
        self.mailchimp_client = MailchimpClient(
            credentials.destination_key,
            timeout=self.config['mailchimp'].get('timeout', 30)
        )

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        report = self.report

        runtime_str = f"{report.runtime_seconds:.2f} seconds"
        if report.runtime_seconds > 60:
            minutes = int(report.runtime_seconds // 60)
            seconds = report.runtime_seconds % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Group: {report.collection.name} ({report.collection.id})")
        logger.info(f"List: {report.mailing_list.name} ({report.mailing_list.id})")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Members attempted: {report.attempted}")
        logger.info(f"Members upserted: {report.succeeded}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._create_clients()
        except DestinationUnavailable as e:
            health_status['checks']['mailchimp'] = {'status': 'fail', 'message': str(e)}
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self.directory_client.connect()
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        except SourceUnavailable as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            if not self.mailchimp_client.ping():
                raise DestinationUnavailable("Unexpected ping response")
            health_status['checks']['mailchimp'] = {
                'status': 'pass',
                'message': 'Mailchimp API key accepted'
            }
        except DestinationUnavailable as e:
            health_status['checks']['mailchimp'] = {
                'status': 'fail',
                'message': f'Mailchimp ping failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        self._cleanup()
        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.directory_client:
            self.directory_client.disconnect()
        if self.mailchimp_client:
            self.mailchimp_client.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ldap-mailchimp-sync',
        description='Sync the members of an LDAP group into a Mailchimp list'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    sync_parser = subparsers.add_parser('sync', help='Upsert group members into a list')
    sync_parser.add_argument('--collection', '-g', required=True, help='Name of the LDAP group')
    sync_parser.add_argument('--list', '-l', required=True, dest='list_name', help='Name of the Mailchimp list')

    subparsers.add_parser('configure', help='Enter credentials and save them to the config file')
    subparsers.add_parser('check', help='Check configuration and connectivity to both services')
    return parser


def main(argv=None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    if args.command == 'configure':
        try:
            run_configure(args.config)
        except (KeyboardInterrupt, EOFError):
            print("\nConfiguration cancelled")
            sys.exit(1)
        sys.exit(0)

    elif args.command == 'check':
        orchestrator = SyncOrchestrator(config_path=args.config)
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    else:
        orchestrator = SyncOrchestrator(
            config_path=args.config,
            collection_name=args.collection,
            list_name=args.list_name
        )
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
