"""
Configuration loading and management for LDAP Mailchimp Sync.

This module handles loading configuration from a YAML file and environment variables,
with validation and defaults. The file normally lives under the user's home
directory and is written by the ``configure`` command.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from ldap_mailchimp_sync.errors import SyncError
from ldap_mailchimp_sync.models import CredentialBundle

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = os.path.join('~', '.ldap-mailchimp-sync')
DEFAULT_CONFIG_PATH = os.path.join(DEFAULT_CONFIG_DIR, 'config.yaml')

DEFAULT_MERGE_FIELDS = {
    'status': 'STATUS',
    'given_name': 'FNAME',
    'family_name': 'LNAME',
    'full_name': 'FULLNAME',
    'username': 'USERNAME',
    'id': 'USERID',
    'collection_id': 'GROUPID',
    'created_at': 'CREATED',
}

RUN_CONFIGURE_HINT = "Run 'ldap-mailchimp-sync configure' to create it."


class ConfigurationError(SyncError):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigMissing(ConfigurationError):
    """Raised when the configuration file does not exist."""
    pass


class ConfigCorrupt(ConfigurationError):
    """Raised when the configuration file cannot be parsed or is incomplete."""
    pass


def default_config_path() -> str:
    """Return the config path from CONFIG_PATH, falling back to the home directory file."""
    return os.path.expanduser(os.getenv('CONFIG_PATH', DEFAULT_CONFIG_PATH))


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.key_id': 'DIRECTORY_KEY_ID',
        'directory.key_secret': 'DIRECTORY_KEY_SECRET',
        'mailchimp.api_key': 'MAILCHIMP_API_KEY',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or
                ~/.ldap-mailchimp-sync/config.yaml
        """
        self.config_path = os.path.expanduser(config_path) if config_path else default_config_path()
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigMissing: If the config file does not exist
            ConfigCorrupt: If the file is not valid YAML or fails validation
        """
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigMissing(f"Configuration file not found: {self.config_path}. {RUN_CONFIGURE_HINT}")
        except OSError as e:
            raise ConfigCorrupt(f"Cannot read config file {self.config_path}: {e}. {RUN_CONFIGURE_HINT}") from e
        except UnicodeDecodeError as e:
            raise ConfigCorrupt(f"Config file {self.config_path} is not valid UTF-8: {e}. {RUN_CONFIGURE_HINT}") from e
        except yaml.YAMLError as e:
            raise ConfigCorrupt(f"Invalid YAML in config file {self.config_path}: {e}. {RUN_CONFIGURE_HINT}")

        if self.config is None:
            self.config = {}
        if not isinstance(self.config, dict):
            raise ConfigCorrupt(f"Config file {self.config_path} must contain a mapping. {RUN_CONFIGURE_HINT}")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        for section in ('directory', 'mailchimp', 'sync', 'logging'):
            if not isinstance(self.config.get(section), dict):
                errors.append(f"Section '{section}' must be a mapping")
        if errors:
            raise ConfigCorrupt("Configuration validation failed:\n" +
                                "\n".join(f"  - {error}" for error in errors))

        directory = self.config['directory']
        for field in ('server_url', 'key_id', 'key_secret'):
            if not directory.get(field):
                errors.append(f"Missing required directory field: {field}")

        mailchimp = self.config['mailchimp']
        api_key = mailchimp.get('api_key')
        if not api_key:
            errors.append("Missing required mailchimp field: api_key")
        elif '-' not in str(api_key):
            errors.append("Mailchimp api_key must end with its datacenter, e.g. '<key>-us6'")

        merge_fields = mailchimp.get('merge_fields')
        if not isinstance(merge_fields, dict):
            errors.append("mailchimp.merge_fields must be a mapping")
        else:
            unknown = sorted(set(merge_fields) - set(DEFAULT_MERGE_FIELDS))
            if unknown:
                errors.append(f"Unknown member attributes in mailchimp.merge_fields: {', '.join(unknown)}")

        concurrency = self.config['sync'].get('concurrency')
        if not isinstance(concurrency, int) or isinstance(concurrency, bool) or concurrency < 1:
            errors.append("sync.concurrency must be a positive integer")

        if errors:
            raise ConfigCorrupt("Configuration validation failed:\n" +
                                "\n".join(f"  - {error}" for error in errors) +
                                f"\n{RUN_CONFIGURE_HINT}")

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'group_base_dn': '',
            'user_base_dn': '',
            'group_filter': '(|(objectClass=groupOfNames)(objectClass=groupOfUniqueNames)(objectClass=group))',
            'user_filter': '(objectClass=person)',
            'page_size': 500,
            'connection_timeout': 10,
            'receive_timeout': 10,
        }
        directory_config = self.config.setdefault('directory', {})
        if isinstance(directory_config, dict):
            for key, value in directory_defaults.items():
                directory_config.setdefault(key, value)

        mailchimp_config = self.config.setdefault('mailchimp', {})
        if isinstance(mailchimp_config, dict):
            mailchimp_config.setdefault('timeout', 30)
            merge_fields = mailchimp_config.setdefault('merge_fields', {})
            if isinstance(merge_fields, dict):
                for key, value in DEFAULT_MERGE_FIELDS.items():
                    merge_fields.setdefault(key, value)

        sync_config = self.config.setdefault('sync', {})
        if isinstance(sync_config, dict):
            sync_config.setdefault('concurrency', 1)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': os.path.join(DEFAULT_CONFIG_DIR, 'logs'),
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING',
        }
        logging_config = self.config.setdefault('logging', {})
        if isinstance(logging_config, dict):
            for key, value in logging_defaults.items():
                logging_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def credentials_from_config(config: Dict[str, Any]) -> CredentialBundle:
    """Extract the credential bundle from a loaded configuration."""
    return CredentialBundle(
        source_key_id=config['directory']['key_id'],
        source_key_secret=config['directory']['key_secret'],
        destination_key=config['mailchimp']['api_key'],
    )
