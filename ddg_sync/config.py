"""
Configuration loading and management for DDG Sync.

This module handles loading configuration from YAML files, environment
variables and command line overrides, with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from ddg_sync.filters import FilterPolicy, FilterPolicyError

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive or per-host fields
    ENV_OVERRIDES = {
        'directory.bind_password': 'DIRECTORY_BIND_PASSWORD',
        'organization_domain': 'ORGANIZATION_DOMAIN',
    }

    REQUIRED_DIRECTORY_FIELDS = ['server_url', 'bind_dn', 'bind_password', 'search_base', 'group_ou']

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
            overrides: Dotted-key values that take precedence over file and environment,
                e.g. ``{'reconciliation.dry_run': True}``
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.overrides = overrides or {}
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment and CLI overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._apply_overrides()
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _apply_overrides(self):
        """Apply command line overrides; None means not given."""
        for config_key, value in self.overrides.items():
            if value is not None:
                self._set_nested_value(self.config, config_key, value)
                logger.debug(f"Applied command line override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'use_ssl': None,
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 30,
            'page_size': 1000,
            'max_concurrent_calls': 1
        }
        directory_config = self.config.setdefault('directory', {})
        for key, value in directory_defaults.items():
            directory_config.setdefault(key, value)
        if directory_config.get('use_ssl') is None:
            directory_config['use_ssl'] = str(directory_config.get('server_url', '')).lower().startswith('ldaps://')
        directory_config.setdefault('recipient_base_dn', directory_config.get('search_base'))

        reconciliation_defaults = {
            'dry_run': False,
            'max_retries': 3,
            'lookup_max_attempts': 2,
            'retry_delay_seconds': 2.0,
            'workers': 1
        }
        reconciliation_config = self.config.setdefault('reconciliation', {})
        for key, value in reconciliation_defaults.items():
            reconciliation_config.setdefault(key, value)

        self.config.setdefault('policy', {}).setdefault('min_department_length', 13)

        logging_defaults = {
            'level': 'INFO',
            'log_path': None,
            'rotation': 'none',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO'
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        self.config.setdefault('report', {}).setdefault('json_path', None)

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        if not self.config.get('organization_domain'):
            errors.append("Missing required field: organization_domain")

        directory_config = self.config.get('directory', {})
        for field in self.REQUIRED_DIRECTORY_FIELDS:
            if not directory_config.get(field):
                errors.append(f"Missing required directory field: {field}")

        max_concurrent_calls = directory_config.get('max_concurrent_calls')
        if not self._is_positive_int(max_concurrent_calls):
            errors.append("directory.max_concurrent_calls must be an integer >= 1")
        elif max_concurrent_calls > 1:
            # One ldap3 SYNC connection serves every worker
            errors.append("directory.max_concurrent_calls must be 1 for the LDAP backend "
                          f"(got {max_concurrent_calls})")

        reconciliation_config = self.config.get('reconciliation', {})
        for field in ('max_retries', 'lookup_max_attempts', 'workers'):
            if not self._is_positive_int(reconciliation_config.get(field)):
                errors.append(f"reconciliation.{field} must be an integer >= 1")

        delay = reconciliation_config.get('retry_delay_seconds')
        if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
            errors.append("reconciliation.retry_delay_seconds must be a number >= 0")

        policy_config = self.config.get('policy', {})
        if not self._is_positive_int(policy_config.get('min_department_length')):
            errors.append("policy.min_department_length must be an integer >= 1")
        try:
            FilterPolicy.from_config(policy_config)
        except FilterPolicyError as e:
            errors.append(f"Invalid policy: {e}")

        rotation = str(self.config.get('logging', {}).get('rotation', 'none')).lower()
        if rotation not in ('none', 'daily', 'midnight'):
            errors.append(f"logging.rotation must be one of none, daily, midnight (got {rotation})")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    @staticmethod
    def _is_positive_int(value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def load_config(config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        overrides: Dotted-key command line overrides

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path, overrides)
    return loader.load()
