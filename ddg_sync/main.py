"""
Main orchestrator for DDG Sync.

Connects to the directory, collects every distinct department value, runs
the reconciliation engine over them and reports the results. The process
exit code is 0 only when no department produced an error.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional

from ddg_sync.config import load_config, ConfigurationError
from ddg_sync.directory import DirectoryError, DirectoryService, ThrottledDirectory
from ddg_sync.engine import ReconciliationEngine, EngineSettings
from ddg_sync.filters import FilterPolicy
from ddg_sync.ldap_directory import LDAPDirectoryService
from ddg_sync.logging_setup import setup_logging
from ddg_sync.outcomes import OutcomeAggregator, RunReport
from ddg_sync.retry import MaxRetriesExceeded, retry_call, create_retry_callback

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


class SyncOrchestrator:
    """
    Drives one reconciliation run end to end.

    Session and listing failures are fatal and abort before any department
    is processed; everything after that is isolated per department.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                 directory: Optional[DirectoryService] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            overrides: Dotted-key command line overrides
            directory: Directory backend; built from configuration when None
        """
        self.config_path = config_path
        self.overrides = overrides or {}
        self.config = None
        self.directory = directory
        self.report: Optional[RunReport] = None
        self.start_time = None
        self.end_time = None

    def run(self) -> int:
        """
        Run the complete reconciliation.

        Returns:
            Exit code (0 when every department succeeded or was skipped)
        """
        self.start_time = datetime.now()
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            reconciliation = self.config['reconciliation']
            logger.info(f"Starting DDG sync for {self.config['organization_domain']}"
                        f"{' (WHAT-IF mode)' if reconciliation['dry_run'] else ''}")

            self._connect_directory()
            departments = self._list_departments()

            if not departments:
                logger.info("No departments found; nothing to reconcile")
                self.report = OutcomeAggregator().report()
                return EXIT_SUCCESS

            logger.info(f"Reconciling {len(departments)} departments")
            engine = ReconciliationEngine(self.directory, self._engine_settings())
            aggregator = engine.run(departments, workers=reconciliation['workers'])

            self.report = aggregator.report()
            self.end_time = datetime.now()
            self._log_summary()
            self._write_json_report()

            if self.report.total_errors:
                logger.warning(f"Sync completed with {self.report.total_errors} error(s)")
            else:
                logger.info("Sync completed successfully")
            return self.report.exit_code

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_FAILURE
        except MaxRetriesExceeded as e:
            logger.error(f"Fatal directory error: {e}")
            return EXIT_FAILURE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_FAILURE
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path, self.overrides)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _build_directory(self) -> DirectoryService:
        directory_config = self.config['directory']
        directory = LDAPDirectoryService(directory_config, self.config['organization_domain'])
        if self.config['reconciliation']['workers'] > 1:
            return ThrottledDirectory(directory, directory_config['max_concurrent_calls'])
        return directory

    def _engine_settings(self) -> EngineSettings:
        reconciliation = self.config['reconciliation']
        policy_config = self.config.get('policy', {})
        return EngineSettings(
            max_attempts=reconciliation['max_retries'],
            lookup_max_attempts=reconciliation['lookup_max_attempts'],
            retry_delay=reconciliation['retry_delay_seconds'],
            dry_run=reconciliation['dry_run'],
            min_department_length=policy_config['min_department_length'],
            policy=FilterPolicy.from_config(policy_config)
        )

    def _remote(self, operation, operation_name: str):
        reconciliation = self.config['reconciliation']
        return retry_call(
            operation,
            operation_name,
            max_attempts=reconciliation['max_retries'],
            delay_unit=reconciliation['retry_delay_seconds'],
            exceptions=(DirectoryError,),
            on_retry=create_retry_callback(operation_name)
        )

    def _connect_directory(self):
        """Establish the directory session; failure is fatal."""
        if self.directory is None:
            self.directory = self._build_directory()
        self._remote(self.directory.connect, "Connect to directory")

    def _list_departments(self) -> List[str]:
        """Fetch distinct department values; failure is fatal."""
        recipient_types = FilterPolicy.from_config(self.config.get('policy', {})).included_recipient_types
        departments = self._remote(
            lambda: self.directory.list_distinct_departments(recipient_types),
            "List departments"
        )
        logger.info(f"Found {len(departments)} unique departments")
        return departments

    def _log_summary(self):
        """Log final statistics and timing."""
        self.report.log_summary(logger)
        if self.start_time and self.end_time:
            runtime = (self.end_time - self.start_time).total_seconds()
            runtime_str = f"{runtime:.2f} seconds"
            if runtime > 60:
                runtime_str = f"{int(runtime // 60)}m {runtime % 60:.1f}s"
            logger.info(f"Total runtime: {runtime_str}")

    def _write_json_report(self):
        """Write the machine readable report when a path is configured."""
        json_path = self.config.get('report', {}).get('json_path')
        if not json_path:
            return

        document = self.report.to_dict()
        document['organization_domain'] = self.config['organization_domain']
        document['dry_run'] = self.config['reconciliation']['dry_run']
        document['started_at'] = self.start_time.isoformat() if self.start_time else None
        document['finished_at'] = self.end_time.isoformat() if self.end_time else None

        try:
            with open(json_path, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
            logger.info(f"JSON report written to {json_path}")
        except OSError as e:
            logger.error(f"Failed to write JSON report to {json_path}: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration and directory connectivity without changing anything.

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

        directory = self.directory or self._build_directory()
        try:
            directory.connect()
            directory.disconnect()
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'Directory connection successful'
            }
        except Exception as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        """Close the directory session."""
        if self.directory is not None:
            try:
                self.directory.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting from directory: {e}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Create and update department dynamic distribution groups'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--organization-domain', help='Organization mail domain')
    parser.add_argument('--what-if', '--dry-run', dest='dry_run', action='store_true', default=None,
                        help='Report intended changes without touching the directory')
    parser.add_argument('--log-path', help='Write a transcript of the run to this file')
    parser.add_argument('--max-retries', type=_positive_int,
                        help='Maximum attempts for each directory operation')
    parser.add_argument('--workers', type=_positive_int,
                        help='Worker threads for reconciliation (default: 1, sequential)')
    parser.add_argument('--report-json', help='Write the run report as JSON to this file')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and directory connectivity, then exit')
    return parser.parse_args(argv)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map parsed arguments to dotted configuration keys."""
    return {
        'organization_domain': args.organization_domain,
        'reconciliation.dry_run': args.dry_run,
        'reconciliation.max_retries': args.max_retries,
        'reconciliation.workers': args.workers,
        'logging.log_path': args.log_path,
        'report.json_path': args.report_json,
    }


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = parse_args(argv)
    orchestrator = SyncOrchestrator(config_path=args.config, overrides=build_overrides(args))

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(EXIT_SUCCESS if health_status['status'] == 'healthy' else EXIT_FAILURE)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
