#!/usr/bin/env python3
"""
Unit tests for the reconciliation engine.

The engine runs against an in-memory directory so every decision (create,
update, skip) and every failure path can be observed without a server.
"""

import os
import sys
import threading
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ddg_sync.directory import (
    DirectoryService, DirectoryObject, DynamicGroup, DirectoryOperationError, ThrottledDirectory,
    DYNAMIC_GROUP_KIND
)
from ddg_sync.engine import ReconciliationEngine, EngineSettings
from ddg_sync.filters import FilterPolicy
from ddg_sync.outcomes import OutcomeAggregator, OutcomeKind


class InMemoryDirectory(DirectoryService):
    """Directory double that keeps objects in a dict and records every call."""

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.failures = {}
        self._lock = threading.Lock()

    def fail(self, method, times, error=None):
        """Make the next ``times`` calls to ``method`` raise."""
        self.failures[method] = [error or DirectoryOperationError(f"{method} unavailable")] * times

    def _enter(self, method, *args):
        with self._lock:
            self.calls.append((method,) + args)
            pending = self.failures.get(method)
            if pending:
                raise pending.pop(0)

    def method_calls(self, method):
        return [c for c in self.calls if c[0] == method]

    def connect(self):
        self._enter('connect')

    def disconnect(self):
        self._enter('disconnect')

    def list_distinct_departments(self, recipient_types):
        self._enter('list_distinct_departments', tuple(recipient_types))
        return []

    def lookup_any(self, name):
        self._enter('lookup_any', name)
        return self.objects.get(name)

    def lookup_dynamic_group(self, name):
        self._enter('lookup_dynamic_group', name)
        found = self.objects.get(name)
        return found if isinstance(found, DynamicGroup) else None

    def create_dynamic_group(self, identity, membership_filter, included_kinds):
        self._enter('create_dynamic_group', identity, membership_filter, tuple(included_kinds))
        group = DynamicGroup(name=identity.name, distinguished_name=f"CN={identity.name},OU=Groups",
                             kind=DYNAMIC_GROUP_KIND, display_name=identity.display_name,
                             recipient_filter=membership_filter.to_opath())
        self.objects[identity.name] = group
        return group

    def update_dynamic_group(self, identity, membership_filter):
        self._enter('update_dynamic_group', identity, membership_filter)
        current = self.objects[identity.name]
        group = DynamicGroup(name=current.name, distinguished_name=current.distinguished_name,
                             kind=DYNAMIC_GROUP_KIND, display_name=identity.display_name,
                             recipient_filter=membership_filter.to_opath())
        self.objects[identity.name] = group
        return group


@patch('ddg_sync.retry.time.sleep')
class TestReconcile(unittest.TestCase):
    """Test cases for ReconciliationEngine.reconcile."""

    def setUp(self):
        """Set up test fixtures."""
        self.directory = InMemoryDirectory()
        self.engine = ReconciliationEngine(self.directory)

    def test_create_accounts_payable(self, mock_sleep):
        """A free name is created with the derived identity and filter."""
        outcome = self.engine.reconcile('10023 Accounts Payable - USA')

        self.assertEqual(outcome.kind, OutcomeKind.CREATED)
        self.assertEqual(outcome.identity.name, '10023USA')
        self.assertEqual(outcome.identity.display_name, 'Accounts Payable - USA')

        creates = self.directory.method_calls('create_dynamic_group')
        self.assertEqual(len(creates), 1)
        _, identity, membership_filter, included_kinds = creates[0]
        self.assertEqual(identity.name, '10023USA')
        self.assertEqual(membership_filter.department_number, '10023')
        self.assertEqual(membership_filter.country_code, 'USA')
        self.assertEqual(included_kinds, ('UserMailbox', 'MailUser'))

    def test_second_run_updates(self, mock_sleep):
        """Reconciling the same department twice creates then updates."""
        first = self.engine.reconcile('12345 Finance - USA')
        second = self.engine.reconcile('12345 Finance - USA')

        self.assertEqual(first.kind, OutcomeKind.CREATED)
        self.assertEqual(second.kind, OutcomeKind.UPDATED)
        self.assertEqual(len(self.directory.method_calls('create_dynamic_group')), 1)
        self.assertEqual(len(self.directory.method_calls('update_dynamic_group')), 1)
        self.assertEqual(self.directory.objects['12345USA'].display_name, 'Finance - USA')

    def test_update_changes_display_name(self, mock_sleep):
        """A renamed department rewrites the existing group's display name."""
        self.engine.reconcile('12345 Finance - USA')
        outcome = self.engine.reconcile('12345 Corporate Finance - USA')

        self.assertEqual(outcome.kind, OutcomeKind.UPDATED)
        self.assertEqual(self.directory.objects['12345USA'].display_name, 'Corporate Finance - USA')

    def test_skip_when_name_taken_by_other_object(self, mock_sleep):
        """A mailbox holding the name is never modified."""
        self.directory.objects['12345USA'] = DirectoryObject(
            name='12345USA', distinguished_name='CN=12345USA,OU=Users', kind='UserMailbox')

        outcome = self.engine.reconcile('12345 Finance - USA')

        self.assertEqual(outcome.kind, OutcomeKind.SKIPPED)
        self.assertEqual(outcome.message, '12345USA already exists as UserMailbox')
        self.assertEqual(self.directory.method_calls('create_dynamic_group'), [])
        self.assertEqual(self.directory.method_calls('update_dynamic_group'), [])

    def test_free_name_skips_group_lookup(self, mock_sleep):
        """The dynamic group lookup runs only when something holds the name."""
        self.engine.reconcile('12345 Finance - USA')
        self.assertEqual(self.directory.method_calls('lookup_dynamic_group'), [])

    def test_validation_error(self, mock_sleep):
        """Malformed strings never reach the directory."""
        for department in ['12345', 'Finance', '1234 Finance - USA', '12345 Finance - usa',
                           '12345 Finance - USA\n']:
            with self.subTest(department=department):
                outcome = self.engine.reconcile(department)
                self.assertEqual(outcome.kind, OutcomeKind.VALIDATION_ERROR)
                self.assertIsNone(outcome.identity)
        self.assertEqual(self.directory.calls, [])

    def test_dry_run_makes_no_calls(self, mock_sleep):
        """What-if mode plans the change without touching the directory."""
        engine = ReconciliationEngine(self.directory, EngineSettings(dry_run=True))

        outcome = engine.reconcile('10023 Accounts Payable - USA')

        self.assertEqual(outcome.kind, OutcomeKind.WHAT_IF)
        self.assertEqual(outcome.identity.name, '10023USA')
        self.assertEqual(self.directory.calls, [])

    def test_lookup_error_after_retries(self, mock_sleep):
        """Lookup failures use the lookup attempt budget."""
        self.directory.fail('lookup_any', 5)

        outcome = self.engine.reconcile('12345 Finance - USA')

        self.assertEqual(outcome.kind, OutcomeKind.LOOKUP_ERROR)
        self.assertEqual(outcome.message, 'lookup_any unavailable')
        self.assertEqual(len(self.directory.method_calls('lookup_any')), 2)
        self.assertEqual(self.directory.method_calls('create_dynamic_group'), [])

    def test_create_error_after_retries(self, mock_sleep):
        """Create is attempted max_attempts times with linear backoff."""
        self.directory.fail('create_dynamic_group', 3)

        outcome = self.engine.reconcile('12345 Finance - USA')

        self.assertEqual(outcome.kind, OutcomeKind.CREATE_ERROR)
        self.assertEqual(len(self.directory.method_calls('create_dynamic_group')), 3)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [4.0, 6.0])

    def test_create_recovers_on_retry(self, mock_sleep):
        """A transient failure is absorbed by the retry policy."""
        self.directory.fail('create_dynamic_group', 1)

        outcome = self.engine.reconcile('12345 Finance - USA')

        self.assertEqual(outcome.kind, OutcomeKind.CREATED)
        self.assertEqual(len(self.directory.method_calls('create_dynamic_group')), 2)

    def test_update_error_after_retries(self, mock_sleep):
        self.engine.reconcile('12345 Finance - USA')
        self.directory.fail('update_dynamic_group', 3)

        outcome = self.engine.reconcile('12345 Finance - USA')

        self.assertEqual(outcome.kind, OutcomeKind.UPDATE_ERROR)
        self.assertEqual(outcome.message, 'update_dynamic_group unavailable')

    def test_unexpected_error_is_contained(self, mock_sleep):
        """Errors outside the known paths become an outcome instead of raising."""
        with patch('ddg_sync.engine.build_filter', side_effect=RuntimeError('boom')):
            outcome = self.engine.reconcile('12345 Finance - USA')

        self.assertEqual(outcome.kind, OutcomeKind.UNEXPECTED_ERROR)
        self.assertEqual(outcome.message, 'RuntimeError: boom')
        self.assertEqual(outcome.identity.name, '12345USA')

    def test_backend_bug_is_not_retried(self, mock_sleep):
        """Only directory errors are retried; other faults are unexpected."""
        self.directory.fail('lookup_any', 1, AttributeError("'NoneType' object has no attribute 'search'"))

        outcome = self.engine.reconcile('12345 Finance - USA')

        self.assertEqual(outcome.kind, OutcomeKind.UNEXPECTED_ERROR)
        self.assertTrue(outcome.message.startswith('AttributeError: '))
        self.assertEqual(len(self.directory.method_calls('lookup_any')), 1)
        mock_sleep.assert_not_called()

    def test_backend_bug_during_create_is_not_retried(self, mock_sleep):
        self.directory.fail('create_dynamic_group', 1, KeyError('mail'))

        outcome = self.engine.reconcile('12345 Finance - USA')

        self.assertEqual(outcome.kind, OutcomeKind.UNEXPECTED_ERROR)
        self.assertEqual(len(self.directory.method_calls('create_dynamic_group')), 1)

    def test_custom_policy_reaches_directory(self, mock_sleep):
        """The configured policy decides the included kinds and the filter."""
        policy = FilterPolicy(included_recipient_types=('UserMailbox',), excluded_name_patterns=())
        engine = ReconciliationEngine(self.directory, EngineSettings(policy=policy))

        engine.reconcile('12345 Finance - USA')

        _, _, membership_filter, included_kinds = self.directory.method_calls('create_dynamic_group')[0]
        self.assertEqual(included_kinds, ('UserMailbox',))
        self.assertEqual(membership_filter.excluded_name_patterns, ())


class TestEngineSettings(unittest.TestCase):
    """Test cases for EngineSettings validation."""

    def test_invalid_attempts(self):
        with self.assertRaises(ValueError):
            EngineSettings(max_attempts=0)
        with self.assertRaises(ValueError):
            EngineSettings(lookup_max_attempts=0)


@patch('ddg_sync.retry.time.sleep')
class TestRun(unittest.TestCase):
    """Test cases for batch runs."""

    DEPARTMENTS = [
        '10023 Accounts Payable - USA',
        '12345 Finance - USA',
        'bad',
        '20001 Marketing - GBR',
        '30001 Sales - DEU',
        '12345',
        '40001 Legal - FRA',
    ]

    def setUp(self):
        """Set up test fixtures."""
        self.directory = InMemoryDirectory()
        self.engine = ReconciliationEngine(self.directory)

    def test_sequential_run(self, mock_sleep):
        """One bad department does not stop the batch."""
        aggregator = self.engine.run(self.DEPARTMENTS)

        stats = aggregator.statistics
        self.assertEqual(stats.total_processed, 7)
        self.assertEqual(stats.created, 5)
        self.assertEqual(stats.validation_errors, 2)
        self.assertEqual([o.department for o in aggregator.outcomes], self.DEPARTMENTS)

    def test_failure_isolated_to_one_department(self, mock_sleep):
        """A create failure affects only the department being processed."""
        self.directory.fail('create_dynamic_group', 3)

        aggregator = self.engine.run(['10023 Accounts Payable - USA', '12345 Finance - USA'])

        kinds = [o.kind for o in aggregator.outcomes]
        self.assertEqual(kinds, [OutcomeKind.CREATE_ERROR, OutcomeKind.CREATED])
        self.assertEqual(aggregator.report().exit_code, 1)

    def test_run_records_into_given_aggregator(self, mock_sleep):
        aggregator = OutcomeAggregator()
        returned = self.engine.run(['12345 Finance - USA'], aggregator=aggregator)
        self.assertIs(returned, aggregator)
        self.assertEqual(aggregator.statistics.created, 1)

    def test_pooled_run_matches_sequential(self, mock_sleep):
        """Parallel processing gives the same counts in input order."""
        aggregator = self.engine.run(self.DEPARTMENTS, workers=3)

        stats = aggregator.statistics
        self.assertEqual(stats.total_processed, 7)
        self.assertEqual(stats.created, 5)
        self.assertEqual(stats.validation_errors, 2)
        self.assertEqual([o.department for o in aggregator.outcomes], self.DEPARTMENTS)
        self.assertEqual(len(self.directory.objects), 5)

    def test_pooled_run_with_more_workers_than_departments(self, mock_sleep):
        aggregator = self.engine.run(self.DEPARTMENTS[:2], workers=8)
        self.assertEqual(aggregator.statistics.created, 2)

    def test_empty_run(self, mock_sleep):
        aggregator = self.engine.run([], workers=4)
        self.assertEqual(aggregator.statistics.total_processed, 0)


class TestThrottledDirectory(unittest.TestCase):
    """Test cases for the throttling proxy."""

    def test_delegates_calls(self):
        inner = InMemoryDirectory()
        throttled = ThrottledDirectory(inner, max_concurrent_calls=2)

        throttled.connect()
        self.assertIsNone(throttled.lookup_any('12345USA'))
        throttled.disconnect()

        self.assertEqual([c[0] for c in inner.calls], ['connect', 'lookup_any', 'disconnect'])

    def test_invalid_limit(self):
        with self.assertRaises(ValueError):
            ThrottledDirectory(InMemoryDirectory(), max_concurrent_calls=0)


if __name__ == '__main__':
    unittest.main()
