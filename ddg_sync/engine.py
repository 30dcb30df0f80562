"""
Reconciliation engine for department dynamic distribution groups.

For every department string the engine validates, parses and derives the
desired group, then converges the directory: create when the name is free,
update when a dynamic group already holds it, skip when any other kind of
object does. A failure on one department is recorded and never stops the
rest of the batch.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ddg_sync.department import (
    FormatError, ParseError, MIN_DEPARTMENT_LENGTH, validate_department, parse_department
)
from ddg_sync.directory import DirectoryError, DirectoryService, ThrottledDirectory
from ddg_sync.filters import (
    FilterPolicy, GroupIdentity, MembershipFilter, DEFAULT_POLICY, build_identity, build_filter
)
from ddg_sync.outcomes import OutcomeAggregator, OutcomeKind, ReconciliationOutcome
from ddg_sync.retry import MaxRetriesExceeded, DEFAULT_DELAY_UNIT, retry_call, create_retry_callback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSettings:
    """Run-wide knobs for the reconciliation engine."""

    max_attempts: int = 3
    lookup_max_attempts: int = 2
    retry_delay: float = DEFAULT_DELAY_UNIT
    dry_run: bool = False
    min_department_length: int = MIN_DEPARTMENT_LENGTH
    policy: FilterPolicy = DEFAULT_POLICY

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.lookup_max_attempts < 1:
            raise ValueError("lookup_max_attempts must be at least 1")


class ReconciliationEngine:
    """
    Converges directory groups with the department taxonomy.

    The engine holds no run state of its own; outcomes are recorded into the
    aggregator passed to :meth:`run`.
    """

    def __init__(self, directory: DirectoryService, settings: Optional[EngineSettings] = None):
        self.directory = directory
        self.settings = settings or EngineSettings()

    def _remote(self, operation, operation_name: str, max_attempts: int):
        return retry_call(
            operation,
            operation_name,
            max_attempts=max_attempts,
            delay_unit=self.settings.retry_delay,
            exceptions=(DirectoryError,),
            on_retry=create_retry_callback(operation_name)
        )

    def reconcile(self, department: str) -> ReconciliationOutcome:
        """
        Reconcile a single department string.

        Never raises: every failure is returned as an error outcome.
        """
        identity = None
        try:
            try:
                validate_department(department, self.settings.min_department_length)
            except FormatError as e:
                logger.warning(f"Invalid department format {department!r}: {e.reason}")
                return ReconciliationOutcome(OutcomeKind.VALIDATION_ERROR, department,
                                             message=e.reason)

            try:
                parsed = parse_department(department)
            except ParseError as e:
                logger.warning(f"Could not parse department {department!r}: {e.reason}")
                return ReconciliationOutcome(OutcomeKind.PARSE_ERROR, department,
                                             message=e.reason)

            identity = build_identity(parsed)
            membership_filter = build_filter(parsed, self.settings.policy)

            if self.settings.dry_run:
                logger.info(f"WHAT-IF: Would reconcile group {identity.name} "
                            f"({identity.display_name}) with filter {membership_filter.to_opath()}")
                return ReconciliationOutcome(OutcomeKind.WHAT_IF, department, identity,
                                             message="dry run, no changes made")

            return self._converge(department, identity, membership_filter)

        except Exception as e:
            logger.error(f"Unexpected error processing department {department!r}: {e}",
                         exc_info=True)
            return ReconciliationOutcome(OutcomeKind.UNEXPECTED_ERROR, department, identity,
                                         message=f"{type(e).__name__}: {e}")

    def _converge(self, department: str, identity: GroupIdentity,
                  membership_filter: MembershipFilter) -> ReconciliationOutcome:
        """Lookup, decide and execute for one parsed department."""
        name = identity.name
        lookup_attempts = self.settings.lookup_max_attempts

        try:
            existing = self._remote(lambda: self.directory.lookup_any(name),
                                    f"Lookup recipient {name}", lookup_attempts)
            existing_group = None
            if existing is not None:
                existing_group = self._remote(lambda: self.directory.lookup_dynamic_group(name),
                                              f"Lookup dynamic group {name}", lookup_attempts)
        except MaxRetriesExceeded as e:
            logger.error(str(e))
            return ReconciliationOutcome(OutcomeKind.LOOKUP_ERROR, department, identity,
                                         message=str(e.last_exception))

        if existing is not None and existing_group is None:
            message = f"{name} already exists as {existing.kind}"
            logger.warning(f"SKIPPING: {message}")
            return ReconciliationOutcome(OutcomeKind.SKIPPED, department, identity, message=message)

        if existing_group is not None:
            try:
                self._remote(lambda: self.directory.update_dynamic_group(identity, membership_filter),
                             f"Update dynamic group {name}", self.settings.max_attempts)
            except MaxRetriesExceeded as e:
                logger.error(str(e))
                return ReconciliationOutcome(OutcomeKind.UPDATE_ERROR, department, identity,
                                             message=str(e.last_exception))
            logger.info(f"Updated dynamic group {name} ({identity.display_name})")
            return ReconciliationOutcome(OutcomeKind.UPDATED, department, identity)

        included_kinds = self.settings.policy.included_recipient_types
        try:
            self._remote(
                lambda: self.directory.create_dynamic_group(identity, membership_filter, included_kinds),
                f"Create dynamic group {name}", self.settings.max_attempts
            )
        except MaxRetriesExceeded as e:
            logger.error(str(e))
            return ReconciliationOutcome(OutcomeKind.CREATE_ERROR, department, identity,
                                         message=str(e.last_exception))
        logger.info(f"Created dynamic group {name} ({identity.display_name})")
        return ReconciliationOutcome(OutcomeKind.CREATED, department, identity)

    def run(self, departments: Sequence[str], aggregator: Optional[OutcomeAggregator] = None,
            workers: int = 1) -> OutcomeAggregator:
        """
        Reconcile every department and record the outcomes.

        Args:
            departments: Department strings to process
            aggregator: Aggregator to record into; a new one is created if None
            workers: Number of worker threads; 1 processes in input order

        Returns:
            The aggregator holding this run's outcomes
        """
        aggregator = aggregator if aggregator is not None else OutcomeAggregator()
        departments = list(departments)

        if workers <= 1 or len(departments) <= 1:
            for index, department in enumerate(departments, start=1):
                logger.info(f"Processing department {index}/{len(departments)}: {department!r}")
                aggregator.record(self.reconcile(department))
            return aggregator

        for partial in self._run_pooled(departments, workers):
            aggregator.merge(partial)
        return aggregator

    def _run_pooled(self, departments: List[str], workers: int) -> List[OutcomeAggregator]:
        """Process contiguous chunks in parallel, one aggregator per chunk."""
        workers = min(workers, len(departments))
        chunk_size = -(-len(departments) // workers)
        chunks = [departments[i:i + chunk_size] for i in range(0, len(departments), chunk_size)]

        directory = self.directory
        if not isinstance(directory, ThrottledDirectory):
            directory = ThrottledDirectory(directory)
        worker_engine = ReconciliationEngine(directory, self.settings)

        logger.info(f"Processing {len(departments)} departments with {len(chunks)} workers")
        with ThreadPoolExecutor(max_workers=len(chunks)) as executor:
            futures = [executor.submit(worker_engine.run, chunk) for chunk in chunks]
            return [future.result() for future in futures]
