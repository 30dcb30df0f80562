"""
Reconciliation outcomes and run statistics.

Each processed department produces exactly one :class:`ReconciliationOutcome`.
An :class:`OutcomeAggregator` owns the run's counters and the ordered list of
outcomes, and turns them into a :class:`RunReport` at the end of the run.
"""

import logging
from dataclasses import dataclass, asdict, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ddg_sync.filters import GroupIdentity

logger = logging.getLogger(__name__)


class OutcomeKind(Enum):
    """Closed set of per-department results."""

    CREATED = 'created'
    UPDATED = 'updated'
    SKIPPED = 'skipped'
    WHAT_IF = 'what_if'
    VALIDATION_ERROR = 'validation_error'
    PARSE_ERROR = 'parse_error'
    LOOKUP_ERROR = 'lookup_error'
    CREATE_ERROR = 'create_error'
    UPDATE_ERROR = 'update_error'
    UNEXPECTED_ERROR = 'unexpected_error'

    @property
    def is_success(self) -> bool:
        return self in SUCCESS_KINDS

    @property
    def is_error(self) -> bool:
        return self in ERROR_KINDS


SUCCESS_KINDS = frozenset({OutcomeKind.CREATED, OutcomeKind.UPDATED})

PROCESSING_ERROR_KINDS = frozenset({
    OutcomeKind.PARSE_ERROR,
    OutcomeKind.LOOKUP_ERROR,
    OutcomeKind.CREATE_ERROR,
    OutcomeKind.UPDATE_ERROR,
    OutcomeKind.UNEXPECTED_ERROR,
})

ERROR_KINDS = PROCESSING_ERROR_KINDS | {OutcomeKind.VALIDATION_ERROR}


@dataclass(frozen=True)
class ReconciliationOutcome:
    """Result of reconciling one department string."""

    kind: OutcomeKind
    department: str
    identity: Optional[GroupIdentity] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'department': self.department,
            'status': self.kind.value,
            'group_name': self.identity.name if self.identity else None,
            'display_name': self.identity.display_name if self.identity else None,
            'message': self.message,
        }


@dataclass
class RunStatistics:
    """Mutable per-run counters."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    what_if: int = 0
    validation_errors: int = 0
    processing_errors: int = 0
    total_processed: int = 0


def _rate(count: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(count / total * 100, 2)


@dataclass(frozen=True)
class RunReport:
    """End-of-run summary built by :meth:`OutcomeAggregator.report`."""

    statistics: RunStatistics
    errors: Tuple[ReconciliationOutcome, ...] = ()
    successes: Tuple[ReconciliationOutcome, ...] = ()
    skipped: Tuple[ReconciliationOutcome, ...] = ()
    planned: Tuple[ReconciliationOutcome, ...] = ()

    @property
    def success_count(self) -> int:
        return self.statistics.created + self.statistics.updated

    @property
    def total_errors(self) -> int:
        return self.statistics.validation_errors + self.statistics.processing_errors

    @property
    def success_rate(self) -> float:
        return _rate(self.success_count, self.statistics.total_processed)

    @property
    def error_rate(self) -> float:
        return _rate(self.total_errors, self.statistics.total_processed)

    @property
    def exit_code(self) -> int:
        return 0 if self.total_errors == 0 else 1

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable representation of the report."""
        return {
            'statistics': asdict(self.statistics),
            'success_count': self.success_count,
            'total_errors': self.total_errors,
            'success_rate': self.success_rate,
            'error_rate': self.error_rate,
            'errors': [o.to_dict() for o in self.errors],
            'successes': [o.to_dict() for o in self.successes],
            'skipped': [o.to_dict() for o in self.skipped],
            'planned': [o.to_dict() for o in self.planned],
        }

    def log_summary(self, log: Optional[logging.Logger] = None) -> None:
        """Write the human readable summary to a logger."""
        log = log or logger
        stats = self.statistics

        log.info("=== Reconciliation Summary ===")
        log.info(f"Departments processed: {stats.total_processed}")
        log.info(f"Created: {stats.created}")
        log.info(f"Updated: {stats.updated}")
        log.info(f"Skipped: {stats.skipped}")
        if stats.what_if:
            log.info(f"What-if (no changes made): {stats.what_if}")
        log.info(f"Validation errors: {stats.validation_errors}")
        log.info(f"Processing errors: {stats.processing_errors}")
        log.info(f"Success rate: {self.success_rate}%")
        log.info(f"Error rate: {self.error_rate}%")

        for outcome in self.skipped:
            log.warning(f"SKIPPED {outcome.department!r}: {outcome.message}")

        if self.errors:
            log.error(f"--- {len(self.errors)} error(s) ---")
            for outcome in self.errors:
                log.error(f"[{outcome.kind.value}] {outcome.department!r}: {outcome.message}")


class OutcomeAggregator:
    """
    Accumulates outcomes for a single run.

    One aggregator is owned by whoever drives the run. Parallel workers each
    get their own instance and are combined with :meth:`merge` afterwards.
    """

    def __init__(self):
        self.statistics = RunStatistics()
        self.outcomes: List[ReconciliationOutcome] = []

    def record(self, outcome: ReconciliationOutcome) -> None:
        """Count one outcome in exactly one bucket."""
        kind = outcome.kind
        stats = self.statistics

        if kind is OutcomeKind.CREATED:
            stats.created += 1
        elif kind is OutcomeKind.UPDATED:
            stats.updated += 1
        elif kind is OutcomeKind.SKIPPED:
            stats.skipped += 1
        elif kind is OutcomeKind.WHAT_IF:
            stats.what_if += 1
        elif kind is OutcomeKind.VALIDATION_ERROR:
            stats.validation_errors += 1
        elif kind in PROCESSING_ERROR_KINDS:
            stats.processing_errors += 1
        else:
            raise ValueError(f"Unhandled outcome kind: {kind!r}")

        stats.total_processed += 1
        self.outcomes.append(outcome)

    def merge(self, other: 'OutcomeAggregator') -> None:
        """Fold another aggregator's counters and outcomes into this one."""
        for f in fields(RunStatistics):
            name = f.name
            setattr(self.statistics, name,
                    getattr(self.statistics, name) + getattr(other.statistics, name))
        self.outcomes.extend(other.outcomes)

    def report(self) -> RunReport:
        """Build the end-of-run report, preserving record order."""
        return RunReport(
            statistics=RunStatistics(**asdict(self.statistics)),
            errors=tuple(o for o in self.outcomes if o.kind in ERROR_KINDS),
            successes=tuple(o for o in self.outcomes if o.kind in SUCCESS_KINDS),
            skipped=tuple(o for o in self.outcomes if o.kind is OutcomeKind.SKIPPED),
            planned=tuple(o for o in self.outcomes if o.kind is OutcomeKind.WHAT_IF),
        )
