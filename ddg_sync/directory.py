"""
Directory service interface.

This module defines the abstract base class that directory backends must
implement, the value objects returned by lookups, and a throttling proxy used
when departments are reconciled by more than one worker.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from ddg_sync.filters import GroupIdentity, MembershipFilter

logger = logging.getLogger(__name__)

DYNAMIC_GROUP_KIND = 'DynamicDistributionGroup'


class DirectoryError(Exception):
    """Base exception for directory service errors."""
    pass


class DirectoryConnectionError(DirectoryError):
    """Raised when a directory session cannot be established."""
    pass


class DirectoryOperationError(DirectoryError):
    """Raised when a directory query or modification fails."""
    pass


@dataclass(frozen=True)
class DirectoryObject:
    """Any directory object found by name."""

    name: str
    distinguished_name: str
    kind: str


@dataclass(frozen=True)
class DynamicGroup(DirectoryObject):
    """A dynamic distribution group managed by this tool."""

    display_name: str = ''
    recipient_filter: str = ''


class DirectoryService(ABC):
    """
    Abstract base class for directory backends.

    Lookups return ``None`` when nothing matches; failures to reach or query
    the directory raise :class:`DirectoryError` subclasses.
    """

    @abstractmethod
    def connect(self) -> None:
        """Open and authenticate the directory session."""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close the directory session."""
        pass

    @abstractmethod
    def list_distinct_departments(self, recipient_types: Sequence[str]) -> List[str]:
        """
        Return every distinct, non-empty department value carried by
        recipients of the given types.
        """
        pass

    @abstractmethod
    def lookup_any(self, name: str) -> Optional[DirectoryObject]:
        """Find any directory object bearing the given name."""
        pass

    @abstractmethod
    def lookup_dynamic_group(self, name: str) -> Optional[DynamicGroup]:
        """Find a dynamic distribution group bearing the given name."""
        pass

    @abstractmethod
    def create_dynamic_group(self, identity: GroupIdentity, membership_filter: MembershipFilter,
                             included_kinds: Iterable[str]) -> DirectoryObject:
        """Create a dynamic distribution group."""
        pass

    @abstractmethod
    def update_dynamic_group(self, identity: GroupIdentity,
                             membership_filter: MembershipFilter) -> DirectoryObject:
        """Replace the display name and filter of an existing group."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


class ThrottledDirectory(DirectoryService):
    """
    Proxy that bounds the number of concurrent calls into a directory.

    Backends that rate limit aggressively, or whose connections are not
    thread safe, should be wrapped with ``max_concurrent_calls=1``.
    """

    def __init__(self, directory: DirectoryService, max_concurrent_calls: int = 1):
        if max_concurrent_calls < 1:
            raise ValueError("max_concurrent_calls must be at least 1")
        self.directory = directory
        self.max_concurrent_calls = max_concurrent_calls
        self._semaphore = threading.BoundedSemaphore(max_concurrent_calls)

    def _call(self, method, *args):
        with self._semaphore:
            return method(*args)

    def connect(self) -> None:
        self._call(self.directory.connect)

    def disconnect(self) -> None:
        self._call(self.directory.disconnect)

    def list_distinct_departments(self, recipient_types):
        return self._call(self.directory.list_distinct_departments, recipient_types)

    def lookup_any(self, name):
        return self._call(self.directory.lookup_any, name)

    def lookup_dynamic_group(self, name):
        return self._call(self.directory.lookup_dynamic_group, name)

    def create_dynamic_group(self, identity, membership_filter, included_kinds):
        return self._call(self.directory.create_dynamic_group, identity, membership_filter,
                          included_kinds)

    def update_dynamic_group(self, identity, membership_filter):
        return self._call(self.directory.update_dynamic_group, identity, membership_filter)
