"""
Group identity and membership filter construction.

Every dynamic distribution group is derived from a parsed department: its
short name, display name and recipient filter are recomputed on each run so
the directory definition always matches the current department taxonomy.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple

from ldap3.utils.conv import escape_filter_chars

from ddg_sync.department import ParsedDepartment

DISPLAY_NAME_SEPARATOR = ' - '

DEFAULT_INCLUDED_RECIPIENT_TYPES = ('UserMailbox', 'MailUser')

DEFAULT_EXCLUDED_NAME_PATTERNS = (
    'SystemMailbox*',
    'CAS_*',
    'HealthMailbox*',
    'DiscoverySearchMailbox*',
)

DEFAULT_EXCLUDED_RECIPIENT_TYPES = (
    'SharedMailbox',
    'RoomMailbox',
    'EquipmentMailbox',
    'PublicFolderMailbox',
    'ArbitrationMailbox',
)

# msExchRecipientTypeDetails values
RECIPIENT_TYPE_DETAILS = {
    'UserMailbox': 1,
    'LinkedMailbox': 2,
    'SharedMailbox': 4,
    'LegacyMailbox': 8,
    'RoomMailbox': 16,
    'EquipmentMailbox': 32,
    'MailContact': 64,
    'MailUser': 128,
    'MailUniversalDistributionGroup': 256,
    'MailNonUniversalGroup': 512,
    'MailUniversalSecurityGroup': 1024,
    'DynamicDistributionGroup': 2048,
    'PublicFolder': 4096,
    'SystemAttendantMailbox': 8192,
    'SystemMailbox': 16384,
    'MailForestContact': 32768,
    'ArbitrationMailbox': 8388608,
    'DiscoveryMailbox': 536870912,
    'PublicFolderMailbox': 68719476736,
}


class FilterPolicyError(ValueError):
    """Raised when a filter policy references unknown recipient types."""
    pass


@dataclass(frozen=True)
class GroupIdentity:
    """Directory identity of a department group."""

    name: str
    display_name: str


@dataclass(frozen=True)
class FilterPolicy:
    """Organisation-wide constants that shape every membership filter."""

    included_recipient_types: Tuple[str, ...] = DEFAULT_INCLUDED_RECIPIENT_TYPES
    excluded_name_patterns: Tuple[str, ...] = DEFAULT_EXCLUDED_NAME_PATTERNS
    excluded_recipient_types: Tuple[str, ...] = DEFAULT_EXCLUDED_RECIPIENT_TYPES

    def __post_init__(self):
        if not self.included_recipient_types:
            raise FilterPolicyError("At least one included recipient type is required")
        unknown = [
            t for t in self.included_recipient_types + self.excluded_recipient_types
            if t not in RECIPIENT_TYPE_DETAILS
        ]
        if unknown:
            raise FilterPolicyError(f"Unknown recipient types: {', '.join(unknown)}")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'FilterPolicy':
        """Build a policy from the ``policy`` configuration section."""
        config = config or {}
        return cls(
            included_recipient_types=tuple(
                config.get('included_recipient_types', DEFAULT_INCLUDED_RECIPIENT_TYPES)),
            excluded_name_patterns=tuple(
                config.get('excluded_name_patterns', DEFAULT_EXCLUDED_NAME_PATTERNS)),
            excluded_recipient_types=tuple(
                config.get('excluded_recipient_types', DEFAULT_EXCLUDED_RECIPIENT_TYPES)),
        )


DEFAULT_POLICY = FilterPolicy()


def _opath_literal(value: str) -> str:
    """Quote a value for an OPATH filter."""
    return "'" + value.replace("'", "''") + "'"


def _ldap_wildcard(pattern: str) -> str:
    """Escape an LDAP assertion value while keeping ``*`` as a wildcard."""
    return '*'.join(escape_filter_chars(part) for part in pattern.split('*'))


@dataclass(frozen=True)
class MembershipFilter:
    """
    Recipient filter for a department group.

    Members are mail-enabled users of the included types whose department
    starts with the department number and ends with the country code,
    excluding system/service mailboxes by name and non-personal recipient
    types.
    """

    department_number: str
    country_code: str
    included_recipient_types: Tuple[str, ...] = DEFAULT_INCLUDED_RECIPIENT_TYPES
    excluded_name_patterns: Tuple[str, ...] = DEFAULT_EXCLUDED_NAME_PATTERNS
    excluded_recipient_types: Tuple[str, ...] = DEFAULT_EXCLUDED_RECIPIENT_TYPES

    def to_opath(self) -> str:
        """Render as an Exchange OPATH ``RecipientFilter``."""
        included = ' -or '.join(
            f"RecipientTypeDetails -eq {_opath_literal(t)}" for t in self.included_recipient_types
        )
        clauses: List[str] = [
            f"({included})",
            f"(Department -like {_opath_literal(self.department_number + '*')})",
            f"(Department -like {_opath_literal('*' + self.country_code)})",
        ]
        clauses.extend(
            f"(Name -notlike {_opath_literal(p)})" for p in self.excluded_name_patterns
        )
        clauses.extend(
            f"(RecipientTypeDetails -ne {_opath_literal(t)})" for t in self.excluded_recipient_types
        )
        return '(' + ' -and '.join(clauses) + ')'

    def to_ldap(self) -> str:
        """Render as an LDAP search filter (``msExchDynamicDLFilter``)."""
        included = ''.join(
            f"(msExchRecipientTypeDetails={RECIPIENT_TYPE_DETAILS[t]})"
            for t in self.included_recipient_types
        )
        if len(self.included_recipient_types) > 1:
            included = f"(|{included})"

        parts: List[str] = [
            '(mailNickname=*)',
            included,
            f"(department={escape_filter_chars(self.department_number)}*)",
            f"(department=*{escape_filter_chars(self.country_code)})",
        ]
        parts.extend(f"(!(cn={_ldap_wildcard(p)}))" for p in self.excluded_name_patterns)
        parts.extend(
            f"(!(msExchRecipientTypeDetails={RECIPIENT_TYPE_DETAILS[t]}))"
            for t in self.excluded_recipient_types
        )
        return '(&' + ''.join(parts) + ')'

    def __str__(self) -> str:
        return self.to_opath()


def build_identity(parsed: ParsedDepartment) -> GroupIdentity:
    """
    Derive the group identity for a department.

    The short name concatenates the number and country code with no
    separator; the display name is ``"<name> - <country code>"``.
    """
    return GroupIdentity(
        name=f"{parsed.number}{parsed.country_code}",
        display_name=f"{parsed.name}{DISPLAY_NAME_SEPARATOR}{parsed.country_code}",
    )


def build_filter(parsed: ParsedDepartment, policy: FilterPolicy = DEFAULT_POLICY) -> MembershipFilter:
    """Derive the membership filter for a department under the given policy."""
    return MembershipFilter(
        department_number=parsed.number,
        country_code=parsed.country_code,
        included_recipient_types=policy.included_recipient_types,
        excluded_name_patterns=policy.excluded_name_patterns,
        excluded_recipient_types=policy.excluded_recipient_types,
    )


def recipient_type_values(recipient_types: Iterable[str]) -> List[int]:
    """Map recipient type names to ``msExchRecipientTypeDetails`` values."""
    return [RECIPIENT_TYPE_DETAILS[t] for t in recipient_types]


def recipient_type_name(value) -> str:
    """Map an ``msExchRecipientTypeDetails`` value back to its name."""
    try:
        value = int(value)
    except (TypeError, ValueError):
        return 'Unknown'
    for name, details in RECIPIENT_TYPE_DETAILS.items():
        if details == value:
            return name
    return f"Unknown({value})"
