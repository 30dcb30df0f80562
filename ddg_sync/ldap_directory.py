"""
LDAP directory backend for Exchange dynamic distribution groups.

Dynamic distribution groups live in Active Directory as
``msExchDynamicDistributionList`` objects. Their membership is stored twice:
as an OPATH ``msExchQueryFilter`` and as an LDAP ``msExchDynamicDLFilter``.
This module reads department values from mail-enabled users and creates or
updates those group objects with ldap3.
"""

import ssl
import logging
import threading
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ldap3 import Server, Connection, SUBTREE, ALL, Tls, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from ddg_sync.directory import (
    DirectoryService, DirectoryObject, DynamicGroup, DirectoryConnectionError,
    DirectoryOperationError, DYNAMIC_GROUP_KIND
)
from ddg_sync.filters import (
    GroupIdentity, MembershipFilter, RECIPIENT_TYPE_DETAILS, recipient_type_name,
    recipient_type_values
)

logger = logging.getLogger(__name__)

DYNAMIC_GROUP_OBJECT_CLASS = 'msExchDynamicDistributionList'
DYNAMIC_GROUP_DISPLAY_TYPE = 3

# Result codes that mean "searched fine, nothing there"
_EMPTY_RESULT_CODES = (0, 32)

LOOKUP_ATTRIBUTES = [
    'cn', 'objectClass', 'displayName', 'mailNickname',
    'msExchRecipientTypeDetails', 'msExchQueryFilter'
]


def _first(values: Any) -> Any:
    if isinstance(values, (list, tuple)):
        return values[0] if values else None
    return values


class LDAPDirectoryService(DirectoryService):
    """
    Directory backend speaking LDAP to Active Directory.

    Each method performs a single attempt; retries are applied by the caller.
    """

    def __init__(self, config: Dict[str, Any], organization_domain: str):
        """
        Initialize the backend with configuration.

        Args:
            config: ``directory`` configuration section
            organization_domain: Mail domain used for new group addresses
        """
        self.config = config
        self.organization_domain = organization_domain
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.search_base = config['search_base']
        self.group_ou = config['group_ou']
        self.recipient_base_dn = config.get('recipient_base_dn') or self.search_base

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 1000)

        self.server = None
        self.connection = None
        self._connected = False
        # ldap3 SYNC connections keep the last result on the connection object
        self._lock = threading.RLock()

    def connect(self) -> None:
        """
        Open and bind a connection to the directory.

        Raises:
            DirectoryConnectionError: If the server cannot be reached or the bind fails
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")

            self.connection = Connection(
                self.server,
                user=self.bind_dn,
                password=self.bind_password,
                auto_bind=False,
                receive_timeout=self.receive_timeout
            )

            if not self.connection.open():
                raise DirectoryConnectionError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise DirectoryConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise DirectoryConnectionError(f"Bind failed: {self.connection.result}")

        except DirectoryConnectionError:
            self._abandon_connection()
            raise
        except LDAPException as e:
            self._abandon_connection()
            raise DirectoryConnectionError(f"LDAP connection to {self.server_url} failed: {e}") from e

        self._connected = True
        logger.info(f"Connected and bound to directory {self.server_url}")

    def _abandon_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind failure on abandoned connection: {e}")
            self.connection = None
        self._connected = False

    def _create_tls_config(self) -> Optional[Tls]:
        """Build the ldap3 Tls object, or None for plain LDAP."""
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}
        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}") from e

    def disconnect(self) -> None:
        """Close the LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _require_connection(self):
        if not self._connected or self.connection is None:
            raise DirectoryOperationError("Not connected to directory")

    def list_distinct_departments(self, recipient_types: Sequence[str]) -> List[str]:
        """
        Collect distinct department values from recipients of the given types.

        Returns:
            Sorted list of unique, non-empty department strings
        """
        self._require_connection()

        type_clauses = ''.join(
            f"(msExchRecipientTypeDetails={value})"
            for value in recipient_type_values(recipient_types)
        )
        search_filter = f"(&(objectClass=user)(department=*)(|{type_clauses}))"
        logger.debug(f"Listing departments with filter: {search_filter} in base: {self.recipient_base_dn}")

        try:
            with self._lock:
                response = self.connection.extend.standard.paged_search(
                    search_base=self.recipient_base_dn,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=['department'],
                    paged_size=self.page_size,
                    generator=False
                )
        except LDAPException as e:
            raise DirectoryOperationError(f"Department search failed: {e}") from e

        departments = set()
        for entry in response or []:
            if entry.get('type') != 'searchResEntry':
                continue
            value = _first(entry.get('attributes', {}).get('department'))
            if isinstance(value, str) and value.strip():
                departments.add(value)

        logger.info(f"Found {len(departments)} distinct departments")
        return sorted(departments)

    def _search(self, search_filter: str, attributes: List[str]) -> list:
        """Run a subtree search; an empty result is not an error."""
        self._require_connection()
        with self._lock:
            try:
                success = self.connection.search(
                    search_base=self.search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes
                )
            except LDAPException as e:
                raise DirectoryOperationError(f"Search {search_filter} failed: {e}") from e
            result = self.connection.result
            entries = list(self.connection.entries) if success else []

        if not success:
            result_code = (result or {}).get('result', 0)
            if result_code in _EMPTY_RESULT_CODES:
                return []
            raise DirectoryOperationError(f"Search {search_filter} failed: {result}")

        return entries

    @staticmethod
    def _classify(attributes: Dict[str, list]) -> str:
        """Name the recipient type of an entry."""
        type_details = _first(attributes.get('msExchRecipientTypeDetails'))
        if type_details is not None:
            return recipient_type_name(type_details)

        object_classes = attributes.get('objectClass') or []
        if DYNAMIC_GROUP_OBJECT_CLASS in object_classes:
            return DYNAMIC_GROUP_KIND
        return object_classes[-1] if object_classes else 'Unknown'

    def lookup_any(self, name: str) -> Optional[DirectoryObject]:
        """Find any object whose cn, alias or account name equals ``name``."""
        value = escape_filter_chars(name)
        entries = self._search(
            f"(|(cn={value})(mailNickname={value})(sAMAccountName={value}))",
            LOOKUP_ATTRIBUTES
        )
        if not entries:
            return None

        entry = entries[0]
        attributes = entry.entry_attributes_as_dict
        found = DirectoryObject(
            name=_first(attributes.get('cn')) or name,
            distinguished_name=str(entry.entry_dn),
            kind=self._classify(attributes)
        )
        logger.debug(f"Lookup {name}: found {found.kind} at {found.distinguished_name}")
        return found

    def lookup_dynamic_group(self, name: str) -> Optional[DynamicGroup]:
        """Find a dynamic distribution group by cn or alias."""
        value = escape_filter_chars(name)
        entries = self._search(
            f"(&(objectClass={DYNAMIC_GROUP_OBJECT_CLASS})(|(cn={value})(mailNickname={value})))",
            LOOKUP_ATTRIBUTES
        )
        if not entries:
            return None

        entry = entries[0]
        attributes = entry.entry_attributes_as_dict
        return DynamicGroup(
            name=_first(attributes.get('cn')) or name,
            distinguished_name=str(entry.entry_dn),
            kind=DYNAMIC_GROUP_KIND,
            display_name=_first(attributes.get('displayName')) or '',
            recipient_filter=_first(attributes.get('msExchQueryFilter')) or ''
        )

    def create_dynamic_group(self, identity: GroupIdentity, membership_filter: MembershipFilter,
                             included_kinds: Iterable[str]) -> DirectoryObject:
        """
        Add a new ``msExchDynamicDistributionList`` under the group OU.

        ``included_kinds`` restricts the recipient types the stored filters
        select; the alias and primary SMTP address are derived from the
        group name.
        """
        self._require_connection()

        membership_filter = replace(membership_filter,
                                    included_recipient_types=tuple(included_kinds))
        dn = f"CN={escape_rdn(identity.name)},{self.group_ou}"
        address = f"{identity.name}@{self.organization_domain}"
        attributes = {
            'cn': identity.name,
            'displayName': identity.display_name,
            'mailNickname': identity.name,
            'mail': address,
            'proxyAddresses': [f"SMTP:{address}"],
            'msExchQueryFilter': membership_filter.to_opath(),
            'msExchDynamicDLFilter': membership_filter.to_ldap(),
            'msExchDynamicDLBaseDN': self.recipient_base_dn,
            'msExchRecipientDisplayType': DYNAMIC_GROUP_DISPLAY_TYPE,
            'msExchRecipientTypeDetails': RECIPIENT_TYPE_DETAILS[DYNAMIC_GROUP_KIND],
        }

        with self._lock:
            try:
                success = self.connection.add(dn, ['top', DYNAMIC_GROUP_OBJECT_CLASS], attributes)
            except LDAPException as e:
                raise DirectoryOperationError(f"Create {dn} failed: {e}") from e
            result = self.connection.result

        if not success:
            raise DirectoryOperationError(f"Create {dn} failed: {result}")

        logger.info(f"Created dynamic group {dn}")
        return DirectoryObject(name=identity.name, distinguished_name=dn, kind=DYNAMIC_GROUP_KIND)

    def update_dynamic_group(self, identity: GroupIdentity,
                             membership_filter: MembershipFilter) -> DirectoryObject:
        """Replace display name and both filter renderings on an existing group."""
        with self._lock:
            return self._update_locked(identity, membership_filter)

    def _update_locked(self, identity: GroupIdentity,
                       membership_filter: MembershipFilter) -> DirectoryObject:
        group = self.lookup_dynamic_group(identity.name)
        if group is None:
            raise DirectoryOperationError(f"Dynamic group {identity.name} not found for update")

        changes = {
            'displayName': [(MODIFY_REPLACE, [identity.display_name])],
            'msExchQueryFilter': [(MODIFY_REPLACE, [membership_filter.to_opath()])],
            'msExchDynamicDLFilter': [(MODIFY_REPLACE, [membership_filter.to_ldap()])],
        }

        try:
            success = self.connection.modify(group.distinguished_name, changes)
        except LDAPException as e:
            raise DirectoryOperationError(f"Update {group.distinguished_name} failed: {e}") from e

        if not success:
            raise DirectoryOperationError(
                f"Update {group.distinguished_name} failed: {self.connection.result}")

        logger.info(f"Updated dynamic group {group.distinguished_name}")
        return DirectoryObject(name=group.name, distinguished_name=group.distinguished_name,
                               kind=DYNAMIC_GROUP_KIND)
