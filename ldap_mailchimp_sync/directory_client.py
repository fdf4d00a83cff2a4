"""
LDAP client for the source directory.

This module binds to the LDAP server with the source credentials and exposes
lazy, paged enumeration of groups (collections) and of the user accounts that
belong to a group.
"""

import logging
import ssl
from datetime import datetime
from typing import Dict, Any, Iterator, List, Optional

from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPNoSuchObjectResult
from ldap3.utils.conv import escape_filter_chars

from ldap_mailchimp_sync.errors import SourceUnavailable
from ldap_mailchimp_sync.models import Collection, CredentialBundle, MemberRecord

logger = logging.getLogger(__name__)

# MemberRecord field -> LDAP attributes tried in order
MEMBER_ATTRIBUTE_MAP = {
    'email': ['mail'],
    'given_name': ['givenName'],
    'family_name': ['sn'],
    'full_name': ['displayName', 'cn'],
    'username': ['uid', 'sAMAccountName'],
    'id': ['entryUUID', 'objectGUID'],
    'created_at': ['createTimestamp', 'whenCreated'],
}

STATUS_ATTRIBUTES = ['userAccountControl', 'nsAccountLock', 'pwdAccountLockedTime']

# userAccountControl ACCOUNTDISABLE flag (Active Directory)
UAC_ACCOUNT_DISABLED = 0x2

GROUP_MEMBER_ATTRIBUTES = ['member', 'uniqueMember']


def _first_value(value: Any) -> Any:
    """Collapse an ldap3 attribute value to a single value."""
    if isinstance(value, (list, tuple)):
        for item in value:
            if item not in (None, '', b''):
                return item
        return None
    return value


def _as_text(value: Any) -> str:
    value = _first_value(value)
    if value is None:
        return ''
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError:
            return value.hex()
    return str(value)


class DirectoryClient:
    """
    LDAP client for the source directory.

    Groups are matched through ``group_filter`` below ``group_base_dn``; their
    members are found either with a memberOf reverse lookup (the default) or
    by reading the group's member attribute.
    """

    def __init__(self, config: Dict[str, Any], credentials: CredentialBundle):
        """
        Initialize the directory client.

        Args:
            config: ``directory`` section of the configuration
            credentials: Credential bundle; the source key id is the bind DN and
                the source key secret the bind password
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = credentials.source_key_id
        self.bind_password = credentials.source_key_secret
        self.group_base_dn = config.get('group_base_dn', '')
        self.user_base_dn = config.get('user_base_dn', '')
        self.group_filter = config.get('group_filter', '(objectClass=groupOfNames)')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.membership = config.get('membership', 'memberof').lower()
        self.page_size = config.get('page_size', 500)

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        """
        Open and bind the LDAP connection.

        Raises:
            SourceUnavailable: If the server cannot be reached or the bind fails
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            self.connection = Connection(
                self.server,
                user=self.bind_dn,
                password=self.bind_password,
                auto_bind=False,
                receive_timeout=self.receive_timeout,
                raise_exceptions=True,
                check_names=False
            )
            self.connection.open()
            if self.start_tls and not self.use_ssl:
                self.connection.start_tls()
                logger.debug("StartTLS negotiation successful")
            if not self.connection.bind():
                raise SourceUnavailable(f"Bind to {self.server_url} failed: {self.connection.result}")
        except LDAPException as e:
            self.connection = None
            raise SourceUnavailable(f"Failed to connect to LDAP server {self.server_url}: {e}") from e

        self._connected = True
        logger.info(f"Connected and bound to LDAP server {self.server_url}")

    def _create_tls_config(self) -> Optional[Tls]:
        """Create TLS configuration for the LDAP connection, or None for plain LDAP."""
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        return Tls(**tls_config)

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def find_collections(self, name: str) -> Iterator[Collection]:
        """
        Yield the groups whose cn matches ``name``.

        The directory's own matching rule decides which entries come back; the
        caller still compares names itself.

        Raises:
            SourceUnavailable: If the search fails
        """
        search_filter = f"(&{self.group_filter}(cn={escape_filter_chars(name)}))"
        search_base = self.group_base_dn or self._get_domain_base()
        logger.debug(f"Searching groups with filter {search_filter} in {search_base}")

        for entry in self._paged_search(search_base, search_filter, ['cn']):
            names = entry['attributes'].get('cn') or []
            if not isinstance(names, list):
                names = [names]
            names = [str(n) for n in names if n]
            if not names:
                continue
            wanted = name.lower()
            display = next((n for n in names if n.lower() == wanted), names[0])
            yield Collection(id=entry['dn'], name=display)

    def iter_members(self, collection: Collection) -> Iterator[MemberRecord]:
        """
        Yield the user accounts that belong to ``collection``.

        Entries without a mail attribute are skipped with a warning.

        Raises:
            SourceUnavailable: If a page or entry fetch fails
        """
        logger.info(f"Enumerating members of group: {collection.id}")
        if self.membership == 'member_attribute':
            entries = self._iter_members_by_group_attribute(collection.id)
        else:
            entries = self._iter_members_by_memberof(collection.id)

        count = 0
        for entry in entries:
            record = self._to_member_record(entry, collection)
            if record is None:
                continue
            count += 1
            yield record
        logger.info(f"Enumerated {count} members of group {collection.name}")

    def _iter_members_by_memberof(self, group_dn: str) -> Iterator[Dict[str, Any]]:
        """Find group members using memberOf reverse lookup."""
        search_filter = f"(&{self.user_filter}(memberOf={escape_filter_chars(group_dn)}))"
        search_base = self.user_base_dn or self._get_domain_base()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")
        return self._paged_search(search_base, search_filter, self._member_attributes())

    def _iter_members_by_group_attribute(self, group_dn: str) -> Iterator[Dict[str, Any]]:
        """Find group members by reading the group's member attribute."""
        group_entries = list(self._search(group_dn, '(objectClass=*)', GROUP_MEMBER_ATTRIBUTES, scope=BASE))
        if not group_entries:
            raise SourceUnavailable(f"Group not found: {group_dn}")

        member_dns = []
        for attribute in GROUP_MEMBER_ATTRIBUTES:
            values = group_entries[0]['attributes'].get(attribute) or []
            member_dns.extend(values if isinstance(values, list) else [values])
        logger.debug(f"Found {len(member_dns)} member DNs in group")

        for member_dn in member_dns:
            yield from self._search(member_dn, self.user_filter, self._member_attributes(),
                                    scope=BASE, skip_missing=True)

    def _member_attributes(self) -> List[str]:
        attributes = [attr for attrs in MEMBER_ATTRIBUTE_MAP.values() for attr in attrs]
        return attributes + STATUS_ATTRIBUTES

    def _paged_search(self, search_base: str, search_filter: str,
                      attributes: List[str]) -> Iterator[Dict[str, Any]]:
        """Run a paged subtree search, yielding entries one page at a time."""
        self._require_connection()
        try:
            results = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes,
                paged_size=self.page_size,
                generator=True
            )
            for entry in results:
                if entry.get('type') == 'searchResEntry':
                    yield entry
        except LDAPException as e:
            raise SourceUnavailable(f"LDAP search failed in {search_base}: {e}") from e

    def _search(self, search_base: str, search_filter: str, attributes: List[str],
                scope=SUBTREE, skip_missing: bool = False) -> Iterator[Dict[str, Any]]:
        """
        Run a single unpaged search.

        With ``skip_missing`` a base that no longer exists (noSuchObject) yields
        nothing instead of failing; member DNs of deleted users stay behind in
        groups that were never cleaned up.
        """
        self._require_connection()
        try:
            self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes
            )
            entries = list(self.connection.response or [])
        except LDAPNoSuchObjectResult as e:
            if not skip_missing:
                raise SourceUnavailable(f"LDAP search failed for {search_base}: {e}") from e
            logger.warning(f"Entry no longer exists, skipping: {search_base}")
            return
        except LDAPException as e:
            raise SourceUnavailable(f"LDAP search failed for {search_base}: {e}") from e
        for entry in entries:
            if entry.get('type') == 'searchResEntry':
                yield entry

    def _require_connection(self):
        if not self._connected:
            raise SourceUnavailable("Not connected to LDAP server")

    def _to_member_record(self, entry: Dict[str, Any], collection: Collection) -> Optional[MemberRecord]:
        """Map a raw search entry onto a MemberRecord."""
        attributes = entry.get('attributes', {})

        values = {}
        for field, ldap_attributes in MEMBER_ATTRIBUTE_MAP.items():
            values[field] = ''
            for ldap_attribute in ldap_attributes:
                text = _as_text(attributes.get(ldap_attribute))
                if text:
                    values[field] = text
                    break

        if not values['email']:
            logger.warning(f"User entry has no mail attribute, skipping: {entry.get('dn')}")
            return None

        return MemberRecord(
            status=self._account_status(attributes),
            collection_id=collection.id,
            **values
        )

    def _account_status(self, attributes: Dict[str, Any]) -> str:
        """Derive ENABLED / DISABLED / LOCKED from the directory's lock attributes."""
        uac = _first_value(attributes.get('userAccountControl'))
        if uac not in (None, ''):
            try:
                if int(uac) & UAC_ACCOUNT_DISABLED:
                    return 'DISABLED'
            except (TypeError, ValueError):
                logger.debug(f"Unparseable userAccountControl value: {uac}")

        if _as_text(attributes.get('nsAccountLock')).lower() == 'true':
            return 'DISABLED'
        if _as_text(attributes.get('pwdAccountLockedTime')):
            return 'LOCKED'
        return 'ENABLED'

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise SourceUnavailable("Cannot determine domain base DN; set group_base_dn and user_base_dn")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
