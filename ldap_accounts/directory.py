"""
Directory access for LDAP Account Tools.

This module defines the DirectoryStore interface the account logic is written
against and its ldap3 implementation. All searches are one-level below a base
DN; a sizeLimitExceeded result is treated as a successful, truncated search.
"""

import ssl
import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Tuple

from ldap3 import Server, Connection, Tls, LEVEL, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException
from ldap3.protocol.controls import build_control
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn
from pyasn1.type.univ import Sequence, SequenceOf, OctetString, Boolean
from pyasn1.type.namedtype import NamedTypes, NamedType, OptionalNamedType, DefaultedNamedType
from pyasn1.type.tag import Tag, tagClassContext, tagFormatSimple

from ldap_accounts.config import DirectorySettings
from ldap_accounts.errors import DirectoryError, PrivilegeError
from ldap_accounts.logging_setup import security_logger

logger = logging.getLogger(__name__)

__all__ = [
    'DirectoryEntry', 'DirectoryStore', 'LDAPDirectory', 'Changes',
    'MODIFY_ADD', 'MODIFY_DELETE', 'MODIFY_REPLACE',
    'escape_filter_chars', 'make_dn', 'make_rdn',
]

RESULT_SUCCESS = 0
RESULT_SIZE_LIMIT_EXCEEDED = 4
PRIVILEGE_RESULT_CODES = {
    8,   # strongerAuthRequired
    48,  # inappropriateAuthentication
    49,  # invalidCredentials
    50,  # insufficientAccessRights
}

SORT_REQUEST_OID = '1.2.840.113556.1.4.473'

# attribute -> list of (operation, values), the shape ldap3 Connection.modify takes
Changes = Dict[str, List[Tuple[str, List[Any]]]]


class SortKey(Sequence):
    # SortKey ::= SEQUENCE { attributeType, orderingRule [0] OPTIONAL, reverseOrder [1] DEFAULT FALSE }
    componentType = NamedTypes(
        NamedType('attributeType', OctetString()),
        OptionalNamedType('orderingRule', OctetString().subtype(
            implicitTag=Tag(tagClassContext, tagFormatSimple, 0))),
        DefaultedNamedType('reverseOrder', Boolean(False).subtype(
            implicitTag=Tag(tagClassContext, tagFormatSimple, 1)))
    )


class SortKeyList(SequenceOf):
    componentType = SortKey()


def sort_request_control(attribute: str, reverse: bool = False, criticality: bool = True):
    """Build an RFC 2891 server-side sort request control for one attribute."""
    key = SortKey()
    key['attributeType'] = attribute
    if reverse:
        key['reverseOrder'] = True
    keys = SortKeyList()
    keys.setComponentByPosition(0, key)
    return build_control(SORT_REQUEST_OID, criticality, keys)


def make_rdn(attribute: str, value: str) -> str:
    """Build a relative distinguished name with the value escaped."""
    return f"{attribute}={escape_rdn(str(value))}"


def decode_value(value: Any) -> Any:
    """Decode a raw attribute value, base64-encoding values that are not UTF-8 text."""
    if not isinstance(value, bytes):
        return value
    try:
        return value.decode('utf-8')
    except UnicodeDecodeError:
        return base64.b64encode(value).decode('ascii')


def make_dn(attribute: str, value: str, base_dn: str) -> str:
    """Build the DN of an entry named by attribute=value directly below base_dn."""
    return f"{make_rdn(attribute, value)},{base_dn}"


class DirectoryEntry:
    """One search result: a DN and its attributes, looked up case-insensitively."""

    def __init__(self, dn: str, attributes: Optional[Dict[str, List[Any]]] = None):
        self.dn = dn
        self._attributes = {}
        self._names = {}
        for name, values in (attributes or {}).items():
            if not isinstance(values, (list, tuple)):
                values = [values]
            self._attributes[name.lower()] = [str(v) for v in values]
            self._names[name.lower()] = name

    def distinguished_name(self) -> str:
        return self.dn

    def get_values(self, attribute: Optional[str]) -> List[str]:
        """All values of an attribute; empty when absent or the role is disabled."""
        if not attribute:
            return []
        return list(self._attributes.get(attribute.lower(), []))

    def get_value(self, attribute: Optional[str]) -> Optional[str]:
        """First value of an attribute, or None."""
        values = self.get_values(attribute)
        return values[0] if values else None

    def attribute_names(self) -> List[str]:
        return list(self._names.values())

    def as_dict(self) -> Dict[str, List[str]]:
        return {self._names[key]: list(values) for key, values in self._attributes.items()}

    def __repr__(self):
        return f"DirectoryEntry({self.dn!r})"


class DirectoryStore(ABC):
    """
    Interface to the directory holding identity records.

    Implementations raise DirectoryError for any failure other than a
    sizeLimitExceeded search, which returns the truncated results.
    """

    @abstractmethod
    def search(self, base_dn: str, search_filter: str, attributes: Optional[List[str]] = None,
               size_limit: int = 0, sort_attribute: Optional[str] = None,
               reverse: bool = False) -> List[DirectoryEntry]:
        """Search one level below base_dn."""

    @abstractmethod
    def modify(self, dn: str, changes: Changes) -> None:
        """Apply attribute changes to an entry."""

    @abstractmethod
    def add(self, dn: str, attributes: Dict[str, List[Any]]) -> None:
        """Create an entry."""

    @abstractmethod
    def delete(self, dn: str) -> None:
        """Delete an entry."""

    @abstractmethod
    def rename(self, dn: str, new_rdn: str) -> None:
        """Change the RDN of an entry, keeping its parent."""


class LDAPDirectory(DirectoryStore):
    """
    DirectoryStore backed by an ldap3 connection.

    One connection and one bind per invocation; use as a context manager so
    the connection is unbound on every exit path.
    """

    def __init__(self, settings: DirectorySettings):
        """
        Initialize the directory client.

        Args:
            settings: Connection parameters
        """
        self.settings = settings
        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> None:
        """
        Open, optionally StartTLS, and bind. Attempted exactly once.

        Raises:
            PrivilegeError: If the server rejects the bind credentials
            DirectoryError: For any other connection failure
        """
        settings = self.settings
        try:
            self.server = Server(
                settings.server_url,
                use_ssl=settings.use_ssl,
                tls=self._create_tls_config(),
                connect_timeout=settings.connection_timeout
            )
            self.connection = Connection(
                self.server,
                user=settings.bind_dn,
                password=settings.bind_password,
                auto_bind=False,
                receive_timeout=settings.receive_timeout,
                raise_exceptions=False
            )

            # socket failures raise even with raise_exceptions=False
            self.connection.open()

            if settings.start_tls and not settings.use_ssl:
                if not self.connection.start_tls():
                    self._raise_for_result("Failed to start TLS")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                security_logger.log_bind_attempt(settings.server_url, settings.bind_dn, False)
                self._raise_for_result(f"Bind failed for {settings.bind_dn}")
        except LDAPException as e:
            self._discard_connection()
            raise DirectoryError(f"Failed to connect to {settings.server_url}: {e}")
        except DirectoryError:
            self._discard_connection()
            raise

        self._connected = True
        security_logger.log_bind_attempt(settings.server_url, settings.bind_dn, True)
        logger.info(f"Connected and bound to LDAP server {settings.server_url}")

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for the connection.

        Returns:
            Tls configuration object or None if not needed
        """
        settings = self.settings
        if not (settings.use_ssl or settings.start_tls):
            return None

        tls_config = {}
        if not settings.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if settings.ca_cert_file:
            tls_config['ca_certs_file'] = settings.ca_cert_file

        if settings.cert_file and settings.key_file:
            tls_config['local_certificate_file'] = settings.cert_file
            tls_config['local_private_key_file'] = settings.key_file

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryError(f"Failed to create TLS configuration: {e}")

    def _discard_connection(self):
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def disconnect(self):
        """Unbind and close the connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _raise_for_result(self, context: str):
        """Raise the DirectoryError matching the last operation's result."""
        result = (self.connection.result if self.connection else None) or {}
        code = result.get('result')
        text = result.get('message') or result.get('description') or 'unknown error'
        message = f"{context}: {text}"
        if code in PRIVILEGE_RESULT_CODES:
            raise PrivilegeError(message, code)
        raise DirectoryError(message, code)

    def _check(self, context: str, allowed: Tuple[int, ...] = (RESULT_SUCCESS,)):
        code = (self.connection.result or {}).get('result')
        if code not in allowed:
            self._raise_for_result(context)

    def _require_connection(self):
        if not self._connected:
            raise DirectoryError("Not connected to LDAP server")

    def search(self, base_dn: str, search_filter: str, attributes: Optional[List[str]] = None,
               size_limit: int = 0, sort_attribute: Optional[str] = None,
               reverse: bool = False) -> List[DirectoryEntry]:
        self._require_connection()
        controls = None
        if sort_attribute:
            controls = [sort_request_control(sort_attribute, reverse=reverse)]

        logger.debug(f"Searching {base_dn} with filter {search_filter}")
        try:
            self.connection.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=LEVEL,
                attributes=attributes or ['*'],
                size_limit=size_limit,
                controls=controls
            )
        except LDAPException as e:
            raise DirectoryError(f"Search of {base_dn} failed: {e}")

        self._check(f"Search of {base_dn} failed", (RESULT_SUCCESS, RESULT_SIZE_LIMIT_EXCEEDED))

        entries = []
        for item in self.connection.response or []:
            if item.get('type') != 'searchResEntry':
                continue
            raw = item.get('raw_attributes') or {}
            decoded = {name: [decode_value(v) for v in values] for name, values in raw.items()}
            entries.append(DirectoryEntry(item['dn'], decoded))
        return entries

    def modify(self, dn: str, changes: Changes) -> None:
        self._require_connection()
        logger.debug(f"Modifying {dn}: {sorted(changes)}")
        try:
            self.connection.modify(dn, changes)
        except LDAPException as e:
            raise DirectoryError(f"Modify of {dn} failed: {e}")
        self._check(f"Modify of {dn} failed")

    def add(self, dn: str, attributes: Dict[str, List[Any]]) -> None:
        self._require_connection()
        logger.debug(f"Adding {dn}")
        try:
            self.connection.add(dn, attributes=attributes)
        except LDAPException as e:
            raise DirectoryError(f"Add of {dn} failed: {e}")
        self._check(f"Add of {dn} failed")

    def delete(self, dn: str) -> None:
        self._require_connection()
        logger.debug(f"Deleting {dn}")
        try:
            self.connection.delete(dn)
        except LDAPException as e:
            raise DirectoryError(f"Delete of {dn} failed: {e}")
        self._check(f"Delete of {dn} failed")

    def rename(self, dn: str, new_rdn: str) -> None:
        self._require_connection()
        logger.debug(f"Renaming {dn} to {new_rdn}")
        try:
            self.connection.modify_dn(dn, new_rdn, delete_old_dn=True)
        except LDAPException as e:
            raise DirectoryError(f"Rename of {dn} failed: {e}")
        self._check(f"Rename of {dn} failed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
