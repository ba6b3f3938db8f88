"""
Numeric identifier allocation for UIDs and GIDs.

The directory has no atomic counter, so allocation is optimistic: take the
highest ID in use, propose the next one, and re-check that nobody holds it.
"""

import logging
from typing import Any, Optional

from ldap_accounts.directory import DirectoryStore
from ldap_accounts.errors import AllocationError, DirectoryError, DuplicateError, ValidationError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 10


def parse_id(value: Any, label: str = 'ID') -> int:
    """
    Parse a caller-supplied numeric ID.

    Raises:
        ValidationError: If the value is not a non-negative integer
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {label}: {value!r}")
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip()
        if not (text.isascii() and text.isdigit()):
            raise ValidationError(f"Invalid {label}: {value!r}")
        number = int(text)
    if number < 0:
        raise ValidationError(f"Invalid {label}: {value!r}")
    return number


def id_in_use(store: DirectoryStore, base_dn: str, id_attribute: str, value: int,
              exclude_dn: Optional[str] = None) -> bool:
    """True if any entry below base_dn other than exclude_dn holds the ID."""
    entries = store.search(base_dn, f"({id_attribute}={int(value)})", attributes=[id_attribute])
    return any(entry.dn != exclude_dn for entry in entries)


def highest_id(store: DirectoryStore, base_dn: str, namespace_filter: str,
               id_attribute: str) -> Optional[int]:
    """The largest ID in the namespace, asking the server to sort descending."""
    # entries without the attribute sort above every value, so exclude them
    search_filter = f"(&{namespace_filter}({id_attribute}=*))"
    entries = store.search(base_dn, search_filter, attributes=[id_attribute],
                           size_limit=1, sort_attribute=id_attribute, reverse=True)
    for entry in entries:
        value = entry.get_value(id_attribute)
        if value is None:
            continue
        try:
            return int(value)
        except ValueError:
            raise DirectoryError(f"Non-numeric {id_attribute} on {entry.dn}: {value!r}")
    return None


def allocate_id(store: DirectoryStore, base_dn: str, namespace_filter: str, id_attribute: str,
                floor: int, max_attempts: int = MAX_ATTEMPTS) -> int:
    """
    Find the next unused numeric ID at or above floor.

    Args:
        store: Directory to query
        base_dn: Base of the namespace (users or groups)
        namespace_filter: Filter selecting entries of the namespace
        id_attribute: Attribute holding the numeric ID
        floor: Lowest ID that may be handed out
        max_attempts: Search-and-check cycles before giving up

    Returns:
        A free ID

    Raises:
        AllocationError: If every candidate proposed was already taken
        DirectoryError: On any directory failure, without retrying
    """
    for attempt in range(max_attempts):
        highest = highest_id(store, base_dn, namespace_filter, id_attribute)
        if highest is not None and highest >= floor:
            candidate = highest + 1
        else:
            candidate = floor

        if not id_in_use(store, base_dn, id_attribute, candidate):
            logger.debug(f"Allocated {id_attribute}={candidate} on attempt {attempt + 1}")
            return candidate

        logger.warning(f"{id_attribute}={candidate} was taken, attempt {attempt + 1}/{max_attempts}")

    raise AllocationError(max_attempts, floor)


def ensure_id_available(store: DirectoryStore, base_dn: str, id_attribute: str, value: Any,
                        floor: int, label: str = 'ID', exclude_dn: Optional[str] = None) -> int:
    """
    Validate an explicitly requested ID before anything is written.

    Raises:
        ValidationError: If malformed or below the floor
        DuplicateError: If another entry already holds it
    """
    number = parse_id(value, label)
    if number < floor:
        raise ValidationError(f"{label} {number} is below the minimum of {floor}")
    if id_in_use(store, base_dn, id_attribute, number, exclude_dn=exclude_dn):
        raise DuplicateError(f"{label} {number} is already in use")
    return number
