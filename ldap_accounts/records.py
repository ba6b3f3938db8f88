"""
Attribute sets for creating and modifying user, group and role records.

The builders in this module only read from the directory: they look up the
target and any referenced records, validate every input, allocate IDs and
hash passwords, and return a RecordMutation describing the writes. Nothing
is written until the caller submits the mutation, so a validation failure
never leaves partial state behind.

An attribute is only written when its role is configured in the
AttributeMap; a value supplied for a disabled role is ignored.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from typing import Any, Dict, List, Optional

from ldap_accounts import sid as sids
from ldap_accounts.allocator import allocate_id, ensure_id_available
from ldap_accounts.config import Settings
from ldap_accounts.directory import (Changes, DirectoryEntry, DirectoryStore, MODIFY_REPLACE,
                                     escape_filter_chars, make_dn, make_rdn)
from ldap_accounts.errors import DuplicateError, ValidationError
from ldap_accounts.hashing import hash_password
from ldap_accounts.policy import policy_violation

logger = logging.getLogger(__name__)

EPOCH = date(1970, 1, 1)
UNESCAPED_COMMA = re.compile(r'(?<!\\),')


@dataclass
class UserRequest:
    """Fields for a user create or modify; None means "not supplied"."""
    name: str
    uid: Optional[Any] = None
    group: Optional[str] = None
    groups: Optional[str] = None
    roles: Optional[str] = None
    home: Optional[str] = None
    shell: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    mail_host: Optional[str] = None
    mail_path: Optional[str] = None
    mail_quota: Optional[str] = None
    password: Optional[str] = None
    sid: Optional[str] = None
    new_name: Optional[str] = None


@dataclass
class GroupRequest:
    name: str
    new_name: Optional[str] = None
    gid: Optional[Any] = None
    sid: Optional[str] = None
    description: Optional[str] = None


@dataclass
class RoleRequest:
    name: str
    new_name: Optional[str] = None
    description: Optional[str] = None


@dataclass
class RecordMutation:
    """
    The writes for one record.

    For a create, attributes is the full entry. For a modify, attributes are
    replaced on the entry after the optional rename to new_rdn; name is the
    record's name once the mutation is applied.
    """
    dn: str
    name: str
    attributes: Dict[str, List[str]] = field(default_factory=dict)
    new_rdn: Optional[str] = None
    numeric_id: Optional[int] = None
    previous_id: Optional[int] = None
    sid: Optional[str] = None

    @property
    def renamed(self) -> bool:
        return self.new_rdn is not None

    @property
    def target_dn(self) -> str:
        """DN of the entry after the rename, if any."""
        if not self.new_rdn:
            return self.dn
        parts = UNESCAPED_COMMA.split(self.dn, 1)
        parent = parts[1] if len(parts) > 1 else ''
        return f"{self.new_rdn},{parent}" if parent else self.new_rdn

    def replace_changes(self) -> Changes:
        return {attribute: [(MODIFY_REPLACE, values)] for attribute, values in self.attributes.items()}


def days_since_epoch(today: Optional[date] = None) -> int:
    today = today or datetime.now(timezone.utc).date()
    return (today - EPOCH).days


def _set(attributes: Dict[str, List[str]], attribute: Optional[str], value: Any):
    if attribute and value is not None:
        attributes[attribute] = [str(value)]


def _validate_name(name: Optional[str], kind: str) -> str:
    name = (name or '').strip()
    if not name:
        raise ValidationError(f"A {kind} name is required")
    return name


def _int_value(entry: DirectoryEntry, attribute: Optional[str]) -> Optional[int]:
    value = entry.get_value(attribute)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{attribute} on {entry.dn} is not numeric: {value!r}")


def _find(store: DirectoryStore, base_dn: str, object_filter: str, naming: str,
          name: str) -> Optional[DirectoryEntry]:
    search_filter = f"(&{object_filter}({naming}={escape_filter_chars(name)}))"
    entries = store.search(base_dn, search_filter)
    return entries[0] if entries else None


def find_user(store: DirectoryStore, settings: Settings, name: str) -> Optional[DirectoryEntry]:
    return _find(store, settings.user_base_dn, settings.user_filter, settings.attributes.user_naming, name)


def find_group(store: DirectoryStore, settings: Settings, name: str) -> Optional[DirectoryEntry]:
    return _find(store, settings.group_base_dn, settings.group_filter, settings.attributes.group_naming, name)


def find_role(store: DirectoryStore, settings: Settings, name: str) -> Optional[DirectoryEntry]:
    if not settings.role_base_dn:
        return None
    return _find(store, settings.role_base_dn, settings.role_filter, settings.attributes.role_naming, name)


def resolve_primary_group(store: DirectoryStore, settings: Settings, group: str):
    """
    Look up a primary group by name.

    Returns:
        Tuple of (gid, group SID or None)

    Raises:
        ValidationError: If the group does not exist or has no GID
    """
    entry = find_group(store, settings, group)
    if entry is None:
        raise ValidationError(f"Unknown group: {group}")
    attributes = settings.attributes
    gid = _int_value(entry, attributes.gid_number)
    if attributes.gid_number and gid is None:
        raise ValidationError(f"Group {group} has no {attributes.gid_number}")
    return gid, entry.get_value(attributes.group_sid)


def password_attributes(settings: Settings, password: str, today: Optional[date] = None) -> Dict[str, List[str]]:
    """
    Check a new password against the policy and build its hash attributes.

    Raises:
        ValidationError: If the password fails the policy
        HashingError: If hashing fails
    """
    violation = policy_violation(password, settings.password_policy)
    if violation:
        raise ValidationError(f"Password rejected: {violation}")

    attributes = settings.attributes
    credentials = hash_password(password)
    values = {}
    _set(values, attributes.unix_password, credentials.user_password)
    _set(values, attributes.nt_password, credentials.nt_hash)
    _set(values, attributes.lm_password, credentials.lm_hash)
    stamp = days_since_epoch(today)
    for attribute in attributes.password_changed:
        _set(values, attribute, stamp)
    return values


def _mail_attributes(settings: Settings, request: UserRequest, values: Dict[str, List[str]]):
    attributes = settings.attributes
    _set(values, attributes.mailbox_host, request.mail_host)
    _set(values, attributes.mailbox_path, request.mail_path)
    if request.mail_quota is not None:
        quota = str(request.mail_quota).strip()
        if not (quota.isascii() and quota.isdigit()):
            raise ValidationError(f"Invalid mailbox quota: {request.mail_quota!r}")
        _set(values, attributes.mailbox_quota, quota)


def build_user_create(store: DirectoryStore, settings: Settings, request: UserRequest,
                      today: Optional[date] = None) -> RecordMutation:
    """
    Build the full entry for a new user.

    Allocates a UID when none is requested, resolves the primary group (the
    configured default when unset), derives the user SID from the group SID,
    fills home, shell and email defaults, and hashes the password.

    Raises:
        DuplicateError: If the name or requested UID is taken
        ValidationError: For any rejected input
        AllocationError: If no free UID can be found
    """
    attributes = settings.attributes
    defaults = settings.defaults
    name = _validate_name(request.name, 'user')

    if find_user(store, settings, name) is not None:
        raise DuplicateError(f"User {name} already exists")

    uid = None
    if attributes.uid_number:
        if request.uid is not None:
            uid = ensure_id_available(store, settings.user_base_dn, attributes.uid_number,
                                      request.uid, settings.uid_floor, label='UID')
        else:
            uid = allocate_id(store, settings.user_base_dn, settings.user_filter,
                              attributes.uid_number, settings.uid_floor)

    group = request.group or defaults.group
    gid, group_sid = resolve_primary_group(store, settings, group)

    values = {'objectClass': list(defaults.object_classes)}
    _set(values, attributes.user_naming, name)
    _set(values, attributes.uid_number, uid)
    _set(values, attributes.gid_number, gid)
    _set(values, attributes.full_name, request.full_name or name)

    home = request.home
    if home is None and defaults.home_template:
        home = defaults.home_template.format(name=name)
    _set(values, attributes.home_directory, home)
    _set(values, attributes.login_shell, request.shell or defaults.shell)

    email = request.email
    if email is None and defaults.email_template:
        email = defaults.email_template.format(name=name)
    _set(values, attributes.email, email)
    _mail_attributes(settings, request, values)

    user_sid = None
    if attributes.user_sid:
        if request.sid:
            user_sid = str(sids.SecurityIdentifier.parse(request.sid))
        elif group_sid and uid is not None:
            user_sid = sids.extend(group_sid, uid)
    _set(values, attributes.user_sid, user_sid)
    if group_sid:
        _set(values, attributes.primary_group_sid, group_sid)

    if request.password is not None:
        values.update(password_attributes(settings, request.password, today))

    dn = make_dn(attributes.user_naming, name, settings.user_base_dn)
    logger.debug(f"Built create for {dn} with attributes {sorted(values)}")
    return RecordMutation(dn=dn, name=name, attributes=values, numeric_id=uid, sid=user_sid)


def build_user_modify(store: DirectoryStore, settings: Settings, entry: DirectoryEntry,
                      request: UserRequest, today: Optional[date] = None) -> RecordMutation:
    """
    Build the replace set for an existing user.

    Every supplied field overwrites. A UID change rewrites the trailing
    segment of the user SID unless an explicit SID is supplied. A rename is
    returned as new_rdn and must be applied before the replace.
    """
    attributes = settings.attributes
    name = entry.get_value(attributes.user_naming) or request.name
    values = {}

    new_rdn = None
    new_name = (request.new_name or '').strip() or None
    if new_name and new_name != name:
        if find_user(store, settings, new_name) is not None:
            raise DuplicateError(f"User {new_name} already exists")
        new_rdn = make_rdn(attributes.user_naming, new_name)
    else:
        new_name = name

    current_uid = _int_value(entry, attributes.uid_number)
    uid = current_uid
    if request.uid is not None and attributes.uid_number:
        uid = ensure_id_available(store, settings.user_base_dn, attributes.uid_number, request.uid,
                                  settings.uid_floor, label='UID', exclude_dn=entry.dn)
        if uid != current_uid:
            _set(values, attributes.uid_number, uid)

    user_sid = None
    if attributes.user_sid:
        current_sid = entry.get_value(attributes.user_sid)
        if request.sid:
            user_sid = sids.rebuild_trailing_segment(current_sid, current_uid, uid, explicit_sid=request.sid)
        elif current_sid and current_uid is not None and uid != current_uid:
            user_sid = sids.rebuild_trailing_segment(current_sid, current_uid, uid)
        if user_sid is not None and user_sid != current_sid:
            _set(values, attributes.user_sid, user_sid)

    if request.group:
        gid, group_sid = resolve_primary_group(store, settings, request.group)
        _set(values, attributes.gid_number, gid)
        if group_sid:
            _set(values, attributes.primary_group_sid, group_sid)

    _set(values, attributes.full_name, request.full_name)
    _set(values, attributes.home_directory, request.home)
    _set(values, attributes.login_shell, request.shell)
    _set(values, attributes.email, request.email)
    _mail_attributes(settings, request, values)

    if request.password is not None:
        values.update(password_attributes(settings, request.password, today))

    return RecordMutation(dn=entry.dn, name=new_name, attributes=values, new_rdn=new_rdn,
                          numeric_id=uid, previous_id=current_uid, sid=user_sid)


def build_group_modify(store: DirectoryStore, settings: Settings, entry: DirectoryEntry,
                       request: GroupRequest) -> RecordMutation:
    """
    Build the replace set for an existing group.

    A GID change is validated against the group namespace and rewrites the
    trailing segment of the group SID unless an explicit SID is supplied.
    """
    attributes = settings.attributes
    name = entry.get_value(attributes.group_naming) or request.name
    values = {}

    new_rdn = None
    new_name = (request.new_name or '').strip() or None
    if new_name and new_name != name:
        if find_group(store, settings, new_name) is not None:
            raise DuplicateError(f"Group {new_name} already exists")
        new_rdn = make_rdn(attributes.group_naming, new_name)
    else:
        new_name = name

    current_gid = _int_value(entry, attributes.gid_number)
    gid = current_gid
    if request.gid is not None and attributes.gid_number:
        gid = ensure_id_available(store, settings.group_base_dn, attributes.gid_number, request.gid,
                                  settings.gid_floor, label='GID', exclude_dn=entry.dn)
        if gid != current_gid:
            _set(values, attributes.gid_number, gid)

    group_sid = entry.get_value(attributes.group_sid) if attributes.group_sid else None
    if attributes.group_sid:
        rebuilt = group_sid
        if request.sid:
            rebuilt = sids.rebuild_trailing_segment(group_sid, current_gid, gid, explicit_sid=request.sid)
        elif group_sid and current_gid is not None and gid != current_gid:
            rebuilt = sids.rebuild_trailing_segment(group_sid, current_gid, gid)
        if rebuilt != group_sid:
            _set(values, attributes.group_sid, rebuilt)
            group_sid = rebuilt

    _set(values, attributes.description, request.description)

    return RecordMutation(dn=entry.dn, name=new_name, attributes=values, new_rdn=new_rdn,
                          numeric_id=gid, previous_id=current_gid, sid=group_sid)


def build_role_modify(store: DirectoryStore, settings: Settings, entry: DirectoryEntry,
                      request: RoleRequest) -> RecordMutation:
    """Build the rename and description change for an existing role."""
    attributes = settings.attributes
    name = entry.get_value(attributes.role_naming) or request.name
    values = {}

    new_rdn = None
    new_name = (request.new_name or '').strip() or None
    if new_name and new_name != name:
        if find_role(store, settings, new_name) is not None:
            raise DuplicateError(f"Role {new_name} already exists")
        new_rdn = make_rdn(attributes.role_naming, new_name)
    else:
        new_name = name

    _set(values, attributes.description, request.description)
    return RecordMutation(dn=entry.dn, name=new_name, attributes=values, new_rdn=new_rdn)
