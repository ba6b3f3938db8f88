"""
Group and role membership reconciliation.

Groups and roles are the only holders of membership: each lists its members'
names in a multi-valued attribute. Reconciliation computes the add/remove
mutations that take a subject from its current memberships to the desired
ones and applies them one at a time. There is no rollback; a failed mutation
stops the run and leaves earlier mutations in place.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ldap_accounts.config import Settings
from ldap_accounts.directory import (DirectoryEntry, DirectoryStore, MODIFY_ADD, MODIFY_DELETE,
                                     escape_filter_chars)
from ldap_accounts.errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

GROUP = 'group'
ROLE = 'role'
RELATION_KINDS = (GROUP, ROLE)

REPLACE = 'replace'
ADD = 'add'
REMOVE = 'remove'

MODE_PREFIXES = {'+': ADD, '-': REMOVE, '=': REPLACE}


@dataclass(frozen=True)
class RelationNamespace:
    """Where the relation objects of one kind live and how they list members."""
    kind: str
    base_dn: str
    object_filter: str
    naming_attribute: str
    member_attribute: Optional[str]


@dataclass
class MembershipChanges:
    """Relation names a reconciliation added the subject to and removed it from."""
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    def __bool__(self):
        return bool(self.added or self.removed)


def relation_namespace(settings: Settings, kind: str) -> RelationNamespace:
    attributes = settings.attributes
    if kind == GROUP:
        return RelationNamespace(GROUP, settings.group_base_dn, settings.group_filter,
                                 attributes.group_naming, attributes.group_member)
    if kind == ROLE:
        if not settings.role_base_dn:
            raise ConfigurationError("Roles are not configured (roles.base_dn is unset)")
        return RelationNamespace(ROLE, settings.role_base_dn, settings.role_filter,
                                 attributes.role_naming, attributes.role_member)
    raise ValueError(f"Unknown relation kind: {kind}")


def parse_membership_argument(argument: Optional[str]) -> Tuple[str, Set[str]]:
    """
    Split a membership argument into a mode and a set of names.

    '+a,b' adds, '-a,b' removes, '=a,b' or plain 'a,b' replaces. An empty
    replace list means "member of nothing".
    """
    text = (argument or '').strip()
    mode = REPLACE
    if text and text[0] in MODE_PREFIXES:
        mode = MODE_PREFIXES[text[0]]
        text = text[1:]
    names = {name.strip() for name in text.split(',') if name.strip()}
    return mode, names


def find_relation(store: DirectoryStore, namespace: RelationNamespace, name: str) -> Optional[DirectoryEntry]:
    search_filter = f"(&{namespace.object_filter}({namespace.naming_attribute}={escape_filter_chars(name)}))"
    entries = store.search(namespace.base_dn, search_filter, attributes=[namespace.naming_attribute])
    return entries[0] if entries else None


def ensure_relations_exist(store: DirectoryStore, settings: Settings, kind: str,
                           names: Iterable[str]) -> Dict[str, str]:
    """
    Resolve relation names to DNs, failing before any write if one is unknown.

    Raises:
        ValidationError: Listing every unknown name
    """
    namespace = relation_namespace(settings, kind)
    resolved = {}
    unknown = []
    for name in sorted(set(names)):
        entry = find_relation(store, namespace, name)
        if entry is None:
            unknown.append(name)
        else:
            resolved[name] = entry.dn
    if unknown:
        raise ValidationError(f"Unknown {kind}(s): {', '.join(unknown)}")
    return resolved


def current_memberships(store: DirectoryStore, namespace: RelationNamespace, subject: str) -> Dict[str, str]:
    """Relation objects currently listing subject as a member, name -> DN."""
    if not namespace.member_attribute:
        return {}
    search_filter = (f"(&{namespace.object_filter}"
                     f"({namespace.member_attribute}={escape_filter_chars(subject)}))")
    memberships = {}
    for entry in store.search(namespace.base_dn, search_filter, attributes=[namespace.naming_attribute]):
        name = entry.get_value(namespace.naming_attribute)
        if name is not None:
            memberships[name] = entry.dn
    return memberships


def reconcile(store: DirectoryStore, settings: Settings, subject: str, kind: str, mode: str,
              desired: Iterable[str]) -> MembershipChanges:
    """
    Move subject's memberships of one relation kind to the desired state.

    Args:
        store: Directory to query and modify
        settings: Attribute names and relation bases
        subject: Member name as stored in the member attribute
        kind: GROUP or ROLE
        mode: REPLACE (final == desired), ADD (final == current | desired)
              or REMOVE (final == current - desired)
        desired: Relation names; not modified

    Returns:
        The relation names the subject was added to and removed from

    Raises:
        ValidationError: If an add targets a relation that does not exist
        DirectoryError: From the first mutation that fails
    """
    if mode not in (REPLACE, ADD, REMOVE):
        raise ValueError(f"Unknown membership mode: {mode}")

    namespace = relation_namespace(settings, kind)
    changes = MembershipChanges()
    if not namespace.member_attribute:
        logger.debug(f"{kind} membership attribute disabled, nothing to reconcile for {subject}")
        return changes

    pending = set(desired)
    to_remove = {}
    for name, dn in current_memberships(store, namespace, subject).items():
        if mode == ADD:
            pending.discard(name)
        elif mode == REMOVE:
            if name in pending:
                to_remove[name] = dn
        elif name in pending:
            pending.discard(name)
        else:
            to_remove[name] = dn

    member_attribute = namespace.member_attribute
    for name in sorted(to_remove):
        store.modify(to_remove[name], {member_attribute: [(MODIFY_DELETE, [subject])]})
        changes.removed.append(name)
        logger.info(f"Removed {subject} from {kind} {name}")

    if mode != REMOVE:
        for name in sorted(pending):
            entry = find_relation(store, namespace, name)
            if entry is None:
                raise ValidationError(f"Unknown {kind}: {name}")
            store.modify(entry.dn, {member_attribute: [(MODIFY_ADD, [subject])]})
            changes.added.append(name)
            logger.info(f"Added {subject} to {kind} {name}")

    return changes


def _configured_kinds(settings: Settings) -> List[str]:
    return [GROUP, ROLE] if settings.role_base_dn else [GROUP]


def remove_all_memberships(store: DirectoryStore, settings: Settings, subject: str) -> Dict[str, MembershipChanges]:
    """Strip subject from every group and role that lists it."""
    results = {}
    for kind in _configured_kinds(settings):
        namespace = relation_namespace(settings, kind)
        current = current_memberships(store, namespace, subject)
        results[kind] = reconcile(store, settings, subject, kind, REMOVE, current)
    return results


def rename_member(store: DirectoryStore, settings: Settings, old_name: str, new_name: str) -> int:
    """
    Rewrite old_name to new_name in every group and role listing it.

    Returns:
        Number of relation objects updated
    """
    updated = 0
    for kind in _configured_kinds(settings):
        namespace = relation_namespace(settings, kind)
        member_attribute = namespace.member_attribute
        for name, dn in sorted(current_memberships(store, namespace, old_name).items()):
            store.modify(dn, {member_attribute: [(MODIFY_DELETE, [old_name]), (MODIFY_ADD, [new_name])]})
            logger.info(f"Renamed member {old_name} to {new_name} in {kind} {name}")
            updated += 1
    return updated
