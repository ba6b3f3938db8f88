"""
Account commands for LDAP Account Tools.

AccountManager runs one command against an already bound directory: it loads
the target, builds the mutation, submits it, then reconciles group and role
membership. Each step that fails is reported as that step's failure; earlier
steps stay applied, since the directory offers no multi-entry transactions.
"""

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from ldap_accounts.config import Settings
from ldap_accounts.directory import DirectoryEntry, DirectoryStore, MODIFY_REPLACE, escape_filter_chars
from ldap_accounts.errors import AccountError, NotFoundError
from ldap_accounts.logging_setup import security_logger
from ldap_accounts.membership import (GROUP, ROLE, REMOVE, MembershipChanges, current_memberships,
                                      ensure_relations_exist, parse_membership_argument, reconcile,
                                      relation_namespace, remove_all_memberships, rename_member)
from ldap_accounts.records import (GroupRequest, RecordMutation, RoleRequest, UserRequest,
                                   build_group_modify, build_role_modify, build_user_create,
                                   build_user_modify, find_group, find_role, find_user)

logger = logging.getLogger(__name__)


class AccountManager:
    """
    Create, modify, delete and read identity records.

    One instance serves one invocation; it holds no directory state between
    calls.
    """

    def __init__(self, settings: Settings, store: DirectoryStore):
        """
        Initialize the manager.

        Args:
            settings: Immutable configuration
            store: Bound directory
        """
        self.settings = settings
        self.store = store

    def _membership_plan(self, groups: Optional[str], roles: Optional[str]) -> List[Tuple[str, str, Set[str]]]:
        """Parse and validate membership arguments; unknown names fail here, before any write."""
        plan = []
        for kind, argument in ((GROUP, groups), (ROLE, roles)):
            if argument is None:
                continue
            mode, names = parse_membership_argument(argument)
            if mode != REMOVE:
                ensure_relations_exist(self.store, self.settings, kind, names)
            else:
                relation_namespace(self.settings, kind)
            plan.append((kind, mode, names))
        return plan

    def _apply_membership_plan(self, subject: str, plan) -> Dict[str, MembershipChanges]:
        results = {}
        for kind, mode, names in plan:
            results[kind] = reconcile(self.store, self.settings, subject, kind, mode, names)
        return results

    def _audited(self, operation: str, kind: str, name: str, action, *args):
        try:
            result = action(*args)
        except AccountError as e:
            security_logger.log_account_operation(operation, kind, name, False, str(e))
            raise
        security_logger.log_account_operation(operation, kind, name, True)
        return result

    def _apply_modify(self, mutation: RecordMutation):
        """Rename first, then replace attributes on the renamed entry."""
        if mutation.renamed:
            self.store.rename(mutation.dn, mutation.new_rdn)
            logger.info(f"Renamed {mutation.dn} to {mutation.new_rdn}")
        if mutation.attributes:
            self.store.modify(mutation.target_dn, mutation.replace_changes())
            logger.info(f"Updated {sorted(mutation.attributes)} on {mutation.target_dn}")

    # Users

    def create_user(self, request: UserRequest) -> RecordMutation:
        """
        Create a user and assign its memberships.

        Returns:
            The applied mutation, including the UID that was used
        """
        return self._audited('create', 'user', request.name, self._create_user, request)

    def _create_user(self, request: UserRequest) -> RecordMutation:
        mutation = build_user_create(self.store, self.settings, request)
        plan = self._membership_plan(request.groups, request.roles)

        self.store.add(mutation.dn, mutation.attributes)
        logger.info(f"Created user {mutation.name} ({mutation.dn}) with uid {mutation.numeric_id}")

        self._apply_membership_plan(mutation.name, plan)
        return mutation

    def modify_user(self, request: UserRequest) -> RecordMutation:
        return self._audited('modify', 'user', request.name, self._modify_user, request)

    def _modify_user(self, request: UserRequest) -> RecordMutation:
        entry = self._load(find_user, 'User', request.name)
        mutation = build_user_modify(self.store, self.settings, entry, request)
        plan = self._membership_plan(request.groups, request.roles)

        old_name = entry.get_value(self.settings.attributes.user_naming) or request.name
        self._apply_modify(mutation)
        if mutation.renamed:
            rename_member(self.store, self.settings, old_name, mutation.name)

        self._apply_membership_plan(mutation.name, plan)
        return mutation

    def delete_user(self, name: str) -> None:
        """Remove a user from every group and role, then delete it."""
        self._audited('delete', 'user', name, self._delete_user, name)

    def _delete_user(self, name: str) -> None:
        entry = self._load(find_user, 'User', name)
        subject = entry.get_value(self.settings.attributes.user_naming) or name
        remove_all_memberships(self.store, self.settings, subject)
        self.store.delete(entry.dn)
        logger.info(f"Deleted user {name} ({entry.dn})")

    def get_user(self, name: str) -> Dict[str, Any]:
        entry = self._load(find_user, 'User', name)
        record = self._record(entry)
        subject = entry.get_value(self.settings.attributes.user_naming) or name
        record['groups'] = sorted(current_memberships(
            self.store, relation_namespace(self.settings, GROUP), subject))
        if self.settings.role_base_dn:
            record['roles'] = sorted(current_memberships(
                self.store, relation_namespace(self.settings, ROLE), subject))
        return record

    def list_users(self) -> List[Dict[str, Any]]:
        entries = self.store.search(self.settings.user_base_dn, self.settings.user_filter)
        return [self._record(entry) for entry in self._sorted(entries, self.settings.attributes.user_naming)]

    # Groups

    def modify_group(self, request: GroupRequest) -> RecordMutation:
        return self._audited('modify', 'group', request.name, self._modify_group, request)

    def _modify_group(self, request: GroupRequest) -> RecordMutation:
        entry = self._load(find_group, 'Group', request.name)
        mutation = build_group_modify(self.store, self.settings, entry, request)
        self._apply_modify(mutation)

        if mutation.previous_id is not None and mutation.numeric_id != mutation.previous_id:
            self._move_primary_members(mutation)
        return mutation

    def _move_primary_members(self, mutation: RecordMutation) -> int:
        """Point users whose primary GID was the group's old GID at the new one."""
        attributes = self.settings.attributes
        search_filter = f"(&{self.settings.user_filter}({attributes.gid_number}={mutation.previous_id}))"
        moved = 0
        for user in self.store.search(self.settings.user_base_dn, search_filter):
            changes = {attributes.gid_number: [(MODIFY_REPLACE, [str(mutation.numeric_id)])]}
            if attributes.primary_group_sid and mutation.sid:
                changes[attributes.primary_group_sid] = [(MODIFY_REPLACE, [mutation.sid])]
            self.store.modify(user.dn, changes)
            moved += 1
        if moved:
            logger.info(f"Moved {moved} primary member(s) of {mutation.name} to gid {mutation.numeric_id}")
        return moved

    def get_group(self, name: str) -> Dict[str, Any]:
        entry = self._load(find_group, 'Group', name)
        record = self._record(entry)
        attributes = self.settings.attributes
        gid = entry.get_value(attributes.gid_number)
        if gid is not None:
            search_filter = f"(&{self.settings.user_filter}({attributes.gid_number}={escape_filter_chars(gid)}))"
            primary = self.store.search(self.settings.user_base_dn, search_filter,
                                        attributes=[attributes.user_naming])
            record['primary_members'] = sorted(filter(None, (u.get_value(attributes.user_naming) for u in primary)))
        return record

    def list_groups(self) -> List[Dict[str, Any]]:
        entries = self.store.search(self.settings.group_base_dn, self.settings.group_filter)
        return [self._record(entry) for entry in self._sorted(entries, self.settings.attributes.group_naming)]

    # Roles

    def modify_role(self, request: RoleRequest) -> RecordMutation:
        return self._audited('modify', 'role', request.name, self._modify_role, request)

    def _modify_role(self, request: RoleRequest) -> RecordMutation:
        relation_namespace(self.settings, ROLE)
        entry = self._load(find_role, 'Role', request.name)
        mutation = build_role_modify(self.store, self.settings, entry, request)
        self._apply_modify(mutation)
        return mutation

    # Helpers

    def _load(self, finder, label: str, name: str) -> DirectoryEntry:
        entry = finder(self.store, self.settings, name)
        if entry is None:
            raise NotFoundError(f"{label} {name} not found")
        return entry

    def _hidden_attributes(self) -> Set[str]:
        attributes = self.settings.attributes
        return {a.lower() for a in (attributes.unix_password, attributes.nt_password, attributes.lm_password) if a}

    def _record(self, entry: DirectoryEntry) -> Dict[str, Any]:
        hidden = self._hidden_attributes()
        record = {'dn': entry.dn}
        for name, values in entry.as_dict().items():
            if name.lower() in hidden:
                continue
            record[name] = values[0] if len(values) == 1 else values
        return record

    @staticmethod
    def _sorted(entries: List[DirectoryEntry], naming: str) -> List[DirectoryEntry]:
        return sorted(entries, key=lambda e: (e.get_value(naming) or '').lower())
