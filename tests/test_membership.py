#!/usr/bin/env python3
"""
Unit tests for group and role membership reconciliation.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dataclasses import replace

from ldap_accounts.directory import MODIFY_ADD, MODIFY_DELETE
from ldap_accounts.errors import ConfigurationError, DirectoryError, ValidationError
from ldap_accounts.membership import (ADD, GROUP, REMOVE, REPLACE, ROLE, current_memberships,
                                      ensure_relations_exist, parse_membership_argument, reconcile,
                                      relation_namespace, remove_all_memberships, rename_member)
from fake_directory import group_dn, make_settings, role_dn, seeded_directory


class MembershipTestCase(unittest.TestCase):

    def setUp(self):
        self.store = seeded_directory()
        self.settings = make_settings()

    def join(self, subject, *groups):
        for name in groups:
            dn = group_dn(name)
            self.store.entries[dn].setdefault('memberuid', []).append(subject)

    def groups_of(self, subject):
        return set(current_memberships(self.store, relation_namespace(self.settings, GROUP), subject))


class TestReconcile(MembershipTestCase):
    """Test cases for reconcile."""

    def test_replace_makes_memberships_equal_desired(self):
        self.join('alice', 'users', 'staff')
        changes = reconcile(self.store, self.settings, 'alice', GROUP, REPLACE, {'staff', 'devs'})
        self.assertEqual(self.groups_of('alice'), {'staff', 'devs'})
        self.assertEqual(changes.added, ['devs'])
        self.assertEqual(changes.removed, ['users'])

    def test_replace_is_idempotent(self):
        self.join('alice', 'users')
        reconcile(self.store, self.settings, 'alice', GROUP, REPLACE, {'staff', 'devs'})
        writes_after_first = len(self.store.writes)
        changes = reconcile(self.store, self.settings, 'alice', GROUP, REPLACE, {'staff', 'devs'})
        self.assertFalse(changes)
        self.assertEqual(len(self.store.writes), writes_after_first)

    def test_empty_replace_leaves_subject_in_nothing(self):
        self.join('alice', 'users', 'staff', 'devs')
        reconcile(self.store, self.settings, 'alice', GROUP, REPLACE, set())
        self.assertEqual(self.groups_of('alice'), set())

    def test_add_never_removes(self):
        self.join('alice', 'users')
        changes = reconcile(self.store, self.settings, 'alice', GROUP, ADD, {'staff'})
        self.assertEqual(self.groups_of('alice'), {'users', 'staff'})
        self.assertEqual(changes.removed, [])
        for _, _, modification in self.store.writes_of('modify'):
            self.assertEqual(modification['memberUid'][0][0], MODIFY_ADD)

    def test_add_of_existing_membership_is_a_no_op(self):
        self.join('alice', 'staff')
        changes = reconcile(self.store, self.settings, 'alice', GROUP, ADD, {'staff'})
        self.assertFalse(changes)
        self.assertEqual(self.store.writes, [])

    def test_remove_never_adds(self):
        self.join('alice', 'users', 'staff')
        changes = reconcile(self.store, self.settings, 'alice', GROUP, REMOVE, {'staff', 'devs'})
        self.assertEqual(self.groups_of('alice'), {'users'})
        self.assertEqual(changes.removed, ['staff'])
        self.assertEqual(changes.added, [])
        for _, _, modification in self.store.writes_of('modify'):
            self.assertEqual(modification['memberUid'][0][0], MODIFY_DELETE)

    def test_desired_set_is_not_modified(self):
        self.join('alice', 'staff')
        desired = {'staff', 'devs'}
        reconcile(self.store, self.settings, 'alice', GROUP, REPLACE, desired)
        reconcile(self.store, self.settings, 'alice', GROUP, ADD, desired)
        self.assertEqual(desired, {'staff', 'devs'})

    def test_removals_are_issued_before_additions(self):
        self.join('alice', 'users')
        reconcile(self.store, self.settings, 'alice', GROUP, REPLACE, {'devs'})
        operations = [w[2]['memberUid'][0][0] for w in self.store.writes_of('modify')]
        self.assertEqual(operations, [MODIFY_DELETE, MODIFY_ADD])

    def test_failed_mutation_stops_the_run_and_keeps_earlier_ones(self):
        self.join('alice', 'users')
        self.store.fail_on('modify', group_dn('staff'))
        with self.assertRaises(DirectoryError):
            reconcile(self.store, self.settings, 'alice', GROUP, REPLACE, {'devs', 'staff'})
        # devs was added before staff failed; the users removal already happened
        self.assertEqual(self.groups_of('alice'), {'devs'})

    def test_adding_to_unknown_relation_is_rejected(self):
        with self.assertRaises(ValidationError):
            reconcile(self.store, self.settings, 'alice', GROUP, ADD, {'nonexistent'})
        self.assertEqual(self.store.writes, [])

    def test_roles_are_reconciled_in_their_own_namespace(self):
        reconcile(self.store, self.settings, 'alice', ROLE, REPLACE, {'admin'})
        self.assertEqual(self.store.members_of(role_dn('admin')), {'alice'})
        self.assertEqual(self.groups_of('alice'), set())

    def test_disabled_member_attribute_is_a_no_op(self):
        settings = replace(self.settings, attributes=replace(self.settings.attributes, group_member=None))
        changes = reconcile(self.store, settings, 'alice', GROUP, REPLACE, {'staff'})
        self.assertFalse(changes)
        self.assertEqual(self.store.writes, [])

    def test_unconfigured_roles_raise_configuration_error(self):
        settings = replace(self.settings, role_base_dn=None)
        with self.assertRaises(ConfigurationError):
            reconcile(self.store, settings, 'alice', ROLE, ADD, {'admin'})

    def test_unknown_mode_is_rejected(self):
        with self.assertRaises(ValueError):
            reconcile(self.store, self.settings, 'alice', GROUP, 'merge', {'staff'})


class TestMembershipHelpers(MembershipTestCase):

    def test_parse_membership_argument(self):
        self.assertEqual(parse_membership_argument('+staff,devs'), (ADD, {'staff', 'devs'}))
        self.assertEqual(parse_membership_argument('-staff'), (REMOVE, {'staff'}))
        self.assertEqual(parse_membership_argument('=staff'), (REPLACE, {'staff'}))
        self.assertEqual(parse_membership_argument(' staff , devs ,'), (REPLACE, {'staff', 'devs'}))
        self.assertEqual(parse_membership_argument(''), (REPLACE, set()))
        self.assertEqual(parse_membership_argument('='), (REPLACE, set()))

    def test_ensure_relations_exist_lists_every_unknown_name(self):
        with self.assertRaises(ValidationError) as ctx:
            ensure_relations_exist(self.store, self.settings, GROUP, {'staff', 'ghost', 'phantom'})
        self.assertIn('ghost', str(ctx.exception))
        self.assertIn('phantom', str(ctx.exception))

    def test_ensure_relations_exist_resolves_dns(self):
        resolved = ensure_relations_exist(self.store, self.settings, ROLE, ['admin'])
        self.assertEqual(resolved, {'admin': role_dn('admin')})

    def test_remove_all_memberships_covers_groups_and_roles(self):
        self.join('alice', 'users', 'devs')
        self.store.entries[role_dn('auditor')]['memberuid'] = ['alice', 'bob']
        results = remove_all_memberships(self.store, self.settings, 'alice')
        self.assertEqual(sorted(results[GROUP].removed), ['devs', 'users'])
        self.assertEqual(results[ROLE].removed, ['auditor'])
        self.assertEqual(self.groups_of('alice'), set())
        self.assertEqual(self.store.members_of(role_dn('auditor')), {'bob'})

    def test_rename_member_rewrites_every_listing(self):
        self.join('alice', 'staff', 'devs')
        self.store.entries[role_dn('admin')]['memberuid'] = ['alice']
        updated = rename_member(self.store, self.settings, 'alice', 'alicia')
        self.assertEqual(updated, 3)
        self.assertEqual(self.groups_of('alicia'), {'staff', 'devs'})
        self.assertEqual(self.groups_of('alice'), set())
        self.assertEqual(self.store.members_of(role_dn('admin')), {'alicia'})


if __name__ == '__main__':
    unittest.main()
