#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers loading, validation, environment variable overrides and freezing the
result into Settings.
"""

import os
import sys
import tempfile
import yaml
import unittest
from dataclasses import FrozenInstanceError
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_accounts.config import (AttributeMap, ConfigLoader, build_attribute_map, build_settings,
                                  load_config, load_settings)
from ldap_accounts.errors import ConfigurationError


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'ldap': {
                'server_url': 'ldaps://ldap.example.com:636',
                'bind_dn': 'cn=admin,dc=example,dc=com',
                'bind_password': 'password'
            },
            'users': {'base_dn': 'ou=People,dc=example,dc=com'},
            'groups': {'base_dn': 'ou=Groups,dc=example,dc=com'}
        }
        self.temp_files = []

    def tearDown(self):
        """Clean up temporary files."""
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data: Dict[str, Any]) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
            self.temp_files.append(f.name)
            return f.name

    def test_load_valid_config_applies_defaults(self):
        """Test loading a valid configuration."""
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertTrue(config['ldap']['use_ssl'])
        self.assertEqual(config['ldap']['connection_timeout'], 10)
        self.assertEqual(config['users']['uid_floor'], 1000)
        self.assertEqual(config['users']['default_group'], 'users')
        self.assertEqual(config['groups']['gid_floor'], 1000)
        self.assertIsNone(config['roles']['base_dn'])
        self.assertEqual(config['logging']['level'], 'INFO')
        self.assertEqual(config['logging']['retention_days'], 7)

    def test_missing_file(self):
        """Test that a missing config file raises ConfigurationError."""
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        """Test that malformed YAML raises ConfigurationError."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("ldap: [unclosed\n")
            self.temp_files.append(f.name)
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(f.name).load()
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_missing_required_fields_are_all_reported(self):
        """Test validation with missing required fields."""
        config_path = self.create_test_config({'ldap': {'server_url': 'ldap://x'}})
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(config_path).load()
        message = str(ctx.exception)
        self.assertIn('bind_dn', message)
        self.assertIn('bind_password', message)
        self.assertIn('users.base_dn', message)
        self.assertIn('groups.base_dn', message)

    def test_negative_floor_is_rejected(self):
        self.valid_config['users']['uid_floor'] = -1
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertIn('uid_floor', str(ctx.exception))

    def test_bad_policy_value_is_rejected(self):
        self.valid_config['password_policy'] = {'min_length': 'eight'}
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.create_test_config(self.valid_config)).load()

    def test_templates_may_only_reference_name(self):
        for key, template in [('home_template', '/home/{uid}'), ('email_template', '{}@example.com'),
                              ('email_template', '{name@example.com')]:
            config = dict(self.valid_config, users={'base_dn': 'ou=People,dc=example,dc=com', key: template})
            with self.assertRaises(ConfigurationError, msg=template) as ctx:
                ConfigLoader(self.create_test_config(config)).load()
            self.assertIn(f'users.{key}', str(ctx.exception))

    def test_unknown_attribute_role_is_rejected(self):
        self.valid_config['attributes'] = {'shoe_size': 'shoeSize'}
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertIn('shoe_size', str(ctx.exception))

    def test_env_var_override_for_bind_password(self):
        """Test environment variable overrides for sensitive data."""
        config_path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'from-env'}):
            config = load_config(config_path)
        self.assertEqual(config['ldap']['bind_password'], 'from-env')

    def test_env_var_supplies_missing_password(self):
        del self.valid_config['ldap']['bind_password']
        config_path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'from-env'}):
            config = load_config(config_path)
        self.assertEqual(config['ldap']['bind_password'], 'from-env')

    def test_config_path_from_environment(self):
        config_path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'LDAP_ACCOUNTS_CONFIG': config_path}):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, config_path)


class TestBuildSettings(unittest.TestCase):
    """Test cases for freezing configuration into Settings."""

    def setUp(self):
        self.config = {
            'ldap': {
                'server_url': 'ldap://ldap.example.com',
                'bind_dn': 'cn=admin,dc=example,dc=com',
                'bind_password': 'password',
                'start_tls': True
            },
            'users': {'base_dn': 'ou=People,dc=example,dc=com', 'uid_floor': 2000,
                      'email_template': '{name}@example.com'},
            'groups': {'base_dn': 'ou=Groups,dc=example,dc=com'},
            'roles': {'base_dn': 'ou=Roles,dc=example,dc=com'},
            'attributes': {'user_sid': '', 'nt_password': None, 'mailbox_host': 'mailHost',
                           'password_changed': 'shadowLastChange'},
            'password_policy': {'min_length': 12, 'min_digit': 2}
        }

    def test_settings_carry_configured_values(self):
        settings = build_settings(self.config)
        self.assertTrue(settings.directory.start_tls)
        self.assertEqual(settings.uid_floor, 2000)
        self.assertEqual(settings.gid_floor, 1000)
        self.assertEqual(settings.role_base_dn, 'ou=Roles,dc=example,dc=com')
        self.assertEqual(settings.defaults.email_template, '{name}@example.com')
        self.assertEqual(settings.password_policy.min_length, 12)
        self.assertEqual(settings.password_policy.min_digit, 2)
        self.assertEqual(settings.password_policy.min_upper, 0)

    def test_empty_or_null_attribute_disables_role(self):
        attributes = build_settings(self.config).attributes
        self.assertIsNone(attributes.user_sid)
        self.assertIsNone(attributes.nt_password)
        self.assertEqual(attributes.mailbox_host, 'mailHost')
        self.assertEqual(attributes.password_changed, ('shadowLastChange',))
        self.assertEqual(attributes.group_sid, AttributeMap.group_sid)

    def test_naming_attribute_cannot_be_disabled(self):
        with self.assertRaises(ConfigurationError):
            build_attribute_map({'user_naming': ''})

    def test_settings_are_immutable(self):
        settings = build_settings(self.config)
        with self.assertRaises(FrozenInstanceError):
            settings.uid_floor = 1

    def test_load_settings_from_file(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(self.config, f)
        try:
            settings = load_settings(f.name)
        finally:
            os.unlink(f.name)
        self.assertEqual(settings.user_base_dn, 'ou=People,dc=example,dc=com')
        self.assertEqual(settings.user_filter, '(objectClass=posixAccount)')
        self.assertEqual(settings.logging['level'], 'INFO')


if __name__ == '__main__':
    unittest.main()
