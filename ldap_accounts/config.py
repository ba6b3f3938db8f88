"""
Configuration loading and management for LDAP Account Tools.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults, and freezes the result into an immutable Settings
value that is passed explicitly to every component.
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple

from ldap_accounts.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectorySettings:
    """Connection parameters for the LDAP server."""
    server_url: str
    bind_dn: str
    bind_password: str
    use_ssl: bool = False
    start_tls: bool = False
    verify_ssl: bool = True
    ca_cert_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    connection_timeout: int = 10
    receive_timeout: int = 10


@dataclass(frozen=True)
class AttributeMap:
    """
    Mapping of attribute roles to the directory attribute names in use.

    A role set to None is disabled: nothing reads or writes that attribute.
    """
    user_naming: str = 'uid'
    group_naming: str = 'cn'
    role_naming: str = 'cn'
    uid_number: Optional[str] = 'uidNumber'
    gid_number: Optional[str] = 'gidNumber'
    user_sid: Optional[str] = 'sambaSID'
    group_sid: Optional[str] = 'sambaSID'
    primary_group_sid: Optional[str] = 'sambaPrimaryGroupSID'
    home_directory: Optional[str] = 'homeDirectory'
    login_shell: Optional[str] = 'loginShell'
    email: Optional[str] = 'mail'
    full_name: Optional[str] = 'cn'
    mailbox_host: Optional[str] = None
    mailbox_path: Optional[str] = None
    mailbox_quota: Optional[str] = None
    unix_password: Optional[str] = 'userPassword'
    nt_password: Optional[str] = 'sambaNTPassword'
    lm_password: Optional[str] = 'sambaLMPassword'
    password_changed: Tuple[str, ...] = ('shadowLastChange',)
    group_member: Optional[str] = 'memberUid'
    role_member: Optional[str] = 'memberUid'
    description: Optional[str] = 'description'


@dataclass(frozen=True)
class PasswordPolicy:
    """Character-class minimums for new passwords; zero disables a check."""
    min_length: int = 8
    min_upper: int = 0
    min_lower: int = 0
    min_digit: int = 0
    min_nonalnum: int = 0


@dataclass(frozen=True)
class AccountDefaults:
    """Values used for new users when the caller leaves a field unset."""
    group: str = 'users'
    home_template: Optional[str] = '/home/{name}'
    shell: Optional[str] = '/bin/bash'
    email_template: Optional[str] = None
    object_classes: Tuple[str, ...] = ('top', 'account', 'posixAccount', 'shadowAccount')


@dataclass(frozen=True)
class Settings:
    """Immutable configuration for one invocation."""
    directory: DirectorySettings
    user_base_dn: str
    group_base_dn: str
    role_base_dn: Optional[str] = None
    user_filter: str = '(objectClass=posixAccount)'
    group_filter: str = '(objectClass=posixGroup)'
    role_filter: str = '(objectClass=organizationalRole)'
    uid_floor: int = 1000
    gid_floor: int = 1000
    attributes: AttributeMap = field(default_factory=AttributeMap)
    password_policy: PasswordPolicy = field(default_factory=PasswordPolicy)
    defaults: AccountDefaults = field(default_factory=AccountDefaults)
    logging: Dict[str, Any] = field(default_factory=dict)


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses LDAP_ACCOUNTS_CONFIG env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('LDAP_ACCOUNTS_CONFIG', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field_name in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field_name):
                errors.append(f"Missing required LDAP field: {field_name}")

        for section in ['users', 'groups']:
            section_config = self.config.get(section) or {}
            if not section_config.get('base_dn'):
                errors.append(f"Missing required field {section}.base_dn")

        for section, floor_key in [('users', 'uid_floor'), ('groups', 'gid_floor')]:
            floor = (self.config.get(section) or {}).get(floor_key)
            if floor is not None and (not isinstance(floor, int) or isinstance(floor, bool) or floor < 0):
                errors.append(f"{section}.{floor_key} must be a non-negative integer")

        for key in ['home_template', 'email_template']:
            template = (self.config.get('users') or {}).get(key)
            if template is None:
                continue
            try:
                str(template).format(name='user')
            except (KeyError, IndexError, ValueError, AttributeError) as e:
                errors.append(f"users.{key} may only reference {{name}}: {e!r}")

        policy = self.config.get('password_policy') or {}
        for key, value in policy.items():
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                errors.append(f"password_policy.{key} must be a non-negative integer")

        attributes = self.config.get('attributes') or {}
        unknown = set(attributes) - set(AttributeMap.__dataclass_fields__)
        for name in sorted(unknown):
            errors.append(f"Unknown attribute role: attributes.{name}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'use_ssl': str(self.config['ldap']['server_url']).lower().startswith('ldaps://'),
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        user_defaults = {
            'filter': '(objectClass=posixAccount)',
            'uid_floor': 1000,
            'default_group': 'users',
            'home_template': '/home/{name}',
            'shell': '/bin/bash',
            'email_template': None,
            'object_classes': ['top', 'account', 'posixAccount', 'shadowAccount']
        }
        user_config = self.config.setdefault('users', {})
        for key, value in user_defaults.items():
            user_config.setdefault(key, value)

        group_config = self.config.setdefault('groups', {})
        group_config.setdefault('filter', '(objectClass=posixGroup)')
        group_config.setdefault('gid_floor', 1000)

        role_config = self.config.get('roles') or {}
        self.config['roles'] = role_config
        role_config.setdefault('base_dn', None)
        role_config.setdefault('filter', '(objectClass=organizationalRole)')

        self.config.setdefault('attributes', {})
        self.config.setdefault('password_policy', {})

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)


def _optional_name(value: Any) -> Optional[str]:
    """Normalise a configured attribute name; empty or null disables the role."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def build_attribute_map(attributes: Dict[str, Any]) -> AttributeMap:
    """Build an AttributeMap from the 'attributes' config section."""
    values = {}
    for name in AttributeMap.__dataclass_fields__:
        if name not in attributes:
            continue
        raw = attributes[name]
        if name == 'password_changed':
            if isinstance(raw, str):
                raw = [raw]
            values[name] = tuple(n for n in (_optional_name(v) for v in (raw or [])) if n)
        elif name in ('user_naming', 'group_naming', 'role_naming'):
            naming = _optional_name(raw)
            if not naming:
                raise ConfigurationError(f"attributes.{name} cannot be disabled")
            values[name] = naming
        else:
            values[name] = _optional_name(raw)
    return AttributeMap(**values)


def build_settings(config: Dict[str, Any]) -> Settings:
    """
    Freeze a loaded configuration dictionary into a Settings value.

    Args:
        config: Dictionary returned by ConfigLoader.load()

    Returns:
        Immutable settings for one invocation
    """
    ldap_config = config['ldap']
    users = config['users']
    groups = config['groups']
    roles = config.get('roles') or {}
    policy = config.get('password_policy') or {}

    directory = DirectorySettings(
        server_url=ldap_config['server_url'],
        bind_dn=ldap_config['bind_dn'],
        bind_password=ldap_config['bind_password'],
        use_ssl=bool(ldap_config.get('use_ssl', False)),
        start_tls=bool(ldap_config.get('start_tls', False)),
        verify_ssl=bool(ldap_config.get('verify_ssl', True)),
        ca_cert_file=ldap_config.get('ca_cert_file'),
        cert_file=ldap_config.get('cert_file'),
        key_file=ldap_config.get('key_file'),
        connection_timeout=ldap_config.get('connection_timeout', 10),
        receive_timeout=ldap_config.get('receive_timeout', 10)
    )

    defaults = AccountDefaults(
        group=users.get('default_group', 'users'),
        home_template=_optional_name(users.get('home_template', AccountDefaults.home_template)),
        shell=_optional_name(users.get('shell', AccountDefaults.shell)),
        email_template=_optional_name(users.get('email_template')),
        object_classes=tuple(users.get('object_classes') or AccountDefaults.object_classes)
    )

    return Settings(
        directory=directory,
        user_base_dn=users['base_dn'],
        group_base_dn=groups['base_dn'],
        role_base_dn=_optional_name(roles.get('base_dn')),
        user_filter=users.get('filter', '(objectClass=posixAccount)'),
        group_filter=groups.get('filter', '(objectClass=posixGroup)'),
        role_filter=roles.get('filter', '(objectClass=organizationalRole)'),
        uid_floor=users.get('uid_floor', 1000),
        gid_floor=groups.get('gid_floor', 1000),
        attributes=build_attribute_map(config.get('attributes') or {}),
        password_policy=PasswordPolicy(**{k: v for k, v in policy.items()
                                          if k in PasswordPolicy.__dataclass_fields__}),
        defaults=defaults,
        logging=dict(config.get('logging') or {})
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load a configuration file and freeze it into Settings."""
    return build_settings(load_config(config_path))
