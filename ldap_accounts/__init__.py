"""
LDAP Account Tools - Provision and maintain user, group and role records in LDAP.

This package keeps POSIX, Samba and mail attributes consistent across
create, modify and delete operations on directory identity records.
"""

__version__ = "1.0.0"
__author__ = "LDAP Account Tools Team"
