"""
Command-line entry point for LDAP Account Tools.

Parses the command, loads configuration, opens one directory connection for
the invocation and maps each failure class to its own exit status.
"""

import sys
import json
import logging
import argparse
from typing import Any, Callable, List, Optional

from ldap_accounts.config import Settings, load_settings
from ldap_accounts.directory import LDAPDirectory
from ldap_accounts.errors import AccountError
from ldap_accounts.logging_setup import setup_logging
from ldap_accounts.manager import AccountManager
from ldap_accounts.records import GroupRequest, RoleRequest, UserRequest

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_UNEXPECTED = 1
EXIT_USAGE = 64


class CommandParser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors exit with EXIT_USAGE instead of 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = CommandParser(prog='ldap-accounts',
                           description='Manage LDAP user, group and role records')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    kinds = parser.add_subparsers(dest='kind', required=True)

    user = kinds.add_parser('user', help='Manage users').add_subparsers(dest='action', required=True)
    for action in ('create', 'modify'):
        command = user.add_parser(action)
        command.add_argument('name')
        command.add_argument('--uid', help='Numeric user ID (allocated when omitted on create)')
        command.add_argument('--group', help='Primary group name')
        command.add_argument('--groups', help='Additional groups: [+|-|=]name,... (write --groups=-name to remove)')
        command.add_argument('--roles', help='Roles: [+|-|=]name,... (write --roles=-name to remove)')
        command.add_argument('--home', help='Home directory')
        command.add_argument('--shell', help='Login shell')
        command.add_argument('--email', help='Email address')
        command.add_argument('--full-name', help='Full name')
        command.add_argument('--mail-host', help='Mailbox host')
        command.add_argument('--mail-path', help='Mailbox location')
        command.add_argument('--mail-quota', help='Mailbox quota')
        command.add_argument('--password', help='New password')
        command.add_argument('--sid', help='Explicit Samba SID')
        if action == 'modify':
            command.add_argument('--rename', dest='new_name', help='New user name')
    user.add_parser('delete').add_argument('name')
    user.add_parser('get').add_argument('name')
    user.add_parser('list')

    group = kinds.add_parser('group', help='Manage groups').add_subparsers(dest='action', required=True)
    command = group.add_parser('modify')
    command.add_argument('name')
    command.add_argument('--gid', help='Numeric group ID')
    command.add_argument('--sid', help='Explicit Samba SID')
    command.add_argument('--description', help='Description')
    command.add_argument('--rename', dest='new_name', help='New group name')
    group.add_parser('get').add_argument('name')
    group.add_parser('list')

    role = kinds.add_parser('role', help='Manage roles').add_subparsers(dest='action', required=True)
    command = role.add_parser('modify')
    command.add_argument('name')
    command.add_argument('--description', help='Description')
    command.add_argument('--rename', dest='new_name', help='New role name')

    return parser


def user_request(args: argparse.Namespace) -> UserRequest:
    return UserRequest(
        name=args.name,
        uid=args.uid,
        group=args.group,
        groups=args.groups,
        roles=args.roles,
        home=args.home,
        shell=args.shell,
        email=args.email,
        full_name=args.full_name,
        mail_host=args.mail_host,
        mail_path=args.mail_path,
        mail_quota=args.mail_quota,
        password=args.password,
        sid=args.sid,
        new_name=getattr(args, 'new_name', None)
    )


def _discarding(call: Callable[[AccountManager], Any]) -> Callable[[AccountManager], None]:
    def command(manager: AccountManager) -> None:
        call(manager)
    return command


def select_command(args: argparse.Namespace) -> Callable[[AccountManager], Any]:
    """Map parsed arguments to a call on AccountManager."""
    kind, action = args.kind, args.action
    if kind == 'user':
        if action == 'create':
            return lambda manager: {'uid': manager.create_user(user_request(args)).numeric_id}
        if action == 'modify':
            return _discarding(lambda manager: manager.modify_user(user_request(args)))
        if action == 'delete':
            return lambda manager: manager.delete_user(args.name)
        if action == 'get':
            return lambda manager: manager.get_user(args.name)
        if action == 'list':
            return lambda manager: manager.list_users()
    if kind == 'group':
        if action == 'modify':
            request = GroupRequest(name=args.name, new_name=args.new_name, gid=args.gid,
                                   sid=args.sid, description=args.description)
            return _discarding(lambda manager: manager.modify_group(request))
        if action == 'get':
            return lambda manager: manager.get_group(args.name)
        if action == 'list':
            return lambda manager: manager.list_groups()
    if kind == 'role' and action == 'modify':
        request = RoleRequest(name=args.name, new_name=args.new_name, description=args.description)
        return _discarding(lambda manager: manager.modify_role(request))
    raise ValueError(f"Unsupported command: {kind} {action}")


def run_command(settings: Settings, command: Callable[[AccountManager], Any]) -> Any:
    """Run one command on its own connection, unbinding on every exit path."""
    with LDAPDirectory(settings.directory) as directory:
        directory.connect()
        return command(AccountManager(settings, directory))


def execute(argv: Optional[List[str]] = None) -> int:
    """
    Run the command line.

    Returns:
        Exit code (0 for success, the failure class's code otherwise)
    """
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.config)
        setup_logging(settings.logging)
        result = run_command(settings, select_command(args))
    except AccountError as e:
        logger.error(f"{args.kind} {args.action} failed: {e}")
        return e.exit_code
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return EXIT_UNEXPECTED

    if result is not None:
        print(json.dumps(result, indent=2, sort_keys=True))
    return EXIT_SUCCESS


def main():
    """Main entry point for the application."""
    sys.exit(execute())


if __name__ == "__main__":
    main()
