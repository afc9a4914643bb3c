#!/usr/bin/env python3
"""
wikiauth -- administration commands for the user and role directories.

Usage:
  python manage.py init-roles
  python manage.py create-user alice alice@example.com 's3cret-pass' --role admin
  python manage.py list-users --page-size 50
  python manage.py list-roles
  python manage.py reset-password alice 'n3w-pass-word'
  python manage.py check-permission alice page:write

Reads the same settings as the API (DATABASE_URL, SECRET_KEY, ...).
Exits 1 when a user or role is not found or input fails validation.
"""

import argparse
import sys
from datetime import datetime, timezone

from auth.credentials import validate_email, validate_password, validate_username
from auth.errors import DirectoryError
from auth.roles import DEFAULT_ROLE, RoleStore
from auth.users import UserStore


def _fail(message: str) -> None:
    print(f"  [!] {message}")
    sys.exit(1)


def _fmt_ms(ms: int) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def cmd_init_roles(args, users: UserStore, roles: RoleStore) -> None:
    created = roles.init_defaults()
    if created:
        for role in created:
            print(f"  Created role {role.role_name} ({role.role_id})")
    else:
        print("  Built-in roles already present.")


def cmd_create_user(args, users: UserStore, roles: RoleStore) -> None:
    for error in (
        validate_username(args.username),
        validate_email(args.email),
        validate_password(args.password),
    ):
        if error:
            _fail(error)

    roles.init_defaults()
    role = roles.find_by_name(args.role)
    if role is None:
        _fail(f"Role not found: {args.role}")

    try:
        user = users.create(args.username, args.email, args.password, role_id=role.role_id)
    except DirectoryError as exc:
        _fail(str(exc))
    print(f"  Created user {user.username} ({user.user_id}) with role {role.role_name}")


def cmd_list_users(args, users: UserStore, roles: RoleStore) -> None:
    role_names = {r.role_id: r.role_name for r in roles.list_all()}
    print(f"  {'USERNAME':<24} {'EMAIL':<32} {'ROLE':<12} {'ACTIVE':<7} CREATED")
    print("  " + "─" * 90)
    total = 0
    for user in users.list_all(limit=args.page_size):
        total += 1
        print(
            f"  {user.username:<24} {user.email:<32} {role_names.get(user.role_id, '-'):<12} "
            f"{'yes' if user.is_active else 'no':<7} {_fmt_ms(user.created_at)}"
        )
    print(f"\n  {total} user(s).")


def cmd_list_roles(args, users: UserStore, roles: RoleStore) -> None:
    for role in roles.list_all():
        print(f"  {role.role_name} ({role.role_id})")
        if role.description:
            print(f"    {role.description}")
        print(f"    permissions: {', '.join(role.permissions) or '(none)'}")


def cmd_reset_password(args, users: UserStore, roles: RoleStore) -> None:
    error = validate_password(args.new_password)
    if error:
        _fail(error)
    user = users.find_by_username(args.username)
    if user is None:
        _fail(f"User not found: {args.username}")
    users.change_password(user.user_id, args.new_password)
    print(f"  Password updated for {user.username}.")


def cmd_check_permission(args, users: UserStore, roles: RoleStore) -> None:
    user = users.find_by_username(args.username)
    if user is None:
        _fail(f"User not found: {args.username}")
    role = roles.find_by_id(user.role_id)
    if roles.is_admin(user.role_id):
        allowed = True
    else:
        allowed = roles.has_permission(user.role_id, args.permission)
    role_name = role.role_name if role is not None else "(no role)"
    verdict = "ALLOWED" if allowed else "DENIED"
    print(f"  {user.username} [{role_name}] {args.permission}: {verdict}")
    if not user.is_active:
        print("  Note: account is deactivated; every request will be rejected.")


_COMMANDS = {
    "init-roles": cmd_init_roles,
    "create-user": cmd_create_user,
    "list-users": cmd_list_users,
    "list-roles": cmd_list_roles,
    "reset-password": cmd_reset_password,
    "check-permission": cmd_check_permission,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="manage.py",
        description="wikiauth user and role administration",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-roles", help="Create the built-in admin/editor/viewer roles if missing")

    create = sub.add_parser("create-user", help="Create a user account")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument("password")
    create.add_argument("--role", default=DEFAULT_ROLE, help=f"Role name (default: {DEFAULT_ROLE})")

    list_users = sub.add_parser("list-users", help="List all users")
    list_users.add_argument("--page-size", type=int, default=100, help="Rows fetched per query (default: 100)")

    sub.add_parser("list-roles", help="List roles and their permissions")

    reset = sub.add_parser("reset-password", help="Set a new password for a user")
    reset.add_argument("username")
    reset.add_argument("new_password")

    check = sub.add_parser("check-permission", help="Show whether a user's role grants a permission")
    check.add_argument("username")
    check.add_argument("permission")

    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    users = UserStore()
    roles = RoleStore()
    try:
        _COMMANDS[args.command](args, users, roles)
    finally:
        users.close()
        roles.close()


if __name__ == "__main__":
    main()
