"""Provision an admin dashboard user and print its API key"""

import sys
import secrets
import argparse

from animagenius import database as db


def create_admin(email: str, name: str, api_key: str = None, role: str = 'admin'):
    """Create the admin (or return the existing one) -> (admin, created)"""
    db.init_database()

    existing = db.get_admin_by_email(email)
    if existing:
        return existing, False

    admin = db.create_admin_user(email, name, api_key or secrets.token_urlsafe(32), role)
    return admin, True


def main(argv=None):
    parser = argparse.ArgumentParser(description='AnimaGenius admin provisioning')
    parser.add_argument('--email', required=True, help='Admin email address')
    parser.add_argument('--name', required=True, help='Display name')
    parser.add_argument('--api-key', help='API key to assign (generated when omitted)')
    parser.add_argument('--role', default='admin', help='Admin role')
    parser.add_argument('--database', help='Database file (defaults to DATABASE_PATH)')

    args = parser.parse_args(argv)

    if args.database:
        db.configure_database(args.database)

    admin, created = create_admin(args.email.strip().lower(), args.name, args.api_key, args.role)
    if admin is None:
        print(f"Could not create admin {args.email}: API key already in use", file=sys.stderr)
        return 1

    if created:
        print(f"Admin created: {admin['email']}")
    else:
        print(f"Admin already exists: {admin['email']}")
    print(f"API key: {admin['api_key']}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
