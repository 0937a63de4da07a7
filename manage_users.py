"""
Command line administration of VisNovel accounts.

Accounts are created here and handed a bearer token; the API itself
only checks tokens.

    python manage_users.py create "Ada" ada@example.com
    python manage_users.py make-admin ada@example.com
    python manage_users.py list
"""

import argparse
import sys

import config
from library import LibraryStore, User, generate_id, generate_token


def create_user(store: LibraryStore, name: str, email: str, admin: bool = False) -> User:
    if store.get_user_by_email(email):
        raise ValueError(f"A user with email {email} already exists")
    return store.add_user(User(
        id=generate_id(),
        name=name,
        email=email,
        token=generate_token(),
        role="admin" if admin else "user",
    ))


def make_admin(store: LibraryStore, email: str) -> User:
    user = store.get_user_by_email(email)
    if not user:
        raise ValueError(f"No user with email {email}")
    user.role = "admin"
    return store.save_user(user)


def rotate_token(store: LibraryStore, email: str) -> User:
    user = store.get_user_by_email(email)
    if not user:
        raise ValueError(f"No user with email {email}")
    user.token = generate_token()
    return store.save_user(user)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Manage VisNovel users")
    parser.add_argument("--data-dir", default=config.DATA_DIR,
                        help="Directory holding library.json")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a user and print their token")
    create.add_argument("name")
    create.add_argument("email")
    create.add_argument("--admin", action="store_true")

    promote = sub.add_parser("make-admin", help="Give a user the admin role")
    promote.add_argument("email")

    rotate = sub.add_parser("rotate-token", help="Issue a new token for a user")
    rotate.add_argument("email")

    sub.add_parser("list", help="List all users")

    args = parser.parse_args(argv)
    store = LibraryStore(args.data_dir)

    try:
        if args.command == "create":
            user = create_user(store, args.name, args.email, args.admin)
            print(f"Created {user.role} {user.email} ({user.id})")
            print(f"Token: {user.token}")
        elif args.command == "make-admin":
            user = make_admin(store, args.email)
            print(f"{user.email} is now an admin")
        elif args.command == "rotate-token":
            user = rotate_token(store, args.email)
            print(f"Token: {user.token}")
        elif args.command == "list":
            for user in store.list_users():
                print(f"{user.id}  {user.role:<5}  {user.email}  {user.name}")
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
