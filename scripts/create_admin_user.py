#!/usr/bin/env python3
"""
Create Admin User

Registration through the API always creates the 'user' role; admins
(who manage spaces and see every reservation) are created here.

Usage:
    python scripts/create_admin_user.py --email admin@example.com --name "Admin" --password '...'
    ADMIN_PASSWORD=... python scripts/create_admin_user.py --email admin@example.com
"""
import argparse
import asyncio
import os
import sys

from booking_api.auth import hash_password
from booking_api.config import get_settings
from booking_api.exceptions import BookingException, DuplicateResourceError
from booking_api.main import build_repository
from booking_api.models import User, UserCreate, UserRole
from booking_api.repository import BookingRepository


async def create_admin_user(
    repository: BookingRepository,
    name: str,
    email: str,
    password: str,
    bcrypt_rounds: int = 10
) -> User:
    """Create an account with the admin role (DuplicateResourceError if the email exists)"""
    payload = UserCreate(name=name, email=email, password=password)
    user = await repository.create_user(
        name=payload.name,
        email=payload.email,
        password_hash=hash_password(payload.password, bcrypt_rounds),
        role=UserRole.ADMIN
    )
    return user.public()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Create an admin user")
    parser.add_argument("--email", required=True)
    parser.add_argument("--name", default="Administrator")
    parser.add_argument("--password", default=os.getenv("ADMIN_PASSWORD"),
                        help="Defaults to $ADMIN_PASSWORD")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    if not args.password:
        print("A password is required (--password or ADMIN_PASSWORD)", file=sys.stderr)
        return 2

    settings = get_settings()
    repository = build_repository(settings)
    await repository.initialize()

    try:
        print("Creating admin user...")
        print(f"   Email: {args.email}")
        print(f"   Name:  {args.name}")
        user = await create_admin_user(
            repository, args.name, args.email, args.password, settings.bcrypt_rounds
        )
        print(f"Admin created: {user.email} (id {user.id})")
        return 0
    except DuplicateResourceError:
        print(f"User already exists: {args.email}", file=sys.stderr)
        return 1
    except BookingException as e:
        print(f"Failed: {e.message}", file=sys.stderr)
        return 1
    finally:
        await repository.close()


if __name__ == '__main__':
    sys.exit(asyncio.run(main()))
