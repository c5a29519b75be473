#!/usr/bin/env python3
"""
Presensi -- account provisioning CLI.

Usage:
  python main.py create-user 99887766 --name "Arya"
  python main.py create-user admin12345 --admin --token "a-long-password"
  python main.py reset-token 99887766
  python main.py generate-token --length 20

When --token is omitted a random 16 character token is generated and printed
once. Only its bcrypt hash is stored; it cannot be shown again.

Environment variables:
  JWT_SECRET     Required (the same value the API uses).
  DATABASE_URL   Credential database. Defaults to auth/presensi_auth.db.
"""

import argparse
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.hashing import MAX_SECRET_BYTES, hash_secret
from auth.models import AuditLogEntry, User
from auth.store import UserStore
from auth.tokens import generate_token
from core.config import get_settings

_CLI_ACTOR = "cli"


def _resolve_token(token: Optional[str], min_length: int) -> Optional[str]:
    """Return the supplied token if acceptable, a generated one if none was given."""
    if token is None:
        return generate_token(max(16, min_length))
    if len(token) < min_length:
        print(f"  [!] Token must be at least {min_length} characters.")
        return None
    if len(token.encode("utf-8")) > MAX_SECRET_BYTES:
        print(f"  [!] Token must be at most {MAX_SECRET_BYTES} bytes.")
        return None
    return token


def create_user(store: UserStore, nisn: str, name: Optional[str], is_admin: bool, token: Optional[str]) -> int:
    min_length = get_settings().min_token_length
    raw = _resolve_token(token, min_length)
    if raw is None:
        return 2
    try:
        user_id = store.create_user(User(nisn=nisn, name=name, is_admin=is_admin, token_hash=hash_secret(raw)))
    except IntegrityError:
        print(f"  [!] User with NISN '{nisn}' already exists.")
        return 1
    store.record_audit_log(
        AuditLogEntry(actor_id=_CLI_ACTOR, action="user_create", metadata={"userId": user_id, "nisn": nisn})
    )
    print(f"  Created {'admin' if is_admin else 'user'} {nisn} (id {user_id})")
    if token is None:
        print(f"  Token: {raw}")
    return 0


def reset_token(store: UserStore, nisn: str, token: Optional[str]) -> int:
    user = store.find_credential_by_identity(nisn)
    if user is None:
        print(f"  [!] No user with NISN '{nisn}'.")
        return 1
    raw = _resolve_token(token, get_settings().min_token_length)
    if raw is None:
        return 2
    store.update_credential_hash(user.id, hash_secret(raw))
    store.record_audit_log(AuditLogEntry(actor_id=_CLI_ACTOR, action="token_reset", metadata={"userId": user.id}))
    print(f"  Token reset for {nisn}")
    if token is None:
        print(f"  Token: {raw}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="presensi", description="Presensi account provisioning.")
    sub = parser.add_subparsers(dest="command", required=True)

    p_create = sub.add_parser("create-user", help="Create a member or admin account")
    p_create.add_argument("nisn", help="NISN (members) or admin ID")
    p_create.add_argument("--name", default=None)
    p_create.add_argument("--admin", action="store_true", help="Grant admin role")
    p_create.add_argument("--token", default=None, help="Initial token (generated when omitted)")

    p_reset = sub.add_parser("reset-token", help="Replace an account's token")
    p_reset.add_argument("nisn")
    p_reset.add_argument("--token", default=None, help="New token (generated when omitted)")

    p_gen = sub.add_parser("generate-token", help="Print a random token without storing it")
    p_gen.add_argument("--length", type=int, default=16)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "generate-token":
        try:
            print(generate_token(args.length))
        except ValueError as e:
            print(f"  [!] {e}")
            return 2
        return 0

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)-5s %(name)s %(message)s")
    store = UserStore(settings.database_url)
    try:
        if args.command == "create-user":
            return create_user(store, args.nisn, args.name, args.admin, args.token)
        return reset_token(store, args.nisn, args.token)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
