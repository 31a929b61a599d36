from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from taxcalendar.domain.models import ApiKey, User
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.services.audit import API_KEY_ISSUED, record_event
from taxcalendar.services.auth.api_keys import issue_api_key, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an API key for an organization")
    parser.add_argument("--organization", required=True, help="Organization identifier")
    parser.add_argument("--role", required=True, help="Role: reader|editor|admin")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    user_id = args.user_id or uuid4().hex
    issued = issue_api_key()

    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        if user is None:
            user = User(
                id=user_id,
                organization_id=args.organization,
                email=args.email,
                role=role,
                is_active=True,
            )
            session.add(user)
        else:
            # A key never moves a user to another organization.
            if user.organization_id != args.organization:
                raise ValueError("User organization_id does not match requested organization")
            if user.role != role:
                user.role = role
            if args.email and user.email != args.email:
                user.email = args.email
        # Flush the user row before inserting API keys to satisfy FK constraints.
        await session.flush()

        session.add(
            ApiKey(
                id=issued.key_id,
                user_id=user.id,
                organization_id=user.organization_id,
                key_prefix=issued.key_prefix,
                key_hash=issued.key_hash,
                name=args.name,
            )
        )
        await session.commit()

        audited = await record_event(
            session=session,
            organization_id=user.organization_id,
            event_type=API_KEY_ISSUED,
            actor_id="create_api_key",
            actor_role=role,
            resource_type="api_key",
            resource_id=issued.key_id,
            metadata={"user_id": user.id, "key_prefix": issued.key_prefix, "key_name": args.name},
        )
        if not audited:
            print("warning: API key created but the audit row was not written", file=sys.stderr)

    print("API key created:")
    print(f"  key_id: {issued.key_id}")
    print(f"  key_prefix: {issued.key_prefix}")
    print("  api_key: ")
    print(f"    {issued.raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
