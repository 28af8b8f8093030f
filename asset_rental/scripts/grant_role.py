#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from asset_rental.services.errors import RentalCoreError
from asset_rental.services.permission_service import AssignmentEvents
from asset_rental.services.role_service import RoleAssignmentService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Assign or revoke one role for a user directly from terminal.",
    )
    parser.add_argument("--user-id", type=int, required=True, help="UserID of the principal")
    parser.add_argument("--role", required=True, help="Role code, e.g. manager")
    parser.add_argument("--organization-id", type=int, default=None, help="Scope; omit for a global assignment")
    parser.add_argument("--expires-at", default=None, help="ISO timestamp after which the assignment stops counting")
    parser.add_argument("--granted-by", type=int, default=None, help="UserID recorded as the grantor")
    parser.add_argument("--revoke", action="store_true", help="Remove matching assignments instead of adding one")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("ASSET_RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to ASSET_RENTAL_DB_URL env var.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.user_id <= 0:
        parser.error("--user-id must be > 0")
    if not args.db_url:
        parser.error("Missing DB URL. Set ASSET_RENTAL_DB_URL or pass --db-url.")
    expires_at = None
    if args.expires_at:
        try:
            expires_at = datetime.fromisoformat(args.expires_at)
        except ValueError:
            parser.error("--expires-at must be an ISO timestamp, e.g. 2026-12-31T23:59:59")
    if args.revoke and expires_at is not None:
        parser.error("Use either --revoke or --expires-at, not both.")

    engine = create_engine(args.db_url, future=True)
    db = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)()
    service = RoleAssignmentService(db, AssignmentEvents())
    try:
        if args.revoke:
            removed = service.revoke_role(args.user_id, args.role, args.organization_id)
            print(f"Removed {removed} assignment(s) of {args.role} from user {args.user_id}.")
        else:
            assignment = service.assign_role(
                args.user_id,
                args.role,
                organization_id=args.organization_id,
                granted_by=args.granted_by,
                expires_at=expires_at,
            )
            print(f"Assignment {assignment.AssignmentID}: user {args.user_id} -> {args.role} (org={args.organization_id}).")
    except RentalCoreError as exc:
        print(f"Error: {exc.detail}")
        return 1
    finally:
        db.close()
    # Running API processes keep their cache until the TTL lapses.
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
