#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from asset_rental.db.base import Base
from asset_rental.models import asset_models, rbac_models, rental_models, timesheet_models  # noqa: F401
from asset_rental.services.role_service import DEFAULT_ROLES, seed_default_rbac


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create the built-in roles and permission codes (idempotent).",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create any missing tables before seeding.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("ASSET_RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to ASSET_RENTAL_DB_URL env var.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.db_url:
        parser.error("Missing DB URL. Set ASSET_RENTAL_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, future=True)
    if args.create_tables:
        Base.metadata.create_all(engine)

    db = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)()
    try:
        roles = seed_default_rbac(db)
    finally:
        db.close()

    for role_data in DEFAULT_ROLES:
        role = roles[role_data["code"]]
        print(f"{role.Code:<16} level={role.RoleLevel} permissions={len(role_data['permissions'])}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
