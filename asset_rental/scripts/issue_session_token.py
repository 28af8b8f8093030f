#!/usr/bin/env python3
from __future__ import annotations

import argparse

from asset_rental.services.session_service import SESSION_TTL_SECONDS, create_session


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Print a signed X-Session-Token for a user (needs SESSION_SIGNING_SECRET).",
    )
    parser.add_argument("--user-id", type=int, required=True, help="UserID carried by the token")
    parser.add_argument("--name", default=None, help="Display name stored in the token")
    parser.add_argument("--ttl-seconds", type=int, default=SESSION_TTL_SECONDS, help="Token lifetime")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.user_id <= 0:
        parser.error("--user-id must be > 0")
    if args.ttl_seconds <= 0:
        parser.error("--ttl-seconds must be > 0")

    payload = {"userID": args.user_id}
    if args.name:
        payload["displayName"] = args.name
    print(create_session(payload, ttl_seconds=args.ttl_seconds))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
