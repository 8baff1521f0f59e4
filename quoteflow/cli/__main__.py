# quoteflow/cli/__main__.py
from __future__ import annotations

import argparse
import json

from quoteflow.db import SessionLocal, init_db
from quoteflow.services.notifications import dispatch_in_new_session
from quoteflow.services.portal_lock_service import lock_expired_portals
from quoteflow.services.pricing_config import seed_default_schemes


def _seed_schemes(args: argparse.Namespace) -> dict:
    db = SessionLocal()
    try:
        rows = seed_default_schemes(db, tenant_id=args.tenant_id)
        return {"ok": True, "tenant_id": args.tenant_id, "created": [r.scheme_type for r in rows]}
    finally:
        db.close()


def _lock_portals(args: argparse.Namespace) -> dict:
    db = SessionLocal()
    try:
        return {"ok": True, **lock_expired_portals(db, tenant_id=args.tenant_id).as_dict()}
    finally:
        db.close()


def _dispatch(args: argparse.Namespace) -> dict:
    return {"ok": True, **dispatch_in_new_session().as_dict()}


def _init_db(args: argparse.Namespace) -> dict:
    init_db()
    return {"ok": True}


def main(argv: list[str] | None = None) -> None:
    p = argparse.ArgumentParser(prog="quoteflow")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db").set_defaults(fn=_init_db)

    seed = sub.add_parser("seed-schemes")
    seed.add_argument("--tenant-id", type=int, required=True)
    seed.set_defaults(fn=_seed_schemes)

    lock = sub.add_parser("lock-portals")
    lock.add_argument("--tenant-id", type=int, default=None)
    lock.set_defaults(fn=_lock_portals)

    sub.add_parser("dispatch-notifications").set_defaults(fn=_dispatch)

    args = p.parse_args(argv)
    print(json.dumps(args.fn(args)))


if __name__ == "__main__":
    main()
