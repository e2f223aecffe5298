# manage_admins.py
"""
Promote or demote an admin straight against the database, for when nobody can
log in to the admin screen.

Usage:
  export DATABASE_URL="<postgres url>"
  python manage_admins.py promote --email "someone@example.com"
  python manage_admins.py demote --email "someone@example.com"
  python manage_admins.py list
"""

import argparse
import logging

from db import SessionLocal, init_db
from admin_promotion import AdminPromotionService
from errors import BillingError


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    sub = parser.add_subparsers(dest="command", required=True)
    for name in ("promote", "demote"):
        p = sub.add_parser(name)
        p.add_argument("--email", required=True)
    sub.add_parser("list")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    init_db()
    service = AdminPromotionService()
    db = SessionLocal()
    try:
        if args.command == "promote":
            admin = service.promote(db, args.email)
            print(f"OK: {admin.email} -> admin ({admin.type})")
        elif args.command == "demote":
            service.demote(db, args.email)
            print(f"OK: {args.email} is no longer an admin")
        else:
            for a in service.list_admins(db)["admins"]:
                print(f"{a['email']}\t{a['type']}")
    except BillingError as e:
        print(f"ERROR: {e.message}")
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
