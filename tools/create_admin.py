from __future__ import annotations

import argparse
import getpass

from axbilling.auth import hash_password
from axbilling.db import Base, SessionLocal, engine
from axbilling.models import User


def main() -> None:
    parser = argparse.ArgumentParser(description="Create (or reset) an admin account")
    parser.add_argument("email")
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="")
    args = parser.parse_args()

    password = getpass.getpass("Password: ")
    if not password:
        raise SystemExit("Password must not be empty")

    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        u = db.query(User).filter(User.email == args.email).first()
        if u:
            u.password_hash = hash_password(password)
            u.role = "admin"
            print(f"Updated existing user {args.email} as admin")
        else:
            db.add(User(
                email=args.email,
                password_hash=hash_password(password),
                role="admin",
                first_name=args.first_name,
                last_name=args.last_name,
            ))
            print(f"Created admin {args.email}")
        db.commit()


if __name__ == "__main__":
    main()
