"""
Create an admin account, or promote an existing user to admin.

Usage:
  python scripts/create_admin.py --email admin@example.com --password secret [--username admin]

Idempotent: an existing user with the email is promoted and keeps its password
unless --reset-password is given.
"""
import argparse
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv

load_dotenv()

from equiptrack.auth.router import find_available_username  # noqa: E402
from equiptrack.auth.security import get_password_hash  # noqa: E402
from equiptrack.db import Base, SessionLocal, engine  # noqa: E402
from equiptrack.models.models import ConstructionSite, User, ROLE_ADMIN  # noqa: E402


def ensure_admin(session, email: str, password: str, username: str | None = None, reset_password: bool = False) -> User:
    email = email.lower()
    user = session.query(User).filter(User.email == email).first()
    if user:
        user.role = ROLE_ADMIN
        user.is_active = True
        # admins do not supervise sites
        user.site_id = None
        for site in session.query(ConstructionSite).filter(ConstructionSite.supervisor_id == user.id).all():
            site.supervisor_id = None
        if reset_password or not user.password_hash:
            user.password_hash = get_password_hash(password)
        session.flush()
        return user
    user = User(
        email=email,
        username=username or find_available_username(session, email.split("@")[0]),
        password_hash=get_password_hash(password),
        role=ROLE_ADMIN,
        is_active=True,
    )
    session.add(user)
    session.flush()
    return user


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create or promote an admin user")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--username")
    parser.add_argument("--reset-password", action="store_true")
    args = parser.parse_args(argv)

    if len(args.password) < 6:
        print("Password must be at least 6 characters", file=sys.stderr)
        return 2

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        user = ensure_admin(session, args.email, args.password, args.username, args.reset_password)
        session.commit()
        print(f"Admin ready: {user.username} ({user.email})")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
