import os
import sys

import yaml
from sqlalchemy.orm import Session

# Add repository root to path so we can import models/db
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from database import SessionLocal, engine, Base  # noqa: E402
from models import ROLES, User  # noqa: E402
from routers.auth import _hash_password  # noqa: E402
from utils.otp_service import is_valid_email, normalize_email  # noqa: E402

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "admins.yml")


def load_admins(path: str = DEFAULT_PATH, db: Session = None) -> int:
    """
    Create admin/organizer accounts listed in a YAML file.

    Seeded accounts are marked verified: they skip email verification but
    still pass the login OTP like any organizer or admin.
    """
    own_session = db is None
    if own_session:
        Base.metadata.create_all(bind=engine)
        db = SessionLocal()

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    created = 0
    try:
        for entry in data.get("users", []):
            entry = dict(entry)
            email = normalize_email(entry.pop("email", ""))
            if not is_valid_email(email):
                print(f"Skipping entry with invalid email: {email!r}")
                continue
            role = (entry.pop("role", "admin") or "admin").strip().lower()
            if role not in ROLES:
                print(f"Skipping {email}: unknown role {role!r}")
                continue
            if db.query(User).filter(User.email == email).first():
                print(f"User {email} already exists. Skipping.")
                continue

            password = entry.pop("password")
            user = User(
                email=email,
                role=role,
                password_hash=_hash_password(password),
                first_name=entry.pop("first_name", "Admin"),
                last_name=entry.pop("last_name", ""),
                phone_number=entry.pop("phone_number", None),
                is_verified=True,
            )
            db.add(user)
            created += 1
            print(f"Adding {role} {email}...")

        db.commit()
    finally:
        if own_session:
            db.close()
    print(f"{created} account(s) loaded.")
    return created


if __name__ == "__main__":
    load_admins(sys.argv[1] if len(sys.argv) > 1 else DEFAULT_PATH)
