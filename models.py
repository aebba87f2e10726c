from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from database import Base


ROLES = ("donor", "organizer", "admin")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    # Stored normalized (trimmed, lowercased); OTP records are keyed the same way.
    email = Column(String, unique=True, index=True, nullable=False)

    # Store password hash (bcrypt). Never store plaintext.
    password_hash = Column(String, nullable=False)

    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="donor")  # "donor" | "organizer" | "admin"

    blood_type = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)

    # Set once the email OTP has been validated.
    is_verified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_login_at = Column(DateTime, nullable=True)
