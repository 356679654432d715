"""
Exposure Backend — Admin User SQLAlchemy Model
================================================

What:  ORM model representing the `admin_users` table.
Who:   AuthenticationService (login, TOTP enrollment) and the admin sync
       that mirrors ADMIN_USERS at startup.

Columns of note:
    - password_hash: Argon2id encoded hash (parameters embedded in the string)
    - totp_secret: base32 secret; present but unconfirmed while
      totp_enabled is false (enrollment in progress)
    - totp_last_step: time step of the last accepted code, so a code
      cannot be replayed within its validity window
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.place import utcnow


class AdminUser(Base):
    __tablename__ = "admin_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    totp_secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    totp_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    totp_last_step: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    last_login_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def __repr__(self) -> str:
        return f"<AdminUser(id={self.id}, username='{self.username}', totp={self.totp_enabled})>"
