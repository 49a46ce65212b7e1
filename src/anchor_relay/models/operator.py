# src/anchor_relay/models/operator.py
"""SQLAlchemy model for service operators."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from anchor_relay.db.session import Base
from anchor_relay.db.time import utcnow

ROLE_ADMIN = "admin"
ROLE_VIEWER = "viewer"
OPERATOR_ROLES = (ROLE_ADMIN, ROLE_VIEWER)


class Operator(Base):
    """Wallet-backed account allowed to call authenticated endpoints."""

    __tablename__ = "operator"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    wallet_address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=ROLE_VIEWER)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def is_admin(self) -> bool:
        """Return True when the operator may trigger relays."""
        return self.role == ROLE_ADMIN
