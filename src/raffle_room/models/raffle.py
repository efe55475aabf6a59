# src/raffle_room/models/raffle.py
"""SQLAlchemy model for the canonical raffle record."""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Integer, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from raffle_room.db.session import Base

RAFFLE_STATES = ("WAITING", "DRAWING", "DRAWN", "ERROR")


class PublicData(Base):
    """Row holding the single shared raffle state.

    Exactly one row per deployment is live. Clients never write to it; the
    admin updates it by primary key and everyone else learns about the change
    through the realtime bus.
    """

    __tablename__ = "public_data"
    __table_args__ = (
        CheckConstraint(
            "state IN (" + ", ".join(f"'{state}'" for state in RAFFLE_STATES) + ")",
            name="ck_public_data_state",
        ),
        # A winner is recorded exactly when the raffle has been drawn.
        CheckConstraint(
            "(state = 'DRAWN' AND winner IS NOT NULL) OR (state <> 'DRAWN' AND winner IS NULL)",
            name="ck_public_data_winner",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    state: Mapped[str] = mapped_column(Text, nullable=False, default="WAITING")
    winner: Mapped[str | None] = mapped_column(Text, nullable=True)
