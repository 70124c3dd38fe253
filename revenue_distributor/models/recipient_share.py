"""
Recipient share table - the holder snapshot the distribute job pays out to.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DECIMAL, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class RecipientShareRecord(Base):
    """One payout recipient and its percentage of every distribution."""

    __tablename__ = "recipient_shares"

    address: Mapped[str] = mapped_column(
        String(44),
        primary_key=True,
        comment="Recipient wallet public key"
    )

    percentage: Mapped[Decimal] = mapped_column(
        DECIMAL(12, 6),
        nullable=False,
        comment="Share of each distribution, in percent"
    )

    balance: Mapped[Decimal] = mapped_column(
        DECIMAL(30, 9),
        default=0,
        comment="Token balance at snapshot time"
    )

    sol_balance: Mapped[Decimal] = mapped_column(
        DECIMAL(30, 9),
        default=0,
        comment="SOL balance at snapshot time"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<RecipientShareRecord(address={self.address}, percentage={self.percentage})>"
