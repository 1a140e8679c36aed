import enum

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, JSON, Enum, func, Index
from sqlalchemy.orm import relationship

from app.core.database import Base


class TransactionType(enum.Enum):
    PURCHASE = "purchase"                # credits bought through a provider
    DEDUCTION = "deduction"              # credits spent
    ADJUSTMENT = "adjustment"            # manual admin change
    REFUND_REVERSAL = "refund-reversal"  # clawback of a refunded purchase


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    type = Column(
        Enum(TransactionType, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )

    operation_id = Column(String, unique=True, nullable=False)  # idempotency key
    reference = Column(String, nullable=True)  # provider capture id / payment id
    reason = Column(String, nullable=True)
    actor_id = Column(String, nullable=True)

    credits = Column(Integer, nullable=False)  # signed
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)

    info = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="transactions")
