import enum

from sqlalchemy import (
	Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey, JSON,
	UniqueConstraint, Enum as AlchemyEnum, func
)

from app.core.database import Base


class PaymentStatus(enum.Enum):
	PENDING = "pending"
	COMPLETED = "completed"
	FAILED = "failed"
	REFUNDED = "refunded"


# allowed status moves, everything else is rejected
PAYMENT_TRANSITIONS = {
	PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
	PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
	PaymentStatus.FAILED: set(),
	PaymentStatus.REFUNDED: set(),
}


def can_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
	return new in PAYMENT_TRANSITIONS[current]


class PaymentProvider(enum.Enum):
	PAYPAL = "paypal"
	PAYMOB = "paymob"
	MANUAL = "manual"


class Payment(Base):
	__tablename__ = "payments"
	__table_args__ = (
		# one payment record per real-world capture
		UniqueConstraint("provider", "capture_id", name="uq_payments_provider_capture"),
	)

	id = Column(String, primary_key=True)
	user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

	provider = Column(
		AlchemyEnum(PaymentProvider, values_callable=lambda e: [m.value for m in e]),
		nullable=False,
	)
	order_id = Column(String, nullable=True)
	capture_id = Column(String, nullable=False)
	pack_id = Column(String, nullable=True)

	amount = Column(Numeric(12, 2), nullable=False, default=0)
	currency = Column(String(3), nullable=False)
	credits = Column(Integer, nullable=False)
	status = Column(
		AlchemyEnum(PaymentStatus, values_callable=lambda e: [m.value for m in e]),
		nullable=False,
		default=PaymentStatus.PENDING,
	)

	is_manual = Column(Boolean, nullable=False, default=False)
	notes = Column(String, nullable=True)

	refund_reason = Column(String, nullable=True)
	refunded_by = Column(String, nullable=True)
	refund_deficit = Column(Integer, nullable=False, default=0)
	refunded_at = Column(DateTime(timezone=True), nullable=True)

	info = Column(JSON, default=dict)
	created_at = Column(DateTime(timezone=True), server_default=func.now())
