import enum
from sqlalchemy import (
	Column, String, DateTime, func, JSON, Enum as AlchemyEnum
)

from app.core.database import Base


# AdminLog keeps every change an admin makes through the back-office
class AdminOperationType(enum.Enum):
	ADJUST_CREDITS = "adjust_credits"
	MANUAL_CREDIT = "manual_credit"
	REFUND_PAYMENT = "refund_payment"
	CHANGE_ROLE = "change_role"
	SUSPEND_USER = "suspend_user"
	UNSUSPEND_USER = "unsuspend_user"


class AdminLog(Base):
	__tablename__ = "admin_log"

	id = Column(String, primary_key=True)
	operation_type = Column(AlchemyEnum(AdminOperationType), nullable=False)
	admin_id = Column(String, nullable=False)
	entity = Column(String, nullable=False)  # "User", "Payment", ...
	entity_id = Column(String, nullable=True)
	changes = Column(JSON, nullable=False)  # {"field": "role", "old": "user", "new": "admin"}
	created_at = Column(DateTime(timezone=True), server_default=func.now())
