
from sqlalchemy import Column, Integer, ForeignKey, String, CheckConstraint
from sqlalchemy.orm import relationship

from app.core.database import Base


class Credits(Base):
	__tablename__ = "credits"
	__table_args__ = (
		CheckConstraint("balance >= 0", name="ck_credits_balance_non_negative"),
	)

	id = Column(Integer, primary_key=True)
	user_id = Column(String, ForeignKey("users.id"), unique=True, nullable=False)
	balance = Column(Integer, nullable=False, default=0) # current balance
	total_earned = Column(Integer, nullable=False, default=0) # everything ever credited
	total_spent = Column(Integer, nullable=False, default=0) # everything ever removed

	user = relationship("User", back_populates="credit")
