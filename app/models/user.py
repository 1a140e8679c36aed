import enum

from sqlalchemy import Column, String, Boolean, DateTime, func, Enum as AlchemyEnum
from sqlalchemy.orm import relationship

from app.core.database import Base


class UserRole(enum.Enum):
	USER = "user"
	ADMIN = "admin"


class User(Base):
	__tablename__ = "users"

	id = Column(String, primary_key=True)  # auth subject (uid)
	email = Column(String, nullable=True, index=True)
	display_name = Column(String, nullable=True)
	role = Column(
		AlchemyEnum(UserRole, values_callable=lambda e: [m.value for m in e]),
		nullable=False,
		default=UserRole.USER,
	)

	suspended = Column(Boolean, nullable=False, default=False)
	suspended_reason = Column(String, nullable=True)
	suspended_at = Column(DateTime(timezone=True), nullable=True)

	created_at = Column(DateTime(timezone=True), server_default=func.now())
	updated_at = Column(
		DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
	)

	credit = relationship("Credits", back_populates="user", uselist=False)
	transactions = relationship("Transaction", back_populates="user")

	@property
	def is_admin(self) -> bool:
		return self.role == UserRole.ADMIN
