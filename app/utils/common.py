import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import UserNotFound, PaymentNotFound
from app.models import User, Payment


def generate_transaction_id() -> str:
	return f"txn_{uuid.uuid4().hex}"


def generate_payment_id() -> str:
	return f"pay_{uuid.uuid4().hex}"


def purchase_operation_id(provider: str, capture_id: str) -> str:
	# one purchase per provider capture
	return f"purchase:{provider}:{capture_id}"


def refund_operation_id(provider: str, capture_id: str) -> str:
	return f"refund:{provider}:{capture_id}"


async def get_user_or_404(session: AsyncSession, user_id: str) -> User:
	"""
	Loads the user or raises UserNotFound.
	"""
	user = await session.get(User, user_id)
	if not user:
		raise UserNotFound(f"User '{user_id}' not found.")
	return user


async def get_payment_or_404(session: AsyncSession, payment_id: str) -> Payment:
	payment = await session.get(Payment, payment_id, populate_existing=True)
	if not payment:
		raise PaymentNotFound(f"Payment '{payment_id}' not found.")
	return payment
