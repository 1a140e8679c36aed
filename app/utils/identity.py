import logging

import jwt

from app.core.config import config
from app.core.errors import Forbidden, InvalidOperation, Unauthenticated
from app.models import User
from app.utils.service_ledger import CreditLedger

logger = logging.getLogger("[ADMIN]")


def decode_token(token: str) -> dict:
	try:
		return jwt.decode(
			token,
			config.JWT_SECRET,
			algorithms=[config.JWT_ALGORITHM],
			options={"require": ["exp"]},
		)
	except jwt.ExpiredSignatureError:
		raise Unauthenticated("Token expired.")
	except jwt.InvalidTokenError:
		raise Unauthenticated("Invalid token.")


async def resolve_identity(token: str | None, ledger: CreditLedger) -> User:
	"""
	Bearer token -> account. The account is created on first sight
	with an empty balance.
	"""
	if not token:
		raise Unauthenticated()

	claims = decode_token(token)
	user_id = claims.get("sub") or claims.get("user_id")
	if not user_id or not isinstance(user_id, str):
		raise Unauthenticated("Invalid token.")

	user = await ledger.ensure_account(
		user_id,
		email=claims.get("email"),
		display_name=claims.get("name"),
	)
	if user.suspended:
		raise Forbidden("Account suspended.")
	return user


def require_admin(user: User) -> User:
	if not user.is_admin:
		logger.warning(f"Admin access denied for '{user.id}'")
		raise Forbidden("Admin access required.")
	return user


def ensure_not_self(actor: User, target_id: str, operation: str):
	if actor.id == target_id:
		raise InvalidOperation(f"Cannot {operation} yourself.")
