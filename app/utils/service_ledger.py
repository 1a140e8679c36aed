import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import config
from app.core.errors import (
	InvalidOperation, InsufficientCredits, OperationConflict, UserNotFound, ServiceError
)
from app.models import Credits, Transaction, TransactionType, User, UserRole
from app.utils.common import generate_transaction_id
from app.utils.idempotency import check_idempotency
from app.utils.logging import get_extra_data_log
from app.utils.redis_cache import BalanceCache

logger = logging.getLogger("[LEDGER]")

# compare-and-set attempts for the floored clawback
CAS_ATTEMPTS = 5


class CreditLedger:
	"""
	The only writer of user balances.

	Mutations are single conditional UPDATE statements, so concurrent requests
	for the same user cannot lose updates or push the balance below zero.
	Ledger methods flush but never commit: the caller decides the unit of work
	and finishes it with `commit()`, which also drops the cached balances
	touched by the work.
	"""

	def __init__(
		self,
		session: AsyncSession,
		cache: Optional[BalanceCache] = None,
		signup_bonus: Optional[int] = None,
	):
		self.session = session
		self.cache = cache
		self.signup_bonus = (
			config.SIGNUP_BONUS_CREDITS if signup_bonus is None else signup_bonus
		)
		self._touched: set[str] = set()

	async def commit(self):
		await self.session.commit()
		touched, self._touched = self._touched, set()
		if self.cache is not None:
			for user_id in touched:
				await self.cache.invalidate(user_id)

	async def rollback(self):
		await self.session.rollback()
		self._touched.clear()

	async def ensure_account(
		self,
		user_id: str,
		email: Optional[str] = None,
		display_name: Optional[str] = None,
	) -> User:
		"""
		Create the user unless it already exists. A new account starts with
		the signup bonus, recorded as an adjustment so the balance still
		equals the sum of its transactions.
		"""
		user = await self.session.get(User, user_id)
		if user is not None:
			return user

		now = datetime.now(timezone.utc)
		bonus = self.signup_bonus
		self.session.add(User(
			id=user_id,
			email=email,
			display_name=display_name,
			role=UserRole.USER,
			suspended=False,
			created_at=now,
			updated_at=now,
		))
		self.session.add(Credits(
			user_id=user_id, balance=bonus, total_earned=bonus, total_spent=0
		))
		if bonus:
			self.session.add(Transaction(
				id=generate_transaction_id(),
				user_id=user_id,
				type=TransactionType.ADJUSTMENT,
				operation_id=f"signup:{user_id}",
				reason="Signup bonus",
				actor_id="system",
				credits=bonus,
				balance_before=0,
				balance_after=bonus,
				info={},
				created_at=now,
			))
		try:
			await self.session.commit()
			logger.info(f"Created account '{user_id}' with {bonus} credits")
		except IntegrityError:
			# another request created it first
			await self.session.rollback()

		user = await self.session.get(User, user_id)
		if user is None:
			raise UserNotFound(f"User '{user_id}' not found.")
		return user

	async def get_balance(self, user_id: str) -> int:
		generation = None
		if self.cache is not None:
			cached = await self.cache.get_balance(user_id)
			if cached is not None:
				return cached
			generation = await self.cache.generation(user_id)

		balance = await self.session.scalar(
			select(Credits.balance).where(Credits.user_id == user_id)
		)
		if balance is None:
			raise UserNotFound(f"User '{user_id}' not found.")

		if self.cache is not None:
			await self.cache.set_balance(user_id, balance, generation)
		return balance

	async def list_transactions(
		self,
		user_id: str,
		limit: int = 50,
		offset: int = 0,
		transaction_type: Optional[TransactionType] = None,
	) -> Tuple[int, List[Transaction]]:
		"""Newest first. Returns (total, page)."""
		stmt = select(Transaction).where(Transaction.user_id == user_id)
		count_stmt = (
			select(func.count())
			.select_from(Transaction)
			.where(Transaction.user_id == user_id)
		)
		if transaction_type is not None:
			stmt = stmt.where(Transaction.type == transaction_type)
			count_stmt = count_stmt.where(Transaction.type == transaction_type)

		total = await self.session.scalar(count_stmt)

		stmt = (
			stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc())
			.limit(limit)
			.offset(offset)
		)
		result = await self.session.execute(stmt)
		return total or 0, list(result.scalars().all())

	async def adjust_credits(
		self,
		user_id: str,
		amount: int,
		actor_id: Optional[str],
		reason: Optional[str] = None,
		transaction_type: TransactionType = TransactionType.ADJUSTMENT,
		reference: Optional[str] = None,
		operation_id: Optional[str] = None,
		info: Optional[dict] = None,
	) -> Transaction:
		"""
		Atomically applies a signed amount to the balance and appends the
		matching transaction. The returned transaction carries balance_after.
		"""
		if amount == 0:
			raise InvalidOperation("Amount must not be zero.")
		if transaction_type == TransactionType.ADJUSTMENT and not (reason and reason.strip()):
			raise InvalidOperation("Reason is required for adjustments.")

		stmt = (
			update(Credits)
			.where(Credits.user_id == user_id)
			.where(Credits.balance + amount >= 0)
			.values(
				balance=Credits.balance + amount,
				total_earned=Credits.total_earned + max(amount, 0),
				total_spent=Credits.total_spent + max(-amount, 0),
			)
			.returning(Credits.balance)
			.execution_options(synchronize_session=False)
		)
		balance_after = (await self.session.execute(stmt)).scalar_one_or_none()

		if balance_after is None:
			current = await self.session.scalar(
				select(Credits.balance).where(Credits.user_id == user_id)
			)
			if current is None:
				raise UserNotFound(f"User '{user_id}' not found.")
			raise InsufficientCredits(
				f"Insufficient credits: balance {current}, required {-amount}.",
				user_id=user_id,
			)

		return await self._append(
			user_id=user_id,
			amount=amount,
			balance_after=balance_after,
			actor_id=actor_id,
			reason=reason,
			transaction_type=transaction_type,
			reference=reference,
			operation_id=operation_id,
			info=info,
		)

	async def reverse_credits(
		self,
		user_id: str,
		credits: int,
		actor_id: Optional[str],
		reason: Optional[str] = None,
		reference: Optional[str] = None,
		operation_id: Optional[str] = None,
		info: Optional[dict] = None,
	) -> Tuple[Optional[Transaction], int]:
		"""
		Claws back up to `credits`, never below zero.
		Returns (transaction or None, deficit) where deficit is the part that
		could not be taken back because it was already spent.
		"""
		if credits <= 0:
			raise InvalidOperation("Credits to reverse must be positive.")

		for _ in range(CAS_ATTEMPTS):
			balance = await self.session.scalar(
				select(Credits.balance).where(Credits.user_id == user_id)
			)
			if balance is None:
				raise UserNotFound(f"User '{user_id}' not found.")

			debit = min(balance, credits)
			deficit = credits - debit
			if debit == 0:
				return None, deficit

			stmt = (
				update(Credits)
				.where(Credits.user_id == user_id)
				.where(Credits.balance == balance)
				.values(
					balance=Credits.balance - debit,
					total_spent=Credits.total_spent + debit,
				)
				.returning(Credits.balance)
				.execution_options(synchronize_session=False)
			)
			balance_after = (await self.session.execute(stmt)).scalar_one_or_none()
			if balance_after is not None:
				break
		else:
			raise ServiceError(
				f"Balance of '{user_id}' kept changing during reversal.",
				user_id=user_id,
			)

		tx = await self._append(
			user_id=user_id,
			amount=-debit,
			balance_after=balance_after,
			actor_id=actor_id,
			reason=reason,
			transaction_type=TransactionType.REFUND_REVERSAL,
			reference=reference,
			operation_id=operation_id,
			info={**(info or {}), "requested": credits, "deficit": deficit},
		)
		return tx, deficit

	async def charge(
		self,
		user_id: str,
		credits: int,
		operation_id: str,
		reason: Optional[str] = None,
	) -> Tuple[bool, Transaction]:
		"""
		Spends credits at most once per (user, operation id).
		Returns (is_duplicate, transaction). A repeated call with the same
		operation id returns the first transaction; the same id with another
		amount raises OperationConflict.
		"""
		if credits <= 0:
			raise InvalidOperation("Credits to charge must be positive.")

		key = f"charge:{user_id}:{operation_id}"
		is_duplicate, existing = await check_idempotency(
			self.session, key, TransactionType.DEDUCTION
		)
		if not is_duplicate:
			try:
				tx = await self.adjust_credits(
					user_id,
					-credits,
					actor_id=user_id,
					reason=reason,
					transaction_type=TransactionType.DEDUCTION,
					operation_id=key,
				)
				return False, tx
			except IntegrityError:
				# the same operation was committed by a concurrent request
				await self.rollback()
				is_duplicate, existing = await check_idempotency(
					self.session, key, TransactionType.DEDUCTION
				)
				if not is_duplicate:
					raise

		if existing.credits != -credits:
			raise OperationConflict(
				f"Operation ID '{operation_id}' already used for "
				f"a charge of {-existing.credits} credits.",
				user_id=user_id,
				operation_id=operation_id,
			)
		logger.warning(
			"Found duplicate transaction: ",
			extra=get_extra_data_log(existing)
		)
		return True, existing

	async def _append(
		self,
		user_id: str,
		amount: int,
		balance_after: int,
		actor_id: Optional[str],
		reason: Optional[str],
		transaction_type: TransactionType,
		reference: Optional[str],
		operation_id: Optional[str],
		info: Optional[dict],
	) -> Transaction:
		new_tx = Transaction(
			id=generate_transaction_id(),
			user_id=user_id,
			type=transaction_type,
			operation_id=operation_id or f"{transaction_type.value}:{uuid.uuid4().hex}",
			reference=reference,
			reason=reason,
			actor_id=actor_id,
			credits=amount,
			balance_before=balance_after - amount,
			balance_after=balance_after,
			info=info or {},
			created_at=datetime.now(timezone.utc),
		)
		self.session.add(new_tx)
		await self.session.flush()
		self._touched.add(user_id)

		logger.info(
			"Updated credits. Transaction:",
			extra=get_extra_data_log(new_tx)
		)
		return new_tx
