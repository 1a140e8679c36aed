import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, func, or_

from app.core.errors import InvalidOperation
from app.models import (
	AdminLog, AdminOperationType, Credits, Payment, PaymentProvider, PaymentStatus,
	Transaction, TransactionType, User, UserRole
)
from app.utils.common import (
	generate_payment_id, get_payment_or_404, get_user_or_404
)
from app.utils.identity import ensure_not_self
from app.utils.logging import generate_admin_log_id, get_extra_data_log
from app.utils.service_ledger import CreditLedger
from app.utils.service_reconciliation import refund_payment_record

logger = logging.getLogger("[ADMIN]")

# months of revenue shown in the payments overview
REVENUE_MONTHS = 6


def _last_months(now: datetime, count: int) -> List[str]:
	year, month = now.year, now.month
	months = []
	for _ in range(count):
		months.append(f"{year:04d}-{month:02d}")
		month -= 1
		if month == 0:
			year, month = year - 1, 12
	return list(reversed(months))


class AdminService:
	"""
	Back-office operations. Every mutation is written to admin_log
	and to the [ADMIN] channel.
	"""

	def __init__(self, ledger: CreditLedger, admin: User):
		self.ledger = ledger
		self.session = ledger.session
		self.admin = admin

	async def _log(
		self,
		operation_type: AdminOperationType,
		entity: str,
		entity_id: str,
		changes: dict,
		message: str,
	) -> AdminLog:
		new_admin_log = AdminLog(
			id=generate_admin_log_id(operation_type.value),
			operation_type=operation_type,
			admin_id=self.admin.id,
			entity=entity,
			entity_id=entity_id,
			changes=changes,
			created_at=datetime.now(timezone.utc),
		)
		self.session.add(new_admin_log)
		await self.session.flush()

		logger.info(message, extra=get_extra_data_log(new_admin_log))
		return new_admin_log

	async def get_user(self, user_id: str) -> Tuple[User, int, List[Transaction]]:
		user = await get_user_or_404(self.session, user_id)
		balance = await self.ledger.get_balance(user_id)
		_, transactions = await self.ledger.list_transactions(user_id, limit=50)
		return user, balance, transactions

	async def grant_or_deduct(
		self, user_id: str, amount: int, reason: str, direction: str
	) -> int:
		if amount <= 0:
			raise InvalidOperation("Invalid amount.")
		if direction not in ("add", "deduct"):
			raise InvalidOperation("Invalid type.")
		await get_user_or_404(self.session, user_id)

		signed = amount if direction == "add" else -amount
		try:
			tx = await self.ledger.adjust_credits(
				user_id,
				signed,
				actor_id=self.admin.id,
				reason=reason,
				transaction_type=TransactionType.ADJUSTMENT,
			)
			await self._log(
				AdminOperationType.ADJUST_CREDITS,
				entity="Credits",
				entity_id=user_id,
				changes={
					"amount": signed,
					"reason": reason,
					"balance_before": tx.balance_before,
					"balance_after": tx.balance_after,
					"transaction_id": tx.id,
				},
				message="Adjusted credits. AdminLog:",
			)
			await self.ledger.commit()
		except Exception:
			await self.ledger.rollback()
			raise
		return tx.balance_after

	async def manual_credit(self, user_id: str, credits: int, reason: str) -> Payment:
		"""Grant outside any provider, tracked as a manual payment of amount 0."""
		if credits <= 0:
			raise InvalidOperation("Invalid credits amount.")
		await get_user_or_404(self.session, user_id)

		capture_id = f"manual_{uuid.uuid4().hex}"
		payment = Payment(
			id=generate_payment_id(),
			user_id=user_id,
			provider=PaymentProvider.MANUAL,
			capture_id=capture_id,
			amount=Decimal("0"),
			currency="USD",
			credits=credits,
			status=PaymentStatus.COMPLETED,
			is_manual=True,
			notes=reason,
			info={"admin_id": self.admin.id},
			created_at=datetime.now(timezone.utc),
		)
		try:
			self.session.add(payment)
			await self.session.flush()
			tx = await self.ledger.adjust_credits(
				user_id,
				credits,
				actor_id=self.admin.id,
				reason=f"Manual credit: {reason}",
				transaction_type=TransactionType.ADJUSTMENT,
				reference=capture_id,
				info={"payment_id": payment.id},
			)
			await self._log(
				AdminOperationType.MANUAL_CREDIT,
				entity="Payment",
				entity_id=payment.id,
				changes={
					"user_id": user_id,
					"credits": credits,
					"reason": reason,
					"balance_after": tx.balance_after,
				},
				message="Added manual credits. AdminLog:",
			)
			await self.ledger.commit()
		except Exception:
			await self.ledger.rollback()
			raise
		return payment

	async def refund_payment(
		self, payment_id: str, reason: str, action: str = "refund"
	) -> Payment:
		if action != "refund":
			raise InvalidOperation("Invalid action.")
		payment = await get_payment_or_404(self.session, payment_id)
		# raises AlreadyRefunded / InvalidOperation for anything but completed
		refunded = await refund_payment_record(
			self.ledger, payment, actor_id=self.admin.id, reason=reason
		)
		await self._log(
			AdminOperationType.REFUND_PAYMENT,
			entity="Payment",
			entity_id=payment_id,
			changes={
				"user_id": refunded.user_id,
				"credits": refunded.credits,
				"deficit": refunded.refund_deficit,
				"reason": reason,
			},
			message="Refunded payment. AdminLog:",
		)
		await self.session.commit()
		return refunded

	async def change_role(self, user_id: str, role: str) -> User:
		try:
			role = UserRole(role)
		except ValueError:
			raise InvalidOperation("Invalid role.")
		if role == UserRole.USER:
			ensure_not_self(self.admin, user_id, "demote")
		user = await get_user_or_404(self.session, user_id)

		old_role = user.role
		user.role = role
		await self._log(
			AdminOperationType.CHANGE_ROLE,
			entity="User",
			entity_id=user_id,
			changes={"field": "role", "old": old_role.value, "new": role.value},
			message="Changed role. AdminLog:",
		)
		await self.session.commit()
		await self.session.refresh(user)
		return user

	async def set_suspension(
		self, user_id: str, action: str, reason: Optional[str] = None
	) -> User:
		ensure_not_self(self.admin, user_id, "suspend")
		if action not in ("suspend", "unsuspend"):
			raise InvalidOperation("Invalid action.")
		if action == "suspend" and not (reason and reason.strip()):
			raise InvalidOperation("Reason is required for suspension.")
		user = await get_user_or_404(self.session, user_id)

		if action == "suspend":
			user.suspended = True
			user.suspended_reason = reason
			user.suspended_at = datetime.now(timezone.utc)
			operation_type = AdminOperationType.SUSPEND_USER
		else:
			user.suspended = False
			user.suspended_reason = None
			user.suspended_at = None
			operation_type = AdminOperationType.UNSUSPEND_USER

		await self._log(
			operation_type,
			entity="User",
			entity_id=user_id,
			changes={"field": "suspended", "new": user.suspended, "reason": reason},
			message=f"{action.capitalize()}ed user. AdminLog:",
		)
		await self.session.commit()
		await self.session.refresh(user)
		return user

	async def list_users(
		self,
		page: int = 1,
		limit: int = 20,
		search: Optional[str] = None,
		role: Optional[UserRole] = None,
		suspended: Optional[bool] = None,
	) -> Tuple[int, List[Tuple[User, int]]]:
		"""Newest first, each user with its balance. Search matches email or name."""
		filters = []
		if search and search.strip():
			pattern = f"%{search.strip()}%"
			filters.append(or_(User.email.ilike(pattern), User.display_name.ilike(pattern)))
		if role is not None:
			filters.append(User.role == role)
		if suspended is not None:
			filters.append(User.suspended == suspended)

		total = await self.session.scalar(
			select(func.count()).select_from(User).where(*filters)
		)
		stmt = (
			select(User, Credits.balance)
			.outerjoin(Credits, Credits.user_id == User.id)
			.where(*filters)
			.order_by(User.created_at.desc(), User.id.desc())
			.limit(limit)
			.offset((page - 1) * limit)
		)
		rows = (await self.session.execute(stmt)).all()
		return total or 0, [(user, balance or 0) for user, balance in rows]

	async def stats(self) -> dict:
		total_users, suspended_users, admin_users = (
			await self.session.execute(
				select(
					func.count(User.id),
					func.count(User.id).filter(User.suspended.is_(True)),
					func.count(User.id).filter(User.role == UserRole.ADMIN),
				)
			)
		).one()

		rows = await self.session.execute(
			select(Payment.currency, func.sum(Payment.amount))
			.where(Payment.status == PaymentStatus.COMPLETED)
			.group_by(Payment.currency)
		)
		outstanding = await self.session.scalar(select(func.sum(Credits.balance)))
		return {
			"total_users": total_users,
			"active_users": total_users - suspended_users,
			"suspended_users": suspended_users,
			"admin_users": admin_users,
			"total_revenue": {
				currency: float(Decimal(str(amount or 0))) for currency, amount in rows.all()
			},
			"credits_outstanding": outstanding or 0,
		}

	async def list_payments(
		self,
		page: int = 1,
		limit: int = 20,
		status: Optional[PaymentStatus] = None,
		user_id: Optional[str] = None,
	) -> Tuple[int, List[Payment], dict]:
		"""
		Newest first. Analytics cover every payment of the selection
		regardless of the status filter.
		"""
		stmt = select(Payment)
		count_stmt = select(func.count()).select_from(Payment)
		if user_id:
			stmt = stmt.where(Payment.user_id == user_id)
			count_stmt = count_stmt.where(Payment.user_id == user_id)

		analytics = await self._payment_analytics(user_id)

		if status is not None:
			stmt = stmt.where(Payment.status == status)
			count_stmt = count_stmt.where(Payment.status == status)

		total = await self.session.scalar(count_stmt)
		stmt = (
			stmt.order_by(Payment.created_at.desc(), Payment.id.desc())
			.limit(limit)
			.offset((page - 1) * limit)
		)
		result = await self.session.execute(stmt)
		return total or 0, list(result.scalars().all()), analytics

	async def _payment_analytics(self, user_id: Optional[str]) -> dict:
		stmt = (
			select(Payment.status, func.count(Payment.id))
			.group_by(Payment.status)
		)
		if user_id:
			stmt = stmt.where(Payment.user_id == user_id)
		counts = {s: c for s, c in (await self.session.execute(stmt)).all()}

		# revenue is kept per currency, providers settle in USD and EGP
		stmt = select(Payment.amount, Payment.currency, Payment.credits, Payment.created_at).where(
			Payment.status == PaymentStatus.COMPLETED
		)
		if user_id:
			stmt = stmt.where(Payment.user_id == user_id)
		rows = (await self.session.execute(stmt)).all()

		months = _last_months(datetime.now(timezone.utc), REVENUE_MONTHS)
		total_revenue = defaultdict(Decimal)
		by_month = {m: defaultdict(Decimal) for m in months}
		total_credits = 0
		for amount, currency, credits, created_at in rows:
			total_revenue[currency] += amount or Decimal("0")
			total_credits += credits or 0
			if created_at is not None:
				key = f"{created_at.year:04d}-{created_at.month:02d}"
				if key in by_month:
					by_month[key][currency] += amount or Decimal("0")

		return {
			"total_revenue": {k: float(v) for k, v in total_revenue.items()},
			"total_credits": total_credits,
			"completed_count": counts.get(PaymentStatus.COMPLETED, 0),
			"refunded_count": counts.get(PaymentStatus.REFUNDED, 0),
			"pending_count": counts.get(PaymentStatus.PENDING, 0),
			"failed_count": counts.get(PaymentStatus.FAILED, 0),
			"revenue_by_month": [
				{"month": m, "revenue": {k: float(v) for k, v in by_month[m].items()}}
				for m in months
			],
		}
