import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

from sqlalchemy import update

from app.core.errors import (
	AlreadyRefunded, InvalidOperation, VerificationFailed
)
from app.gateways.base import PaymentGateway
from app.gateways.events import (
	CorrelationPayload, PaymentEvent, SettlementStatus, resolve_correlation
)
from app.gateways.paypal import PayPalGateway
from app.models import (
	Payment, PaymentStatus, TransactionType, User, can_transition
)
from app.utils.common import (
	generate_payment_id, get_payment_or_404, purchase_operation_id,
	refund_operation_id
)
from app.utils.idempotency import claim_payment, find_payment_by_capture
from app.utils.logging import get_extra_data_log
from app.utils.service_ledger import CreditLedger

logger = logging.getLogger("[PAYMENTS]")


@dataclass
class GrantResult:
	success: bool
	payment: Optional[Payment] = None
	credits_added: int = 0
	balance: Optional[int] = None
	duplicate: bool = False
	provider_status: Optional[str] = None


def _system_actor(payment_or_event) -> str:
	return f"system:{payment_or_event.provider.value}"


async def refund_payment_record(
	ledger: CreditLedger,
	payment: Payment,
	actor_id: str,
	reason: str,
) -> Payment:
	"""
	completed -> refunded, plus the clawback of the granted credits.
	The status move is a conditional UPDATE, so two refunds racing for the
	same payment cannot both reverse credits.
	Credits already spent are not driven below zero: the part that could not be
	taken back is stored on the payment as refund_deficit.
	"""
	# a rollback expires every instance of the session, keep plain values
	payment_id = payment.id
	user_id = payment.user_id
	credits = payment.credits
	provider = payment.provider.value
	capture_id = payment.capture_id

	session = ledger.session
	refunded_id = await session.scalar(
		update(Payment)
		.where(Payment.id == payment_id)
		.where(Payment.status == PaymentStatus.COMPLETED)
		.values(
			status=PaymentStatus.REFUNDED,
			refunded_at=datetime.now(timezone.utc),
			refunded_by=actor_id,
			refund_reason=reason,
		)
		.returning(Payment.id)
		.execution_options(synchronize_session=False)
	)
	if refunded_id is None:
		await ledger.rollback()
		current = await get_payment_or_404(session, payment_id)
		if current.status == PaymentStatus.REFUNDED:
			raise AlreadyRefunded()
		raise InvalidOperation(
			f"Only completed payments can be refunded (status: {current.status.value})."
		)

	try:
		_, deficit = await ledger.reverse_credits(
			user_id,
			credits,
			actor_id=actor_id,
			reason=f"Refund: {reason}",
			reference=capture_id,
			operation_id=refund_operation_id(provider, capture_id),
			info={"payment_id": payment_id},
		)
		if deficit:
			await session.execute(
				update(Payment)
				.where(Payment.id == payment_id)
				.values(refund_deficit=deficit)
				.execution_options(synchronize_session=False)
			)
		await ledger.commit()
	except Exception:
		await ledger.rollback()
		raise

	refunded = await get_payment_or_404(session, payment_id)
	if deficit:
		logger.warning(
			f"Refund left a deficit of {deficit} credits (already spent).",
			extra={**get_extra_data_log(refunded), "deficit": deficit}
		)
	else:
		logger.info("Payment refunded. Payment:", extra=get_extra_data_log(refunded))
	return refunded


class ReconciliationService:
	"""
	Turns provider settlements into ledger mutations, at most once per
	(provider, capture id) for the grant and at most once for the refund,
	whichever channel (redirect capture or webhook) delivers first.
	"""

	def __init__(self, ledger: CreditLedger):
		self.ledger = ledger
		self.session = ledger.session

	async def capture(
		self, gateway: PayPalGateway, order_id: str, user: User
	) -> GrantResult:
		"""Redirect flow: capture right after the buyer approved the order."""
		event = await gateway.capture_order(order_id)
		if event.event_type != SettlementStatus.SUCCEEDED:
			logger.warning(
				f"Capture not completed ({event.provider_status}).",
				extra={"provider": event.provider.value, "order_id": order_id}
			)
			return GrantResult(success=False, provider_status=event.provider_status)

		correlation = resolve_correlation(event)
		if correlation.user_id != user.id:
			logger.warning(
				f"Order captured by '{user.id}' credits '{correlation.user_id}'.",
				extra={"provider": event.provider.value, "order_id": order_id}
			)
		return await self.grant(event, correlation, channel="capture")

	async def grant(
		self,
		event: PaymentEvent,
		correlation: CorrelationPayload,
		channel: str,
	) -> GrantResult:
		await self.ledger.ensure_account(correlation.user_id)

		payment = Payment(
			id=generate_payment_id(),
			user_id=correlation.user_id,
			provider=event.provider,
			order_id=event.order_id,
			capture_id=event.capture_id,
			pack_id=correlation.pack_id,
			amount=event.amount,
			currency=event.currency,
			credits=correlation.credits,
			status=PaymentStatus.COMPLETED,
			is_manual=False,
			info={"channel": channel},
			created_at=datetime.now(timezone.utc),
		)
		created, payment = await claim_payment(self.session, payment)
		if not created:
			logger.info(
				f"Settlement already applied, {channel} is a no-op.",
				extra=get_extra_data_log(payment)
			)
			return GrantResult(
				success=payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED),
				payment=payment,
				credits_added=payment.credits,
				balance=await self.ledger.get_balance(payment.user_id),
				duplicate=True,
			)

		try:
			tx = await self.ledger.adjust_credits(
				correlation.user_id,
				correlation.credits,
				actor_id=_system_actor(event),
				reason=f"Purchase of {correlation.pack_id} pack",
				transaction_type=TransactionType.PURCHASE,
				reference=event.capture_id,
				operation_id=purchase_operation_id(event.provider.value, event.capture_id),
				info={
					"payment_id": payment.id,
					"order_id": event.order_id,
					"pack_id": correlation.pack_id,
					"amount": str(event.amount),
					"currency": event.currency,
				},
			)
			await self.ledger.commit()
		except Exception:
			await self.ledger.rollback()
			logger.exception(
				"Grant failed, nothing applied.",
				extra={
					"provider": event.provider.value,
					"capture_id": event.capture_id,
					"order_id": event.order_id,
				}
			)
			raise

		logger.info(
			f"Added {correlation.credits} credits via {channel}. Payment:",
			extra=get_extra_data_log(payment)
		)
		return GrantResult(
			success=True,
			payment=payment,
			credits_added=correlation.credits,
			balance=tx.balance_after,
		)

	async def refund_by_capture(self, event: PaymentEvent) -> Optional[Payment]:
		payment = await find_payment_by_capture(
			self.session, event.provider, event.capture_id
		)
		if payment is None:
			logger.warning(
				"Refund for an unknown capture ignored.",
				extra={"provider": event.provider.value, "capture_id": event.capture_id}
			)
			return None
		if not can_transition(payment.status, PaymentStatus.REFUNDED):
			logger.info(
				f"Refund ignored, payment is {payment.status.value}.",
				extra=get_extra_data_log(payment)
			)
			return payment

		payment_id = payment.id
		try:
			return await refund_payment_record(
				self.ledger,
				payment,
				actor_id=_system_actor(event),
				reason=f"{event.provider.value} refund",
			)
		except AlreadyRefunded:
			# lost the race against another delivery or an admin refund
			return await get_payment_or_404(self.session, payment_id)

	async def handle_webhook(
		self,
		gateway: PaymentGateway,
		raw_payload: bytes,
		signature_material: Mapping[str, str],
	) -> str:
		"""
		Verifies, normalizes and dispatches one provider notification.
		Returns what happened: granted, duplicate, refunded, failed or ignored.
		"""
		provider = gateway.provider.value
		if not await gateway.verify_notification(raw_payload, signature_material):
			logger.warning(
				"Webhook verification failed.",
				extra={
					"provider": provider,
					"raw_event": raw_payload.decode("utf-8", errors="replace"),
				}
			)
			raise VerificationFailed(provider=provider)

		event = gateway.parse_notification(raw_payload)
		if event is None:
			logger.info(
				"Webhook event not handled.",
				extra={"provider": provider}
			)
			return "ignored"

		if event.event_type == SettlementStatus.SUCCEEDED:
			correlation = resolve_correlation(event)
			result = await self.grant(event, correlation, channel="webhook")
			return "duplicate" if result.duplicate else "granted"

		if event.event_type == SettlementStatus.REFUNDED:
			await self.refund_by_capture(event)
			return "refunded"

		logger.info(
			f"Payment denied/declined ({event.provider_status}).",
			extra={
				"provider": provider,
				"capture_id": event.capture_id,
				"order_id": event.order_id,
			}
		)
		return "failed"
