import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from typing import Mapping, Optional, Union

import httpx
from pydantic import BaseModel, Field, ValidationError

from app.core.errors import GatewayUnavailable, UnresolvableOrder
from app.gateways.base import CheckoutOrder, PaymentGateway
from app.gateways.catalog import get_pack
from app.gateways.events import (
	CorrelationPayload, PaymentEvent, SettlementStatus, build_reference
)
from app.models import PaymentProvider

logger = logging.getLogger("[PAYMENTS]")

# Paymob signs the concatenation of these fields, in exactly this order
HMAC_FIELDS = (
	"amount_cents",
	"created_at",
	"currency",
	"error_occured",
	"has_parent_transaction",
	"id",
	"integration_id",
	"is_3d_secure",
	"is_auth",
	"is_capture",
	"is_refunded",
	"is_standalone_payment",
	"is_voided",
	"order.id",
	"owner",
	"pending",
	"source_data.pan",
	"source_data.sub_type",
	"source_data.type",
	"success",
)

PAYMENT_METHODS = ["card", "kiosk", "wallet", "cash"]


def _hmac_value(obj: dict, path: str) -> str:
	value = obj
	for key in path.split("."):
		if isinstance(value, dict):
			value = value.get(key)
		elif key == "id" and isinstance(value, (int, str)):
			# "order" sometimes arrives as the bare order id
			continue
		else:
			value = None
	if value is None:
		return ""
	if isinstance(value, bool):
		return "true" if value else "false"
	if isinstance(value, float) and value.is_integer():
		return str(int(value))
	return str(value)


def hmac_message(obj: dict) -> str:
	return "".join(_hmac_value(obj, field) for field in HMAC_FIELDS)


def compute_hmac(obj: dict, secret: str) -> str:
	return hmac.new(
		secret.encode("utf-8"),
		hmac_message(obj).encode("utf-8"),
		hashlib.sha512,
	).hexdigest()


class PaymobOrder(BaseModel):
	id: int
	merchant_order_id: Optional[str] = None


class PaymobTransaction(BaseModel):
	id: int
	success: bool = False
	pending: bool = False
	is_refunded: bool = False
	is_voided: bool = False
	amount_cents: int = 0
	currency: str = ""
	order: Optional[Union[PaymobOrder, int]] = None
	payment_key_claims: Optional[dict] = None


class PaymobCallback(BaseModel):
	type: Optional[str] = None
	obj: dict = Field(default_factory=dict)


class PaymobGateway(PaymentGateway):
	provider = PaymentProvider.PAYMOB

	def __init__(
		self,
		http: httpx.AsyncClient,
		secret_key: str,
		public_key: str,
		hmac_secret: str,
		base_url: str,
		public_api_url: str,
		currency: str = "EGP",
	):
		super().__init__(http)
		self.secret_key = secret_key
		self.public_key = public_key
		self.hmac_secret = hmac_secret
		self.base_url = base_url.rstrip("/")
		self.public_api_url = public_api_url.rstrip("/")
		self.currency = currency

	async def create_order(self, user_id: str, pack_id: str, **billing) -> CheckoutOrder:
		pack = get_pack(pack_id)
		callback_url = f"{self.public_api_url}/api/webhooks/paymob"

		body = {
			"amount": pack.price_egp_cents,
			"currency": self.currency,
			"payment_methods": PAYMENT_METHODS,
			"items": [
				{
					"name": pack.name,
					"amount": pack.price_egp_cents,
					"description": f"{pack.credits} AI Generation Credits",
					"quantity": 1,
				}
			],
			"billing_data": {
				"email": billing.get("email") or "guest@formai.app",
				"phone_number": billing.get("phone") or "+201000000000",
				"first_name": "FormaAI",
				"last_name": "Customer",
				"country": "EGY",
				"city": "Cairo",
				"street": "N/A",
				"building": "N/A",
				"floor": "N/A",
				"apartment": "N/A",
			},
			"special_reference": build_reference(user_id, pack.id, int(time.time() * 1000)),
			"notification_url": callback_url,
			"redirection_url": callback_url,
			"extras": {
				"userId": user_id,
				"packId": pack.id,
				"credits": str(pack.credits),
			},
		}

		response = await self._request(
			"POST",
			f"{self.base_url}/v1/intention/",
			json=body,
			headers={
				"Authorization": f"Token {self.secret_key}",
				"Content-Type": "application/json",
			},
		)
		if not response.is_success:
			logger.error(
				f"Paymob intention failed: HTTP {response.status_code} {response.text}",
				extra={"provider": self.provider.value, "user_id": user_id}
			)
			raise GatewayUnavailable(
				"Paymob intention creation failed.", provider=self.provider.value
			)

		data = self._json(response)
		intention_id = data.get("id")
		if not intention_id:
			raise GatewayUnavailable(
				"Paymob returned no intention id.", provider=self.provider.value
			)

		redirect_url = (
			(data.get("next_action") or {}).get("url")
			or data.get("redirect_url")
			or data.get("url")
		)
		if not redirect_url and data.get("client_secret") and self.public_key:
			redirect_url = (
				f"{self.base_url}/unifiedcheckout/"
				f"?publicKey={self.public_key}&clientSecret={data['client_secret']}"
			)

		return CheckoutOrder(
			provider=self.provider,
			order_id=str(intention_id),
			pack=pack,
			redirect_url=redirect_url,
		)

	async def verify_notification(
		self, raw_payload: bytes, signature_material: Mapping[str, str]
	) -> bool:
		received = signature_material.get("hmac")
		if not received or not self.hmac_secret:
			return False
		try:
			body = json.loads(raw_payload)
		except ValueError:
			return False
		obj = body.get("obj") if isinstance(body, dict) else None
		if not isinstance(obj, dict):
			return False

		expected = compute_hmac(obj, self.hmac_secret)
		# compare_digest rejects non-ASCII str
		return hmac.compare_digest(
			expected.encode(), received.strip().lower().encode("utf-8", "replace")
		)

	def parse_notification(self, raw_payload: bytes) -> Optional[PaymentEvent]:
		try:
			callback = PaymobCallback.model_validate_json(raw_payload)
			if callback.type and callback.type != "TRANSACTION":
				return None
			tx = PaymobTransaction.model_validate(callback.obj)
		except ValidationError as e:
			raise UnresolvableOrder(
				f"Malformed Paymob callback: {e.error_count()} error(s).",
				provider=self.provider.value,
			)

		if tx.is_refunded or tx.is_voided:
			event_type = SettlementStatus.REFUNDED
		elif tx.pending:
			# not settled yet, a final callback follows
			return None
		elif tx.success:
			event_type = SettlementStatus.SUCCEEDED
		else:
			event_type = SettlementStatus.FAILED

		claims = tx.payment_key_claims or {}
		order = tx.order if isinstance(tx.order, PaymobOrder) else None
		order_id = str(order.id) if order else (str(tx.order) if tx.order is not None else None)
		return PaymentEvent(
			provider=self.provider,
			event_type=event_type,
			capture_id=str(tx.id),
			order_id=order_id,
			amount=Decimal(tx.amount_cents) / 100,
			currency=tx.currency or self.currency,
			custom=CorrelationPayload.from_mapping(claims.get("extra")),
			reference=order.merchant_order_id if order else None,
			provider_status="success" if tx.success else "failed",
			raw=callback.obj,
		)
