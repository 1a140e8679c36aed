import asyncio
import json
import logging
import time
from decimal import Decimal
from typing import List, Mapping, Optional

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

# PayPal transport headers forwarded to the verification endpoint
SIGNATURE_HEADERS = {
	"auth_algo": "paypal-auth-algo",
	"cert_url": "paypal-cert-url",
	"transmission_id": "paypal-transmission-id",
	"transmission_sig": "paypal-transmission-sig",
	"transmission_time": "paypal-transmission-time",
}

# refresh the access token a bit before PayPal expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class PayPalLink(BaseModel):
	href: str
	rel: str


class PayPalMoney(BaseModel):
	value: Decimal = Decimal("0")
	currency_code: str = "USD"


class PayPalRelatedIds(BaseModel):
	order_id: Optional[str] = None


class PayPalSupplementaryData(BaseModel):
	related_ids: PayPalRelatedIds = Field(default_factory=PayPalRelatedIds)


class PayPalResource(BaseModel):
	"""Capture or refund resource; both share these fields."""
	id: str = Field(min_length=1)
	status: Optional[str] = None
	amount: Optional[PayPalMoney] = None
	custom_id: Optional[str] = None
	supplementary_data: Optional[PayPalSupplementaryData] = None
	links: List[PayPalLink] = Field(default_factory=list)

	def link(self, rel: str) -> Optional[str]:
		return next((l.href for l in self.links if l.rel == rel), None)


class PayPalWebhookEvent(BaseModel):
	id: str
	event_type: str
	resource: dict = Field(default_factory=dict)


class PayPalGateway(PaymentGateway):
	provider = PaymentProvider.PAYPAL
	currency = "USD"

	def __init__(
		self,
		http: httpx.AsyncClient,
		client_id: str,
		client_secret: str,
		base_url: str,
		webhook_id: str = "",
	):
		super().__init__(http)
		self.client_id = client_id
		self.client_secret = client_secret
		self.base_url = base_url.rstrip("/")
		self.webhook_id = webhook_id

		self._token: Optional[str] = None
		self._token_expires_at = 0.0
		self._token_lock = asyncio.Lock()

	async def _access_token(self) -> str:
		"""Client-credentials exchange, cached until shortly before expiry."""
		async with self._token_lock:
			if self._token and time.monotonic() < self._token_expires_at:
				return self._token

			response = await self._request(
				"POST",
				f"{self.base_url}/v1/oauth2/token",
				auth=(self.client_id, self.client_secret),
				data={"grant_type": "client_credentials"},
			)
			if response.status_code != 200:
				logger.error(
					f"PayPal token exchange failed: HTTP {response.status_code}",
					extra={"provider": self.provider.value}
				)
				raise GatewayUnavailable(
					"PayPal token exchange failed.", provider=self.provider.value
				)

			data = self._json(response)
			token = data.get("access_token")
			if not token:
				raise GatewayUnavailable(
					"PayPal returned no access token.", provider=self.provider.value
				)

			expires_in = int(data.get("expires_in") or 0)
			self._token = token
			self._token_expires_at = (
				time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
			)
			return token

	async def _auth_headers(self) -> dict:
		token = await self._access_token()
		return {
			"Authorization": f"Bearer {token}",
			"Content-Type": "application/json",
		}

	async def create_order(self, user_id: str, pack_id: str, **billing) -> CheckoutOrder:
		pack = get_pack(pack_id)
		correlation = CorrelationPayload(
			user_id=user_id, pack_id=pack.id, credits=pack.credits
		)
		body = {
			"intent": "CAPTURE",
			"purchase_units": [
				{
					"reference_id": build_reference(
						user_id, pack.id, int(time.time() * 1000)
					),
					"custom_id": correlation.to_custom_id(),
					"description": f"{pack.credits} AI Generation Credits",
					"amount": {
						"currency_code": self.currency,
						"value": f"{pack.price_usd:.2f}",
					},
				}
			],
		}

		response = await self._request(
			"POST",
			f"{self.base_url}/v2/checkout/orders",
			json=body,
			headers=await self._auth_headers(),
		)
		if response.status_code not in (200, 201):
			logger.error(
				f"PayPal order creation failed: HTTP {response.status_code} {response.text}",
				extra={"provider": self.provider.value, "user_id": user_id}
			)
			raise GatewayUnavailable(
				"PayPal order creation failed.", provider=self.provider.value
			)

		data = self._json(response)
		order_id = data.get("id")
		if not order_id:
			raise GatewayUnavailable(
				"PayPal returned no order id.", provider=self.provider.value
			)

		approve_url = next(
			(
				link.get("href") for link in data.get("links") or []
				if link.get("rel") in ("approve", "payer-action")
			),
			None,
		)
		return CheckoutOrder(
			provider=self.provider,
			order_id=order_id,
			pack=pack,
			redirect_url=approve_url,
		)

	async def capture_order(self, order_id: str) -> PaymentEvent:
		"""
		Captures an approved order and normalizes the outcome.
		An order that was already captured (e.g. a retried redirect) is read back
		instead, so the caller still gets the capture id to reconcile against.
		"""
		headers = await self._auth_headers()
		# PayPal de-duplicates captures carrying the same request id
		headers["PayPal-Request-Id"] = f"capture-{order_id}"

		response = await self._request(
			"POST",
			f"{self.base_url}/v2/checkout/orders/{order_id}/capture",
			headers=headers,
		)
		if response.status_code >= 500:
			raise GatewayUnavailable(
				f"PayPal capture failed: HTTP {response.status_code}.",
				provider=self.provider.value,
				order_id=order_id,
			)

		data = self._json(response)
		if response.status_code == 422 and _issue(data) == "ORDER_ALREADY_CAPTURED":
			response = await self._request(
				"GET",
				f"{self.base_url}/v2/checkout/orders/{order_id}",
				headers=await self._auth_headers(),
			)
			if response.status_code != 200:
				raise GatewayUnavailable(
					"PayPal order lookup failed.",
					provider=self.provider.value,
					order_id=order_id,
				)
			data = self._json(response)
		elif response.status_code >= 400:
			logger.warning(
				f"PayPal capture rejected: HTTP {response.status_code} {_issue(data)}",
				extra={"provider": self.provider.value, "order_id": order_id}
			)
			return PaymentEvent(
				provider=self.provider,
				event_type=SettlementStatus.FAILED,
				capture_id=order_id,
				order_id=order_id,
				provider_status=_issue(data) or str(response.status_code),
				raw=data,
			)

		return self._normalize_order(order_id, data)

	def _normalize_order(self, order_id: str, data: dict) -> PaymentEvent:
		units = data.get("purchase_units") or [{}]
		unit = units[0] if isinstance(units[0], dict) else {}
		captures = (unit.get("payments") or {}).get("captures") or []
		capture = captures[0] if captures and isinstance(captures[0], dict) else {}

		order_status = data.get("status")
		capture_status = capture.get("status")
		completed = order_status == "COMPLETED" and capture_status in (None, "COMPLETED")

		if completed and not capture.get("id"):
			raise UnresolvableOrder(
				"PayPal order has no capture id.",
				provider=self.provider.value,
				order_id=order_id,
			)

		amount = capture.get("amount") or {}
		return PaymentEvent(
			provider=self.provider,
			event_type=SettlementStatus.SUCCEEDED if completed else SettlementStatus.FAILED,
			capture_id=capture.get("id") or order_id,
			order_id=order_id,
			amount=Decimal(str(amount.get("value") or "0")),
			currency=amount.get("currency_code") or self.currency,
			custom=CorrelationPayload.from_mapping(
				capture.get("custom_id") or unit.get("custom_id")
			),
			reference=unit.get("reference_id"),
			provider_status=capture_status or order_status,
			raw=data,
		)

	async def verify_notification(
		self, raw_payload: bytes, signature_material: Mapping[str, str]
	) -> bool:
		if not self.webhook_id:
			logger.error(
				"PAYPAL_WEBHOOK_ID is not configured, rejecting webhook.",
				extra={"provider": self.provider.value}
			)
			return False

		headers = {k.lower(): v for k, v in signature_material.items()}
		try:
			webhook_event = json.loads(raw_payload)
		except ValueError:
			return False

		body = {field: headers.get(header) for field, header in SIGNATURE_HEADERS.items()}
		body["webhook_id"] = self.webhook_id
		body["webhook_event"] = webhook_event

		try:
			response = await self._request(
				"POST",
				f"{self.base_url}/v1/notifications/verify-webhook-signature",
				json=body,
				headers=await self._auth_headers(),
			)
		except GatewayUnavailable:
			return False

		if not response.is_success:
			logger.warning(
				f"PayPal verification request failed: HTTP {response.status_code}",
				extra={"provider": self.provider.value}
			)
			return False

		try:
			result = response.json()
		except ValueError:
			return False
		return isinstance(result, dict) and result.get("verification_status") == "SUCCESS"

	def parse_notification(self, raw_payload: bytes) -> Optional[PaymentEvent]:
		try:
			event = PayPalWebhookEvent.model_validate_json(raw_payload)
			if event.event_type not in (
				"PAYMENT.CAPTURE.COMPLETED",
				"PAYMENT.CAPTURE.REFUNDED",
				"PAYMENT.CAPTURE.DENIED",
				"PAYMENT.CAPTURE.DECLINED",
			):
				return None
			resource = PayPalResource.model_validate(event.resource)
		except ValidationError as e:
			raise UnresolvableOrder(
				f"Malformed PayPal event: {e.error_count()} error(s).",
				provider=self.provider.value,
			)

		raw = event.model_dump()
		amount = resource.amount or PayPalMoney()
		custom = CorrelationPayload.from_mapping(resource.custom_id)

		if event.event_type == "PAYMENT.CAPTURE.REFUNDED":
			# the resource is the refund; its "up" link points at the capture
			up = resource.link("up")
			capture_id = up.rstrip("/").split("/")[-1] if up else None
			if not capture_id:
				raise UnresolvableOrder(
					"PayPal refund does not reference a capture.",
					provider=self.provider.value,
				)
			return PaymentEvent(
				provider=self.provider,
				event_type=SettlementStatus.REFUNDED,
				capture_id=capture_id,
				amount=amount.value,
				currency=amount.currency_code,
				custom=custom,
				provider_status=resource.status,
				raw=raw,
			)

		related = (resource.supplementary_data or PayPalSupplementaryData()).related_ids
		if event.event_type == "PAYMENT.CAPTURE.COMPLETED":
			event_type = SettlementStatus.SUCCEEDED
		else:
			event_type = SettlementStatus.FAILED
		return PaymentEvent(
			provider=self.provider,
			event_type=event_type,
			capture_id=resource.id,
			order_id=related.order_id,
			amount=amount.value,
			currency=amount.currency_code,
			custom=custom,
			provider_status=resource.status,
			raw=raw,
		)


def _issue(data: dict) -> Optional[str]:
	details = data.get("details") or [{}]
	first = details[0] if isinstance(details[0], dict) else {}
	return first.get("issue")
