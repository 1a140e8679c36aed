import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional

import httpx

from app.core.errors import GatewayUnavailable
from app.gateways.catalog import CreditPack
from app.gateways.events import PaymentEvent
from app.models import PaymentProvider

logger = logging.getLogger("[PAYMENTS]")


@dataclass
class CheckoutOrder:
	provider: PaymentProvider
	order_id: str
	pack: CreditPack
	redirect_url: Optional[str] = None


class PaymentGateway(ABC):
	"""
	Provider adapter: order creation, notification authenticity and
	normalization into PaymentEvent. Adapters never touch the ledger.
	"""
	provider: PaymentProvider

	def __init__(self, http: httpx.AsyncClient):
		self.http = http

	@abstractmethod
	async def create_order(self, user_id: str, pack_id: str, **billing) -> CheckoutOrder:
		...

	@abstractmethod
	async def verify_notification(
		self, raw_payload: bytes, signature_material: Mapping[str, str]
	) -> bool:
		"""Never raises: anything but a positive confirmation is False."""

	@abstractmethod
	def parse_notification(self, raw_payload: bytes) -> Optional[PaymentEvent]:
		"""None for notification types reconciliation does not act on."""

	async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
		try:
			return await self.http.request(method, url, **kwargs)
		except httpx.HTTPError as e:
			logger.error(
				f"{self.provider.value} request {method} {url} failed: {e!r}",
				extra={"provider": self.provider.value}
			)
			raise GatewayUnavailable(
				f"{self.provider.value} is unavailable.",
				provider=self.provider.value,
			) from e

	def _json(self, response: httpx.Response) -> dict:
		try:
			data = response.json()
		except ValueError:
			raise GatewayUnavailable(
				f"{self.provider.value} did not return JSON.",
				provider=self.provider.value,
			)
		return data if isinstance(data, dict) else {}
