import enum
import json
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.errors import UnresolvableOrder
from app.gateways.catalog import CREDIT_PACKS
from app.models import PaymentProvider


class SettlementStatus(enum.Enum):
	SUCCEEDED = "succeeded"
	FAILED = "failed"
	REFUNDED = "refunded"


class CorrelationPayload(BaseModel):
	"""Routing data a provider hands back untouched on settlement."""
	user_id: str = Field(alias="userId", min_length=1)
	pack_id: str = Field(alias="packId", min_length=1)
	credits: int = Field(gt=0)

	model_config = ConfigDict(populate_by_name=True)

	def to_custom_id(self) -> str:
		return json.dumps(
			self.model_dump(by_alias=True), separators=(",", ":")
		)

	@classmethod
	def from_mapping(cls, data) -> Optional["CorrelationPayload"]:
		"""None when the data is missing or malformed."""
		if isinstance(data, (str, bytes)):
			try:
				data = json.loads(data)
			except ValueError:
				return None
		if not isinstance(data, dict):
			return None
		try:
			return cls.model_validate(data)
		except ValidationError:
			return None


class PaymentEvent(BaseModel):
	"""Provider notification normalized for reconciliation. Never persisted."""
	provider: PaymentProvider
	event_type: SettlementStatus
	capture_id: str = Field(min_length=1)
	order_id: Optional[str] = None
	amount: Decimal = Decimal("0")
	currency: str = ""
	custom: Optional[CorrelationPayload] = None
	reference: Optional[str] = None
	provider_status: Optional[str] = None
	raw: dict = Field(default_factory=dict)


def build_reference(user_id: str, pack_id: str, timestamp_ms: int) -> str:
	return f"{user_id}_{pack_id}_{timestamp_ms}"


def parse_reference(reference: Optional[str]) -> tuple[Optional[str], Optional[str]]:
	"""
	Splits `userId_packId_timestamp` (timestamp optional).
	User ids may contain underscores, so the string is split from the right.
	"""
	if not reference or "_" not in reference:
		return None, None
	parts = reference.rsplit("_", 2)
	if len(parts) == 3 and parts[2].isdigit():
		user_id, pack_id = parts[0], parts[1]
	else:
		user_id, pack_id = reference.rsplit("_", 1)
	return user_id or None, pack_id or None


def resolve_correlation(event: PaymentEvent) -> CorrelationPayload:
	"""
	Structured payload first, reference string second.
	Raises UnresolvableOrder instead of guessing.
	"""
	if event.custom is not None:
		pack = CREDIT_PACKS.get(event.custom.pack_id)
		if pack is None or pack.credits != event.custom.credits:
			raise UnresolvableOrder(
				"Order payload does not match the credit pack catalog.",
				provider=event.provider.value,
				capture_id=event.capture_id,
			)
		return event.custom

	user_id, pack_id = parse_reference(event.reference)
	pack = CREDIT_PACKS.get(pack_id) if pack_id else None
	if not user_id or pack is None:
		raise UnresolvableOrder(
			"Could not resolve user and pack from order.",
			provider=event.provider.value,
			capture_id=event.capture_id,
		)
	return CorrelationPayload(user_id=user_id, pack_id=pack.id, credits=pack.credits)
