from dataclasses import dataclass
from decimal import Decimal
from typing import Dict

from app.core.errors import InvalidPack


@dataclass(frozen=True)
class CreditPack:
	id: str
	name: str
	credits: int
	price_usd: Decimal
	# Paymob charges in minor units (piasters)
	price_egp_cents: int
	description: str = ""


CREDIT_PACKS: Dict[str, CreditPack] = {
	"starter": CreditPack(
		id="starter",
		name="Starter Pack",
		credits=100,
		price_usd=Decimal("9.99"),
		price_egp_cents=50000,
		description="Perfect for trying out our AI tools",
	),
	"pro": CreditPack(
		id="pro",
		name="Pro Pack",
		credits=500,
		price_usd=Decimal("39.99"),
		price_egp_cents=200000,
		description="Best value for regular creators",
	),
	"enterprise": CreditPack(
		id="enterprise",
		name="Enterprise Pack",
		credits=1000,
		price_usd=Decimal("69.99"),
		price_egp_cents=350000,
		description="For power users and teams",
	),
}


def get_pack(pack_id: str) -> CreditPack:
	pack = CREDIT_PACKS.get(pack_id)
	if pack is None:
		raise InvalidPack(f"Invalid credit pack '{pack_id}'.")
	return pack
