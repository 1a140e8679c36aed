from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class CreditPackOut(BaseModel):
	id: str
	name: str
	credits: int
	price_usd: Decimal
	price_egp_cents: int
	description: str

	model_config = ConfigDict(from_attributes=True)

	@field_serializer("price_usd")
	def format_price(self, v: Decimal, _info):
		return float(round(v, 2))


class CreditPackList(BaseModel):
	packs: List[CreditPackOut]


class UserBalanceResponse(BaseModel):
	user_id: str
	balance: int


class CheckoutRequest(BaseModel):
	pack_id: str = Field(alias="packId", min_length=1)
	provider: Literal["paypal", "paymob"] = "paypal"
	user_email: Optional[str] = Field(default=None, alias="userEmail")
	user_phone: Optional[str] = Field(default=None, alias="userPhone")

	model_config = ConfigDict(populate_by_name=True)


class CheckoutResponse(BaseModel):
	success: bool = True
	provider: str
	order_id: str
	url: Optional[str] = None
	pack_id: str
	credits: int


class CaptureRequest(BaseModel):
	order_id: str = Field(alias="orderId", min_length=1)

	model_config = ConfigDict(populate_by_name=True)


class CaptureResponse(BaseModel):
	success: bool = True
	credits: int  # balance after the grant
	added: int
	duplicate: bool = False


class ChargeRequest(BaseModel):
	credits: int = Field(gt=0)
	operation_id: str = Field(alias="operationId", min_length=1, max_length=128)
	reason: Optional[str] = Field(default=None, max_length=255)

	model_config = ConfigDict(populate_by_name=True)


class ChargeResponse(BaseModel):
	success: bool = True
	transaction_id: str
	credits_charged: int
	balance_before: int
	balance_after: int
	operation_id: str
	duplicate: bool = False
