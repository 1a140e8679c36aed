from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_serializer

from app.models import PaymentProvider, PaymentStatus


class PaymentOut(BaseModel):
	id: str
	user_id: str
	provider: PaymentProvider
	order_id: Optional[str] = None
	capture_id: str
	pack_id: Optional[str] = None
	amount: Decimal
	currency: str
	credits: int
	status: PaymentStatus
	is_manual: bool
	notes: Optional[str] = None
	refund_reason: Optional[str] = None
	refunded_by: Optional[str] = None
	refund_deficit: int = 0
	refunded_at: Optional[datetime] = None
	created_at: Optional[datetime] = None

	model_config = ConfigDict(from_attributes=True, use_enum_values=True)

	@field_serializer("amount")
	def format_amount(self, v: Decimal, _info):
		return float(round(v, 2))  # 2 знаки після крапки


class MonthlyRevenue(BaseModel):
	month: str  # YYYY-MM
	revenue: Dict[str, float]


class PaymentAnalytics(BaseModel):
	total_revenue: Dict[str, float]
	total_credits: int
	completed_count: int
	refunded_count: int
	pending_count: int
	failed_count: int
	revenue_by_month: List[MonthlyRevenue]


class PaymentPaginatedList(BaseModel):
	payments: List[PaymentOut]
	total: int
	page: int
	total_pages: int
	analytics: PaymentAnalytics
