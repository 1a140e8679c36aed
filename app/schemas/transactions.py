from datetime import datetime
from typing import List, Optional

from pydantic import (
	BaseModel, Field, ConfigDict, computed_field
)

from app.models import TransactionType


class TransactionDetail(BaseModel):
	id: str
	type: TransactionType
	created_at: datetime = Field(exclude=True)
	credits: int
	balance_before: int
	balance_after: int
	reason: Optional[str] = None
	reference: Optional[str] = None
	actor_id: Optional[str] = None
	operation_id: str

	@computed_field
	@property
	def date(self) -> datetime:
		return self.created_at

	model_config = ConfigDict(
		from_attributes=True,
		use_enum_values=True
	)


class TransactionPublicPaginatedList(BaseModel):
	total: int
	limit: int
	offset: int
	transactions: List[TransactionDetail]
