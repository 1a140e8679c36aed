from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models import UserRole
from app.schemas.payments import PaymentOut
from app.schemas.transactions import TransactionDetail


class UserOut(BaseModel):
	id: str
	email: Optional[str] = None
	display_name: Optional[str] = None
	role: UserRole
	suspended: bool
	suspended_reason: Optional[str] = None
	suspended_at: Optional[datetime] = None
	created_at: Optional[datetime] = None

	model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class UserListItem(UserOut):
	balance: int = 0


class UserPaginatedList(BaseModel):
	users: List[UserListItem]
	total: int
	page: int
	total_pages: int


class AdminStats(BaseModel):
	total_users: int
	active_users: int  # not suspended
	suspended_users: int
	admin_users: int
	total_revenue: Dict[str, float]  # per currency, completed payments
	credits_outstanding: int


class UserDetailResponse(BaseModel):
	user: UserOut
	balance: int
	transactions: List[TransactionDetail]


class UserResponse(BaseModel):
	user: UserOut


class CreditsAdjustRequest(BaseModel):
	amount: int = Field(..., gt=0)
	reason: str = Field(..., min_length=1)
	type: str  # add | deduct


class CreditsAdjustResponse(BaseModel):
	success: bool = True
	new_credits: int


class RoleUpdate(BaseModel):
	role: str  # user | admin, checked by the service


class SuspendRequest(BaseModel):
	action: str  # suspend | unsuspend
	reason: Optional[str] = None


class PaymentAction(BaseModel):
	action: str
	reason: str = Field(..., min_length=1)


class PaymentActionResponse(BaseModel):
	success: bool = True
	payment: PaymentOut


class ManualCreditRequest(BaseModel):
	user_id: str = Field(alias="userId", min_length=1)
	credits: int = Field(..., gt=0)
	reason: str = Field(..., min_length=1)

	model_config = ConfigDict(populate_by_name=True)


class ManualCreditResponse(BaseModel):
	success: bool = True
	payment: PaymentOut
