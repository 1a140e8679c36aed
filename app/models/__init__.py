from app.models.user import User, UserRole
from app.models.credits import Credits
from app.models.transaction import Transaction, TransactionType
from app.models.payment import (
	Payment, PaymentStatus, PaymentProvider, can_transition
)
from app.models.admin_log import AdminLog, AdminOperationType
