from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import OperationConflict
from app.models import Payment, PaymentProvider, Transaction, TransactionType


async def check_idempotency(
    session: AsyncSession,
    operation_id: str,
    expected_type: Optional[TransactionType] = None,
) -> Tuple[bool, Optional[Transaction]]:
    """
    Перевіряє, чи вже існує транзакція з таким operation_id
    Повертає:
        (is_duplicate: bool, existing_transaction: Transaction | None)
    Якщо expected_type передано і тип не збігається - OperationConflict (409)
    """
    result = await session.execute(
        select(Transaction)
        .where(Transaction.operation_id == operation_id)
        .execution_options(populate_existing=True)
    )
    tx: Transaction | None = result.scalar_one_or_none()

    if not tx:
        return False, None

    if expected_type is not None and tx.type != expected_type:
        raise OperationConflict(
            f"Operation ID '{operation_id}' already used "
            f"for different operation type: {tx.type.value}",
            operation_id=operation_id,
        )

    return True, tx


async def find_payment_by_capture(
    session: AsyncSession,
    provider: PaymentProvider,
    capture_id: str,
) -> Optional[Payment]:
    result = await session.execute(
        select(Payment)
        .where(Payment.provider == provider)
        .where(Payment.capture_id == capture_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def claim_payment(
    session: AsyncSession,
    payment: Payment,
) -> Tuple[bool, Payment]:
    """
    Atomic create-if-absent of a payment record, keyed on (provider, capture_id).
    Returns:
        (created: bool, payment: Payment)
    If created == False another request already settled this capture and the
    stored record is returned; the session has been rolled back.
    Must be the first write of the unit of work.
    """
    session.add(payment)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        existing = await find_payment_by_capture(
            session, payment.provider, payment.capture_id
        )
        if existing is None:
            # violation of some other constraint
            raise
        return False, existing

    return True, payment
