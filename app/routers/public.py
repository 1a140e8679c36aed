import logging
from typing import Optional

from fastapi import APIRouter, status, Depends, Query

from app.core.dependencies import (
    get_current_user, get_ledger, get_paymob_gateway, get_paypal_gateway,
    get_reconciliation_service
)
from app.core.errors import (
    GatewayUnavailable, ServiceError, UnresolvableOrder, InvalidOperation
)
from app.gateways.catalog import CREDIT_PACKS
from app.gateways.paymob import PaymobGateway
from app.gateways.paypal import PayPalGateway
from app.models import TransactionType, User
from app.routers.responses import error_response, UNAUTHORIZED, SERVER_ERROR
from app.schemas.credits import (
    CreditPackList, UserBalanceResponse, CheckoutRequest, CheckoutResponse,
    CaptureRequest, CaptureResponse, ChargeRequest, ChargeResponse
)
from app.schemas.transactions import TransactionPublicPaginatedList
from app.utils.service_ledger import CreditLedger
from app.utils.service_reconciliation import ReconciliationService

logger = logging.getLogger("[PAYMENTS]")


# API для фронтенду (зовнішні користувачі)
public_router = APIRouter(prefix="/api", tags=["Public API"])


@public_router.get(
    "/credits/packs",
    summary="Доступні пакети кредитів",
    response_model=CreditPackList,
    status_code=status.HTTP_200_OK,
    responses={**SERVER_ERROR},
)
async def list_credit_packs():
    return CreditPackList(packs=list(CREDIT_PACKS.values()))


@public_router.get(
    "/credits/balance",
    summary="Баланс кредитів користувача",
    description="Headers: Authorization: Bearer {user_token}",
    response_model=UserBalanceResponse,
    status_code=status.HTTP_200_OK,
    responses={**UNAUTHORIZED, **SERVER_ERROR},
)
async def user_balance(
        user: User = Depends(get_current_user),
        ledger: CreditLedger = Depends(get_ledger)
):
    balance = await ledger.get_balance(user.id)
    return UserBalanceResponse(user_id=user.id, balance=balance)


@public_router.get(
    "/credits/transactions",
    summary="Історія транзакцій",
    description="Headers: Authorization: Bearer {user_token}",
    response_model=TransactionPublicPaginatedList,
    status_code=status.HTTP_200_OK,
    responses={**UNAUTHORIZED, **SERVER_ERROR},
)
async def list_user_transactions(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    type: Optional[TransactionType] = Query(None),
    user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger)
):
    total, transactions = await ledger.list_transactions(
        user.id, limit=limit, offset=offset, transaction_type=type
    )
    return TransactionPublicPaginatedList(
        total=total,
        limit=limit,
        offset=offset,
        transactions=transactions
    )


@public_router.post(
    "/create-checkout",
    summary="Створення замовлення у платіжного провайдера",
    description="Headers: Authorization: Bearer {user_token}",
    response_model=CheckoutResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: error_response("Bad request.", "Invalid credit pack.", "INVALID_PACK"),
        **UNAUTHORIZED,
        502: error_response(
            "Bad gateway.", "Failed to create payment session", "GATEWAY_UNAVAILABLE"
        ),
        **SERVER_ERROR,
    },
)
async def create_checkout(
        payload: CheckoutRequest,
        user: User = Depends(get_current_user),
        paypal: PayPalGateway = Depends(get_paypal_gateway),
        paymob: PaymobGateway = Depends(get_paymob_gateway)
):
    gateway = paypal if payload.provider == "paypal" else paymob
    try:
        order = await gateway.create_order(
            user.id,
            payload.pack_id,
            email=payload.user_email or user.email,
            phone=payload.user_phone,
        )
    except GatewayUnavailable as e:
        raise GatewayUnavailable("Failed to create payment session", **e.context) from e

    logger.info(
        f"Checkout created for '{user.id}'",
        extra={
            "provider": order.provider.value,
            "order_id": order.order_id,
            "pack_id": order.pack.id,
        }
    )
    return CheckoutResponse(
        provider=order.provider.value,
        order_id=order.order_id,
        url=order.redirect_url,
        pack_id=order.pack.id,
        credits=order.pack.credits,
    )


@public_router.post(
    "/capture-order",
    summary="Підтвердження оплати PayPal та нарахування кредитів",
    description="Headers: Authorization: Bearer {user_token}",
    response_model=CaptureResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: error_response("Bad request.", "Payment capture failed", "INVALID_OPERATION"),
        **UNAUTHORIZED,
        500: error_response("Internal Server Error.", "Failed to process payment"),
    },
)
async def capture_order(
        payload: CaptureRequest,
        user: User = Depends(get_current_user),
        paypal: PayPalGateway = Depends(get_paypal_gateway),
        service: ReconciliationService = Depends(get_reconciliation_service)
):
    try:
        result = await service.capture(paypal, payload.order_id, user)
    except UnresolvableOrder as e:
        logger.error(
            f"Capture unresolvable: {e.message}",
            extra={"provider": paypal.provider.value, "order_id": payload.order_id}
        )
        raise UnresolvableOrder() from e
    except Exception as e:
        logger.exception(
            f"Capture failed: {e!r}",
            extra={"provider": paypal.provider.value, "order_id": payload.order_id}
        )
        raise ServiceError("Failed to process payment") from e

    if not result.success:
        raise InvalidOperation("Payment capture failed")

    return CaptureResponse(
        credits=result.balance,
        added=result.credits_added,
        duplicate=result.duplicate,
    )


@public_router.post(
    "/credits/charge",
    summary="Списання кредитів: atomic операція",
    description="Headers: Authorization: Bearer {user_token}. "
                "Повторний запит з тим самим operationId повертає ту саму транзакцію.",
    response_model=ChargeResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: error_response(
            "Bad request.", "Insufficient credits: balance 5, required 10.",
            "INSUFFICIENT_CREDITS"
        ),
        **UNAUTHORIZED,
        409: error_response(
            "Conflict.", "Operation id already used for a different operation.",
            "OPERATION_CONFLICT"
        ),
        **SERVER_ERROR,
    },
)
async def charge_credits(
    payload: ChargeRequest,
    user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger)
):
    user_id = user.id
    is_duplicate, tx = await ledger.charge(
        user_id, payload.credits, payload.operation_id, reason=payload.reason
    )
    response = ChargeResponse(
        transaction_id=tx.id,
        credits_charged=-tx.credits,
        balance_before=tx.balance_before,
        balance_after=tx.balance_after,
        operation_id=payload.operation_id,
        duplicate=is_duplicate,
    )
    if not is_duplicate:
        await ledger.commit()
    return response
