import math
from typing import Optional

from fastapi import APIRouter, Depends, status, Query

from app.core.dependencies import get_admin_service
from app.models import PaymentStatus, UserRole
from app.routers.responses import (
    error_response, UNAUTHORIZED, FORBIDDEN, SERVER_ERROR
)
from app.schemas.admin import (
    AdminStats, UserDetailResponse, UserListItem, UserOut, UserPaginatedList, UserResponse,
    CreditsAdjustRequest, CreditsAdjustResponse,
    RoleUpdate, SuspendRequest,
    PaymentAction, PaymentActionResponse,
    ManualCreditRequest, ManualCreditResponse
)
from app.schemas.payments import PaymentPaginatedList
from app.utils.service_admin import AdminService


# Admin API
admin_router = APIRouter(prefix="/api/admin", tags=["Admin API"])

USER_NOT_FOUND = {404: error_response("Not found.", "User not found.", "USER_NOT_FOUND")}
ADMIN_ONLY = {**UNAUTHORIZED, **FORBIDDEN}


@admin_router.get(
    "/users",
    summary="Список користувачів",
    description="Доступ лише для адміністратора. Headers: Authorization: Bearer {token}",
    response_model=UserPaginatedList,
    status_code=status.HTTP_200_OK,
    responses={**ADMIN_ONLY, **SERVER_ERROR},
)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    role: Optional[UserRole] = Query(None),
    suspended: Optional[bool] = Query(None),
    service: AdminService = Depends(get_admin_service)
):
    total, rows = await service.list_users(
        page=page, limit=limit, search=search, role=role, suspended=suspended
    )
    users = [
        UserListItem.model_validate(user).model_copy(update={"balance": balance})
        for user, balance in rows
    ]
    return UserPaginatedList(
        users=users,
        total=total,
        page=page,
        total_pages=math.ceil(total / limit)
    )


@admin_router.get(
    "/stats",
    summary="Статистика для dashboard",
    description="Доступ лише для адміністратора. Headers: Authorization: Bearer {token}",
    response_model=AdminStats,
    status_code=status.HTTP_200_OK,
    responses={**ADMIN_ONLY, **SERVER_ERROR},
)
async def admin_stats(service: AdminService = Depends(get_admin_service)):
    return AdminStats(**await service.stats())


@admin_router.get(
    "/users/{user_id}",
    summary="Користувач, баланс та останні транзакції",
    description="Доступ лише для адміністратора. Headers: Authorization: Bearer {token}",
    response_model=UserDetailResponse,
    status_code=status.HTTP_200_OK,
    responses={**ADMIN_ONLY, **USER_NOT_FOUND, **SERVER_ERROR},
)
async def get_user_detail(
        user_id: str,
        service: AdminService = Depends(get_admin_service)
):
    user, balance, transactions = await service.get_user(user_id)
    return UserDetailResponse(
        user=UserOut.model_validate(user),
        balance=balance,
        transactions=transactions
    )


@admin_router.post(
    "/users/{user_id}/credits",
    summary="Нарахування або списання кредитів",
    description="Доступ лише для адміністратора. Headers: Authorization: Bearer {token}",
    response_model=CreditsAdjustResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: error_response(
            "Bad request.",
            "Insufficient credits: balance 20, required 30.",
            "INSUFFICIENT_CREDITS"
        ),
        **ADMIN_ONLY,
        **USER_NOT_FOUND,
        **SERVER_ERROR,
    },
)
async def adjust_user_credits(
        user_id: str,
        payload: CreditsAdjustRequest,
        service: AdminService = Depends(get_admin_service)
):
    new_credits = await service.grant_or_deduct(
        user_id, payload.amount, payload.reason, payload.type
    )
    return CreditsAdjustResponse(new_credits=new_credits)


@admin_router.patch(
    "/users/{user_id}/role",
    summary="Зміна ролі користувача",
    description="Доступ лише для адміністратора. Headers: Authorization: Bearer {token}",
    response_model=UserResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: error_response("Bad request.", "Cannot demote yourself.", "INVALID_OPERATION"),
        **ADMIN_ONLY,
        **USER_NOT_FOUND,
        **SERVER_ERROR,
    },
)
async def change_user_role(
        user_id: str,
        payload: RoleUpdate,
        service: AdminService = Depends(get_admin_service)
):
    user = await service.change_role(user_id, payload.role)
    return UserResponse(user=UserOut.model_validate(user))


@admin_router.post(
    "/users/{user_id}/suspend",
    summary="Блокування / розблокування користувача",
    description="Доступ лише для адміністратора. Headers: Authorization: Bearer {token}",
    response_model=UserResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: error_response("Bad request.", "Cannot suspend yourself.", "INVALID_OPERATION"),
        **ADMIN_ONLY,
        **USER_NOT_FOUND,
        **SERVER_ERROR,
    },
)
async def suspend_user(
        user_id: str,
        payload: SuspendRequest,
        service: AdminService = Depends(get_admin_service)
):
    user = await service.set_suspension(user_id, payload.action, payload.reason)
    return UserResponse(user=UserOut.model_validate(user))


@admin_router.get(
    "/payments",
    summary="Платежі з аналітикою",
    description="Доступ лише для адміністратора. Headers: Authorization: Bearer {token}",
    response_model=PaymentPaginatedList,
    status_code=status.HTTP_200_OK,
    responses={**ADMIN_ONLY, **SERVER_ERROR},
)
async def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[PaymentStatus] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    service: AdminService = Depends(get_admin_service)
):
    total, payments, analytics = await service.list_payments(
        page=page, limit=limit, status=status, user_id=user_id
    )
    return PaymentPaginatedList(
        payments=payments,
        total=total,
        page=page,
        total_pages=math.ceil(total / limit),
        analytics=analytics
    )


@admin_router.patch(
    "/payments/{payment_id}",
    summary="Повернення платежу",
    description=(
        "Доступ лише для адміністратора. Headers: Authorization: Bearer {token}. "
        "Гроші повертаються у провайдера окремо."
    ),
    response_model=PaymentActionResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: error_response("Bad request.", "Payment already refunded.", "ALREADY_REFUNDED"),
        **ADMIN_ONLY,
        404: error_response("Not found.", "Payment not found.", "PAYMENT_NOT_FOUND"),
        **SERVER_ERROR,
    },
)
async def refund_payment(
        payment_id: str,
        payload: PaymentAction,
        service: AdminService = Depends(get_admin_service)
):
    payment = await service.refund_payment(
        payment_id, payload.reason, payload.action
    )
    return PaymentActionResponse(payment=payment)


@admin_router.post(
    "/payments/manual-credit",
    summary="Ручне нарахування кредитів",
    description="Доступ лише для адміністратора. Headers: Authorization: Bearer {token}",
    response_model=ManualCreditResponse,
    status_code=status.HTTP_200_OK,
    responses={**ADMIN_ONLY, **USER_NOT_FOUND, **SERVER_ERROR},
)
async def manual_credit(
        payload: ManualCreditRequest,
        service: AdminService = Depends(get_admin_service)
):
    payment = await service.manual_credit(payload.user_id, payload.credits, payload.reason)
    return ManualCreditResponse(payment=payment)
