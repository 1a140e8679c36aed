from typing import Optional

import httpx
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import config
from app.core.database import async_session
from app.gateways.paymob import PaymobGateway
from app.gateways.paypal import PayPalGateway
from app.models import User
from app.utils.identity import require_admin, resolve_identity
from app.utils.redis_cache import BalanceCache
from app.utils.service_admin import AdminService
from app.utils.service_ledger import CreditLedger
from app.utils.service_reconciliation import ReconciliationService


# Dependency для отримання сесії
async def get_session() -> AsyncSession:
    async with async_session() as session:
        yield session


def build_gateways(http: httpx.AsyncClient) -> dict:
    return {
        "paypal": PayPalGateway(
            http,
            client_id=config.PAYPAL_CLIENT_ID,
            client_secret=config.PAYPAL_CLIENT_SECRET,
            base_url=config.PAYPAL_BASE_URL,
            webhook_id=config.PAYPAL_WEBHOOK_ID,
        ),
        "paymob": PaymobGateway(
            http,
            secret_key=config.PAYMOB_SECRET_KEY,
            public_key=config.PAYMOB_PUBLIC_KEY,
            hmac_secret=config.PAYMOB_HMAC_SECRET,
            base_url=config.PAYMOB_BASE_URL,
            public_api_url=config.PUBLIC_API_URL,
            currency=config.PAYMOB_CURRENCY,
        ),
    }


# shared clients live on app.state, built in the lifespan
def get_balance_cache(request: Request) -> Optional[BalanceCache]:
    return getattr(request.app.state, "balance_cache", None)


def get_paypal_gateway(request: Request) -> PayPalGateway:
    return request.app.state.gateways["paypal"]


def get_paymob_gateway(request: Request) -> PaymobGateway:
    return request.app.state.gateways["paymob"]


def get_ledger(
    session: AsyncSession = Depends(get_session),
    cache: Optional[BalanceCache] = Depends(get_balance_cache),
) -> CreditLedger:
    return CreditLedger(session, cache)


def get_reconciliation_service(
    ledger: CreditLedger = Depends(get_ledger),
) -> ReconciliationService:
    return ReconciliationService(ledger)


security = HTTPBearer(auto_error=False)

# Dependency: перевірка user токену
async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    ledger: CreditLedger = Depends(get_ledger),
) -> User:
    token = credentials.credentials if credentials else None
    return await resolve_identity(token, ledger)


# Dependency: перевірка ролі адміністратора
async def get_admin_user(user: User = Depends(get_current_user)) -> User:
    return require_admin(user)


def get_admin_service(
    admin: User = Depends(get_admin_user),
    ledger: CreditLedger = Depends(get_ledger),
) -> AdminService:
    return AdminService(ledger, admin)
