from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.core.dependencies import build_gateways
from app.core.errors import (
    ServiceError, service_error_handler, unhandled_error_handler
)
from app.core.logging_config import setup_logging
from app.routers.admin import admin_router
from app.routers.public import public_router
from app.routers.webhooks import webhooks_router
from app.utils.http_client import create_http_client
from app.utils.redis_cache import BalanceCache, create_redis_client

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    http = create_http_client()
    redis_client = create_redis_client()

    app.state.http = http
    app.state.balance_cache = BalanceCache(redis_client)
    app.state.gateways = build_gateways(http)
    try:
        yield
    finally:
        await http.aclose()
        await redis_client.aclose()


app = FastAPI(
    title="FormaAI Credit Ledger",
    description="Сервіс кредитів: баланс, оплата через PayPal / Paymob, адміністрування",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_exception_handler(ServiceError, service_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(public_router)
app.include_router(webhooks_router)
app.include_router(admin_router)
