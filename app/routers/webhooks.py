from fastapi import APIRouter, status, Depends, Request
from fastapi.responses import RedirectResponse

from app.core.config import config
from app.core.dependencies import (
    get_paymob_gateway, get_paypal_gateway, get_reconciliation_service
)
from app.gateways.paymob import PaymobGateway
from app.gateways.paypal import PayPalGateway
from app.routers.responses import error_response, SERVER_ERROR
from app.utils.service_reconciliation import ReconciliationService


# Webhooks платіжних провайдерів (без user token, перевірка підпису)
webhooks_router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

INVALID_SIGNATURE = {
    400: error_response("Bad request.", "Invalid signature.", "VERIFICATION_FAILED"),
}


@webhooks_router.post(
    "/paypal",
    summary="PayPal webhook",
    description="Headers: paypal-transmission-id, paypal-transmission-sig, ...",
    response_model=dict,
    status_code=status.HTTP_200_OK,
    responses={**INVALID_SIGNATURE, **SERVER_ERROR},
)
async def paypal_webhook(
        request: Request,
        gateway: PayPalGateway = Depends(get_paypal_gateway),
        service: ReconciliationService = Depends(get_reconciliation_service)
):
    raw = await request.body()
    outcome = await service.handle_webhook(gateway, raw, dict(request.headers))
    return {"received": True, "status": outcome}


@webhooks_router.post(
    "/paymob",
    summary="Paymob transaction callback",
    description="Query: hmac",
    response_model=dict,
    status_code=status.HTTP_200_OK,
    responses={**INVALID_SIGNATURE, **SERVER_ERROR},
)
async def paymob_webhook(
        request: Request,
        gateway: PaymobGateway = Depends(get_paymob_gateway),
        service: ReconciliationService = Depends(get_reconciliation_service)
):
    raw = await request.body()
    outcome = await service.handle_webhook(gateway, raw, dict(request.query_params))
    return {"received": True, "status": outcome}


@webhooks_router.get(
    "/paymob",
    summary="Paymob redirect після оплати",
    status_code=status.HTTP_307_TEMPORARY_REDIRECT,
    response_class=RedirectResponse,
)
async def paymob_redirect(success: str = ""):
    # only the page changes here, credits come from the callback
    if success == "true":
        return RedirectResponse(f"{config.APP_URL}/dashboard?payment=success")
    return RedirectResponse(f"{config.APP_URL}/pricing?payment=failed")
