import json
from decimal import Decimal

import httpx
import pytest

from app.core.errors import GatewayUnavailable
from app.gateways.events import SettlementStatus
from app.gateways.paypal import PayPalGateway

STARTER_CUSTOM_ID = '{"userId":"user_42","packId":"starter","credits":100}'


def captured_order(order_id="ORDER-1", capture_id="cap_123", status="COMPLETED"):
	return {
		"id": order_id,
		"status": status,
		"purchase_units": [
			{
				"reference_id": "user_42_starter_1700000000000",
				"payments": {
					"captures": [
						{
							"id": capture_id,
							"status": status,
							"amount": {"currency_code": "USD", "value": "9.99"},
							"custom_id": STARTER_CUSTOM_ID,
						}
					]
				},
			}
		],
	}


@pytest.mark.asyncio
async def test_create_order_carries_correlation(gateways, provider_api):
	provider_api.add("POST", "/v2/checkout/orders", status_code=201, json={
		"id": "ORDER-1",
		"status": "CREATED",
		"links": [
			{"href": "https://paypal.test/checkoutnow?token=ORDER-1", "rel": "approve"},
		],
	})

	order = await gateways["paypal"].create_order("user_42", "starter")

	assert order.order_id == "ORDER-1"
	assert order.redirect_url == "https://paypal.test/checkoutnow?token=ORDER-1"

	request = provider_api.calls("POST", "/v2/checkout/orders")[0]
	assert request.headers["Authorization"] == "Bearer A21AA-token"
	unit = json.loads(request.content)["purchase_units"][0]
	assert json.loads(unit["custom_id"]) == {"userId": "user_42", "packId": "starter", "credits": 100}
	assert unit["reference_id"].startswith("user_42_starter_")
	assert unit["amount"] == {"currency_code": "USD", "value": "9.99"}


@pytest.mark.asyncio
async def test_access_token_is_cached(gateways, provider_api):
	provider_api.add("POST", "/v2/checkout/orders", status_code=201, json={"id": "ORDER-1"})

	await gateways["paypal"].create_order("user_42", "starter")
	await gateways["paypal"].create_order("user_42", "pro")

	assert len(provider_api.calls("POST", "/v1/oauth2/token")) == 1


@pytest.mark.asyncio
async def test_capture_completed(gateways, provider_api):
	provider_api.add("POST", "/v2/checkout/orders/ORDER-1/capture", status_code=201, json=captured_order())

	event = await gateways["paypal"].capture_order("ORDER-1")

	assert event.event_type == SettlementStatus.SUCCEEDED
	assert event.capture_id == "cap_123"
	assert event.amount == Decimal("9.99")
	assert event.custom.pack_id == "starter"

	request = provider_api.calls("POST", "/v2/checkout/orders/ORDER-1/capture")[0]
	assert request.headers["PayPal-Request-Id"] == "capture-ORDER-1"


@pytest.mark.asyncio
async def test_capture_already_captured_reads_order(gateways, provider_api):
	provider_api.add("POST", "/v2/checkout/orders/ORDER-1/capture", status_code=422, json={
		"name": "UNPROCESSABLE_ENTITY",
		"details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
	})
	provider_api.add("GET", "/v2/checkout/orders/ORDER-1", json=captured_order())

	event = await gateways["paypal"].capture_order("ORDER-1")

	assert event.event_type == SettlementStatus.SUCCEEDED
	assert event.capture_id == "cap_123"


@pytest.mark.asyncio
async def test_capture_declined(gateways, provider_api):
	provider_api.add("POST", "/v2/checkout/orders/ORDER-1/capture", status_code=422, json={
		"name": "UNPROCESSABLE_ENTITY",
		"details": [{"issue": "INSTRUMENT_DECLINED"}],
	})

	event = await gateways["paypal"].capture_order("ORDER-1")

	assert event.event_type == SettlementStatus.FAILED
	assert event.provider_status == "INSTRUMENT_DECLINED"


@pytest.mark.asyncio
async def test_capture_network_error_is_gateway_unavailable(provider_api):
	def broken(request):
		raise httpx.ConnectTimeout("timed out", request=request)

	async with httpx.AsyncClient(transport=httpx.MockTransport(broken)) as http:
		gateway = PayPalGateway(http, "id", "secret", "https://paypal.test", "WH-TEST-1")
		with pytest.raises(GatewayUnavailable):
			await gateway.capture_order("ORDER-1")


@pytest.mark.asyncio
async def test_verify_notification_posts_transport_headers(gateways, provider_api):
	provider_api.add(
		"POST", "/v1/notifications/verify-webhook-signature",
		json={"verification_status": "SUCCESS"},
	)
	headers = {
		"PAYPAL-AUTH-ALGO": "SHA256withRSA",
		"PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
		"PAYPAL-TRANSMISSION-ID": "tx-1",
		"PAYPAL-TRANSMISSION-SIG": "sig",
		"PAYPAL-TRANSMISSION-TIME": "2026-10-19T10:00:00Z",
	}

	ok = await gateways["paypal"].verify_notification(
		b'{"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"}', headers
	)

	assert ok
	body = json.loads(provider_api.calls("POST", "/v1/notifications/verify-webhook-signature")[0].content)
	assert body["webhook_id"] == "WH-TEST-1"
	assert body["transmission_id"] == "tx-1"
	assert body["auth_algo"] == "SHA256withRSA"
	assert body["webhook_event"]["id"] == "WH-EVT-1"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, answer", [
	(200, {"verification_status": "FAILURE"}),
	(500, {"name": "INTERNAL_SERVICE_ERROR"}),
])
async def test_verify_notification_fails_closed(gateways, provider_api, status_code, answer):
	provider_api.add(
		"POST", "/v1/notifications/verify-webhook-signature",
		status_code=status_code, json=answer,
	)
	assert not await gateways["paypal"].verify_notification(b'{"id": "WH-EVT-1"}', {})


@pytest.mark.asyncio
async def test_verify_notification_without_webhook_id(provider_api):
	async with httpx.AsyncClient(transport=httpx.MockTransport(provider_api)) as http:
		gateway = PayPalGateway(http, "id", "secret", "https://paypal.test", webhook_id="")
		assert not await gateway.verify_notification(b'{"id": "WH-EVT-1"}', {})
	assert provider_api.requests == []


@pytest.mark.asyncio
async def test_parse_refund_points_at_capture(gateways):
	event = gateways["paypal"].parse_notification(json.dumps({
		"id": "WH-EVT-2",
		"event_type": "PAYMENT.CAPTURE.REFUNDED",
		"resource": {
			"id": "ref_1",
			"status": "COMPLETED",
			"amount": {"currency_code": "USD", "value": "9.99"},
			"links": [
				{"href": "https://api.paypal.com/v2/payments/refunds/ref_1", "rel": "self"},
				{"href": "https://api.paypal.com/v2/payments/captures/cap_123", "rel": "up"},
			],
		},
	}).encode())

	assert event.event_type == SettlementStatus.REFUNDED
	assert event.capture_id == "cap_123"


@pytest.mark.asyncio
async def test_parse_ignores_other_events(gateways):
	raw = json.dumps({"id": "WH-EVT-3", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {}})
	assert gateways["paypal"].parse_notification(raw.encode()) is None
