import asyncio
import json

import pytest
from sqlalchemy import select, func

from app.core.errors import AlreadyRefunded, UnresolvableOrder
from app.gateways.events import (
	CorrelationPayload, PaymentEvent, SettlementStatus, parse_reference,
	resolve_correlation
)
from app.gateways.paymob import compute_hmac
from app.models import (
	Payment, PaymentProvider, PaymentStatus, Transaction, TransactionType
)
from app.utils import service_reconciliation
from app.utils.service_ledger import CreditLedger
from app.utils.service_reconciliation import ReconciliationService, refund_payment_record
from tests.conftest import auth_headers
from tests.test_paypal import STARTER_CUSTOM_ID, captured_order


def paypal_completed_event(capture_id="cap_123", order_id="ORDER-1") -> bytes:
	return json.dumps({
		"id": f"WH-{capture_id}",
		"event_type": "PAYMENT.CAPTURE.COMPLETED",
		"resource": {
			"id": capture_id,
			"status": "COMPLETED",
			"amount": {"currency_code": "USD", "value": "9.99"},
			"custom_id": STARTER_CUSTOM_ID,
			"supplementary_data": {"related_ids": {"order_id": order_id}},
		},
	}).encode()


def paypal_refunded_event(capture_id="cap_123") -> bytes:
	return json.dumps({
		"id": f"WH-refund-{capture_id}",
		"event_type": "PAYMENT.CAPTURE.REFUNDED",
		"resource": {
			"id": f"ref_{capture_id}",
			"status": "COMPLETED",
			"amount": {"currency_code": "USD", "value": "9.99"},
			"links": [
				{"href": f"https://api.paypal.com/v2/payments/captures/{capture_id}", "rel": "up"},
			],
		},
	}).encode()


async def purchases(session_factory, user_id="user_42"):
	async with session_factory() as session:
		result = await session.execute(
			select(Transaction)
			.where(Transaction.user_id == user_id)
			.where(Transaction.type == TransactionType.PURCHASE)
		)
		return list(result.scalars().all())


async def payment_by_capture(session_factory, capture_id):
	async with session_factory() as session:
		return await session.scalar(select(Payment).where(Payment.capture_id == capture_id))


@pytest.fixture
def paypal_verifies(provider_api):
	provider_api.add(
		"POST", "/v1/notifications/verify-webhook-signature",
		json={"verification_status": "SUCCESS"},
	)


@pytest.mark.asyncio
async def test_starter_purchase_then_replayed_webhook(
		async_client, provider_api, session_factory, paypal_verifies
):
	provider_api.add("POST", "/v2/checkout/orders/ORDER-1/capture", status_code=201, json=captured_order())

	resp = await async_client.post(
		"/api/capture-order", json={"orderId": "ORDER-1"}, headers=auth_headers("user_42")
	)
	assert resp.status_code == 200
	assert resp.json() == {"success": True, "credits": 100, "added": 100, "duplicate": False}

	# the same capture delivered by webhook, twice
	for _ in range(2):
		resp = await async_client.post("/api/webhooks/paypal", content=paypal_completed_event())
		assert resp.status_code == 200
		assert resp.json() == {"received": True, "status": "duplicate"}

	balance = await async_client.get("/api/credits/balance", headers=auth_headers("user_42"))
	assert balance.json()["balance"] == 100

	txs = await purchases(session_factory)
	assert len(txs) == 1
	assert txs[0].reference == "cap_123"
	assert txs[0].operation_id == "purchase:paypal:cap_123"

	payment = await payment_by_capture(session_factory, "cap_123")
	assert payment.status == PaymentStatus.COMPLETED
	assert payment.credits == 100
	assert payment.order_id == "ORDER-1"


@pytest.mark.asyncio
async def test_webhook_first_then_capture(
		async_client, provider_api, session_factory, paypal_verifies
):
	resp = await async_client.post("/api/webhooks/paypal", content=paypal_completed_event())
	assert resp.json()["status"] == "granted"

	provider_api.add("POST", "/v2/checkout/orders/ORDER-1/capture", status_code=422, json={
		"details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
	})
	provider_api.add("GET", "/v2/checkout/orders/ORDER-1", json=captured_order())

	resp = await async_client.post(
		"/api/capture-order", json={"orderId": "ORDER-1"}, headers=auth_headers("user_42")
	)
	assert resp.status_code == 200
	assert resp.json()["duplicate"] is True
	assert resp.json()["credits"] == 100

	assert len(await purchases(session_factory)) == 1


@pytest.mark.asyncio
async def test_second_channel_loses_on_unique_capture(session_factory, cache):
	event = PaymentEvent(
		provider=PaymentProvider.PAYPAL,
		event_type=SettlementStatus.SUCCEEDED,
		capture_id="cap_race",
		order_id="ORDER-9",
		currency="USD",
		custom=CorrelationPayload(user_id="user_42", pack_id="starter", credits=100),
	)
	correlation = resolve_correlation(event)

	# both channels hold their own session, the second one commits last
	async with session_factory() as first, session_factory() as second:
		redirect = ReconciliationService(CreditLedger(first, cache))
		webhook = ReconciliationService(CreditLedger(second, cache))

		granted = await redirect.grant(event, correlation, channel="capture")
		replayed = await webhook.grant(event, correlation, channel="webhook")

	assert granted.duplicate is False
	assert replayed.duplicate is True
	assert replayed.payment.id == granted.payment.id
	assert replayed.balance == 100
	assert len(await purchases(session_factory)) == 1


@pytest.mark.asyncio
async def test_capture_not_completed_grants_nothing(async_client, provider_api, session_factory):
	provider_api.add("POST", "/v2/checkout/orders/ORDER-1/capture", status_code=422, json={
		"details": [{"issue": "INSTRUMENT_DECLINED"}],
	})

	resp = await async_client.post(
		"/api/capture-order", json={"orderId": "ORDER-1"}, headers=auth_headers("user_42")
	)
	assert resp.status_code == 400
	assert resp.json()["detail"] == "Payment capture failed"
	assert await purchases(session_factory) == []


@pytest.mark.asyncio
async def test_capture_provider_outage_is_generic(async_client, provider_api):
	provider_api.add("POST", "/v2/checkout/orders/ORDER-1/capture", status_code=503, json={})

	resp = await async_client.post(
		"/api/capture-order", json={"orderId": "ORDER-1"}, headers=auth_headers("user_42")
	)
	assert resp.status_code == 500
	assert resp.json()["detail"] == "Failed to process payment"


@pytest.mark.asyncio
async def test_paypal_webhook_bad_signature(async_client, provider_api, session_factory):
	provider_api.add(
		"POST", "/v1/notifications/verify-webhook-signature",
		json={"verification_status": "FAILURE"},
	)

	resp = await async_client.post("/api/webhooks/paypal", content=paypal_completed_event())
	assert resp.status_code == 400
	assert resp.json()["code"] == "VERIFICATION_FAILED"
	assert await payment_by_capture(session_factory, "cap_123") is None


@pytest.mark.asyncio
async def test_refund_webhook_claws_back_once(
		async_client, session_factory, paypal_verifies
):
	await async_client.post("/api/webhooks/paypal", content=paypal_completed_event())

	for expected in ("refunded", "refunded"):
		resp = await async_client.post("/api/webhooks/paypal", content=paypal_refunded_event())
		assert resp.json()["status"] == expected

	payment = await payment_by_capture(session_factory, "cap_123")
	assert payment.status == PaymentStatus.REFUNDED
	assert payment.refunded_by == "system:paypal"

	async with session_factory() as session:
		reversals = await session.scalar(
			select(func.count()).select_from(Transaction)
			.where(Transaction.type == TransactionType.REFUND_REVERSAL)
		)
	assert reversals == 1

	balance = await async_client.get("/api/credits/balance", headers=auth_headers("user_42"))
	assert balance.json()["balance"] == 0


@pytest.mark.asyncio
async def test_refund_for_unknown_capture_is_noop(async_client, session_factory, paypal_verifies):
	resp = await async_client.post("/api/webhooks/paypal", content=paypal_refunded_event("cap_nope"))
	assert resp.status_code == 200
	assert await payment_by_capture(session_factory, "cap_nope") is None


@pytest.mark.asyncio
async def test_paymob_callback_grants_by_hmac(async_client, session_factory):
	obj = {
		"id": 192036465,
		"pending": False,
		"success": True,
		"amount_cents": 200000,
		"currency": "EGP",
		"order": {"id": 217503754, "merchant_order_id": "user_7_pro_1700000000000"},
		"payment_key_claims": {"extra": {"userId": "user_7", "packId": "pro", "credits": "500"}},
	}
	body = json.dumps({"type": "TRANSACTION", "obj": obj})
	hmac_value = compute_hmac(obj, "paymob-test-hmac-secret")

	resp = await async_client.post(
		f"/api/webhooks/paymob?hmac={hmac_value}", content=body
	)
	assert resp.status_code == 200
	assert resp.json()["status"] == "granted"

	payment = await payment_by_capture(session_factory, "192036465")
	assert payment.provider == PaymentProvider.PAYMOB
	assert payment.credits == 500
	assert payment.currency == "EGP"

	resp = await async_client.post("/api/webhooks/paymob?hmac=deadbeef", content=body)
	assert resp.status_code == 400

	resp = await async_client.post("/api/webhooks/paymob?hmac=%C3%A9", content=body)
	assert resp.status_code == 400
	assert resp.json()["code"] == "VERIFICATION_FAILED"


@pytest.mark.asyncio
async def test_paymob_redirect(async_client):
	resp = await async_client.get("/api/webhooks/paymob?success=true")
	assert resp.status_code == 307
	assert resp.headers["location"].endswith("/dashboard?payment=success")

	resp = await async_client.get("/api/webhooks/paymob?success=false")
	assert resp.headers["location"].endswith("/pricing?payment=failed")


def test_parse_reference_with_underscored_user_id():
	assert parse_reference("user_42_starter_1700000000000") == ("user_42", "starter")
	assert parse_reference("abc_pro") == ("abc", "pro")
	assert parse_reference("") == (None, None)


def test_resolve_correlation_rejects_catalog_mismatch():
	event = PaymentEvent(
		provider=PaymentProvider.PAYPAL,
		event_type=SettlementStatus.SUCCEEDED,
		capture_id="cap_1",
		custom=CorrelationPayload(user_id="user_42", pack_id="starter", credits=1000),
	)
	with pytest.raises(UnresolvableOrder):
		resolve_correlation(event)


def test_resolve_correlation_falls_back_to_reference():
	event = PaymentEvent(
		provider=PaymentProvider.PAYMOB,
		event_type=SettlementStatus.SUCCEEDED,
		capture_id="1",
		reference="user_42_enterprise_1700000000000",
	)
	correlation = resolve_correlation(event)
	assert correlation.user_id == "user_42"
	assert correlation.credits == 1000

	event.reference = "user_42_platinum_1700000000000"
	with pytest.raises(UnresolvableOrder):
		resolve_correlation(event)


def starter_event(capture_id, event_type=SettlementStatus.SUCCEEDED) -> PaymentEvent:
	return PaymentEvent(
		provider=PaymentProvider.PAYPAL,
		event_type=event_type,
		capture_id=capture_id,
		order_id="ORDER-9",
		currency="USD",
		custom=CorrelationPayload(user_id="user_42", pack_id="starter", credits=100),
	)


@pytest.mark.asyncio
async def test_channels_racing_concurrently_grant_once(
		session_factory, cache, make_user, monkeypatch
):
	await make_user("user_42")
	event = starter_event("cap_concurrent")
	correlation = resolve_correlation(event)

	# both channels pass account setup before either claims the capture
	real_claim = service_reconciliation.claim_payment
	arrived = []
	both_ready = asyncio.Event()

	async def claim_together(session, payment):
		arrived.append(payment.info["channel"])
		if len(arrived) == 2:
			both_ready.set()
		await both_ready.wait()
		return await real_claim(session, payment)

	monkeypatch.setattr(service_reconciliation, "claim_payment", claim_together)

	async with session_factory() as first, session_factory() as second:
		results = await asyncio.gather(
			ReconciliationService(CreditLedger(first, cache)).grant(
				event, correlation, channel="capture"
			),
			ReconciliationService(CreditLedger(second, cache)).grant(
				event, correlation, channel="webhook"
			),
		)

	assert sorted(arrived) == ["capture", "webhook"]
	assert sorted(r.duplicate for r in results) == [False, True]
	assert results[0].payment.id == results[1].payment.id
	assert [r.balance for r in results] == [100, 100]
	assert len(await purchases(session_factory)) == 1


@pytest.mark.asyncio
async def test_refund_with_outdated_payment_row(session_factory, cache):
	async with session_factory() as session:
		await ReconciliationService(CreditLedger(session, cache)).grant(
			starter_event("cap_stale"), resolve_correlation(starter_event("cap_stale")),
			channel="webhook",
		)

	async with session_factory() as stale_session, session_factory() as admin_session:
		stale = await stale_session.scalar(
			select(Payment).where(Payment.capture_id == "cap_stale")
		)
		current = await admin_session.get(Payment, stale.id)
		await refund_payment_record(
			CreditLedger(admin_session, cache), current, actor_id="admin_1", reason="fraud"
		)

		# the stale row still reads completed
		assert stale.status == PaymentStatus.COMPLETED
		with pytest.raises(AlreadyRefunded):
			await refund_payment_record(
				CreditLedger(stale_session, cache), stale, actor_id="system:paypal",
				reason="paypal refund",
			)

	async with session_factory() as session:
		reversals = await session.scalar(
			select(func.count()).select_from(Transaction)
			.where(Transaction.type == TransactionType.REFUND_REVERSAL)
		)
	assert reversals == 1


@pytest.mark.asyncio
async def test_refund_webhook_loses_race_to_admin_refund(session_factory, cache, monkeypatch):
	async with session_factory() as session:
		await ReconciliationService(CreditLedger(session, cache)).grant(
			starter_event("cap_late"), resolve_correlation(starter_event("cap_late")),
			channel="webhook",
		)

	async with session_factory() as webhook_session, session_factory() as admin_session:
		# the webhook looked the payment up before the admin refund committed
		stale = await webhook_session.scalar(
			select(Payment).where(Payment.capture_id == "cap_late")
		)

		async def lookup_before_refund(session, provider, capture_id):
			return stale

		monkeypatch.setattr(
			service_reconciliation, "find_payment_by_capture", lookup_before_refund
		)

		current = await admin_session.get(Payment, stale.id)
		await refund_payment_record(
			CreditLedger(admin_session, cache), current, actor_id="admin_1", reason="fraud"
		)

		service = ReconciliationService(CreditLedger(webhook_session, cache))
		payment = await service.refund_by_capture(
			starter_event("cap_late", SettlementStatus.REFUNDED)
		)

	assert payment.status == PaymentStatus.REFUNDED
	assert payment.refunded_by == "admin_1"

	async with session_factory() as session:
		reversals = await session.scalar(
			select(func.count()).select_from(Transaction)
			.where(Transaction.type == TransactionType.REFUND_REVERSAL)
		)
	assert reversals == 1
