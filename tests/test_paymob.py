import copy
import json
from decimal import Decimal

import pytest

from app.gateways.events import SettlementStatus
from app.gateways.paymob import compute_hmac, hmac_message

# HMAC-SHA512 of the callback below with the secret "paymob-test-hmac-secret"
REFERENCE_HMAC = (
	"0bfbb6f0aad733fdf9b8049c0b156f29b35ef9b764a72b992e3ffdb6ef69f374"
	"7f3b062c2b3f51bf8ab8db0e75dfbd5c7262001f1bb36be4c6550a5f2da8c670"
)
# same callback with success=false
FAILED_HMAC = (
	"60ac98e29797b3903de27c9fecc8b2900ad6435adf90ba77c4aead7a2551a267"
	"143af288e1326462d201f3b96cf95937bdeadc4474a33dca6950e839462915ac"
)


def transaction_obj(**overrides):
	obj = {
		"id": 192036465,
		"pending": False,
		"amount_cents": 50000,
		"success": True,
		"is_auth": False,
		"is_capture": False,
		"is_standalone_payment": True,
		"is_voided": False,
		"is_refunded": False,
		"is_3d_secure": True,
		"integration_id": 4587611,
		"has_parent_transaction": False,
		"order": {"id": 217503754, "merchant_order_id": "user_42_starter_1700000000000"},
		"created_at": "2024-06-13T11:32:09.628623",
		"currency": "EGP",
		"error_occured": False,
		"owner": 302852,
		"source_data": {"type": "card", "pan": "2346", "sub_type": "MasterCard"},
		"payment_key_claims": {
			"extra": {"userId": "user_42", "packId": "starter", "credits": "100"}
		},
	}
	obj.update(overrides)
	return obj


def callback_body(obj) -> bytes:
	return json.dumps({"type": "TRANSACTION", "obj": obj}).encode()


def test_hmac_message_field_order():
	assert hmac_message(transaction_obj()) == (
		"50000"
		"2024-06-13T11:32:09.628623"
		"EGP"
		"false"
		"false"
		"192036465"
		"4587611"
		"true"
		"false"
		"false"
		"false"
		"true"
		"false"
		"217503754"
		"302852"
		"false"
		"2346"
		"MasterCard"
		"card"
		"true"
	)


def test_compute_hmac_reference_vector():
	assert compute_hmac(transaction_obj(), "paymob-test-hmac-secret") == REFERENCE_HMAC
	assert compute_hmac(transaction_obj(success=False), "paymob-test-hmac-secret") == FAILED_HMAC


def test_missing_fields_hash_as_empty_strings():
	obj = transaction_obj()
	del obj["source_data"]
	assert "MasterCard" not in hmac_message(obj)
	assert hmac_message(obj).endswith("falsetrue")


@pytest.mark.asyncio
async def test_verify_notification_accepts_reference(gateways):
	paymob = gateways["paymob"]
	body = callback_body(transaction_obj())
	assert await paymob.verify_notification(body, {"hmac": REFERENCE_HMAC})
	assert await paymob.verify_notification(body, {"hmac": REFERENCE_HMAC.upper()})


@pytest.mark.asyncio
@pytest.mark.parametrize("field, value", [
	("amount_cents", 50001),
	("success", False),
	("currency", "USD"),
	("order", {"id": 217503755, "merchant_order_id": "user_42_starter_1700000000000"}),
])
async def test_verify_notification_rejects_single_field_tamper(gateways, field, value):
	tampered = transaction_obj(**{field: copy.deepcopy(value)})
	body = callback_body(tampered)
	assert not await gateways["paymob"].verify_notification(body, {"hmac": REFERENCE_HMAC})


@pytest.mark.asyncio
async def test_verify_notification_without_hmac(gateways):
	body = callback_body(transaction_obj())
	assert not await gateways["paymob"].verify_notification(body, {})
	assert not await gateways["paymob"].verify_notification(b"not json", {"hmac": REFERENCE_HMAC})


@pytest.mark.asyncio
async def test_verify_notification_rejects_non_ascii_hmac(gateways):
	body = callback_body(transaction_obj())
	assert not await gateways["paymob"].verify_notification(body, {"hmac": "é" * 128})
	assert not await gateways["paymob"].verify_notification(
		body, {"hmac": REFERENCE_HMAC[:-1] + "é"}
	)


@pytest.mark.asyncio
async def test_parse_successful_transaction(gateways):
	event = gateways["paymob"].parse_notification(callback_body(transaction_obj()))
	assert event.event_type == SettlementStatus.SUCCEEDED
	assert event.capture_id == "192036465"
	assert event.order_id == "217503754"
	assert event.amount == Decimal("500")
	assert event.currency == "EGP"
	assert event.custom.user_id == "user_42"
	assert event.custom.credits == 100
	assert event.reference == "user_42_starter_1700000000000"


@pytest.mark.asyncio
async def test_parse_refund_pending_and_failed(gateways):
	paymob = gateways["paymob"]

	refund = paymob.parse_notification(callback_body(transaction_obj(is_refunded=True)))
	assert refund.event_type == SettlementStatus.REFUNDED

	assert paymob.parse_notification(callback_body(transaction_obj(pending=True))) is None

	failed = paymob.parse_notification(callback_body(transaction_obj(success=False)))
	assert failed.event_type == SettlementStatus.FAILED


@pytest.mark.asyncio
async def test_parse_bare_order_id(gateways):
	event = gateways["paymob"].parse_notification(
		callback_body(transaction_obj(order=217503754))
	)
	assert event.order_id == "217503754"
	assert event.reference is None


@pytest.mark.asyncio
async def test_create_order_posts_intention(gateways, provider_api):
	provider_api.add("POST", "/v1/intention/", status_code=201, json={
		"id": "pi_test_123",
		"client_secret": "egy_csk_test",
	})

	order = await gateways["paymob"].create_order("user_42", "pro", email="buyer@formai.test")

	assert order.order_id == "pi_test_123"
	assert order.pack.credits == 500
	assert "clientSecret=egy_csk_test" in order.redirect_url

	request = provider_api.calls("POST", "/v1/intention/")[0]
	assert request.headers["Authorization"] == "Token paymob-secret-key"
	body = json.loads(request.content)
	assert body["amount"] == 200000
	assert body["extras"] == {"userId": "user_42", "packId": "pro", "credits": "500"}
	assert body["special_reference"].startswith("user_42_pro_")
	assert body["billing_data"]["email"] == "buyer@formai.test"
	assert body["notification_url"] == "https://api.formai.test/api/webhooks/paymob"
