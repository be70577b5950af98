import asyncio
import gc

import pytest

from src.error_handler import AuthError, GatewayError, NotFoundError, ValidationError
from src.integrations.contracts.interfaces import CreatePaymentInput, PaymentStatus
from tests.fakes import stk_callback


SUCCESS_ITEMS = [
    {"Name": "Amount", "Value": 100},
    {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
    {"Name": "TransactionDate", "Value": 20191219102115},
    {"Name": "PhoneNumber", "Value": 254712345678},
]


async def _processing_payment(service, payment_input, user_id=None):
    payment = await service.create_payment(payment_input, user_id=user_id)
    assert payment.status == PaymentStatus.PROCESSING
    return payment


# ---------------------------------------------------------------------------
# create_payment
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_payment_accepted_moves_to_processing(service, gateway, payment_input):
    payment = await service.create_payment(payment_input, user_id="user-1")

    assert payment.status == PaymentStatus.PROCESSING
    assert payment.phone_number == "254712345678"
    assert payment.user_id == "user-1"
    assert payment.payment_method == "MPESA_STK_PUSH"
    assert payment.merchant_request_id == "M-1"
    assert payment.checkout_request_id == "ws_CO_1"
    assert payment.gateway_response["ResponseCode"] == "0"
    assert payment.failure_reason is None
    assert gateway.push_calls == [{
        "phone_number": "254712345678",
        "amount": 100,
        "account_reference": "INV-001",
        "transaction_description": "Order payment",
    }]


@pytest.mark.asyncio
async def test_create_payment_truncates_reference_and_description(service, gateway):
    payment = await service.create_payment(CreatePaymentInput(
        phone_number="254712345678",
        amount=50,
        account_reference="INVOICE-2024-0001",
        transaction_description="Payment for services",
    ))

    assert payment.account_reference == "INVOICE-2024"
    assert payment.transaction_description == "Payment for s"
    assert gateway.push_calls[0]["account_reference"] == "INVOICE-2024"


@pytest.mark.asyncio
async def test_create_payment_rejected_moves_to_failed(service, gateway, payment_input):
    rejected = gateway.accepted_response(code="1")
    rejected["ResponseDescription"] = "Insufficient balance"
    gateway.push_results.append(rejected)

    payment = await service.create_payment(payment_input)

    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Insufficient balance"
    assert payment.checkout_request_id == rejected["CheckoutRequestID"]


@pytest.mark.asyncio
async def test_create_payment_rejection_without_description_uses_default(service, gateway, payment_input):
    gateway.push_results.append({"ResponseCode": "1"})

    payment = await service.create_payment(payment_input)

    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "STK Push request rejected by Daraja"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [GatewayError("Daraja STK Push failed (HTTP 500)"), AuthError("bad credentials")])
async def test_create_payment_gateway_error_marks_failed_and_reraises(service, store, gateway, payment_input, error):
    gateway.push_results.append(error)

    with pytest.raises(type(error)):
        await service.create_payment(payment_input)

    [payment] = store.find_all()
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == str(error)
    assert payment.checkout_request_id is None


@pytest.mark.asyncio
async def test_create_payment_validation_error_leaves_failed_record(service, store, gateway, payment_input):
    gateway.push_results.append(ValidationError("Invalid phone number format. Expected format: 254XXXXXXXXX"))

    with pytest.raises(ValidationError):
        await service.create_payment(payment_input)

    [payment] = store.find_all()
    assert payment.status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_create_payment_never_returns_pending(service, gateway, payment_input):
    gateway.push_results.extend([gateway.accepted_response(), gateway.accepted_response(code="1")])

    first = await service.create_payment(payment_input)
    second = await service.create_payment(payment_input)

    assert {first.status, second.status} == {PaymentStatus.PROCESSING, PaymentStatus.FAILED}


@pytest.mark.asyncio
async def test_create_payment_duplicate_checkout_id_fails_second_payment(service, gateway, payment_input):
    first = await _processing_payment(service, payment_input)
    gateway.push_results.append({
        "MerchantRequestID": "M-other",
        "CheckoutRequestID": first.checkout_request_id,
        "ResponseCode": "0",
    })

    with pytest.raises(GatewayError):
        await service.create_payment(payment_input)

    page = service.find_all_payments()
    second = next(p for p in page.data if p.id != first.id)
    assert second.status == PaymentStatus.FAILED
    assert second.checkout_request_id is None
    assert service.find_payment_by_id(first.id).status == PaymentStatus.PROCESSING


# ---------------------------------------------------------------------------
# handle_callback
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_success_callback_completes_payment(service, payment_input):
    payment = await _processing_payment(service, payment_input)
    payload = stk_callback(
        checkout_request_id=payment.checkout_request_id,
        merchant_request_id=payment.merchant_request_id,
        items=SUCCESS_ITEMS,
    )

    completed = await service.handle_callback(payload)

    assert completed.id == payment.id
    assert completed.status == PaymentStatus.COMPLETED
    assert completed.mpesa_receipt_number == "NLJ7RT61SV"
    assert completed.transaction_date == "20191219102115"
    assert completed.confirmed_phone_number == "254712345678"
    assert completed.amount == 100
    assert completed.failure_reason is None
    assert completed.gateway_callback == payload


@pytest.mark.asyncio
async def test_failed_callback_marks_failed_with_reason(service, payment_input):
    payment = await _processing_payment(service, payment_input)

    failed = await service.handle_callback(stk_callback(
        checkout_request_id=payment.checkout_request_id,
        merchant_request_id=payment.merchant_request_id,
        result_code=1032,
        result_desc="Request cancelled by user",
    ))

    assert failed.status == PaymentStatus.FAILED
    assert failed.failure_reason == "Request cancelled by user"
    assert failed.mpesa_receipt_number is None


@pytest.mark.asyncio
async def test_failed_callback_without_description_uses_default(service, payment_input):
    payment = await _processing_payment(service, payment_input)
    payload = stk_callback(checkout_request_id=payment.checkout_request_id, result_code="2001")
    del payload["Body"]["stkCallback"]["ResultDesc"]

    failed = await service.handle_callback(payload)

    assert failed.failure_reason == "Payment failed"


@pytest.mark.asyncio
async def test_callback_resolves_by_checkout_id_only(service, payment_input):
    payment = await _processing_payment(service, payment_input)

    completed = await service.handle_callback(stk_callback(checkout_request_id=payment.checkout_request_id))

    assert completed.id == payment.id
    assert completed.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_callback_falls_back_to_checkout_id_when_merchant_id_unknown(service, payment_input):
    payment = await _processing_payment(service, payment_input)

    completed = await service.handle_callback(stk_callback(
        checkout_request_id=payment.checkout_request_id,
        merchant_request_id="M-unknown",
    ))

    assert completed.id == payment.id


@pytest.mark.asyncio
async def test_callback_for_unknown_payment_raises_not_found(service):
    with pytest.raises(NotFoundError, match="Payment not found for callback"):
        await service.handle_callback(stk_callback(checkout_request_id="ws_CO_missing"))


@pytest.mark.asyncio
async def test_callback_without_ids_raises_validation_error(service):
    with pytest.raises(ValidationError):
        await service.handle_callback({"Body": {"stkCallback": {"ResultCode": 0}}})


@pytest.mark.asyncio
async def test_callback_with_non_object_payload_raises_validation_error(service):
    with pytest.raises(ValidationError):
        await service.handle_callback(["not", "a", "callback"])


@pytest.mark.asyncio
async def test_callback_with_partial_metadata_sets_only_present_fields(service, payment_input):
    payment = await _processing_payment(service, payment_input)

    completed = await service.handle_callback(stk_callback(
        checkout_request_id=payment.checkout_request_id,
        items=[{"Name": "MpesaReceiptNumber", "Value": "ABC123"}, {"Name": "Balance"}],
    ))

    assert completed.status == PaymentStatus.COMPLETED
    assert completed.mpesa_receipt_number == "ABC123"
    assert completed.transaction_date is None
    assert completed.confirmed_phone_number is None
    assert completed.amount == 100


@pytest.mark.asyncio
async def test_callback_amount_from_gateway_is_recorded(service, payment_input):
    payment = await _processing_payment(service, payment_input)

    completed = await service.handle_callback(stk_callback(
        checkout_request_id=payment.checkout_request_id,
        items=[{"Name": "Amount", "Value": 99.0}],
    ))

    assert completed.amount == 99


@pytest.mark.asyncio
async def test_duplicate_success_callback_is_idempotent(service, payment_input):
    payment = await _processing_payment(service, payment_input)
    payload = stk_callback(checkout_request_id=payment.checkout_request_id, items=SUCCESS_ITEMS)

    first = await service.handle_callback(payload)
    second = await service.handle_callback(payload)

    assert second.status == PaymentStatus.COMPLETED
    assert second.mpesa_receipt_number == first.mpesa_receipt_number
    assert second.gateway_callback == payload


@pytest.mark.asyncio
async def test_failure_callback_after_completion_keeps_completed(service, payment_input):
    payment = await _processing_payment(service, payment_input)
    await service.handle_callback(stk_callback(checkout_request_id=payment.checkout_request_id, items=SUCCESS_ITEMS))
    late = stk_callback(checkout_request_id=payment.checkout_request_id, result_code=1, result_desc="late failure")

    result = await service.handle_callback(late)

    assert result.status == PaymentStatus.COMPLETED
    assert result.failure_reason is None
    assert result.mpesa_receipt_number == "NLJ7RT61SV"
    assert result.gateway_callback == late


@pytest.mark.asyncio
async def test_success_callback_after_failure_keeps_failed(service, payment_input):
    payment = await _processing_payment(service, payment_input)
    await service.handle_callback(stk_callback(checkout_request_id=payment.checkout_request_id, result_code=1032,
                                               result_desc="Request cancelled by user"))

    result = await service.handle_callback(stk_callback(checkout_request_id=payment.checkout_request_id,
                                                        items=SUCCESS_ITEMS))

    assert result.status == PaymentStatus.FAILED
    assert result.failure_reason == "Request cancelled by user"
    assert result.mpesa_receipt_number is None


@pytest.mark.asyncio
async def test_callback_never_changes_correlation_ids(service, payment_input):
    payment = await _processing_payment(service, payment_input)

    result = await service.handle_callback(stk_callback(
        checkout_request_id=payment.checkout_request_id,
        merchant_request_id="M-unknown",
        items=SUCCESS_ITEMS,
    ))

    assert result.merchant_request_id == payment.merchant_request_id
    assert result.checkout_request_id == payment.checkout_request_id


# ---------------------------------------------------------------------------
# query_payment_status
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_query_success_records_response_without_completing(service, gateway, payment_input):
    payment = await _processing_payment(service, payment_input)
    gateway.query_results.append({"ResultCode": "0", "ResultDesc": "The service request is processed successfully."})

    result = await service.query_payment_status(payment.checkout_request_id)

    assert result.status == PaymentStatus.PROCESSING
    assert result.gateway_response["queryResponse"]["ResultCode"] == "0"
    assert result.gateway_response["ResponseCode"] == "0"
    assert gateway.query_calls == [payment.checkout_request_id]


@pytest.mark.asyncio
async def test_query_failure_records_reason_but_keeps_status(service, gateway, payment_input):
    payment = await _processing_payment(service, payment_input)
    gateway.query_results.append({"ResultCode": 1032, "ResultDesc": "Request cancelled by user"})

    result = await service.query_payment_status(payment.checkout_request_id)

    assert result.status == PaymentStatus.PROCESSING
    assert result.failure_reason == "Request cancelled by user"


@pytest.mark.asyncio
async def test_query_failure_falls_back_to_error_message(service, gateway, payment_input):
    payment = await _processing_payment(service, payment_input)
    gateway.query_results.append({"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"})

    result = await service.query_payment_status(payment.checkout_request_id)

    assert result.failure_reason == "The transaction is being processed"


@pytest.mark.asyncio
async def test_query_after_completion_does_not_write_failure_reason(service, gateway, payment_input):
    payment = await _processing_payment(service, payment_input)
    await service.handle_callback(stk_callback(checkout_request_id=payment.checkout_request_id, items=SUCCESS_ITEMS))
    gateway.query_results.append({"ResultCode": "1", "ResultDesc": "stale"})

    result = await service.query_payment_status(payment.checkout_request_id)

    assert result.status == PaymentStatus.COMPLETED
    assert result.failure_reason is None
    assert result.gateway_response["queryResponse"]["ResultDesc"] == "stale"


@pytest.mark.asyncio
async def test_query_unknown_checkout_id_raises_not_found(service, gateway):
    with pytest.raises(NotFoundError):
        await service.query_payment_status("ws_CO_missing")
    assert gateway.query_calls == []


@pytest.mark.asyncio
async def test_query_gateway_error_propagates_and_leaves_record(service, gateway, payment_input):
    payment = await _processing_payment(service, payment_input)
    gateway.query_results.append(GatewayError("Daraja STK Query failed (HTTP 503)"))

    with pytest.raises(GatewayError):
        await service.query_payment_status(payment.checkout_request_id)

    stored = service.find_payment_by_id(payment.id)
    assert stored.status == PaymentStatus.PROCESSING
    assert "queryResponse" not in stored.gateway_response


@pytest.mark.asyncio
async def test_query_racing_callback_keeps_callback_outcome(service, gateway, payment_input):
    payment = await _processing_payment(service, payment_input)
    gateway.query_gate = asyncio.Event()
    gateway.query_results.append({"ResultCode": "1037", "ResultDesc": "DS timeout user cannot be reached"})

    query_task = asyncio.create_task(service.query_payment_status(payment.checkout_request_id))
    await asyncio.sleep(0)
    await service.handle_callback(stk_callback(checkout_request_id=payment.checkout_request_id, items=SUCCESS_ITEMS))
    gateway.query_gate.set()
    result = await query_task

    assert result.status == PaymentStatus.COMPLETED
    assert result.mpesa_receipt_number == "NLJ7RT61SV"
    assert result.failure_reason is None
    assert result.gateway_callback is not None
    assert result.gateway_response["queryResponse"]["ResultCode"] == "1037"


@pytest.mark.asyncio
async def test_concurrent_callbacks_apply_one_transition(service, payment_input):
    payment = await _processing_payment(service, payment_input)
    success = stk_callback(checkout_request_id=payment.checkout_request_id, items=SUCCESS_ITEMS)
    failure = stk_callback(checkout_request_id=payment.checkout_request_id, result_code=1, result_desc="failed")

    await asyncio.gather(service.handle_callback(success), service.handle_callback(failure))

    final = service.find_payment_by_id(payment.id)
    assert final.status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED)
    if final.status == PaymentStatus.COMPLETED:
        assert final.failure_reason is None
    else:
        assert final.mpesa_receipt_number is None


@pytest.mark.asyncio
async def test_payment_locks_are_released_after_use(service, payment_input):
    payment = await _processing_payment(service, payment_input)
    await service.query_payment_status(payment.checkout_request_id)
    await service.handle_callback(stk_callback(checkout_request_id=payment.checkout_request_id, items=SUCCESS_ITEMS))
    gc.collect()

    assert payment.id not in service._locks
    assert len(service._locks) == 0


@pytest.mark.asyncio
async def test_waiting_task_shares_the_held_lock(service, payment_input):
    payment = await _processing_payment(service, payment_input)
    held = service._lock_for(payment.id)

    async with held:
        assert service._lock_for(payment.id) is held


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_find_all_payments_paginates_and_reports_meta(service, payment_input):
    created = [await service.create_payment(payment_input) for _ in range(3)]

    page = service.find_all_payments(page="2", per_page="1")

    assert [p.id for p in page.data] == [created[1].id]
    assert page.meta() == {"total": 3, "page": 2, "perPage": 1, "totalPages": 3}


@pytest.mark.asyncio
async def test_find_all_payments_defaults_and_clamps(service, payment_input):
    await service.create_payment(payment_input)

    defaults = service.find_all_payments()
    clamped = service.find_all_payments(page="abc", per_page="500")

    assert (defaults.page, defaults.per_page) == (1, 20)
    assert (clamped.page, clamped.per_page) == (1, 100)


@pytest.mark.asyncio
async def test_find_all_payments_filters_by_user_and_status(service, gateway, payment_input):
    await service.create_payment(payment_input, user_id="alice")
    gateway.push_results.append({"ResponseCode": "1"})
    await service.create_payment(payment_input, user_id="alice")
    await service.create_payment(payment_input, user_id="bob")

    alice = service.find_all_payments(user_id="alice")
    alice_failed = service.find_all_payments(user_id="alice", status="FAILED")
    unknown_status = service.find_all_payments(status="bogus")

    assert alice.total == 2
    assert alice_failed.total == 1
    assert alice_failed.data[0].status == PaymentStatus.FAILED
    assert unknown_status.total == 3


def test_empty_listing_has_zero_pages(service):
    page = service.find_all_payments()

    assert page.data == []
    assert page.meta() == {"total": 0, "page": 1, "perPage": 20, "totalPages": 0}


def test_find_payment_by_id_unknown_returns_none(service):
    assert service.find_payment_by_id("pay_missing") is None
