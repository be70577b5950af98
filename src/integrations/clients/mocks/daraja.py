"""
M-Pesa Daraja — MOCK client.

⚠️  This is a mock implementation for development and testing.
    It makes no network calls. Push requests are accepted (or rejected, when
    configured) with Daraja-shaped responses, and status queries answer from the
    in-memory record of submitted pushes. Callbacks are parsed exactly like the
    real client does.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from src.integrations.contracts.interfaces import PaymentGateway
from src.integrations.contracts.payments import (
    ParsedCallback,
    parse_callback_payload,
    truncate_account_reference,
    truncate_transaction_description,
    validate_amount,
    validate_phone_number,
)
from src.error_handler import ValidationError

logger = logging.getLogger(__name__)


class DarajaMockClient(PaymentGateway):
    """
    Mock Daraja client.

    Parameters
    ----------
    accept_pushes : bool
        If False, every push is answered with a non-zero ResponseCode. Default True.
    query_result_code : str
        ResultCode returned by status queries. Default "0".
    """

    def __init__(self, accept_pushes: bool = True, query_result_code: str = "0"):
        self._accept_pushes = accept_pushes
        self._query_result_code = query_result_code
        self._pushes: Dict[str, Dict[str, Any]] = {}
        logger.info("[DARAJA MOCK] Client initialised (accept_pushes=%s)", accept_pushes)

    def _new_ids(self) -> Dict[str, str]:
        suffix = uuid.uuid4().hex[:10].upper()
        return {
            "MerchantRequestID": f"MOCK-M-{suffix}",
            "CheckoutRequestID": f"ws_CO_MOCK_{suffix}",
        }

    async def authenticate(self) -> str:
        return "mock-access-token"

    async def initiate_stk_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        transaction_description: str,
    ) -> Dict[str, Any]:
        phone = validate_phone_number(phone_number)
        amount = validate_amount(amount)
        ids = self._new_ids()
        logger.info("[DARAJA MOCK] STK Push %s KES to %s ref=%s", amount, phone, ids["CheckoutRequestID"])

        if self._accept_pushes:
            response = {
                **ids,
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            }
        else:
            response = {
                **ids,
                "ResponseCode": "1",
                "ResponseDescription": "Mock rejection: push not accepted",
                "CustomerMessage": "Mock rejection: push not accepted",
            }

        self._pushes[ids["CheckoutRequestID"]] = {
            "phone_number": phone,
            "amount": amount,
            "account_reference": truncate_account_reference(account_reference),
            "transaction_description": truncate_transaction_description(transaction_description),
            "response": response,
        }
        return dict(response)

    async def query_stk_push_status(self, checkout_request_id: str) -> Dict[str, Any]:
        if not checkout_request_id or not isinstance(checkout_request_id, str):
            raise ValidationError("Checkout request ID is required")

        push: Optional[Dict[str, Any]] = self._pushes.get(checkout_request_id)
        if push is None:
            return {
                "CheckoutRequestID": checkout_request_id,
                "ResponseCode": "0",
                "ResultCode": "1032",
                "ResultDesc": "Request not found; may still be processing.",
            }

        result_code = self._query_result_code
        return {
            "MerchantRequestID": push["response"]["MerchantRequestID"],
            "CheckoutRequestID": checkout_request_id,
            "ResponseCode": "0",
            "ResponseDescription": "The service request has been accepted successfully",
            "ResultCode": result_code,
            "ResultDesc": (
                "The service request is processed successfully."
                if result_code == "0"
                else "Request cancelled by user"
            ),
        }

    def parse_callback(self, payload: Any) -> ParsedCallback:
        return parse_callback_payload(payload)
