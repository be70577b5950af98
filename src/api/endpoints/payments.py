import logging
import re
from typing import Any, Optional, Union

from fastapi import APIRouter, Body, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.error_handler import ErrorHandler
from src.integrations.contracts.interfaces import CreatePaymentInput
from src.integrations.policy.payment_service import PaymentService

logger = logging.getLogger(__name__)

api = APIRouter()
payments_api = api

# Will be set by main.py after import
payment_service: PaymentService = None

error_handler = ErrorHandler()

_PHONE_PATTERN = re.compile(r"^(\+?254|0)?[17]\d{8}$")


class CreatePaymentRequest(BaseModel):
    phone_number: str = Field(..., min_length=1)
    amount: int = Field(..., ge=1, le=70_000, description="Whole KES amount")
    account_reference: str = Field(..., min_length=1, max_length=12)
    transaction_description: str = Field(..., min_length=1, max_length=13)
    payment_method: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("phone_number")
    @classmethod
    def _phone_format(cls, value: str) -> str:
        if not _PHONE_PATTERN.match(value):
            raise ValueError("Invalid phone number. Use 254XXXXXXXXX or 07XXXXXXXX")
        return value


class QueryPaymentStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    checkout_request_id: str = Field(..., min_length=1, alias="checkoutRequestId")


def validation_message(exc: Union[ValidationError, RequestValidationError]) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" if err.get("loc") else err["msg"]
        for err in exc.errors()
    )


def _error_response(exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=error_handler.status_code_for(exc), content=error_handler.handle_exception(exc))


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@api.post("", status_code=201, tags=["Payments"])
@api.post("/", status_code=201, tags=["Payments"], include_in_schema=False)
async def create_payment(
    body: Any = Body(default=None),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
):
    """Initiate an STK push."""
    try:
        request = CreatePaymentRequest.model_validate(body)
    except ValidationError as e:
        return _bad_request(validation_message(e))

    try:
        payment = await payment_service.create_payment(
            CreatePaymentInput(**request.model_dump()),
            user_id=x_user_id or None,
        )
    except Exception as e:
        return _error_response(e)
    return JSONResponse(status_code=201, content={"success": True, "data": payment.to_dict()})


@api.post("/query", tags=["Payments"])
async def query_payment_status(body: Any = Body(default=None)):
    """Query STK push status at the gateway and record the result."""
    try:
        request = QueryPaymentStatusRequest.model_validate(body)
    except ValidationError as e:
        return _bad_request(validation_message(e))

    try:
        payment = await payment_service.query_payment_status(request.checkout_request_id)
    except Exception as e:
        return _error_response(e)
    return {"success": True, "data": payment.to_dict()}


@api.post("/callback", tags=["Payments"])
async def payment_callback(request: Request):
    """
    Daraja webhook. Always answers 200 so the gateway does not keep retrying;
    failures are reported through a non-zero ResultCode.
    """
    try:
        payload = await request.json()
        payment = await payment_service.handle_callback(payload)
        logger.info("[Payment] Callback recorded for %s (%s)", payment.id, payment.status.value)
        return {"ResultCode": 0, "ResultDesc": "Success"}
    except Exception as e:
        logger.error("[Payment] Callback error: %s", e, exc_info=True)
        return {"ResultCode": 1, "ResultDesc": str(e) or "Callback processing failed"}


@api.get("", tags=["Payments"])
@api.get("/", tags=["Payments"], include_in_schema=False)
async def list_payments(
    page: Optional[str] = Query(default=None),
    per_page: Optional[str] = Query(default=None, alias="perPage"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    status: Optional[str] = Query(default=None),
):
    result = payment_service.find_all_payments(page=page, per_page=per_page, user_id=user_id, status=status)
    return {
        "success": True,
        "data": [p.to_dict() for p in result.data],
        "meta": result.meta(),
    }


@api.get("/validation", tags=["Payments"])
async def validation_url():
    """Daraja C2B validation URL, called when URLs are registered."""
    return {"ResultCode": 0, "ResultDesc": "Validation passed"}


@api.get("/{payment_id}", tags=["Payments"])
async def get_payment(payment_id: str):
    payment = payment_service.find_payment_by_id(payment_id)
    if payment is None:
        return JSONResponse(status_code=404, content={"success": False, "error": "Payment not found"})
    return {"success": True, "data": payment.to_dict()}
