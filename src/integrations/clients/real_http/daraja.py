"""
Real Daraja (M-Pesa) HTTP Client.

Used when Daraja credentials are configured. Wraps the OAuth token exchange,
the STK push submission and the STK push status query, and normalizes every
failure into AuthError / GatewayError / ValidationError.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from src.error_handler import AuthError, GatewayError, ValidationError
from src.integrations.clients.real_http.token_cache import DEFAULT_LEASE_SECONDS, AccessTokenCache
from src.integrations.contracts.interfaces import PaymentGateway
from src.integrations.contracts.payments import (
    ParsedCallback,
    parse_callback_payload,
    truncate_account_reference,
    truncate_transaction_description,
    validate_amount,
    validate_phone_number,
)
from src.utils.config_loader import DarajaConfig

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
TRANSACTION_TYPE = "CustomerPayBillOnline"


def _body_sample(response: httpx.Response, limit: int = 200) -> str:
    return (response.text or "")[:limit] or "empty"


def _decode_object(response: httpx.Response) -> Optional[Dict[str, Any]]:
    if not (response.text or "").strip():
        return None
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _lease_seconds(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return DEFAULT_LEASE_SECONDS


class DarajaClient(PaymentGateway):
    def __init__(
        self,
        config: DarajaConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        token_cache: Optional[AccessTokenCache] = None,
    ) -> None:
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.timeout_seconds = config.timeout_seconds
        self._transport = transport
        self._clock = clock
        self.token_cache = token_cache or AccessTokenCache(self._request_token)
        logger.info("[Daraja] Initialized in %s mode", config.environment.value)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_seconds, transport=self._transport)

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def authenticate(self) -> str:
        return await self.token_cache.get_token()

    async def _request_token(self) -> Tuple[str, int]:
        auth = (self.config.consumer_key, self.config.consumer_secret)
        try:
            async with self._client() as client:
                response = await client.get(TOKEN_PATH, auth=auth)
        except httpx.HTTPError as e:
            logger.error("[Daraja] Auth request error: %s", e)
            raise AuthError(f"Daraja auth request failed: {e}") from e

        data = _decode_object(response)
        if not response.is_success:
            raise AuthError(
                f"Daraja auth failed (HTTP {response.status_code}). "
                f"Check MPESA_CONSUMER_KEY and MPESA_CONSUMER_SECRET. Body: {_body_sample(response, 150)}"
            )
        if data is None:
            logger.warning("[Daraja] Auth returned non-JSON (status %s). Body sample: %s",
                           response.status_code, _body_sample(response))
            raise AuthError(
                "Daraja auth returned empty or invalid JSON. "
                "Check MPESA_CONSUMER_KEY, MPESA_CONSUMER_SECRET and MPESA_ENVIRONMENT."
            )

        token = data.get("access_token")
        if not token or not isinstance(token, str):
            raise AuthError("Access token not found in Daraja response")
        return token, _lease_seconds(data.get("expires_in"))

    # ------------------------------------------------------------------
    # STK push
    # ------------------------------------------------------------------

    def generate_password(self) -> Tuple[str, str]:
        """Return (password, timestamp) for a push or query request."""
        timestamp = self._clock().strftime("%Y%m%d%H%M%S")
        raw = f"{self.config.short_code}{self.config.pass_key}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii"), timestamp

    async def initiate_stk_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        transaction_description: str,
    ) -> Dict[str, Any]:
        phone = validate_phone_number(phone_number)
        amount = validate_amount(amount)

        access_token = await self.authenticate()
        password, timestamp = self.generate_password()
        payload = {
            "BusinessShortCode": self.config.short_code,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": amount,
            "PartyA": phone,
            "PartyB": self.config.short_code,
            "PhoneNumber": phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": truncate_account_reference(account_reference),
            "TransactionDesc": truncate_transaction_description(transaction_description),
        }

        logger.info("[Daraja] Initiating STK Push: %s KES to %s", amount, phone)
        data = await self._post(STK_PUSH_PATH, payload, access_token, label="STK Push")

        error_code = data.get("errorCode") or data.get("requestId")
        error_message = data.get("errorMessage") or data.get("error_message")
        if error_code is not None or (isinstance(error_message, str) and error_message):
            logger.warning("[Daraja] STK Push body indicates error: code=%s message=%s",
                           error_code or "", error_message or "")

        logger.info("[Daraja] STK Push initiated successfully")
        return data

    async def query_stk_push_status(self, checkout_request_id: str) -> Dict[str, Any]:
        if not checkout_request_id or not isinstance(checkout_request_id, str):
            raise ValidationError("Checkout request ID is required")

        access_token = await self.authenticate()
        password, timestamp = self.generate_password()
        payload = {
            "BusinessShortCode": self.config.short_code,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        logger.info("[Daraja] Querying STK Push status for: %s", checkout_request_id)
        data = await self._post(STK_QUERY_PATH, payload, access_token, label="STK Query")
        logger.info("[Daraja] STK Push status queried successfully")
        return data

    async def _post(self, path: str, payload: Dict[str, Any], access_token: str, *, label: str) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("[Daraja] %s request error: %s", label, e)
            raise GatewayError(f"Daraja {label} request failed: {e}") from e

        data = _decode_object(response)
        if not response.is_success:
            if response.status_code == 401:
                self.token_cache.invalidate()
            raise GatewayError(
                f"Daraja {label} failed (HTTP {response.status_code}). Body: {_body_sample(response)}.",
                payload=data,
            )
        if data is None:
            logger.warning("[Daraja] %s returned non-JSON (status %s). Body: %s",
                           label, response.status_code, _body_sample(response, 300))
            raise GatewayError(f"Daraja {label} returned empty or invalid JSON. Body: {_body_sample(response)}.")
        return data

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    def parse_callback(self, payload: Any) -> ParsedCallback:
        return parse_callback_payload(payload)
