"""
M-Pesa Daraja STK push client.

``PaymentGateway`` is the capability the rest of the service depends on;
``MpesaGateway`` is the production implementation. Provider field names in
requests and responses are sent and read exactly as Daraja defines them.
"""
import base64
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import httpx
from pydantic import BaseModel

from app.core.config import Settings, settings
from app.core.exceptions import GatewayError, ValidationError
from app.core.security import mask_phone, mask_secret

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^(?:254|\+254|0)?([17]\d{8})$")
MIN_AMOUNT = Decimal("1")
MAX_AMOUNT = Decimal("70000")

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"


class MpesaConfig(BaseModel):
    """Provider configuration, passed explicitly into the gateway"""
    base_url: str = "https://api.safaricom.co.ke"
    consumer_key: str
    consumer_secret: str
    business_shortcode: str
    passkey: str
    callback_url: str
    timeout_seconds: float = 10.0
    timezone: str = "Africa/Nairobi"

    @classmethod
    def from_settings(cls, settings: Settings) -> "MpesaConfig":
        return cls(
            base_url=settings.MPESA_BASE_URL,
            consumer_key=settings.MPESA_CONSUMER_KEY,
            consumer_secret=settings.MPESA_CONSUMER_SECRET,
            business_shortcode=settings.MPESA_BUSINESS_SHORTCODE,
            passkey=settings.MPESA_PASSKEY,
            callback_url=settings.MPESA_CALLBACK_URL,
            timeout_seconds=settings.MPESA_TIMEOUT_SECONDS,
            timezone=settings.MPESA_TIMEZONE,
        )


class InitiationResult(BaseModel):
    """Outcome of a successfully submitted push request"""
    correlation_id: str
    provider_request_id: Optional[str] = None
    response_code: Optional[str] = None
    response_description: Optional[str] = None
    customer_message: Optional[str] = None


def normalize_phone(phone: str) -> str:
    """Return the phone number in 2547XXXXXXXX / 2541XXXXXXXX form"""
    if not phone:
        raise ValidationError("Phone number is required", code="MISSING_FIELDS")
    match = PHONE_PATTERN.match(str(phone).strip().replace(" ", ""))
    if not match:
        raise ValidationError("Invalid phone number format", code="INVALID_PHONE")
    return f"254{match.group(1)}"


def validate_amount(amount) -> int:
    """Check provider amount bounds; the provider only accepts whole shillings"""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number", code="INVALID_AMOUNT")
    if not value.is_finite() or value < MIN_AMOUNT or value > MAX_AMOUNT:
        raise ValidationError("Amount must be between 1 and 70,000", code="INVALID_AMOUNT")
    if value != value.to_integral_value():
        raise ValidationError("Amount must be a whole number", code="INVALID_AMOUNT")
    return int(value)


class PaymentGateway(ABC):
    """Submit-payment capability used by the payment service"""

    @abstractmethod
    async def initiate(
        self,
        phone: str,
        amount,
        account_reference: str,
        description: str = "Payment"
    ) -> InitiationResult:
        """Submit a push payment and return its correlation id"""


class MpesaGateway(PaymentGateway):
    """Daraja STK push implementation of ``PaymentGateway``"""

    def __init__(
        self,
        config: MpesaConfig,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if not config.consumer_key or not config.consumer_secret:
            raise GatewayError("M-Pesa credentials not configured")
        self.config = config
        self._client = client
        self._clock = clock or (lambda: datetime.now(ZoneInfo(config.timezone)))

    def timestamp(self) -> str:
        return self._clock().strftime("%Y%m%d%H%M%S")

    def build_password(self, timestamp: str) -> str:
        raw = f"{self.config.business_shortcode}{self.config.passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    async def get_auth_token(self, client: httpx.AsyncClient) -> str:
        """Exchange consumer key/secret for a short-lived bearer token"""
        logger.debug(f"Requesting M-Pesa access token (consumer key {mask_secret(self.config.consumer_key)})")
        try:
            response = await client.get(
                f"{self.config.base_url}{TOKEN_PATH}",
                params={"grant_type": "client_credentials"},
                auth=(self.config.consumer_key, self.config.consumer_secret),
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            message = _provider_message(e.response)
            logger.error(f"M-Pesa authentication failed: {message}")
            raise GatewayError(f"M-Pesa authentication failed: {message}", provider_message=message)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"M-Pesa authentication failed: {str(e)}")
            raise GatewayError(f"M-Pesa authentication failed: {str(e)}")

        token = data.get("access_token")
        if not token:
            raise GatewayError("M-Pesa authentication failed: no access token in response")
        return token

    async def initiate(
        self,
        phone: str,
        amount,
        account_reference: str,
        description: str = "Payment"
    ) -> InitiationResult:
        if not account_reference:
            raise ValidationError("Missing required parameters", code="MISSING_FIELDS")
        formatted_phone = normalize_phone(phone)
        amount_value = validate_amount(amount)

        if self._client is not None:
            return await self._submit(self._client, formatted_phone, amount_value, account_reference, description)

        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            return await self._submit(client, formatted_phone, amount_value, account_reference, description)

    async def _submit(
        self,
        client: httpx.AsyncClient,
        phone: str,
        amount: int,
        account_reference: str,
        description: str
    ) -> InitiationResult:
        token = await self.get_auth_token(client)
        timestamp = self.timestamp()

        payload = {
            "BusinessShortCode": self.config.business_shortcode,
            "Password": self.build_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": phone,
            "PartyB": self.config.business_shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

        try:
            response = await client.post(
                f"{self.config.base_url}{STK_PUSH_PATH}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            message = _provider_message(e.response)
            logger.error(f"STK push to {mask_phone(phone)} failed: {message}")
            raise GatewayError(f"Payment initiation failed: {message}", provider_message=message)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"STK push to {mask_phone(phone)} failed: {str(e)}")
            raise GatewayError(f"Payment initiation failed: {str(e)}")

        response_code = str(data.get("ResponseCode", ""))
        correlation_id = data.get("CheckoutRequestID")
        if response_code != "0" or not correlation_id:
            message = data.get("ResponseDescription") or data.get("errorMessage") or "Unknown provider error"
            logger.error(f"STK push to {mask_phone(phone)} rejected: {message}")
            raise GatewayError(f"Payment initiation failed: {message}", provider_message=message)

        logger.info(f"STK push {correlation_id} sent to {mask_phone(phone)} for {amount}")
        return InitiationResult(
            correlation_id=correlation_id,
            provider_request_id=data.get("MerchantRequestID"),
            response_code=response_code,
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )


def _provider_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        for key in ("errorMessage", "error_description", "ResponseDescription", "error"):
            if data.get(key):
                return str(data[key])
    return f"HTTP {response.status_code}"


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency building the gateway from application settings"""
    return MpesaGateway(MpesaConfig.from_settings(settings))
