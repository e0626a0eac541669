"""
Paystack gateway client and webhook signature verification
"""

import enum
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"

_STATUS_MAP = {
    "success": "success",
    "failed": "failed",
    "reversed": "failed",
    "abandoned": "abandoned",
}


class GatewayErrorKind(str, enum.Enum):
    UNREACHABLE = "gateway_unreachable"
    REJECTED = "gateway_rejected"


@dataclass(frozen=True)
class GatewayError:
    kind: GatewayErrorKind
    message: str
    status_code: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.kind == GatewayErrorKind.UNREACHABLE


@dataclass(frozen=True)
class InitializedTransaction:
    authorization_url: str
    access_code: str
    reference: str


@dataclass(frozen=True)
class VerifiedTransaction:
    reference: str
    status: str  # success | failed | pending | abandoned
    amount_minor_units: Optional[int]
    currency: Optional[str]
    paid_at: Optional[str]
    raw_payload_hash: str
    gateway_response: Optional[str] = None
    customer: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Bank:
    name: str
    code: str
    slug: Optional[str] = None
    pay_with_bank: bool = False


def normalize_gateway_status(raw_status: Any) -> str:
    """Collapse Paystack transaction statuses to success/failed/abandoned/pending"""
    value = str(raw_status or "").strip().lower()
    return _STATUS_MAP.get(value, "pending")


def payload_hash(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def verify_webhook_signature(raw_body: bytes, supplied_signature: Optional[str], secret: bytes) -> bool:
    """
    Check the x-paystack-signature header against HMAC-SHA512 of the raw body.
    Must be given the bytes exactly as received, never re-serialized JSON.
    """
    if not secret or not supplied_signature:
        return False
    try:
        supplied = supplied_signature.strip().lower().encode("ascii")
    except UnicodeEncodeError:
        return False

    computed = hmac.new(secret, raw_body, hashlib.sha512).hexdigest().encode("ascii")
    return hmac.compare_digest(computed, supplied)


def generate_payment_reference() -> str:
    """Generate unique payment reference"""
    return f"crs_{secrets.token_hex(16)}"


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PaystackClient:
    """
    Thin async wrapper over the Paystack transaction API.
    Failures come back as GatewayError values instead of exceptions.
    """

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        channels: Sequence[str] = ("card", "bank", "ussd", "qr"),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._channels = list(channels)
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _send(self, method: str, path: str, **kwargs) -> Union[httpx.Response, GatewayError]:
        try:
            async with self._client() as client:
                return await client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.TimeoutException:
            logger.warning("Paystack %s %s timed out after %ss", method, path, self._timeout)
            return GatewayError(GatewayErrorKind.UNREACHABLE, "Payment gateway timed out")
        except httpx.HTTPError as exc:
            logger.warning("Paystack %s %s failed: %s", method, path, exc)
            return GatewayError(GatewayErrorKind.UNREACHABLE, "Payment gateway unreachable")

    @staticmethod
    def _parse(response: httpx.Response) -> Union[Dict[str, Any], GatewayError]:
        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 500:
            return GatewayError(
                GatewayErrorKind.UNREACHABLE,
                "Payment gateway unavailable",
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            return GatewayError(
                GatewayErrorKind.UNREACHABLE,
                "Unexpected response from payment gateway",
                status_code=response.status_code,
            )

        message = str(body.get("message") or "Payment gateway rejected the request")
        if response.status_code == 401:
            # Credential detail stays in the logs
            logger.error("Paystack rejected the configured secret key: %s", message)
            return GatewayError(
                GatewayErrorKind.REJECTED,
                "Payment gateway rejected the request",
                status_code=response.status_code,
            )
        if response.status_code >= 400 or not body.get("status"):
            return GatewayError(GatewayErrorKind.REJECTED, message, status_code=response.status_code)
        return body

    async def initialize(
        self,
        *,
        email: str,
        amount_minor_units: int,
        currency: str,
        metadata: Dict[str, Any],
        callback_url: str,
        reference: str,
    ) -> Union[InitializedTransaction, GatewayError]:
        """Initialize a Paystack transaction"""
        response = await self._send(
            "POST",
            "/transaction/initialize",
            json={
                "email": email,
                "amount": amount_minor_units,
                "currency": currency,
                "reference": reference,
                "metadata": metadata,
                "callback_url": callback_url,
                "channels": self._channels,
            },
        )
        if isinstance(response, GatewayError):
            return response

        body = self._parse(response)
        if isinstance(body, GatewayError):
            logger.warning("Paystack initialize for %s failed: %s", reference, body.message)
            return body

        data = body.get("data") or {}
        authorization_url = data.get("authorization_url")
        if not authorization_url:
            return GatewayError(
                GatewayErrorKind.UNREACHABLE,
                "Unexpected response from payment gateway",
                status_code=response.status_code,
            )
        return InitializedTransaction(
            authorization_url=authorization_url,
            access_code=data.get("access_code") or "",
            reference=data.get("reference") or reference,
        )

    async def verify(self, reference: str) -> Union[VerifiedTransaction, GatewayError]:
        """Verify Paystack transaction status"""
        response = await self._send("GET", f"/transaction/verify/{quote(reference, safe='')}")
        if isinstance(response, GatewayError):
            return response

        body = self._parse(response)
        if isinstance(body, GatewayError):
            logger.info("Paystack verify for %s failed: %s", reference, body.message)
            return body

        data = body.get("data") or {}
        metadata = data.get("metadata")
        customer = data.get("customer")
        return VerifiedTransaction(
            reference=data.get("reference") or reference,
            status=normalize_gateway_status(data.get("status")),
            amount_minor_units=_as_int(data.get("amount")),
            currency=data.get("currency"),
            paid_at=data.get("paid_at"),
            raw_payload_hash=payload_hash(response.content),
            gateway_response=data.get("gateway_response"),
            customer=customer if isinstance(customer, dict) else {},
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    async def list_banks(self, currency: str) -> Union[List[Bank], GatewayError]:
        """Banks available for bank transfer and USSD checkout"""
        response = await self._send("GET", "/bank", params={"currency": currency})
        if isinstance(response, GatewayError):
            return response

        body = self._parse(response)
        if isinstance(body, GatewayError):
            return body

        return [
            Bank(
                name=item.get("name", ""),
                code=str(item.get("code", "")),
                slug=item.get("slug"),
                pay_with_bank=bool(item.get("pay_with_bank")),
            )
            for item in body.get("data") or []
            if isinstance(item, dict)
        ]
