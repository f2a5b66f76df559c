from __future__ import annotations

import asyncio
import base64
import logging
import re
import textwrap
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding
from flask import current_app
from requests.exceptions import RequestException, SSLError, ConnectionError as RequestsConnectionError, Timeout as RequestsTimeout

from utils.errors import GatewayConfigError, GatewayRequestError, GatewaySessionError, ValidationError

log = logging.getLogger(__name__)

ACCEPTED = "INS-0"
SANDBOX_URL = "https://openapi.m-pesa.com/sandbox"
LIVE_URL = "https://openapi.m-pesa.com/openapi"

_REFERENCE_RE = re.compile(r"^[0-9a-zA-Z]{1,20}$")
_CONVERSATION_RE = re.compile(r"^[0-9a-zA-Z]{1,40}$")
_MSISDN_RE = re.compile(r"^[0-9]{12,14}$")


@dataclass
class GatewaySession:
    session_id: str
    opened_at: float
    ready_at: float


@dataclass
class CollectionResult:
    success: bool
    response_code: Optional[str]
    response_desc: Optional[str]
    transaction_id: Optional[str] = None
    conversation_id: Optional[str] = None
    third_party_conversation_id: Optional[str] = None
    transaction_reference: Optional[str] = None
    amount: Optional[str] = None
    customer_msisdn: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -----------------------------
# Helpers
# -----------------------------


def normalize_msisdn(phone: str, prefix: str = "243") -> str:
    p = "".join(ch for ch in (phone or "").strip() if ch.isdigit() or ch == "+")
    if p.startswith("+"):
        p = p[1:]
    if p.startswith("0"):
        p = prefix + p[1:]
    if p.startswith(prefix):
        return p
    digits = "".join(ch for ch in p if ch.isdigit())
    if len(digits) >= 9:
        return prefix + digits[-9:]
    return p


def validate_msisdn(msisdn: str) -> str:
    if not _MSISDN_RE.match(msisdn or ""):
        raise ValidationError("Phone number must be 12-14 digits including the country code")
    return msisdn


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_transaction_reference(student_id: str, now_ms: Optional[int] = None) -> str:
    tail = "".join(ch for ch in str(student_id) if ch.isalnum())[-4:]
    ref = f"HP{now_ms or _now_ms()}{tail}"
    if not _REFERENCE_RE.match(ref):
        raise ValidationError(f"Transaction reference invalid or longer than 20 chars: {ref}")
    return ref


def build_conversation_id(parent_id: str, now_ms: Optional[int] = None) -> str:
    tail = "".join(ch for ch in str(parent_id) if ch.isalnum())[-10:]
    conv = f"HP{now_ms or _now_ms()}{tail}"
    if not _CONVERSATION_RE.match(conv):
        raise ValidationError(f"ThirdPartyConversationID invalid or longer than 40 chars: {conv}")
    return conv


def _to_pem(public_key: str) -> bytes:
    key = (public_key or "").strip()
    if "-----BEGIN" not in key:
        body = "\n".join(textwrap.wrap("".join(key.split()), 64))
        key = f"-----BEGIN PUBLIC KEY-----\n{body}\n-----END PUBLIC KEY-----"
    return key.encode("utf-8")


def encrypt_with_public_key(value: str, public_key: str) -> str:
    """RSA PKCS#1 v1.5 encrypt ``value`` with the provider key; base64 output."""
    if not value:
        raise GatewayConfigError("Nothing to encrypt: M-Pesa credential is empty")
    if not public_key:
        raise GatewayConfigError("MPESA_PUBLIC_KEY is not configured")
    try:
        key = serialization.load_pem_public_key(_to_pem(public_key))
        encrypted = key.encrypt(value.encode("utf-8"), padding.PKCS1v15())
    except (ValueError, TypeError) as e:
        raise GatewayConfigError(f"Could not encrypt with M-Pesa public key: {e}")
    return base64.b64encode(encrypted).decode("utf-8")


# -----------------------------
# Client
# -----------------------------


class MpesaClient:
    """Vodacom M-Pesa OpenAPI (IPG v2) client.

    Every call is two-phase: ``open_session`` obtains a session id, then
    ``complete_after_cooldown`` suspends (without blocking the thread) until
    the provider's mandatory warm-up has elapsed and returns the encrypted
    bearer credential. HTTP calls run through ``asyncio.to_thread``.
    """

    def __init__(
        self,
        config: Mapping[str, Any],
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = (config.get("MPESA_API_KEY") or "").strip()
        self.public_key = (config.get("MPESA_PUBLIC_KEY") or "").strip()
        self.environment = (config.get("MPESA_ENVIRONMENT") or "sandbox").strip().lower()
        self.market = config.get("MPESA_MARKET") or ""
        self.country = config.get("MPESA_COUNTRY") or ""
        self.currency = config.get("MPESA_CURRENCY") or ""
        self.service_provider_code = config.get("MPESA_SERVICE_PROVIDER_CODE") or ""
        self.origin = config.get("MPESA_ORIGIN") or "*"
        self.cooldown = float(config.get("MPESA_SESSION_COOLDOWN", 30) or 0)
        self.timeout = int(config.get("MPESA_TIMEOUT", 30) or 30)
        self.stub = bool(config.get("MPESA_STUB"))
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_app(cls, **kwargs) -> "MpesaClient":
        return cls(current_app.config, **kwargs)

    @property
    def base_url(self) -> str:
        return SANDBOX_URL if self.environment == "sandbox" else LIVE_URL

    def _url(self, path: str) -> str:
        return f"{self.base_url}/ipg/v2/{self.market}/{path}/"

    def _headers(self, bearer: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {bearer}",
            "Origin": self.origin,
        }

    def encrypt_api_key(self) -> str:
        if not self.api_key:
            raise GatewayConfigError("MPESA_API_KEY is not configured")
        return encrypt_with_public_key(self.api_key, self.public_key)

    def _send(self, method: str, url: str, bearer: str, payload: Optional[Dict[str, Any]], error_cls) -> Dict[str, Any]:
        try:
            if method == "GET":
                r = requests.get(url, headers=self._headers(bearer), params=payload, timeout=self.timeout)
            else:
                r = requests.post(url, headers=self._headers(bearer), json=payload, timeout=self.timeout)
        except (RequestsTimeout, SSLError, RequestsConnectionError, RequestException) as e:
            raise error_cls(f"Network/SSL error contacting M-Pesa: {type(e).__name__}: {e}")
        try:
            return r.json()
        except ValueError:
            raise error_cls(f"Non-JSON response from M-Pesa ({r.status_code})")

    async def _call(self, method: str, path: str, bearer: str, payload=None, error_cls=GatewayRequestError) -> Dict[str, Any]:
        return await asyncio.to_thread(self._send, method, self._url(path), bearer, payload, error_cls)

    # -- phase 1 ------------------------------------------------------

    async def open_session(self) -> GatewaySession:
        now = self._clock()
        if self.stub:
            return GatewaySession(session_id=f"stub-session-{_now_ms()}", opened_at=now, ready_at=now)
        encrypted_key = self.encrypt_api_key()
        data = await self._call("GET", "getSession", encrypted_key, error_cls=GatewaySessionError)
        if data.get("output_ResponseCode") != ACCEPTED or not data.get("output_SessionID"):
            raise GatewaySessionError(
                f"Session generation failed: {data.get('output_ResponseDesc') or data.get('output_ResponseCode')}",
                details={"response": data},
            )
        opened = self._clock()
        log.info("M-Pesa session opened; usable in %.0fs", self.cooldown)
        return GatewaySession(session_id=data["output_SessionID"], opened_at=opened, ready_at=opened + self.cooldown)

    # -- phase 2 ------------------------------------------------------

    async def complete_after_cooldown(self, session: GatewaySession) -> str:
        remaining = session.ready_at - self._clock()
        if remaining > 0:
            await self._sleep(remaining)
        if self.stub:
            return session.session_id
        return encrypt_with_public_key(session.session_id, self.public_key)

    async def authorized_bearer(self) -> str:
        session = await self.open_session()
        return await self.complete_after_cooldown(session)

    # -- operations ---------------------------------------------------

    async def initiate_collection(
        self,
        payer_msisdn: str,
        amount,
        reference: str,
        description: str,
        third_party_id: str,
    ) -> CollectionResult:
        amount_str = f"{float(amount):.2f}".rstrip("0").rstrip(".")
        payload = {
            "input_Amount": amount_str,
            "input_CustomerMSISDN": payer_msisdn,
            "input_Country": self.country,
            "input_Currency": self.currency,
            "input_ServiceProviderCode": self.service_provider_code,
            "input_TransactionReference": reference,
            "input_ThirdPartyConversationID": third_party_id,
            "input_PurchasedItemsDesc": description,
        }
        if self.stub:
            data = {
                "output_ResponseCode": ACCEPTED,
                "output_ResponseDesc": "Request processed successfully",
                "output_TransactionID": f"STUB{_now_ms()}",
                "output_ConversationID": f"C{_now_ms()}",
                "output_ThirdPartyConversationID": third_party_id,
            }
        else:
            bearer = await self.authorized_bearer()
            data = await self._call("POST", "c2bPayment/singleStage", bearer, payload)
        code = data.get("output_ResponseCode")
        if code != ACCEPTED:
            log.warning("M-Pesa rejected collection %s: %s %s", reference, code, data.get("output_ResponseDesc"))
        return CollectionResult(
            success=code == ACCEPTED,
            response_code=code,
            response_desc=data.get("output_ResponseDesc"),
            transaction_id=data.get("output_TransactionID"),
            conversation_id=data.get("output_ConversationID"),
            third_party_conversation_id=data.get("output_ThirdPartyConversationID") or third_party_id,
            transaction_reference=reference,
            amount=amount_str,
            customer_msisdn=payer_msisdn,
            raw=data,
        )

    async def query_status(self, transaction_id: str) -> Dict[str, Any]:
        params = {
            "input_QueryReference": transaction_id,
            "input_Country": self.country,
            "input_ServiceProviderCode": self.service_provider_code,
            "input_ThirdPartyConversationID": f"query{_now_ms()}",
        }
        if self.stub:
            return {
                "output_ResponseCode": ACCEPTED,
                "output_ResponseDesc": "Request processed successfully",
                "output_ResponseTransactionStatus": "Completed",
                "output_ConversationID": f"C{_now_ms()}",
            }
        bearer = await self.authorized_bearer()
        return await self._call("GET", "queryTransactionStatus", bearer, params)
