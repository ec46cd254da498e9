from __future__ import annotations

from typing import Optional

import httpx

from quickauth.config import Settings
from quickauth.logging import get_logger
from quickauth.service.email import DispatchResult

logger = get_logger(__name__)


def redact_phone(phone: str) -> str:
    if len(phone) <= 4:
        return "***"
    return f"***{phone[-4:]}"


class SmsService:
    """Outbound SMS through an HTTP gateway.

    The gateway receives a JSON body ``{"to", "sender", "message"}`` with a
    bearer API key. Without a gateway URL, or in dev dispatch mode, the
    message is logged instead. Methods never raise.
    """

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: str = "QCOMM",
        brand: str = "Quick Commerce",
        otp_ttl_minutes: int = 5,
        timeout: float = 10.0,
        dev_mode: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.brand = brand
        self.otp_ttl_minutes = otp_ttl_minutes
        self.timeout = timeout
        self.dev_mode = dev_mode
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmsService":
        return cls(
            gateway_url=settings.sms_gateway_url,
            api_key=settings.sms_api_key,
            sender_id=settings.sms_sender_id,
            brand=settings.email_from_name,
            otp_ttl_minutes=settings.phone_otp_ttl_minutes,
            timeout=settings.sms_timeout_seconds,
            dev_mode=settings.dev_dispatch,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url)

    async def _deliver(self, phone: str, message: str, *, kind: str) -> DispatchResult:
        if self.dev_mode or not self.is_configured:
            logger.info(
                "sms_dev_mode",
                to=redact_phone(phone),
                kind=kind,
                configured=self.is_configured,
            )
            return DispatchResult(success=True)

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.gateway_url,
                    json={"to": phone, "sender": self.sender_id, "message": message},
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_rejected",
                to=redact_phone(phone),
                kind=kind,
                status_code=exc.response.status_code,
            )
            return DispatchResult(success=False, error=f"gateway_status_{exc.response.status_code}")
        except httpx.HTTPError as exc:
            logger.error(
                "sms_gateway_unreachable",
                to=redact_phone(phone),
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DispatchResult(success=False, error=type(exc).__name__)
        logger.info("sms_sent", to=redact_phone(phone), kind=kind)
        return DispatchResult(success=True)

    async def send_otp(self, phone: str, code: str, display_name: str) -> DispatchResult:
        message = (
            f"Hi {display_name}, your {self.brand} OTP is: {code}. "
            f"Valid for {self.otp_ttl_minutes} minutes."
        )
        return await self._deliver(phone, message, kind="otp")

    async def send_welcome(self, phone: str, display_name: str) -> DispatchResult:
        message = (
            f"Welcome to {self.brand}, {display_name}! "
            "Start ordering from your favorite restaurants now."
        )
        return await self._deliver(phone, message, kind="welcome")
