from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict

import httpx

from arang_chat.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

_NON_DIGIT_RE = re.compile(r"\D")
INDONESIA_COUNTRY_CODE = "62"


@dataclass(frozen=True)
class DeliveryResult:
    status: str
    provider_msg_id: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


def normalize_whatsapp_number(raw: str) -> str | None:
    """Digits only, Indonesian country code applied; ``None`` when too short."""
    digits = _NON_DIGIT_RE.sub("", raw or "")
    if digits.startswith("0"):
        digits = INDONESIA_COUNTRY_CODE + digits[1:]
    elif not digits.startswith(INDONESIA_COUNTRY_CODE):
        digits = INDONESIA_COUNTRY_CODE + digits
    if len(digits) < 10:
        return None
    return digits


class _UpstreamStatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"upstream_status_{status_code}")
        self.status_code = status_code


async def _post_json(
    *,
    breaker: CircuitBreaker | None,
    http_client: httpx.AsyncClient | None,
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    timeout: float,
) -> httpx.Response:
    client = http_client or httpx.AsyncClient()
    close_client = http_client is None

    async def _send() -> httpx.Response:
        response = await client.post(url, json=payload, headers=headers, timeout=timeout)
        if response.status_code >= 500:
            raise _UpstreamStatusError(response.status_code)
        return response

    try:
        if breaker is None:
            return await _send()
        return await breaker.call(_send)
    finally:
        if close_client:
            await client.aclose()


class NoopPushAdapter:
    async def send_push(self, *, token: str, title: str, body: str, data: Dict[str, str]) -> DeliveryResult:  # noqa: D401
        del token, title, body, data
        logger.info("push_send_skipped", extra={"extra": {"mode": "off"}})
        return DeliveryResult(status="skipped", error_code="push_disabled")


class FcmPushAdapter:
    def __init__(
        self,
        *,
        server_key: str,
        endpoint: str = "https://fcm.googleapis.com/fcm/send",
        timeout_seconds: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.server_key = server_key
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client
        self.breaker = breaker

    async def send_push(self, *, token: str, title: str, body: str, data: Dict[str, str]) -> DeliveryResult:
        payload = {
            "to": token,
            "notification": {"title": title, "body": body},
            "data": data,
        }
        headers = {"Authorization": f"key={self.server_key}"}
        try:
            response = await _post_json(
                breaker=self.breaker,
                http_client=self.http_client,
                url=self.endpoint,
                payload=payload,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except CircuitBreakerOpenError:
            logger.warning("fcm_circuit_open")
            return DeliveryResult(status="failed", error_code="circuit_open")
        except _UpstreamStatusError as exc:
            logger.warning("fcm_request_error", extra={"extra": {"status_code": exc.status_code}})
            return DeliveryResult(status="failed", error_code=f"fcm_status_{exc.status_code}")
        except httpx.HTTPError as exc:
            logger.warning("fcm_request_failed", extra={"extra": {"reason": type(exc).__name__}})
            return DeliveryResult(status="failed", error_code="fcm_request_failed")

        if response.status_code >= 400:
            logger.warning("fcm_request_error", extra={"extra": {"status_code": response.status_code}})
            return DeliveryResult(status="failed", error_code=f"fcm_status_{response.status_code}")

        try:
            body_json = response.json()
        except ValueError:
            logger.warning("fcm_response_parse_failed")
            return DeliveryResult(status="sent")
        if body_json.get("failure"):
            return DeliveryResult(status="failed", error_code="fcm_rejected")
        results = body_json.get("results") or []
        message_id = results[0].get("message_id") if results and isinstance(results[0], dict) else None
        return DeliveryResult(status="sent", provider_msg_id=message_id)


class NoopWhatsAppAdapter:
    async def send_text(self, *, to_number: str, body: str) -> DeliveryResult:  # noqa: D401
        del to_number, body
        logger.info("whatsapp_send_skipped", extra={"extra": {"mode": "off"}})
        return DeliveryResult(status="skipped", error_code="whatsapp_disabled")


class GatewayWhatsAppAdapter:
    """Posts plain-text messages to an HTTP WhatsApp gateway."""

    def __init__(
        self,
        *,
        url: str,
        token: str | None = None,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client
        self.breaker = breaker

    async def send_text(self, *, to_number: str, body: str) -> DeliveryResult:
        number = normalize_whatsapp_number(to_number)
        if number is None:
            logger.warning("whatsapp_number_invalid")
            return DeliveryResult(status="failed", error_code="invalid_number")
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await _post_json(
                breaker=self.breaker,
                http_client=self.http_client,
                url=self.url,
                payload={"number": number, "message": body, "type": "text"},
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except CircuitBreakerOpenError:
            logger.warning("whatsapp_circuit_open")
            return DeliveryResult(status="failed", error_code="circuit_open")
        except _UpstreamStatusError as exc:
            logger.warning("whatsapp_request_error", extra={"extra": {"status_code": exc.status_code}})
            return DeliveryResult(status="failed", error_code=f"whatsapp_status_{exc.status_code}")
        except httpx.HTTPError as exc:
            logger.warning("whatsapp_request_failed", extra={"extra": {"reason": type(exc).__name__}})
            return DeliveryResult(status="failed", error_code="whatsapp_request_failed")

        if response.status_code >= 400:
            logger.warning("whatsapp_request_error", extra={"extra": {"status_code": response.status_code}})
            return DeliveryResult(status="failed", error_code=f"whatsapp_status_{response.status_code}")
        provider_msg_id = None
        try:
            provider_msg_id = (response.json() or {}).get("id")
        except (ValueError, AttributeError):
            logger.warning("whatsapp_response_parse_failed")
        return DeliveryResult(status="sent", provider_msg_id=provider_msg_id)


def _breaker(app_settings, name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name=name,
        failure_threshold=app_settings.notification_circuit_failure_threshold,
        recovery_time=app_settings.notification_circuit_recovery_seconds,
        window_seconds=app_settings.notification_circuit_window_seconds,
    )


def resolve_push_adapter(app_settings) -> FcmPushAdapter | NoopPushAdapter:
    if app_settings.push_mode != "fcm" or not app_settings.fcm_server_key:
        return NoopPushAdapter()
    return FcmPushAdapter(
        server_key=app_settings.fcm_server_key,
        endpoint=app_settings.fcm_endpoint,
        timeout_seconds=app_settings.push_timeout_seconds,
        breaker=_breaker(app_settings, "fcm"),
    )


def resolve_whatsapp_adapter(app_settings) -> GatewayWhatsAppAdapter | NoopWhatsAppAdapter:
    if app_settings.whatsapp_mode != "gateway" or not app_settings.whatsapp_gateway_url:
        return NoopWhatsAppAdapter()
    return GatewayWhatsAppAdapter(
        url=app_settings.whatsapp_gateway_url,
        token=app_settings.whatsapp_gateway_token,
        timeout_seconds=app_settings.whatsapp_timeout_seconds,
        breaker=_breaker(app_settings, "whatsapp"),
    )
