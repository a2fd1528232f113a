from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Protocol
from uuid import uuid4

import aiohttp

from app.errors import GatewayError
from app.models.payment import GatewayPayment, GatewayPixPayment
from app.services.log_context import describe_request_context

_APPROVED = {"approved", "authorized"}
_REJECTED = {"rejected", "refunded", "charged_back"}


def map_gateway_status(raw_status: str | None, status_detail: str | None = None) -> str:
    status = (raw_status or "").strip().lower()
    detail = (status_detail or "").strip().lower()
    if status in _APPROVED:
        return "approved"
    if status == "expired" or (status == "cancelled" and detail == "expired"):
        return "expired"
    if status in _REJECTED or status == "cancelled":
        return "rejected"
    return "pending"


def _parse_gateway_datetime(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PaymentGateway(Protocol):
    async def fetch_payment_status(self, payment_id: str) -> GatewayPayment: ...

    async def create_payment(
        self,
        amount: float,
        contact_email: str,
        reference: str | None,
        description: str,
        expires_in_minutes: int,
    ) -> GatewayPixPayment: ...


class GatewayClient:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout_seconds: float = 5.0,
        retries: int = 2,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.retries = max(retries, 1)
        self._logger = logging.getLogger(__name__)
        self._session: aiohttp.ClientSession | None = None

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        context_str = describe_request_context()
        request_headers = {"Authorization": f"Bearer {self.access_token}"}
        if headers:
            request_headers.update(headers)
        for attempt in range(self.retries):
            session = await self._get_session()
            try:
                async with session.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json,
                    headers=request_headers,
                ) as resp:
                    if resp.status in {502, 503, 504} and attempt < self.retries - 1:
                        await asyncio.sleep(0.5 * 2**attempt)
                        continue
                    if resp.status >= 400:
                        body = await resp.text()
                        self._logger.error(
                            "Gateway API error %s %s: status=%s body=%s %s",
                            method,
                            path,
                            resp.status,
                            body[:300],
                            context_str,
                        )
                        raise GatewayError(
                            f"Gateway returned HTTP {resp.status}",
                            transient=resp.status >= 500 or resp.status == 429,
                            http_status=resp.status,
                            details={"path": path},
                        )
                    try:
                        data = await resp.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError) as exc:
                        raise GatewayError("Gateway returned a non-JSON body", http_status=resp.status) from exc
                    if not isinstance(data, dict):
                        raise GatewayError("Gateway returned an unexpected body", http_status=resp.status)
                    return data
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as exc:
                if attempt < self.retries - 1:
                    await asyncio.sleep(0.5 * 2**attempt)
                    continue
                self._logger.error(
                    "Gateway connection error %s %s: error=%r %s",
                    method,
                    path,
                    exc,
                    context_str,
                )
                raise GatewayError("Gateway unreachable", code="GATEWAY_UNREACHABLE") from exc
        raise GatewayError("Gateway unavailable after retries", code="GATEWAY_UNAVAILABLE")

    async def fetch_payment_status(self, payment_id: str) -> GatewayPayment:
        data = await self._request("GET", f"/v1/payments/{payment_id}")
        raw_status = data.get("status")
        status_detail = data.get("status_detail")
        return GatewayPayment(
            payment_id=str(data.get("id") or payment_id),
            status=map_gateway_status(raw_status, status_detail),
            approved_at=_parse_gateway_datetime(data.get("date_approved")),
            raw_status=raw_status,
            status_detail=status_detail,
        )

    async def create_payment(
        self,
        amount: float,
        contact_email: str,
        reference: str | None,
        description: str,
        expires_in_minutes: int,
    ) -> GatewayPixPayment:
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=expires_in_minutes)
        payload: dict[str, Any] = {
            "transaction_amount": amount,
            "description": description,
            "payment_method_id": "pix",
            "payer": {"email": contact_email},
            "date_of_expiration": expires_at.isoformat(timespec="milliseconds"),
        }
        if reference:
            payload["external_reference"] = reference
        data = await self._request(
            "POST",
            "/v1/payments",
            json=payload,
            headers={"X-Idempotency-Key": uuid4().hex},
        )
        if not data.get("id"):
            raise GatewayError("Gateway response is missing the payment id", transient=False)
        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        return GatewayPixPayment(
            payment_id=str(data["id"]),
            status=map_gateway_status(data.get("status"), data.get("status_detail")),
            qr_code=transaction.get("qr_code_base64"),
            qr_code_text=transaction.get("qr_code"),
            expires_at=_parse_gateway_datetime(data.get("date_of_expiration")) or expires_at,
        )
