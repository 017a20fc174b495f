"""
Resend API client used as the mail transmitter for drip emails.

A send is attempted exactly once per call: the email queue retries the whole
job (with fresh content) on failure, so retrying here could double-deliver a
message whose acknowledgement was lost.
"""

from typing import Any

import httpx

from app.config import settings
from app.features.drip_campaign.domain import TransmissionResult
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 15  # seconds


class ResendService:
    """Thin async wrapper around POST /emails."""

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        from_address: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.api_url = api_url or settings.RESEND_API_URL
        self.from_address = from_address or settings.RESEND_FROM_ADDRESS
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(REQUEST_TIMEOUT),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        to_address: str,
        subject: str,
        html_body: str,
        tags: dict[str, str] | None = None,
    ) -> TransmissionResult:
        """
        Send one email.

        Provider rejections and network errors come back as success=False;
        nothing here raises for a failed delivery.
        """
        if not self.configured:
            logger.warning("Email sending skipped, RESEND_API_KEY not configured", to=to_address)
            return TransmissionResult(success=False, error="RESEND_API_KEY not configured")

        payload: dict[str, Any] = {
            "from": self.from_address,
            "to": [to_address],
            "subject": subject,
            "html": html_body,
        }
        if tags:
            payload["tags"] = [{"name": name, "value": str(value)} for name, value in tags.items()]

        try:
            response = await self._get_client().post(
                self.api_url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.RequestError as e:
            logger.error("Resend request failed", to=to_address, error=str(e))
            return TransmissionResult(success=False, error=f"Request error: {e}")

        if not response.is_success:
            error = self._extract_error(response)
            logger.error(
                "Resend rejected email",
                to=to_address,
                status_code=response.status_code,
                error=error,
            )
            return TransmissionResult(
                success=False, error=error, status_code=response.status_code
            )

        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None

        logger.info("Email sent via Resend", to=to_address, provider_message_id=message_id)
        return TransmissionResult(
            success=True, provider_message_id=message_id, status_code=response.status_code
        )

    def _extract_error(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or data)
        return str(data)

    async def health_check(self) -> dict[str, Any]:
        return {
            "healthy": True,
            "service": "resend",
            "configured": self.configured,
        }


# Singleton instance for application use
resend_service = ResendService()
