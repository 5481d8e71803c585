"""MercadoPago REST client."""

import logging
from typing import Any

import httpx

from .errors import PaymentNotFoundError, UpstreamError

logger = logging.getLogger(__name__)

PROVIDER = "mercadopago"


class MercadoPagoClient:
    """Thin synchronous wrapper over the MercadoPago payments and preferences APIs."""

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize MercadoPagoClient.

        Args:
            access_token: Bearer token for the MercadoPago account.
            base_url: API root.
            timeout: Per-request timeout in seconds.
            transport: Override transport (for testing).
        """
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
            transport=self._transport,
        )

    def _send(self, method: str, path: str, what: str, **kwargs: Any) -> httpx.Response:
        if not self.access_token:
            raise UpstreamError(PROVIDER, "access token is not configured")

        try:
            with self._client() as client:
                return client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("MercadoPago timeout %s", what)
            raise UpstreamError(PROVIDER, "request timed out", detail=str(e)) from e
        except httpx.HTTPError as e:
            logger.error("MercadoPago transport error %s: %s", what, e)
            raise UpstreamError(PROVIDER, "request failed", detail=str(e)) from e

    def _json(self, resp: httpx.Response, what: str) -> Any:
        if resp.is_error:
            logger.error("MercadoPago API error %s: %s %s", what, resp.status_code, resp.text)
            raise UpstreamError(
                PROVIDER,
                f"HTTP {resp.status_code}",
                detail=_error_detail(resp),
            )
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(PROVIDER, "response is not JSON", detail=resp.text) from e

    def get_payment(self, payment_id: str) -> dict[str, Any]:
        """
        Fetch a payment by ID.

        Raises:
            PaymentNotFoundError: If MercadoPago reports no such payment.
            UpstreamError: On any other provider or transport failure.
        """
        what = f"fetching payment {payment_id}"
        resp = self._send("GET", f"/v1/payments/{payment_id}", what)
        if resp.status_code == 404:
            raise PaymentNotFoundError(payment_id)
        data = self._json(resp, what)
        if not data:
            raise PaymentNotFoundError(payment_id)
        return data

    def create_preference(
        self, preference: dict[str, Any], idempotency_key: str | None = None
    ) -> dict[str, Any]:
        """
        Create a checkout preference.

        Args:
            preference: Preference body (items, payer, back_urls, ...).
            idempotency_key: Sent as X-Idempotency-Key so retries reuse the
                same preference.

        Returns:
            The created preference; always carries an 'id'.

        Raises:
            UpstreamError: On any provider or transport failure.
        """
        what = f"creating preference for {preference.get('external_reference')}"
        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else None
        resp = self._send("POST", "/checkout/preferences", what, json=preference, headers=headers)
        data = self._json(resp, what)
        if not isinstance(data, dict) or not data.get("id"):
            raise UpstreamError(PROVIDER, "preference was not created", detail=data)
        return data


def _error_detail(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text
