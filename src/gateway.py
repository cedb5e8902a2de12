"""MercadoPago payment link issuer over the REST API.

Creates checkout preferences for payment stages and reads back payments for
webhook confirmation.  Credentials come from a VersionedSettings holder that
admins can edit at runtime; the HTTP client is rebuilt lazily whenever the
settings version it was built from goes stale.

Errors:
  ConfigurationError  no access token configured
  GatewayError        transport error, timeout or non-2xx response
"""

import logging
import uuid
from typing import Optional

import httpx

from application import (
    AbstractPaymentGateway,
    ConfigurationError,
    GatewayError,
    GatewayPayment,
    PaymentPreference,
    PreferenceRequest,
)
from config import MercadoPagoConfig, ServiceConfig, VersionedSettings

logger = logging.getLogger(__name__)

PREFERENCES_PATH = "/checkout/preferences"
PAYMENT_PATH = "/v1/payments/{payment_id}"
WEBHOOK_PATH = "/api/v1/payments/webhook"


class MercadoPagoGateway(AbstractPaymentGateway):
    """MercadoPago checkout adapter."""

    def __init__(
        self,
        settings: VersionedSettings[MercadoPagoConfig],
        config: ServiceConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._client_version = 0

    @property
    def allows_placeholder_links(self) -> bool:
        return (
            not self.config.is_production
            and self.config.payments.allow_placeholder_links
        )

    async def _get_client(self) -> httpx.AsyncClient:
        version, creds = self.settings.snapshot()
        if self._client is not None and self._client_version == version:
            return self._client
        if not creds.access_token:
            raise ConfigurationError(
                "MercadoPago is not configured: an access token is required."
            )
        if self._client is not None:
            await self._client.aclose()
            logger.info(f"MercadoPago settings changed (v{version}), rebuilding client")
        self._client = httpx.AsyncClient(
            base_url=creds.api_base,
            headers={"Authorization": f"Bearer {creds.access_token}"},
            timeout=self.config.payments.timeout_seconds,
            transport=self._transport,
        )
        self._client_version = version
        return self._client

    def _preference_body(self, request: PreferenceRequest) -> dict:
        base_url = self.config.base_url.rstrip("/")
        reference = request.external_reference or f"project-{request.project_id}"
        return {
            "items": [
                {
                    "title": request.description,
                    "unit_price": float(request.amount),
                    "quantity": 1,
                    "currency_id": self.config.payments.currency,
                }
            ],
            "payer": {"email": request.payer_email, "name": request.payer_name},
            "back_urls": {
                "success": f"{base_url}/client/projects?payment=success",
                "failure": f"{base_url}/client/projects?payment=failure",
                "pending": f"{base_url}/client/projects?payment=pending",
            },
            "auto_return": "approved",
            "external_reference": reference,
            "notification_url": f"{base_url}{WEBHOOK_PATH}",
            "expires": False,
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        client = await self._get_client()
        try:
            resp = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"MercadoPago {method} {path} failed: {e}")
            raise GatewayError("Payment gateway unreachable.") from e
        if resp.status_code >= 400:
            logger.error(
                f"MercadoPago {method} {path} returned {resp.status_code}: {resp.text}"
            )
            raise GatewayError(f"Payment gateway returned HTTP {resp.status_code}.")
        try:
            return resp.json()
        except ValueError as e:
            raise GatewayError("Payment gateway returned an unreadable response.") from e

    async def create_preference(self, request: PreferenceRequest) -> PaymentPreference:
        try:
            data = await self._request(
                "POST", PREFERENCES_PATH, json=self._preference_body(request)
            )
        except (ConfigurationError, GatewayError) as e:
            if not self.allows_placeholder_links:
                raise
            logger.warning(f"Using placeholder payment link outside production: {e}")
            return self._placeholder(request)

        preference = PaymentPreference(
            external_id=str(data.get("id", "")),
            primary_link=data.get("init_point"),
            sandbox_link=data.get("sandbox_init_point"),
        )
        logger.info(f"MercadoPago preference {preference.external_id} created")
        return preference

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        data = await self._request("GET", PAYMENT_PATH.format(payment_id=payment_id))
        return GatewayPayment(
            id=str(data.get("id", payment_id)),
            status=data.get("status", "unknown"),
            external_reference=data.get("external_reference"),
            preference_id=data.get("preference_id"),
        )

    def _placeholder(self, request: PreferenceRequest) -> PaymentPreference:
        pref_id = f"placeholder-{request.project_id.hex[:8]}-{uuid.uuid4().hex[:8]}"
        return PaymentPreference(
            external_id=pref_id,
            primary_link=None,
            sandbox_link=(
                "https://sandbox.mercadopago.com/checkout/v1/redirect"
                f"?pref_id={pref_id}"
            ),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
