# src/infrastructure/gateways/chapa.py

import hashlib
import hmac
import logging
import os
from typing import Any, Mapping

import requests

from src.domain.exceptions import (
    GatewayConfigurationError,
    GatewayUnavailableError,
    InvalidWebhookSignatureError,
    MalformedWebhookError,
)
from src.infrastructure.gateways.base import GatewayNotification, PaymentGateway

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.chapa.co"
REQUEST_TIMEOUT_SECONDS = 10


class ChapaGateway(PaymentGateway):
    name = "chapa"
    supports_polling = True

    def _secret_key(self) -> str:
        secret_key = os.getenv("CHAPA_SECRET_KEY")
        if not secret_key:
            raise GatewayConfigurationError(
                "Chapa keys not configured. Set CHAPA_SECRET_KEY."
            )
        return secret_key

    def _base_url(self) -> str:
        return os.getenv("CHAPA_BASE_URL", DEFAULT_BASE_URL).rstrip("/")

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        secret = os.getenv("CHAPA_WEBHOOK_SECRET")
        if not secret:
            raise GatewayConfigurationError(
                "Chapa webhook secret not configured. Set CHAPA_WEBHOOK_SECRET."
            )

        signature = headers.get("chapa-signature") or headers.get("x-chapa-signature")
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        if not signature or not hmac.compare_digest(signature, expected):
            raise InvalidWebhookSignatureError()

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayNotification:
        # Chapa has sent both {event, data: {...}} and flat bodies.
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

        tx_ref = data.get("tx_ref") or payload.get("tx_ref")
        status = data.get("status") or payload.get("status") or payload.get("event")
        if not tx_ref or not status:
            raise MalformedWebhookError()

        return GatewayNotification(tx_ref=str(tx_ref), status=str(status), payload=payload)

    def fetch_status(self, tx_ref: str) -> GatewayNotification:
        url = f"{self._base_url()}/v1/transaction/verify/{tx_ref}"
        try:
            response = requests.get(
                url,
                headers={
                    "Authorization": f"Bearer {self._secret_key()}",
                    "Content-Type": "application/json",
                },
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise GatewayUnavailableError(f"Chapa verify failed for {tx_ref}: {exc}") from exc

        if response.status_code >= 500:
            raise GatewayUnavailableError(
                f"Chapa verify returned {response.status_code} for {tx_ref}"
            )

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        status = data.get("status") or "unknown"
        logger.info(
            "Chapa verify. tx_ref=%s http_status=%s payment_status=%s",
            tx_ref,
            response.status_code,
            status,
        )
        return GatewayNotification(tx_ref=tx_ref, status=str(status), payload=body)
