# src/infrastructure/gateways/razorpay_gateway.py

import logging
import os
from typing import Any, Mapping

import razorpay

from src.domain.exceptions import (
    GatewayConfigurationError,
    GatewayUnavailableError,
    InvalidWebhookSignatureError,
    MalformedWebhookError,
)
from src.infrastructure.gateways.base import GatewayNotification, PaymentGateway

logger = logging.getLogger(__name__)


class RazorpayGateway(PaymentGateway):
    """
    Razorpay orders double as tx_refs: the order id is issued at initiation
    unless the order carries an explicit ``notes.tx_ref``.
    """

    name = "razorpay"
    supports_polling = True

    def _client(self) -> razorpay.Client:
        key_id = os.getenv("RAZORPAY_KEY_ID")
        key_secret = os.getenv("RAZORPAY_KEY_SECRET")
        if not key_id or not key_secret:
            raise GatewayConfigurationError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        return razorpay.Client(auth=(key_id, key_secret))

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        secret = os.getenv("RAZORPAY_WEBHOOK_SECRET")
        if not secret:
            raise GatewayConfigurationError(
                "Razorpay webhook secret not configured. Set RAZORPAY_WEBHOOK_SECRET."
            )

        signature = headers.get("x-razorpay-signature")
        if not signature:
            raise InvalidWebhookSignatureError()

        # Webhook verification needs only the webhook secret, not API keys.
        utility = razorpay.Client(auth=("", "")).utility
        try:
            utility.verify_webhook_signature(raw_body.decode("utf-8"), signature, secret)
        except razorpay.errors.SignatureVerificationError as exc:
            raise InvalidWebhookSignatureError() from exc

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayNotification:
        event = payload.get("event") or ""
        entities = payload.get("payload") or {}

        payment = (entities.get("payment") or {}).get("entity") or {}
        order = (entities.get("order") or {}).get("entity") or {}

        notes = payment.get("notes") or order.get("notes") or {}
        tx_ref = (
            (notes.get("tx_ref") if isinstance(notes, dict) else None)
            or payment.get("order_id")
            or order.get("id")
        )

        if event.startswith("refund."):
            status = "refunded"
        else:
            status = payment.get("status") or order.get("status")

        if not tx_ref or not status:
            raise MalformedWebhookError()

        return GatewayNotification(tx_ref=str(tx_ref), status=str(status), payload=payload)

    def fetch_status(self, tx_ref: str) -> GatewayNotification:
        client = self._client()
        try:
            order = client.order.fetch(tx_ref)
            status = order.get("status") or "unknown"
            payments: list[dict] = []
            if status != "paid":
                payments = (client.order.payments(tx_ref) or {}).get("items", [])
        except razorpay.errors.BadRequestError as exc:
            logger.warning("Razorpay rejected order lookup. tx_ref=%s error=%s", tx_ref, exc)
            return GatewayNotification(tx_ref=tx_ref, status="unknown", payload={"error": str(exc)})
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError) as exc:
            raise GatewayUnavailableError(f"Razorpay lookup failed for {tx_ref}: {exc}") from exc

        payment_statuses = {item.get("status") for item in payments}
        if "captured" in payment_statuses:
            status = "captured"
        elif payments and payment_statuses == {"failed"}:
            status = "failed"

        return GatewayNotification(
            tx_ref=tx_ref,
            status=str(status),
            payload={"order": order, "payments": payments},
        )
