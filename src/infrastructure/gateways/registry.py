# src/infrastructure/gateways/registry.py

from src.domain.exceptions import UnknownGatewayError
from src.infrastructure.gateways.base import PaymentGateway
from src.infrastructure.gateways.chapa import ChapaGateway
from src.infrastructure.gateways.razorpay_gateway import RazorpayGateway

# Offline bank transfer / mobile money payments. Confirmed by an operator
# through the manual verification endpoint, never by webhook or polling.
MANUAL_PROVIDER = "manual"

_GATEWAYS: dict[str, type[PaymentGateway]] = {
    ChapaGateway.name: ChapaGateway,
    RazorpayGateway.name: RazorpayGateway,
}


def get_gateway(name: str) -> PaymentGateway:
    gateway_cls = _GATEWAYS.get((name or "").lower())
    if gateway_cls is None:
        raise UnknownGatewayError(f"Payment gateway '{name}' not supported")
    return gateway_cls()


def supported_providers() -> list[str]:
    return sorted([*_GATEWAYS, MANUAL_PROVIDER])


def pollable_providers() -> list[str]:
    return sorted(name for name, cls in _GATEWAYS.items() if cls.supports_polling)
