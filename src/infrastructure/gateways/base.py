# src/infrastructure/gateways/base.py

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True)
class GatewayNotification:
    """A gateway's statement about one transaction, in its own vocabulary."""

    tx_ref: str
    status: str
    payload: dict[str, Any] = field(default_factory=dict)


class PaymentGateway:
    """
    Narrow interface onto an external payment provider.

    The core never initiates charges or refunds itself; it only verifies
    callbacks and asks for the authoritative status of a tx_ref.
    """

    name: str = ""
    supports_polling: bool = False

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        raise NotImplementedError

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayNotification:
        raise NotImplementedError

    def fetch_status(self, tx_ref: str) -> GatewayNotification:
        raise NotImplementedError
