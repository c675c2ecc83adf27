"""
Factory for payment gateway clients.

Selection is over the ``PaymentMethod`` enum; each adapter receives its own
settings section plus the shared timeout/retry policy.
"""
from __future__ import annotations

from typing import Optional

import httpx

from core.settings import PaymentSettings, payment_settings
from application.ports.payment_gateway import PaymentGateway
from domain.payment.entity import PaymentMethod
from .card_client import StripeCardClient
from .hash_client import PayHereHashClient
from .wallet_client import PayPalWalletClient


def get_payment_gateway(
    method: PaymentMethod,
    *,
    settings: Optional[PaymentSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PaymentGateway:
    cfg = settings or payment_settings
    common = {
        "timeouts": cfg.timeouts,
        "retry": cfg.retry,
        "order_id_pattern": cfg.order_id_pattern,
        "transport": transport,
    }
    if method is PaymentMethod.CARD:
        return StripeCardClient(cfg.card, webhook=cfg.webhook, **common)
    if method is PaymentMethod.WALLET:
        return PayPalWalletClient(cfg.wallet, **common)
    if method is PaymentMethod.HASH:
        return PayHereHashClient(cfg.hash, **common)
    raise ValueError(f"Unsupported payment method: {method!r}")


__all__ = ["get_payment_gateway", "StripeCardClient", "PayPalWalletClient", "PayHereHashClient"]
