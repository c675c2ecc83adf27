from decimal import Decimal

import pytest

from core.settings import CardProcessorSettings, HashProcessorSettings, WalletProcessorSettings
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import PaymentMethod
from infrastructure.external.payments import (
    PayHereHashClient,
    PayPalWalletClient,
    StripeCardClient,
    get_payment_gateway,
)
from shared.codes.payment_codes import CanonicalStatus


def test_provider_status_mapping():
    card = StripeCardClient(CardProcessorSettings())
    assert card._map_status("succeeded") is CanonicalStatus.COMPLETED
    assert card._map_status("requires_capture") is CanonicalStatus.PROCESSING
    assert card._map_status("requires_action") is CanonicalStatus.PENDING
    assert card._map_status("something_new") is CanonicalStatus.UNKNOWN

    wallet = PayPalWalletClient(WalletProcessorSettings())
    assert wallet._map_status("APPROVED") is CanonicalStatus.PROCESSING
    assert wallet._map_status("VOIDED") is CanonicalStatus.FAILED
    assert wallet._map_status(None) is CanonicalStatus.UNKNOWN


def test_factory_dispatches_by_method():
    assert isinstance(get_payment_gateway(PaymentMethod.CARD), StripeCardClient)
    assert isinstance(get_payment_gateway(PaymentMethod.WALLET), PayPalWalletClient)
    assert isinstance(get_payment_gateway(PaymentMethod.HASH), PayHereHashClient)
    with pytest.raises(ValueError):
        get_payment_gateway("bitcoin")


def test_manual_capture_makes_card_two_phase():
    assert not StripeCardClient(CardProcessorSettings()).two_phase
    assert StripeCardClient(CardProcessorSettings(capture_method="manual")).two_phase


@pytest.mark.parametrize(
    "order_id,currency",
    [
        ("not-an-order", "USD"),
        ("", "USD"),
        ("65a1f0c2e4b0a1b2c3d4e5f6", "GBP"),
    ],
)
def test_ensure_supported_rejects_before_network(order_id, currency):
    client = PayHereHashClient(HashProcessorSettings())
    with pytest.raises(DomainValidationException):
        client.ensure_supported(order_id, currency)


def test_ensure_supported_is_case_insensitive_on_currency():
    PayHereHashClient(HashProcessorSettings()).ensure_supported("65a1f0c2e4b0a1b2c3d4e5f6", "lkr")


def test_card_minor_units():
    assert StripeCardClient._to_minor(Decimal("49.99"), "USD") == 4999
    assert StripeCardClient._to_minor(Decimal("500"), "JPY") == 500
    assert StripeCardClient._from_minor(4999, "usd") == Decimal("49.99")
    assert StripeCardClient._from_minor(None, "usd") is None
