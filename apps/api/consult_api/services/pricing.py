"""Per-unit consultation prices.

One unit is one 10-minute interval (or the single extra unit of a manual
end). Prices are per modality and currency; the currency is fixed per wallet
when the wallet is created.
"""

from decimal import Decimal

from consult_api.core.config import settings
from consult_api.db.enums import Currency, Modality

UNIT_PRICES: dict[str, dict[str, Decimal]] = {
    Currency.USD.value: {
        Modality.TEXT.value: Decimal("4.00"),
        Modality.VOICE.value: Decimal("5.00"),
        Modality.VIDEO.value: Decimal("6.00"),
    },
    Currency.MWK.value: {
        Modality.TEXT.value: Decimal("4000.00"),
        Modality.VOICE.value: Decimal("5000.00"),
        Modality.VIDEO.value: Decimal("6000.00"),
    },
}


def default_currency() -> str:
    return Currency(settings.BILLING_CURRENCY.upper()).value


def unit_price(modality: str, currency: str | None = None) -> Decimal:
    """Price of one billable unit. Raises ValueError for an unknown modality or currency."""
    rates = UNIT_PRICES[Currency((currency or default_currency()).upper()).value]
    return rates[Modality(modality).value]


def prices_for(currency: str | None = None) -> dict[str, object]:
    code = Currency((currency or default_currency()).upper()).value
    return {**UNIT_PRICES[code], "currency": code}
