"""Ledger enums."""

from enum import Enum


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class BillingSourceType(str, Enum):
    """What produced a ledger transaction."""

    TEXT_SESSION = "text_session"
    CALL_SESSION = "call_session"
    APPOINTMENT = "appointment"


class Currency(str, Enum):
    USD = "USD"
    MWK = "MWK"
