"""
Statement transaction classification.

The platform's transaction taxonomy is open ended and the field carrying the
type differs between response shapes, so both the type and amount lookups walk
a configurable list of candidate field names.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Sequence

from shopbridge.core.utils import to_decimal
from shopbridge.schemas.tiktok import TypeAggregate

UNKNOWN_TYPE = "unknown"
DEFAULT_TYPE_FIELDS = ("statement_type", "type", "transaction_type")
DEFAULT_AMOUNT_FIELDS = ("amount", "total_amount", "settlement_amount")


class TransactionClassifier:

    def __init__(self, type_fields: Sequence[str] = DEFAULT_TYPE_FIELDS,
                 amount_fields: Sequence[str] = DEFAULT_AMOUNT_FIELDS):
        self.type_fields = tuple(type_fields) or DEFAULT_TYPE_FIELDS
        self.amount_fields = tuple(amount_fields) or DEFAULT_AMOUNT_FIELDS

    @classmethod
    def from_settings(cls, settings) -> "TransactionClassifier":
        return cls(settings.transaction_type_fields, settings.amount_fields)

    def classify(self, record: Mapping[str, Any]) -> str:
        for field in self.type_fields:
            value = record.get(field)
            if value not in (None, ""):
                return str(value)
        return UNKNOWN_TYPE

    def amount(self, record: Mapping[str, Any]) -> Decimal:
        """Signed amount from the first parseable amount field, 0 if none."""
        for field in self.amount_fields:
            value = to_decimal(record.get(field))
            if value is not None:
                return value
        return Decimal("0")


def aggregate_by_type(transactions: Iterable) -> Dict[str, TypeAggregate]:
    """
    Count and sum |amount| per type. Sign semantics belong to the type, so the
    totals represent movement magnitude only.
    """
    totals: Dict[str, TypeAggregate] = {}
    for tx in transactions:
        aggregate = totals.setdefault(tx.transaction_type, TypeAggregate())
        aggregate.count += 1
        aggregate.total_amount += abs(tx.amount)
    return totals
