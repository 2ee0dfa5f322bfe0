# Transaction classification unit tests
from decimal import Decimal

import pytest

from shopbridge.core.config import Settings
from shopbridge.schemas.tiktok import StatementTransaction
from shopbridge.services.tiktok.classifier import TransactionClassifier, UNKNOWN_TYPE, aggregate_by_type
from shopbridge.services.tiktok.record_store import calculate_gmv


@pytest.fixture
def classifier():
    return TransactionClassifier()


@pytest.mark.parametrize("record, expected", [
    ({"statement_type": "SETTLEMENT", "type": "ORDER"}, "SETTLEMENT"),
    ({"type": "ORDER", "transaction_type": "X"}, "ORDER"),
    ({"transaction_type": "REFUND"}, "REFUND"),
    ({"statement_type": "", "type": "ADJUSTMENT"}, "ADJUSTMENT"),
    ({"amount": "1.00"}, UNKNOWN_TYPE),
])
def test_classify_uses_first_present_field(classifier, record, expected):
    assert classifier.classify(record) == expected


@pytest.mark.parametrize("record, expected", [
    ({"amount": "-12.34"}, Decimal("-12.34")),
    ({"amount": None, "total_amount": "5"}, Decimal("5")),
    ({"settlement_amount": {"amount": "7.10", "currency": "GBP"}}, Decimal("7.10")),
    ({"amount": "n/a", "total_amount": 3}, Decimal("3")),
    ({}, Decimal("0")),
])
def test_amount_fallbacks(classifier, record, expected):
    assert classifier.amount(record) == expected


def test_field_lists_come_from_settings():
    settings = Settings(TIKTOK_TRANSACTION_TYPE_FIELDS="fee_type", TIKTOK_AMOUNT_FIELDS="fee_amount")
    classifier = TransactionClassifier.from_settings(settings)
    assert classifier.classify({"fee_type": "SHIPPING", "type": "ORDER"}) == "SHIPPING"
    assert classifier.amount({"fee_amount": "2.5", "amount": "9"}) == Decimal("2.5")


def test_aggregate_sums_magnitudes_per_type(classifier):
    transactions = [
        StatementTransaction.from_payload({"id": "1", "type": "ORDER", "amount": "10"}, classifier),
        StatementTransaction.from_payload({"id": "2", "type": "ORDER", "amount": "-4"}, classifier),
        StatementTransaction.from_payload({"id": "3", "amount": "1"}, classifier),
    ]

    totals = aggregate_by_type(transactions)

    assert totals["ORDER"].count == 2
    assert totals["ORDER"].total_amount == Decimal("14")
    assert totals[UNKNOWN_TYPE].count == 1


def test_statement_transaction_keeps_raw_and_currency(classifier):
    payload = {"id": 99, "type": "ORDER", "settlement_amount": {"amount": "3", "currency": "EUR"}, "order_id": 5}

    tx = StatementTransaction.from_payload(payload, classifier)

    assert tx.transaction_id == "99"
    assert tx.currency == "EUR"
    assert tx.order_id == "5"
    assert tx.raw == payload


def test_gmv_is_quantity_times_sale_price():
    order = {"line_items": [
        {"quantity": 2, "sale_price": "10.00"},
        {"quantity": 1, "original_price": "5.50"},
        {"sku_sale_price": "1.25"},
    ]}
    assert calculate_gmv(order) == Decimal("26.75")
