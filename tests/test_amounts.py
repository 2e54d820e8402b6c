from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from amounts import cents_to_decimal, parse_amount
from schemas import TransactionIn


@pytest.mark.parametrize(
    "raw, cents",
    [
        (1500, 150_000),
        (12.5, 1_250),
        (Decimal("0.005"), 1),
        ("1.250.000,50", 125_000_050),
        ("Rp 2.500.000", 250_000_000),
        ("1500.75", 150_075),
        ("0", 0),
        ("92233720368547758.07", 2**63 - 1),
    ],
)
def test_parse_amount_accepts_common_notations(raw, cents) -> None:
    assert parse_amount(raw) == cents


@pytest.mark.parametrize(
    "raw", ["", "abc", "-5", "NaN", "inf", True, "1e20", 10**18, "92233720368547758.08"]
)
def test_parse_amount_rejects_bad_input(raw) -> None:
    with pytest.raises(ValueError):
        parse_amount(raw)


def test_cents_to_decimal_keeps_two_places() -> None:
    assert cents_to_decimal(150_050) == Decimal("1500.50")
    assert str(cents_to_decimal(-2_500)) == "-25.00"


def test_transaction_payload_uses_camel_case_and_validates_amount() -> None:
    payload = TransactionIn.model_validate({"yearId": 1, "categoryId": 2, "amount": "10,5"})
    assert payload.amount_cents == 1_050

    with pytest.raises(PydanticValidationError):
        TransactionIn.model_validate({"yearId": 1, "categoryId": 2, "amount": "-1"})
    with pytest.raises(PydanticValidationError):
        TransactionIn.model_validate({"yearId": 1, "categoryId": 2})
