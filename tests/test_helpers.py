from decimal import Decimal

import pytest

from cardpass.errors import ValidationError
from cardpass.helpers import (
    UPPER_ALNUM, from_cents, is_valid_email, random_token, to_cents, to_iso,
)


@pytest.mark.parametrize("value, cents", [
    ("39.90", 3990),
    ("199.9", 19990),
    (Decimal("0.01"), 1),
    (10, 1000),
    ("0", 0),
])
def test_to_cents_is_exact(value, cents):
    assert to_cents(value) == cents


@pytest.mark.parametrize("value", ["39.901", "abc", "-1", "NaN", "inf"])
def test_to_cents_rejects_bad_amounts(value):
    with pytest.raises(ValidationError):
        to_cents(value)


def test_from_cents():
    assert from_cents(3990) == Decimal("39.90")
    assert str(from_cents(19990)) == "199.90"
    assert from_cents(None) is None


def test_random_token_uses_alphabet():
    token = random_token(32)
    assert len(token) == 32
    assert set(token) <= set(UPPER_ALNUM)


def test_is_valid_email():
    assert is_valid_email("ana@example.com")
    assert not is_valid_email("ana@example")
    assert not is_valid_email("")
    assert not is_valid_email(None)


def test_to_iso_is_utc():
    assert to_iso(0) == "1970-01-01T00:00:00+00:00"
    assert to_iso(None) is None
