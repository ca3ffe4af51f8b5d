import phonenumbers
import pytest

from backend import phone_validation
from backend.phone_validation import (
    is_fake_number,
    standardize_phone_number,
    to_phone10,
    validate_phone_india,
)


@pytest.mark.parametrize("phone", ["9812345670", "98123 45670", "94480-12345"])
def test_valid_indian_mobiles(phone):
    assert validate_phone_india(phone) == (True, None)


@pytest.mark.parametrize(
    "phone",
    ["", None, 9812345670, "5812345670", "981234567", "9999999999", "9876543210", "9812333333"],
)
def test_invalid_numbers(phone):
    assert validate_phone_india(phone) == (False, "Invalid phone number")


def test_numbers_are_checked_against_the_numbering_plan(monkeypatch):
    checked = []

    def reject(number):
        checked.append(phonenumbers.format_number(number, phonenumbers.PhoneNumberFormat.E164))
        return False

    monkeypatch.setattr(phone_validation.phonenumbers, "is_valid_number", reject)
    assert validate_phone_india("9812345670") == (False, "Invalid phone number")
    assert checked == ["+919812345670"]


def test_fake_patterns():
    assert is_fake_number("1111111111")
    assert is_fake_number("1234567890")
    assert not is_fake_number("9812345670")
    assert is_fake_number("123")


def test_to_phone10():
    assert to_phone10("98123-45670") == "9812345670"
    assert to_phone10("+91 9812345670") is None
    assert to_phone10(None) is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("9812345670", "+919812345670"),
        ("91 98123 45670", "+919812345670"),
        ("+44 20 7946 0958", "+442079460958"),
        ("", ""),
    ],
)
def test_standardize_phone_number(raw, expected):
    assert standardize_phone_number(raw) == expected
