"""Tests for identifier normalization."""

import pytest

from gatishil_auth.core.errors import InvalidInput
from gatishil_auth.core.identifiers import (
    Channel,
    PhonePlan,
    mask_identifier,
    normalize_email,
    normalize_identifier,
    normalize_payload,
)

PLAN = PhonePlan("977", r"9[678]\d{8}")


@pytest.mark.parametrize(
    "raw",
    [
        "9812345678",
        "09812345678",
        "9779812345678",
        "+9779812345678",
        "+977 981-234-5678",
        "(+977) 98 1234 5678",
    ],
)
def test_phone_shapes_normalize_to_e164(raw):
    assert PLAN.to_e164(raw) == "+9779812345678"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "981234567",  # one digit short
        "98123456789",  # one digit long
        "9512345678",  # landline prefix
        "+919812345678",  # another country
        "98123abc78",
    ],
)
def test_non_mobile_numbers_are_rejected(raw):
    assert PLAN.to_e164(raw) is None


def test_national_strips_country_code():
    assert PLAN.national("+9779812345678") == "9812345678"


def test_email_is_lowercased():
    assert normalize_email("  Ram.Sharma@GatishilNepal.org ") == "ram.sharma@gatishilnepal.org"


def test_bad_email_is_rejected():
    assert normalize_email("not-an-email") is None


def test_phone_preferred_when_both_present():
    result = normalize_identifier(PLAN, phone="9812345678", email="ram@gatishilnepal.org")
    assert result.identifier is not None
    assert result.identifier.channel == Channel.SMS
    assert result.identifier.national_number == "9812345678"


def test_explicit_email_channel_wins():
    result = normalize_identifier(PLAN, phone="9812345678", email="ram@gatishilnepal.org", channel="email")
    assert result.identifier.channel == Channel.EMAIL
    assert result.identifier.value == "ram@gatishilnepal.org"


def test_bare_identifier_is_sniffed():
    assert normalize_identifier(PLAN, identifier="sita@gatishilnepal.org").identifier.channel == Channel.EMAIL
    assert normalize_identifier(PLAN, identifier="9761234567").identifier.value == "+9779761234567"


def test_invalid_phone_reports_field():
    result = normalize_identifier(PLAN, phone="12345")
    assert result.identifier is None
    assert result.field == "phone"
    with pytest.raises(InvalidInput) as exc_info:
        result.unwrap()
    assert exc_info.value.field == "phone"


def test_empty_input_is_rejected():
    result = normalize_identifier(PLAN)
    assert result.identifier is None
    assert "required" in result.reason


def test_unknown_channel_is_rejected():
    result = normalize_identifier(PLAN, phone="9812345678", channel="fax")
    assert result.field == "channel"


@pytest.mark.parametrize("alias", ["phone", "phoneNumber", "mobile", "msisdn", "to"])
def test_payload_aliases(alias):
    result = normalize_payload(PLAN, {alias: "9812345678"})
    assert result.identifier.value == "+9779812345678"


def test_payload_ignores_empty_alias_values():
    result = normalize_payload(PLAN, {"phone": "", "mobile": "9851234567"})
    assert result.identifier.value == "+9779851234567"


def test_mask_identifier():
    assert mask_identifier("+9779812345678") == "+977****78"
    assert mask_identifier("ramesh@gatishilnepal.org") == "rh***@gatishilnepal.org"
    assert mask_identifier("123") == "***"
