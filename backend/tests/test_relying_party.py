"""Tests for relying-party id derivation and credential extraction."""

import pytest

from gatishil_auth.core.relying_party import derive_rp_id, extract_registration_credential

APEX = "gatishilnepal.org"


@pytest.mark.parametrize(
    "host, expected",
    [
        ("gatishilnepal.org", APEX),
        ("www.gatishilnepal.org", APEX),
        ("WWW.GatishilNepal.org:443", APEX),
        ("members.gatishilnepal.org", APEX),
        ("localhost:3000", "localhost"),
        ("preview-123.vercel.app", "preview-123.vercel.app"),
        ("[::1]:8000", "[::1]"),
        (None, APEX),
        ("", APEX),
    ],
)
def test_derive_rp_id(host, expected):
    assert derive_rp_id(host, APEX) == expected


def test_lookalike_domain_is_not_collapsed():
    assert derive_rp_id("evilgatishilnepal.org", APEX) == "evilgatishilnepal.org"


CREDENTIAL = {
    "id": "Y3JlZC0x",
    "rawId": "Y3JlZC0x",
    "type": "public-key",
    "response": {"clientDataJSON": "e30", "attestationObject": "oA"},
}


def test_extract_bare_payload():
    assert extract_registration_credential(CREDENTIAL) is CREDENTIAL


def test_extract_wrapped_in_credential():
    assert extract_registration_credential({"credential": CREDENTIAL}) is CREDENTIAL


def test_extract_wrapped_in_response():
    assert extract_registration_credential({"response": CREDENTIAL}) is CREDENTIAL


@pytest.mark.parametrize(
    "payload",
    [
        None,
        "string",
        {},
        {"id": "a", "rawId": "a", "type": "public-key"},
        {"id": 1, "rawId": "a", "type": "public-key", "response": {}},
        {"credential": "nope"},
    ],
)
def test_extract_rejects_malformed_payloads(payload):
    assert extract_registration_credential(payload) is None
