"""Tests for the PIN to password derivation."""

from hypothesis import given, settings
from hypothesis import strategies as st

from gatishil_auth.core.pin_kdf import DEFAULT_PARAMS, ScryptParams, b64u, b64u_decode, derive

PEPPER = "pin-pepper-for-tests-0001"
# Cheap scrypt parameters for property runs
FAST = ScryptParams(n=16, r=1, p=1)

pins = st.from_regex(r"[0-9]{4,8}", fullmatch=True)
user_ids = st.uuids().map(str)
salts = st.binary(min_size=16, max_size=16)


def test_default_label():
    assert DEFAULT_PARAMS.label == "scrypt-v1(N=8192,r=8,p=1)"


def test_label_roundtrip_and_clamping():
    assert ScryptParams.from_label(DEFAULT_PARAMS.label) == DEFAULT_PARAMS
    assert ScryptParams.from_label("scrypt-v1(N=1048576,r=32,p=4)") == DEFAULT_PARAMS
    assert ScryptParams.from_label("scrypt-v1(N=1024,r=4,p=1)") == ScryptParams(n=1024, r=4, p=1)


def test_invalid_labels_fall_back_to_defaults():
    assert ScryptParams.from_label(None) == DEFAULT_PARAMS
    assert ScryptParams.from_label("argon2id") == DEFAULT_PARAMS
    assert ScryptParams.from_label("scrypt-v1(N=1000,r=8,p=1)") == DEFAULT_PARAMS


def test_b64u_decode_accepts_both_alphabets():
    raw = bytes(range(250, 256)) + b"\x00\xff\xfe"
    assert b64u_decode(b64u(raw)) == raw
    standard = b64u(raw).replace("-", "+").replace("_", "/")
    assert b64u_decode(standard) == raw


def test_derive_with_default_params_has_expected_length():
    out = derive("4821", "user-1", b"\x01" * 16, PEPPER)
    # 48 raw bytes → 64 base64url characters without padding
    assert len(out) == 64
    assert "=" not in out


@settings(max_examples=50, deadline=None)
@given(pin=pins, user_id=user_ids, salt=salts)
def test_derive_is_deterministic(pin, user_id, salt):
    assert derive(pin, user_id, salt, PEPPER, params=FAST) == derive(pin, user_id, salt, PEPPER, params=FAST)


@settings(max_examples=50, deadline=None)
@given(pin=pins, other=pins, user_id=user_ids, salt=salts)
def test_derive_changes_with_pin(pin, other, user_id, salt):
    if pin == other:
        return
    assert derive(pin, user_id, salt, PEPPER, params=FAST) != derive(other, user_id, salt, PEPPER, params=FAST)


@settings(max_examples=50, deadline=None)
@given(pin=pins, user_id=user_ids, other_user=user_ids, salt=salts)
def test_derive_changes_with_user(pin, user_id, other_user, salt):
    if user_id == other_user:
        return
    assert derive(pin, user_id, salt, PEPPER, params=FAST) != derive(pin, other_user, salt, PEPPER, params=FAST)


@settings(max_examples=50, deadline=None)
@given(pin=pins, user_id=user_ids, salt=salts, other_salt=salts)
def test_derive_changes_with_salt(pin, user_id, salt, other_salt):
    if salt == other_salt:
        return
    assert derive(pin, user_id, salt, PEPPER, params=FAST) != derive(pin, user_id, other_salt, PEPPER, params=FAST)


@settings(max_examples=25, deadline=None)
@given(pin=pins, user_id=user_ids, salt=salts)
def test_derive_changes_with_pepper(pin, user_id, salt):
    rotated = PEPPER + "-rotated"
    assert derive(pin, user_id, salt, PEPPER, params=FAST) != derive(pin, user_id, salt, rotated, params=FAST)
