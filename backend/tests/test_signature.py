"""
Tests for gateway signature verification.
"""

import hashlib
import hmac

from ticketpay.services.signature import compute_signature, payload_fingerprint, payment_payload, verify


def test_payment_payload_uses_pipe_separator():
    assert payment_payload("order_1", "pay_1") == b"order_1|pay_1"


def test_compute_signature_matches_hmac_sha256():
    expected = hmac.new(b"secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert compute_signature(b"order_1|pay_1", "secret") == expected


def test_verify_accepts_valid_signature():
    payload = payment_payload("order_1", "pay_1")
    assert verify(payload, compute_signature(payload, "secret"), "secret")


def test_verify_accepts_uppercase_hex():
    payload = b'{"event":"payment.captured"}'
    assert verify(payload, compute_signature(payload, "secret").upper(), "secret")


def test_verify_rejects_tampered_payload():
    signature = compute_signature(payment_payload("order_1", "pay_1"), "secret")
    assert not verify(payment_payload("order_1", "pay_2"), signature, "secret")


def test_verify_rejects_wrong_secret():
    payload = payment_payload("order_1", "pay_1")
    assert not verify(payload, compute_signature(payload, "other"), "secret")


def test_verify_is_false_on_malformed_input():
    payload = b"order_1|pay_1"
    good = compute_signature(payload, "secret")
    assert not verify(payload, "", "secret")
    assert not verify(payload, None, "secret")
    assert not verify(payload, 12345, "secret")
    assert not verify(payload, "sïgnature", "secret")
    assert not verify(payload, good, "")
    assert not verify("order_1|pay_1", good, "secret")
    assert not verify(payload, good[:-2], "secret")


def test_payload_fingerprint_is_stable_sha256():
    assert payload_fingerprint(b"abc") == hashlib.sha256(b"abc").hexdigest()
    assert payload_fingerprint(b"abc") != payload_fingerprint(b"abd")
