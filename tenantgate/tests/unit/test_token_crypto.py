from __future__ import annotations

import re

import pytest

from tenantgate.services.tokens import (
    MIN_TOKEN_LENGTH,
    detect_tampering,
    estimate_entropy,
    generate_token,
    hash_token,
    token_checksum,
    token_lookup_key,
    tokens_equal,
    validate_token_strength,
    verify_token,
)


def test_generate_token_is_64_hex_chars_with_metadata() -> None:
    token, metadata = generate_token(time_provider=lambda: 1_700_000_000.5)
    assert re.fullmatch(r"[0-9a-f]{64}", token)
    assert metadata.timestamp_ms == 1_700_000_000_500
    assert metadata.checksum == token_checksum(token, metadata.timestamp_ms)
    assert len(metadata.checksum) == 16


def test_generated_tokens_are_unique_and_strong() -> None:
    tokens = {generate_token()[0] for _ in range(50)}
    assert len(tokens) == 50
    for token in tokens:
        strength = validate_token_strength(token)
        assert strength.valid
        assert strength.secure


def test_hash_and_verify_round_trip_with_fresh_salt() -> None:
    token, _ = generate_token()
    first = hash_token(token)
    second = hash_token(token)
    assert first != second
    salt, digest = first.split(":")
    assert len(salt) == 32
    assert len(digest) == 64
    assert token not in first
    assert verify_token(token, first)
    assert verify_token(token, second)


def test_hash_token_is_deterministic_for_a_given_salt() -> None:
    assert hash_token("abc", "00ff") == hash_token("abc", "00ff")


def test_verify_rejects_wrong_token_and_malformed_hashes() -> None:
    token, _ = generate_token()
    other, _ = generate_token()
    stored = hash_token(token)
    assert not verify_token(other, stored)
    assert not verify_token(token, "no-separator")
    assert not verify_token(token, ":missing-salt")
    assert not verify_token(token, "salt:")
    assert not verify_token(token, "a:b:c")
    assert not verify_token(token, None)


def test_hash_and_verify_reject_non_string_tokens() -> None:
    with pytest.raises(TypeError):
        hash_token(1234)  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        verify_token(None, "salt:digest")  # type: ignore[arg-type]


def test_tokens_equal_is_exact() -> None:
    assert tokens_equal("abc", "abc")
    assert not tokens_equal("abc", "abd")
    assert not tokens_equal("abc", "abcd")


def test_lookup_key_is_stable_and_short() -> None:
    token, _ = generate_token()
    assert token_lookup_key(token) == token_lookup_key(token)
    assert len(token_lookup_key(token)) == 16


@pytest.mark.parametrize(
    ("token", "reason"),
    [
        ("", "Token is required"),
        ("abc123", f"Token is too short (minimum {MIN_TOKEN_LENGTH} characters required)"),
        ("z" * 64, "Token must be hexadecimal"),
        ("a" * 63, "Token must contain an even number of hex characters"),
    ],
)
def test_validate_token_strength_rejects_malformed(token: str, reason: str) -> None:
    strength = validate_token_strength(token)
    assert not strength.valid
    assert not strength.secure
    assert strength.reason == reason


def test_repeated_pattern_is_valid_but_insecure() -> None:
    strength = validate_token_strength("ab" * 32)
    assert strength.valid
    assert not strength.secure
    assert strength.reason == "Token has low entropy (possible weak randomness)"


def test_entropy_bounds() -> None:
    assert estimate_entropy(b"") == 0.0
    assert estimate_entropy(b"\x00" * 32) == 0.0
    assert estimate_entropy(bytes(range(256))) == pytest.approx(8.0)


def test_detect_tampering_on_identical_tokens_is_clean() -> None:
    token, metadata = generate_token()
    report = detect_tampering(token, token, metadata)
    assert not report.manipulated
    assert report.confidence == 0.0
    assert report.reasons == ()


def test_detect_tampering_flags_modified_token() -> None:
    token, metadata = generate_token()
    altered = ("0" if token[0] != "0" else "1") + token[1:]
    report = detect_tampering(token, altered, metadata)
    assert report.manipulated
    assert report.confidence == 1.0
    assert "content_mismatch" in report.reasons
    assert "checksum_mismatch" in report.reasons


def test_detect_tampering_flags_truncation_without_metadata() -> None:
    token, _ = generate_token()
    report = detect_tampering(token, token[:40])
    assert report.manipulated
    assert {"content_mismatch", "length_mismatch"} <= set(report.reasons)
