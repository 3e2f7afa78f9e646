from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
import hashlib
import hmac
import math
import secrets
import string
import time
from typing import Callable


TOKEN_BYTES = 32
SALT_BYTES = 16
MIN_TOKEN_LENGTH = 32
# Bits-per-byte threshold above which a token counts as strong.
SECURE_ENTROPY_THRESHOLD = 7.5
LOOKUP_KEY_LENGTH = 16

_HEX_DIGITS = frozenset(string.hexdigits.lower())


@dataclass(frozen=True)
class TokenMetadata:
    # Generation context retained by issuers for later tamper diagnostics.
    timestamp_ms: int
    entropy: float
    checksum: str


@dataclass(frozen=True)
class TokenStrength:
    valid: bool
    secure: bool
    entropy: float
    reason: str | None = None


@dataclass(frozen=True)
class TamperReport:
    manipulated: bool
    confidence: float
    reasons: tuple[str, ...] = field(default_factory=tuple)


def _is_hex(value: str) -> bool:
    return bool(value) and all(char in _HEX_DIGITS for char in value.lower())


def _token_bytes(token: str) -> bytes:
    # Decode hex tokens to raw bytes; anything else is measured as UTF-8.
    if _is_hex(token) and len(token) % 2 == 0:
        return bytes.fromhex(token)
    return token.encode("utf-8")


def estimate_entropy(data: bytes) -> float:
    """Estimate randomness of ``data`` in bits per byte.

    Short samples cannot reach 8 bits of plug-in Shannon entropy (32 bytes top
    out at log2(32) = 5), so the Miller-Madow corrected estimate is scaled
    against the maximum attainable for the sample size and clamped to [0, 8].
    """
    size = len(data)
    if size < 2:
        return 0.0
    counts = Counter(data)
    plug_in = -sum((count / size) * math.log2(count / size) for count in counts.values())
    corrected = plug_in + (len(counts) - 1) / (2 * size * math.log(2))
    ceiling = math.log2(min(size, 256))
    return max(0.0, min(8.0, corrected * 8.0 / ceiling))


def token_entropy(token: str) -> float:
    return estimate_entropy(_token_bytes(token))


def token_checksum(token: str, timestamp_ms: int) -> str:
    # Bind the token to its generation timestamp; diagnostic, not a secret.
    digest = hashlib.sha256(f"{token}:{timestamp_ms}".encode("utf-8")).hexdigest()
    return digest[:16]


def generate_token(*, time_provider: Callable[[], float] = time.time) -> tuple[str, TokenMetadata]:
    # CSPRNG failures propagate; there is no weaker fallback.
    token = secrets.token_hex(TOKEN_BYTES)
    timestamp_ms = int(time_provider() * 1000)
    metadata = TokenMetadata(
        timestamp_ms=timestamp_ms,
        entropy=token_entropy(token),
        checksum=token_checksum(token, timestamp_ms),
    )
    return token, metadata


def _digest(token: str, salt: str) -> str:
    return hashlib.sha256(f"{token}{salt}".encode("utf-8")).hexdigest()


def hash_token(token: str, salt: str | None = None) -> str:
    # Persist only salt:sha256(token + salt) with a fresh salt per token.
    if not isinstance(token, str):
        raise TypeError("token must be a string")
    resolved_salt = salt if salt is not None else secrets.token_hex(SALT_BYTES)
    return f"{resolved_salt}:{_digest(token, resolved_salt)}"


def verify_token(token: str, hashed: str | None) -> bool:
    # Fail closed on malformed stored values; only a non-string token is a caller bug.
    if not isinstance(token, str):
        raise TypeError("token must be a string")
    if not isinstance(hashed, str):
        return False
    salt, separator, expected = hashed.partition(":")
    if not separator or not salt or not expected or ":" in expected:
        return False
    return hmac.compare_digest(_digest(token, salt), expected)


def tokens_equal(left: str, right: str) -> bool:
    # Compare plaintext tokens without leaking the mismatch position through timing.
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def token_lookup_key(token: str) -> str:
    # Non-secret, unsalted digest prefix used only to narrow candidate scans.
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:LOOKUP_KEY_LENGTH]


def validate_token_strength(token: str | None) -> TokenStrength:
    # Reject malformed tokens; accept weak-but-wellformed tokens and flag them insecure.
    if not isinstance(token, str) or not token:
        return TokenStrength(valid=False, secure=False, entropy=0.0, reason="Token is required")
    if len(token) < MIN_TOKEN_LENGTH:
        return TokenStrength(
            valid=False,
            secure=False,
            entropy=0.0,
            reason=f"Token is too short (minimum {MIN_TOKEN_LENGTH} characters required)",
        )
    if not _is_hex(token):
        return TokenStrength(valid=False, secure=False, entropy=0.0, reason="Token must be hexadecimal")
    if len(token) % 2:
        return TokenStrength(
            valid=False,
            secure=False,
            entropy=0.0,
            reason="Token must contain an even number of hex characters",
        )
    entropy = token_entropy(token)
    if entropy <= SECURE_ENTROPY_THRESHOLD:
        return TokenStrength(
            valid=True,
            secure=False,
            entropy=entropy,
            reason="Token has low entropy (possible weak randomness)",
        )
    return TokenStrength(valid=True, secure=True, entropy=entropy)


def detect_tampering(
    original: str,
    received: str,
    metadata: TokenMetadata | None = None,
) -> TamperReport:
    # Accumulate weighted signals; the report only feeds audit details.
    confidence = 0.0
    reasons: list[str] = []

    if not tokens_equal(original, received):
        confidence += 0.9
        reasons.append("content_mismatch")
    if len(original) != len(received):
        confidence += 0.8
        reasons.append("length_mismatch")
    if _is_hex(original) != _is_hex(received):
        confidence += 0.7
        reasons.append("charset_mismatch")
    if metadata is not None:
        if abs(token_entropy(received) - metadata.entropy) > 0.5:
            confidence += 0.6
            reasons.append("entropy_drift")
        expected_checksum = token_checksum(received, metadata.timestamp_ms)
        if not hmac.compare_digest(expected_checksum, metadata.checksum):
            confidence += 0.9
            reasons.append("checksum_mismatch")

    confidence = min(confidence, 1.0)
    return TamperReport(manipulated=confidence > 0.5, confidence=confidence, reasons=tuple(reasons))
