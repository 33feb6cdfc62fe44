"""Identity key validation shared by the crawler, resolver and store."""

import logging
import re

logger = logging.getLogger(__name__)

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE58_INDEX = {ch: i for i, ch in enumerate(BASE58_ALPHABET)}

# Ed25519 public keys are 32 bytes, which base58-encode to 32-44 characters.
KEY_BYTES = 32
MIN_KEY_LENGTH = 32
MAX_KEY_LENGTH = 44

_IP_PREFIX = re.compile(r"^\d+\.\d+\.\d+\.\d+")
_PLACEHOLDER = re.compile(r"^pubkey\d+$", re.IGNORECASE)


def b58decode(value: str) -> bytes:
    """Decode a base58 string (Bitcoin alphabet).

    Raises:
        ValueError: If *value* contains a character outside the alphabet.
    """
    num = 0
    for ch in value:
        try:
            num = num * 58 + _BASE58_INDEX[ch]
        except KeyError:
            raise ValueError(f"Invalid base58 character {ch!r}") from None

    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    leading = len(value) - len(value.lstrip("1"))
    return b"\x00" * leading + body


class IdentityKeyValidator:
    """Predicate accepting only structurally valid node public keys.

    A key is rejected when it is empty, outside the 32-44 character range,
    contains whitespace, looks like an IPv4 address, is numeric-only, is a
    ``pubkeyN`` placeholder, is not base58, or does not decode to exactly
    32 bytes.

    Instances are callable, so ``validator(key)`` reads as a predicate.
    """

    def reason(self, key: object) -> str | None:
        """Return why *key* is invalid, or ``None`` if it is valid."""
        if not isinstance(key, str):
            return "missing"
        candidate = key.strip()
        if not candidate:
            return "missing"
        if len(candidate) < MIN_KEY_LENGTH:
            return "too short"
        if len(candidate) > MAX_KEY_LENGTH:
            return "too long"
        if any(ch.isspace() for ch in candidate):
            return "contains whitespace"
        if _IP_PREFIX.match(candidate):
            return "looks like an IP address"
        if candidate.isdigit():
            return "numeric only"
        if _PLACEHOLDER.match(candidate):
            return "placeholder"
        try:
            raw = b58decode(candidate)
        except ValueError:
            return "not base58"
        if len(raw) != KEY_BYTES:
            return f"decodes to {len(raw)} bytes"
        return None

    def __call__(self, key: object) -> bool:
        return self.reason(key) is None


is_valid_identity_key = IdentityKeyValidator()


def normalize_identity_key(key: object) -> str | None:
    """Return the stripped key if it validates, else ``None``."""
    if not is_valid_identity_key(key):
        return None
    return key.strip()  # type: ignore[union-attr]
