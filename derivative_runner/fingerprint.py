"""Content fingerprints used as stable, hash-derived filenames."""

from __future__ import annotations

import hashlib

from .errors import InvalidInputError

# 16 bytes = 128 bits, taken from the tail of the digest.
FINGERPRINT_BYTES = 16


def fingerprint(data: bytes) -> str:
    """
    Compute a deterministic id for ``data``.

    Args:
        data: Raw source bytes

    Returns:
        32 lowercase hex characters derived from the SHA-256 digest

    Raises:
        InvalidInputError: ``data`` is empty
    """
    if not data:
        raise InvalidInputError("cannot fingerprint an empty payload")
    digest = hashlib.sha256(data).digest()
    return digest[-FINGERPRINT_BYTES:].hex()
