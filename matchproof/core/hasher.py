"""
Content Hashing Service

SHA-256 over canonical bytes. The hash is the match's content identifier:
two records with the same hash are the same match.

Output is always 64 lowercase hex characters, no separators.
"""

import hashlib
import hmac
from typing import Any

from .canonical import canonicalize, canonicalize_match_record


HASH_HEX_LENGTH = 64
_HEX_DIGITS = frozenset("0123456789abcdef")


class Hasher:
    """
    Canonical hashing.

    IMMUTABLE CONTRACT:
    - Same canonical bytes → same hash
    - Forever
    """

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        """SHA-256 of raw bytes, lowercase hex."""
        return hashlib.sha256(data).hexdigest()

    @classmethod
    def hash_value(cls, value: Any) -> str:
        """Hash the canonical bytes of any JSON-like value."""
        return cls.hash_bytes(canonicalize(value))

    @classmethod
    def hash_match_record(cls, record: Any) -> str:
        """
        Hash a match record (MatchRecord or mapping).

        Raises:
            CanonicalizationError: If the record is not a valid match record
        """
        return cls.hash_bytes(canonicalize_match_record(record))

    @staticmethod
    def is_valid_hash(value: Any) -> bool:
        """True for 64 lowercase hex characters."""
        return (
            isinstance(value, str)
            and len(value) == HASH_HEX_LENGTH
            and all(c in _HEX_DIGITS for c in value)
        )

    @staticmethod
    def constant_time_compare(a: str, b: str) -> bool:
        """
        Compare two hashes in constant time.

        Case-insensitive: hex from foreign tools is sometimes upper-case.
        """
        return hmac.compare_digest(a.lower().encode("ascii", "replace"),
                                   b.lower().encode("ascii", "replace"))
