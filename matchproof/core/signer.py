"""
Ed25519 Signing and Key Management

Players sign the canonical bytes of their finished match. The coordinator
signs batch manifests. Everything here is built on PyNaCl.

KEY FORMATS (all hex encoded):
- Public key: raw 32 bytes
- Private key: PKCS#8 DER PrivateKeyInfo (48 bytes: fixed 16-byte
  Ed25519 prefix + 32-byte seed)

For compatibility, private key import also accepts a raw 32-byte seed
or a 64-byte `seed || public_key` secret key.

Verification NEVER raises. A forged, malformed or mismatched signature is
simply False, so callers cannot mistake "invalid" for "crashed".
"""

import binascii
from dataclasses import dataclass
from typing import Optional

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from ..schemas.match import SignatureRecord
from .canonical import utc_now_iso
from ..errors import KeyFormatError


ALGORITHM = "ed25519"

# SEQUENCE { INTEGER 0, SEQUENCE { OID 1.3.101.112 }, OCTET STRING { OCTET STRING (32) } }
PKCS8_ED25519_PREFIX = bytes.fromhex("302e020100300506032b657004220420")
PKCS8_KEY_LENGTH = len(PKCS8_ED25519_PREFIX) + 32

SEED_LENGTH = 32
PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64


@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 keypair, hex encoded."""
    private_key: str  # PKCS#8 DER hex
    public_key: str   # raw 32-byte hex


def _decode_hex(value: str, what: str) -> bytes:
    if not isinstance(value, str):
        raise KeyFormatError(f"{what} must be a hex string, got {type(value).__name__}")
    try:
        return binascii.unhexlify(value.strip())
    except (binascii.Error, ValueError) as e:
        raise KeyFormatError(f"{what} is not valid hex: {e}") from e


class KeyManager:
    """Key generation, import and export."""

    @staticmethod
    def generate_keypair() -> KeyPair:
        signing_key = SigningKey.generate()
        return KeyPair(
            private_key=KeyManager.export_private_key(signing_key),
            public_key=KeyManager.export_public_key(signing_key.verify_key),
        )

    @staticmethod
    def export_private_key(signing_key: SigningKey) -> str:
        """PKCS#8 DER hex of a signing key."""
        return (PKCS8_ED25519_PREFIX + bytes(signing_key)).hex()

    @staticmethod
    def export_public_key(verify_key: VerifyKey) -> str:
        """Raw 32-byte hex of a verify key."""
        return bytes(verify_key).hex()

    @staticmethod
    def import_private_key(private_key_hex: str) -> SigningKey:
        """
        Load a signing key from hex.

        Raises:
            KeyFormatError: Wrong length, wrong DER prefix, bad hex, or a
                64-byte secret key whose public half does not match its seed
        """
        raw = _decode_hex(private_key_hex, "Private key")

        if len(raw) == PKCS8_KEY_LENGTH:
            if not raw.startswith(PKCS8_ED25519_PREFIX):
                raise KeyFormatError("Private key is not an Ed25519 PKCS#8 PrivateKeyInfo")
            seed = raw[len(PKCS8_ED25519_PREFIX):]
        elif len(raw) == SEED_LENGTH:
            seed = raw
        elif len(raw) == SEED_LENGTH + PUBLIC_KEY_LENGTH:
            seed = raw[:SEED_LENGTH]
            signing_key = SigningKey(seed)
            if bytes(signing_key.verify_key) != raw[SEED_LENGTH:]:
                raise KeyFormatError("Secret key public half does not match its seed")
            return signing_key
        else:
            raise KeyFormatError(
                f"Private key must be {PKCS8_KEY_LENGTH} bytes (PKCS#8), "
                f"{SEED_LENGTH} or {SEED_LENGTH + PUBLIC_KEY_LENGTH} bytes, got {len(raw)}"
            )

        return SigningKey(seed)

    @staticmethod
    def import_public_key(public_key_hex: str) -> VerifyKey:
        """
        Load a verify key from raw hex.

        Raises:
            KeyFormatError: If the key is not exactly 32 bytes of hex
        """
        raw = _decode_hex(public_key_hex, "Public key")
        if len(raw) != PUBLIC_KEY_LENGTH:
            raise KeyFormatError(
                f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(raw)}"
            )
        return VerifyKey(raw)

    @staticmethod
    def public_key_for(private_key_hex: str) -> str:
        """Derive the hex public key for a private key."""
        return KeyManager.export_public_key(
            KeyManager.import_private_key(private_key_hex).verify_key
        )


class Signer:
    """
    Ed25519 signatures over canonical bytes.

    Every player signs the same bytes: the unsigned canonical record.
    """

    @staticmethod
    def sign_raw(message: bytes, private_key_hex: str) -> str:
        """Detached signature, hex encoded."""
        signing_key = KeyManager.import_private_key(private_key_hex)
        return signing_key.sign(message).signature.hex()

    @staticmethod
    def sign(
        canonical_bytes: bytes,
        private_key_hex: str,
        signed_at: Optional[str] = None,
    ) -> SignatureRecord:
        """
        Sign canonical bytes and return a SignatureRecord.

        Raises:
            KeyFormatError: If the private key is malformed
        """
        signing_key = KeyManager.import_private_key(private_key_hex)
        signed = signing_key.sign(canonical_bytes)
        return SignatureRecord(
            signature=signed.signature.hex(),
            public_key=KeyManager.export_public_key(signing_key.verify_key),
            algorithm=ALGORITHM,
            signed_at=signed_at or utc_now_iso(),
        )

    @staticmethod
    def verify_raw(message: bytes, signature_hex: str, public_key_hex: str) -> bool:
        """
        Verify a detached signature.

        Returns:
            True if valid, False for anything else (never raises)
        """
        try:
            verify_key = KeyManager.import_public_key(public_key_hex)
            signature = binascii.unhexlify(signature_hex)
            if len(signature) != SIGNATURE_LENGTH:
                return False
            verify_key.verify(message, signature)
            return True
        except (BadSignatureError, CryptoError, KeyFormatError, binascii.Error, ValueError, TypeError):
            return False

    @staticmethod
    def verify(canonical_bytes: bytes, signature: SignatureRecord) -> bool:
        """Verify a SignatureRecord against canonical bytes."""
        if signature.algorithm.lower() != ALGORITHM:
            return False
        return Signer.verify_raw(canonical_bytes, signature.signature, signature.public_key)
