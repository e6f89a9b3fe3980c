"""
Coordinator signing key.

The coordinator key signs batch manifests so a verifier can tell a
manifest written by this service from one dropped into the bucket by
someone else. Player keys never pass through here.

Environment:
- MATCHPROOF_COORDINATOR_PRIVATE_KEY: PKCS#8 hex Ed25519 private key
- MATCHPROOF_COORDINATOR_PUBLIC_KEY: optional; must match the private key
- MATCHPROOF_PRODUCTION: a missing key is fatal

Without a configured key outside production an ephemeral keypair is
generated and a warning issued. Manifests it signs stop verifying once
the process restarts. Generate a real key with `matchproof keygen`.
"""

import logging
import os
import warnings
from typing import Optional

from .canonical import canonicalize
from ..errors import KeyFormatError
from .signer import KeyManager, KeyPair, Signer

logger = logging.getLogger(__name__)


def is_production() -> bool:
    return os.environ.get("MATCHPROOF_PRODUCTION", "").lower() in ("1", "true", "yes")


def _keypair_from_env() -> Optional[KeyPair]:
    private_key = os.environ.get("MATCHPROOF_COORDINATOR_PRIVATE_KEY", "").strip()
    if not private_key:
        return None

    try:
        public_key = KeyManager.public_key_for(private_key)
    except KeyFormatError as e:
        raise RuntimeError(f"MATCHPROOF_COORDINATOR_PRIVATE_KEY is invalid: {e}") from e

    expected = os.environ.get("MATCHPROOF_COORDINATOR_PUBLIC_KEY", "").strip().lower()
    if expected and expected != public_key:
        raise RuntimeError(
            "Coordinator keypair validation failed: "
            "MATCHPROOF_COORDINATOR_PUBLIC_KEY and the private key do not match"
        )
    return KeyPair(private_key=private_key, public_key=public_key)


class SigningService:
    """
    Holds the coordinator keypair and signs with it.

    Use get_signing_service() for the process-wide instance; construct one
    directly only to sign with an explicit keypair.
    """

    _shared: Optional["SigningService"] = None

    def __init__(self, keypair: KeyPair, ephemeral: bool = False):
        self._keypair = keypair
        self._ephemeral = ephemeral

    @classmethod
    def from_env(cls) -> "SigningService":
        keypair = _keypair_from_env()
        if keypair is not None:
            logger.info("Coordinator key loaded from environment")
            return cls(keypair)

        if is_production():
            raise RuntimeError(
                "MATCHPROOF_COORDINATOR_PRIVATE_KEY must be set in production. "
                "Generate one with: matchproof keygen"
            )

        warnings.warn(
            "No coordinator signing key configured; using an ephemeral key that "
            "changes on every restart",
            stacklevel=3,
        )
        logger.warning("Generated ephemeral coordinator key (development mode)")
        return cls(KeyManager.generate_keypair(), ephemeral=True)

    @classmethod
    def reset(cls) -> None:
        """Forget the shared instance so the next lookup rereads the environment."""
        cls._shared = None

    @property
    def public_key(self) -> str:
        return self._keypair.public_key

    @property
    def is_ephemeral(self) -> bool:
        return self._ephemeral

    def sign(self, message: bytes) -> str:
        """Hex Ed25519 signature over raw bytes, so the service can act as a ledger PayloadSigner."""
        return Signer.sign_raw(message, self._keypair.private_key)

    def sign_document(self, document: dict) -> str:
        return self.sign(canonicalize(document))

    def verify_document(self, document: dict, signature_hex: str) -> bool:
        return Signer.verify_raw(canonicalize(document), signature_hex, self._keypair.public_key)


def get_signing_service() -> SigningService:
    """The process-wide coordinator signing service, created on first use."""
    if SigningService._shared is None:
        SigningService._shared = SigningService.from_env()
    return SigningService._shared
