"""
Operator Signing

Every outbox event is signed with the ledger operator's Ed25519 key,
so the external indexer can check that an event really came from this
ledger and was not injected somewhere downstream.

KEYS:
- SPECIES_LEDGER_SIGNING_PRIVATE_KEY: base64 Ed25519 private key
- SPECIES_LEDGER_SIGNING_PUBLIC_KEY:  base64 Ed25519 public key
- If neither is set, an ephemeral key is generated (development only).
  Ephemeral keys change on every restart, so signatures from a previous
  run cannot be verified after a restart.

Generate a keypair with:
    python -m tools.manage generate-keys
"""

import base64
import os
import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from ..observability import get_logger

logger = get_logger(__name__)


class Signer:
    """Stateless Ed25519 operations on base64-encoded keys."""

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")
        return private_b64, public_b64

    @staticmethod
    def sign(message: str, private_key_b64: str) -> str:
        """Sign a message, return the raw signature base64-encoded."""
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        signed = signing_key.sign(message.encode("utf-8"))
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify(message: str, signature_b64: str, public_key_b64: str) -> bool:
        """True if signature_b64 is a valid signature of message."""
        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64))
            verify_key.verify(message.encode("utf-8"), base64.b64decode(signature_b64))
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False


@dataclass(frozen=True)
class KeyPair:
    private_key: str
    public_key: str


class SigningService:
    """
    Holds the operator keypair and signs event hashes with it.

    Private keys are never logged or exposed beyond this object.
    """

    def __init__(self, keypair: KeyPair, ephemeral: bool = False):
        if not self._validate_keypair(keypair):
            raise ValueError(
                "Operator keypair validation failed. "
                "Private and public keys do not match."
            )
        self._keypair = keypair
        self._ephemeral = ephemeral

    @classmethod
    def ephemeral(cls) -> "SigningService":
        """Fresh in-process keypair. Fine for tests and development."""
        private_key, public_key = Signer.generate_keypair()
        return cls(KeyPair(private_key=private_key, public_key=public_key), ephemeral=True)

    @classmethod
    def from_env(cls, production: bool = False) -> "SigningService":
        private_key = os.environ.get("SPECIES_LEDGER_SIGNING_PRIVATE_KEY", "")
        public_key = os.environ.get("SPECIES_LEDGER_SIGNING_PUBLIC_KEY", "")

        if private_key and public_key:
            logger.info("Operator signing key loaded from environment")
            return cls(KeyPair(private_key=private_key, public_key=public_key))

        if production:
            raise RuntimeError(
                "SPECIES_LEDGER_SIGNING_PRIVATE_KEY and SPECIES_LEDGER_SIGNING_PUBLIC_KEY "
                "must be set in production. Generate with: python -m tools.manage generate-keys"
            )

        warnings.warn(
            "Operator signing key not configured. Generating ephemeral key for development. "
            "This key changes on each restart - NOT suitable for production!",
            stacklevel=2,
        )
        logger.warning("Generated ephemeral operator key (development mode)")
        return cls.ephemeral()

    @staticmethod
    def _validate_keypair(keypair: KeyPair) -> bool:
        try:
            sample = "species-ledger-keypair-check"
            return Signer.verify(sample, Signer.sign(sample, keypair.private_key), keypair.public_key)
        except (ValueError, TypeError):
            return False

    @property
    def public_key(self) -> str:
        """Operator public key (safe to expose)."""
        return self._keypair.public_key

    @property
    def is_ephemeral(self) -> bool:
        return self._ephemeral

    def sign_event(self, event_hash: str) -> str:
        return Signer.sign(event_hash, self._keypair.private_key)

    def verify_event(self, event_hash: str, signature: str, public_key: Optional[str] = None) -> bool:
        return Signer.verify(event_hash, signature, public_key or self._keypair.public_key)
