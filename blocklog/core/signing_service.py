"""
Signing Service - Journal Key Management

Manages the Ed25519 key that signs repair journal records.

PRODUCTION REQUIREMENTS:
- Set BLOCKLOG_JOURNAL_PRIVATE_KEY to a base64-encoded Ed25519 private key
- Set BLOCKLOG_JOURNAL_PUBLIC_KEY to the matching base64 public key
- Generate with: blocklog-manage generate-journal-key

DEVELOPMENT MODE:
- If keys are not set, an ephemeral keypair is generated (warning issued)
- Keys differ on each restart: journal records signed by an earlier
  process can still be verified with the public key stored in each record,
  but nobody can prove that key was ours. Fine for dev, NOT for prod.
"""

import os
import warnings
from dataclasses import dataclass
from typing import Optional

from ..observability import get_logger, is_production
from .signer import Signer

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 keypair."""
    private_key: str  # Base64-encoded
    public_key: str   # Base64-encoded


class SigningService:
    """
    Process-wide holder of the journal signing key.

    SECURITY NOTES:
    - Private keys are never logged or exposed
    - Keys are validated on load
    - Production mode requires explicit key configuration
    """

    _instance: Optional["SigningService"] = None
    _initialized: bool = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if SigningService._initialized:
            return

        self._keypair: Optional[KeyPair] = None
        self._is_ephemeral: bool = False
        self._load_key()
        SigningService._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton (for testing only)."""
        cls._instance = None
        cls._initialized = False

    def _load_key(self) -> None:
        private_key = os.environ.get("BLOCKLOG_JOURNAL_PRIVATE_KEY", "")
        public_key = os.environ.get("BLOCKLOG_JOURNAL_PUBLIC_KEY", "")

        if private_key and public_key:
            if not self._validate_keypair(private_key, public_key):
                raise RuntimeError(
                    "Journal keypair validation failed. "
                    "Private and public keys do not match."
                )
            self._keypair = KeyPair(private_key=private_key, public_key=public_key)
            self._is_ephemeral = False
            logger.info("Journal signing key loaded from environment")
            return

        if is_production():
            raise RuntimeError(
                "BLOCKLOG_JOURNAL_PRIVATE_KEY and BLOCKLOG_JOURNAL_PUBLIC_KEY "
                "must be set in production. Generate with: "
                "blocklog-manage generate-journal-key"
            )

        warnings.warn(
            "Journal signing key not configured. Generating ephemeral key for development. "
            "This key changes on each restart - NOT suitable for production!",
            stacklevel=2
        )
        private_key, public_key = Signer.generate_keypair()
        self._keypair = KeyPair(private_key=private_key, public_key=public_key)
        self._is_ephemeral = True
        logger.warning("Generated ephemeral journal signing key (development mode)")

    @staticmethod
    def _validate_keypair(private_key: str, public_key: str) -> bool:
        """Validate that a keypair is well-formed and matches."""
        try:
            return Signer.public_key_for(private_key) == public_key
        except (ValueError, TypeError):
            return False

    @property
    def public_key(self) -> str:
        """The journal public key (safe to expose)."""
        if not self._keypair:
            raise RuntimeError("Journal keypair not initialized")
        return self._keypair.public_key

    @property
    def is_ephemeral(self) -> bool:
        return self._is_ephemeral

    def sign(self, message: str) -> str:
        """Sign a message (a journal record hash) with the journal key."""
        if not self._keypair:
            raise RuntimeError("Journal keypair not initialized")
        return Signer.sign(message, self._keypair.private_key)

    def verify(self, message: str, signature: str) -> bool:
        if not self._keypair:
            return False
        return Signer.verify(message, signature, self._keypair.public_key)


def get_signing_service() -> SigningService:
    """Get the global SigningService instance."""
    return SigningService()
