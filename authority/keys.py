"""
Key management module for the hrgate authority.

Provides the authority's single Ed25519 signing key, from a JSON key file
or from the environment.
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Optional

from nacl.signing import SigningKey

from hrgate.signing import load_signing_key, public_key_hex

from . import config


class KeyProvider(ABC):
    """Abstract interface for the authority signing key."""

    @abstractmethod
    def get_signing_key(self) -> SigningKey:
        """Get the Ed25519 key used for every signal payload."""
        pass

    def get_public_key_hex(self) -> str:
        """Public key handed to enrolled repositories."""
        return public_key_hex(self.get_signing_key())


class FileKeyProvider(KeyProvider):
    """
    File-based key provider.

    The file is the JSON written by ``hrgate keygen -o``:
    ``{"private_key": "<hex>", "public_key": "<hex>"}``.

    Nothing is read until the key is first needed, so the authority can run
    and accept readings before the key file is provisioned.
    """

    def __init__(self, signing_key_path: str):
        self._signing_key_path = signing_key_path
        self._sk: Optional[SigningKey] = None
        self._lock = threading.Lock()

    def _load(self) -> SigningKey:
        with open(self._signing_key_path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        sk = load_signing_key(raw["private_key"])
        declared = raw.get("public_key")
        if declared and declared != public_key_hex(sk):
            raise ValueError(f"public_key in {self._signing_key_path} does not match private_key")
        return sk

    def get_signing_key(self) -> SigningKey:
        # Loaded on first use; a missing file is retried on the next call
        with self._lock:
            if self._sk is None:
                self._sk = self._load()
            return self._sk


class EnvKeyProvider(KeyProvider):
    """Key provider reading a hex seed from configuration (``SIGNER_PRIVATE_KEY``)."""

    def __init__(self, private_key_hex: str):
        self._private_key_hex = private_key_hex

    def get_signing_key(self) -> SigningKey:
        if not self._private_key_hex:
            raise ValueError("SIGNER_PRIVATE_KEY required for env signer")
        return load_signing_key(self._private_key_hex)


def get_key_provider(
    signer_type: str = "file",
    signing_key_path: str = "secrets/hrgate_signing_key.json",
    private_key_hex: Optional[str] = None
) -> KeyProvider:
    """
    Factory function to create the appropriate key provider.

    Args:
        signer_type: "file" or "env"
        signing_key_path: Path to signing key JSON (for file provider)
        private_key_hex: Hex seed (for env provider)

    Returns:
        Configured KeyProvider instance
    """
    if signer_type == "env":
        return EnvKeyProvider(private_key_hex or "")
    if signer_type != "file":
        raise ValueError(f"Unknown signer type: {signer_type}")
    return FileKeyProvider(signing_key_path=signing_key_path)


_provider: Optional[KeyProvider] = None
_provider_lock = threading.Lock()


def get_default_provider() -> KeyProvider:
    """Process-wide provider built from ``authority.config``."""
    global _provider
    with _provider_lock:
        if _provider is None:
            _provider = get_key_provider(
                signer_type=config.SIGNER_TYPE,
                signing_key_path=config.SIGNING_KEY_PATH,
                private_key_hex=config.SIGNER_PRIVATE_KEY,
            )
        return _provider
