"""
Key management module for TokenKV.

Provides the cryptographic service used by the token codec and the store:
per-protocol, per-key, per-counterparty child keys, signatures, symmetric
encryption and HMAC key obfuscation. Ed25519 and X25519 via PyNaCl.
"""

import hashlib
import hmac
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from nacl.bindings import crypto_scalarmult
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.secret import SecretBox
from nacl.signing import SigningKey, VerifyKey

from .config import ANYONE, SELF, invoice_number
from .util import b64d, b64e

logger = logging.getLogger(__name__)

ProtocolID = Tuple[int, str]

# Well-known key anyone can derive with; used for the "anyone" counterparty.
ANYONE_SIGNING_KEY = SigningKey(bytes(31) + b"\x01")


class KeyProvider(ABC):
    """Abstract interface for the cryptographic service."""

    @abstractmethod
    async def identity_key(self) -> str:
        """Hex-encoded identity public key."""

    @abstractmethod
    async def get_public_key(
        self,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF,
        for_self: bool = False
    ) -> str:
        """
        Derive a child public key.

        Args:
            protocol_id: (security_level, protocol_name)
            key_id: Key within the protocol
            counterparty: "self", "anyone", or a hex identity key
            for_self: Derive our own child key instead of the counterparty's

        Returns:
            Hex-encoded Ed25519 public key
        """

    @abstractmethod
    async def create_signature(
        self,
        data: bytes,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF
    ) -> bytes:
        """Sign data with our own child key for the counterparty."""

    @abstractmethod
    async def encrypt(
        self,
        plaintext: bytes,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF
    ) -> bytes:
        pass

    @abstractmethod
    async def decrypt(
        self,
        ciphertext: bytes,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF
    ) -> bytes:
        pass

    @abstractmethod
    async def create_hmac(
        self,
        data: bytes,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF
    ) -> bytes:
        """HMAC-SHA256 under a key both parties to the counterparty relation can derive."""


class LocalKeyProvider(KeyProvider):
    """
    In-process key provider backed by a single Ed25519 identity key.

    Child keys are derived from the X25519 shared secret between the
    identity and the counterparty, so both parties can compute each
    other's child public keys and the shared symmetric keys.
    """

    def __init__(self, signing_key: SigningKey):
        self._sk = signing_key
        self._curve_sk = bytes(signing_key.to_curve25519_private_key())

    @classmethod
    def generate(cls) -> "LocalKeyProvider":
        return cls(SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "LocalKeyProvider":
        return cls(SigningKey(seed))

    def save(self, path: str, kid: str = "tokenkv-identity-01") -> None:
        """Write the identity key in the format FileKeyProvider reads."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"kid": kid, "private_key_b64": b64e(bytes(self._sk))}, f, indent=2)

    @property
    def identity_hex(self) -> str:
        return bytes(self._sk.verify_key).hex()

    # ---- derivation ----

    def _counterparty_key(self, counterparty: str) -> VerifyKey:
        if counterparty == SELF:
            return self._sk.verify_key
        if counterparty == ANYONE:
            return ANYONE_SIGNING_KEY.verify_key
        try:
            return VerifyKey(bytes.fromhex(counterparty))
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid counterparty key: {counterparty!r}") from e

    def _shared_secret(self, counterparty: str) -> bytes:
        their_curve = bytes(self._counterparty_key(counterparty).to_curve25519_public_key())
        return crypto_scalarmult(self._curve_sk, their_curve)

    def _child_signing_key(
        self,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str,
        owner: VerifyKey
    ) -> SigningKey:
        invoice = invoice_number(protocol_id, key_id).encode("utf-8")
        seed = hmac.new(
            self._shared_secret(counterparty),
            b"child|" + invoice + b"|" + bytes(owner),
            hashlib.sha256
        ).digest()
        return SigningKey(seed)

    def _symmetric_key(self, purpose: bytes, protocol_id: ProtocolID, key_id: str, counterparty: str) -> bytes:
        invoice = invoice_number(protocol_id, key_id).encode("utf-8")
        return hmac.new(
            self._shared_secret(counterparty),
            purpose + b"|" + invoice,
            hashlib.sha256
        ).digest()

    # ---- KeyProvider ----

    async def identity_key(self) -> str:
        return self.identity_hex

    async def get_public_key(
        self,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF,
        for_self: bool = False
    ) -> str:
        owner = self._sk.verify_key if for_self else self._counterparty_key(counterparty)
        child = self._child_signing_key(protocol_id, key_id, counterparty, owner)
        return bytes(child.verify_key).hex()

    async def create_signature(
        self,
        data: bytes,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF
    ) -> bytes:
        child = self._child_signing_key(protocol_id, key_id, counterparty, self._sk.verify_key)
        return child.sign(data).signature

    async def encrypt(
        self,
        plaintext: bytes,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF
    ) -> bytes:
        box = SecretBox(self._symmetric_key(b"encrypt", protocol_id, key_id, counterparty))
        return bytes(box.encrypt(plaintext))

    async def decrypt(
        self,
        ciphertext: bytes,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF
    ) -> bytes:
        box = SecretBox(self._symmetric_key(b"encrypt", protocol_id, key_id, counterparty))
        return box.decrypt(ciphertext)

    async def create_hmac(
        self,
        data: bytes,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF
    ) -> bytes:
        key = self._symmetric_key(b"hmac", protocol_id, key_id, counterparty)
        return hmac.new(key, data, hashlib.sha256).digest()


class FileKeyProvider(LocalKeyProvider):
    """
    Key provider whose identity key is stored in a JSON file:
    {"kid": ..., "private_key_b64": ...}
    """

    def __init__(self, identity_key_path: str):
        with open(identity_key_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        self.kid = raw.get("kid", "")
        super().__init__(SigningKey(b64d(raw["private_key_b64"])))


def verify_ed25519(signature: bytes, message: bytes, public_key_hex: str) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        signature: Raw 64-byte signature
        message: The signed data
        public_key_hex: Hex-encoded public key

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        vk = VerifyKey(bytes.fromhex(public_key_hex))
        vk.verify(message, signature)
        return True
    except (BadSignatureError, CryptoError, ValueError, TypeError):
        return False


def get_key_provider(identity_key_path: Optional[str] = None) -> KeyProvider:
    """
    Factory function to create the key provider.

    Uses the identity key file when a path is given (or configured via
    TOKENKV_IDENTITY_KEY_PATH); otherwise generates an ephemeral identity.
    """
    from .config import IDENTITY_KEY_PATH

    path = identity_key_path or IDENTITY_KEY_PATH
    if path:
        return FileKeyProvider(path)
    logger.warning("No identity key configured; using an ephemeral identity key")
    return LocalKeyProvider.generate()
