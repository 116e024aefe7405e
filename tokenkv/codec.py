"""
TokenKV Token Codec

Encodes an ordered list of fields plus an authenticating signature into a
locking condition owned by a derived public key, and decodes it back.

Locking condition (canonical JSON, UTF-8):
    {"fields": [<b64>...], "format": "tokenkv-lock/1", "owner": <hex>, "sig": <b64>}

The signature is made by the writer's child key over field_digest(fields).
Decoding never raises; it returns a DecodeResult the caller branches on.
"""

import binascii
import json
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple, Union

from .config import SELF
from .keys import KeyProvider, ProtocolID, verify_ed25519
from .transaction import Transaction
from .util import b64d, b64e, canonicalize, sha256_bytes

LOCKING_FORMAT = "tokenkv-lock/1"

ED25519_KEY_BYTES = 32
ED25519_SIG_BYTES = 64


def field_digest(fields: Sequence[bytes]) -> bytes:
    """SHA-256 over the length-prefixed concatenation of all fields."""
    return sha256_bytes(b"".join(struct.pack(">I", len(f)) + f for f in fields))


@dataclass(frozen=True)
class DecodedToken:
    """Contents of a locking condition."""
    owning_key: str
    fields: Tuple[bytes, ...]
    signature: bytes

    @property
    def value(self) -> bytes:
        return self.fields[-1]

    def digest(self) -> bytes:
        return field_digest(self.fields)


@dataclass(frozen=True)
class DecodeResult:
    """Success carries a DecodedToken; failure carries a reason."""
    token: Optional[DecodedToken] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.token is not None

    @classmethod
    def success(cls, token: DecodedToken) -> 'DecodeResult':
        return cls(token=token)

    @classmethod
    def failure(cls, reason: str) -> 'DecodeResult':
        return cls(reason=reason)


class Verification(str, Enum):
    """Outcome of checking a decoded token against the expected keys."""
    VALID = "VALID"
    WRONG_OWNER = "WRONG_OWNER"
    BAD_SIGNATURE = "BAD_SIGNATURE"


def verify_token(
    token: DecodedToken,
    owner_key: str,
    signing_keys: Union[str, Iterable[str]]
) -> Verification:
    """
    Check that a token is owned by owner_key and signed by one of signing_keys.
    """
    if token.owning_key != owner_key:
        return Verification.WRONG_OWNER
    if isinstance(signing_keys, str):
        signing_keys = (signing_keys,)
    digest = token.digest()
    for key in signing_keys:
        if verify_ed25519(token.signature, digest, key):
            return Verification.VALID
    return Verification.BAD_SIGNATURE


class TokenCodec:
    """Builds locking conditions and unlocking proofs with a KeyProvider."""

    def __init__(self, keys: KeyProvider):
        self.keys = keys

    async def lock(
        self,
        fields: Sequence[bytes],
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF,
        for_self: bool = False
    ) -> bytes:
        """
        Lock fields behind the child key for (protocol_id, key_id, counterparty).

        Args:
            fields: Ordered fields; the value is always last
            protocol_id: (security_level, protocol_name)
            key_id: Key within the protocol
            counterparty: Party whose child key owns the token
            for_self: Own the token with our child key instead

        Returns:
            Locking condition bytes
        """
        if not fields:
            raise ValueError("At least one field is required")
        fields = [bytes(f) for f in fields]
        owner = await self.keys.get_public_key(protocol_id, key_id, counterparty, for_self)
        signature = await self.keys.create_signature(
            field_digest(fields), protocol_id, key_id, counterparty
        )
        return self.encode(fields, owner, signature)

    async def unlock(
        self,
        tx: Transaction,
        input_index: int,
        protocol_id: ProtocolID,
        key_id: str,
        counterparty: str = SELF
    ) -> bytes:
        """Produce the unlocking proof for one input of a draft transaction."""
        return await self.keys.create_signature(
            tx.sighash(input_index), protocol_id, key_id, counterparty
        )

    @staticmethod
    def encode(fields: Sequence[bytes], owning_key: str, signature: bytes) -> bytes:
        return canonicalize({
            "fields": [b64e(f) for f in fields],
            "format": LOCKING_FORMAT,
            "owner": owning_key,
            "sig": b64e(signature),
        })

    @staticmethod
    def decode(locking: Optional[bytes]) -> DecodeResult:
        if not locking:
            return DecodeResult.failure("empty locking condition")
        try:
            raw = json.loads(locking.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return DecodeResult.failure(f"not a token: {e}")
        if not isinstance(raw, dict) or raw.get("format") != LOCKING_FORMAT:
            return DecodeResult.failure("unknown locking format")

        owner = raw.get("owner")
        fields = raw.get("fields")
        sig = raw.get("sig")
        if not isinstance(owner, str) or not isinstance(sig, str):
            return DecodeResult.failure("missing owner or signature")
        if not isinstance(fields, list) or not fields:
            return DecodeResult.failure("missing fields")
        try:
            if len(bytes.fromhex(owner)) != ED25519_KEY_BYTES:
                return DecodeResult.failure("owner key has wrong length")
            signature = b64d(sig)
            decoded_fields = tuple(b64d(f) for f in fields)
        except (ValueError, TypeError, AttributeError, binascii.Error) as e:
            return DecodeResult.failure(f"bad encoding: {e}")
        if len(signature) != ED25519_SIG_BYTES:
            return DecodeResult.failure("signature has wrong length")

        return DecodeResult.success(DecodedToken(
            owning_key=owner.lower(),
            fields=decoded_fields,
            signature=signature,
        ))
