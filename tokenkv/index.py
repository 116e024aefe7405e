"""
Key Index.

Locates the live token(s) for a (namespace, key) slot. Two sources:

    WalletKeyIndex     outputs tracked by the local wallet, tagged with the key
    DirectoryKeyIndex  outputs indexed by a directory service under an
                       obfuscated lookup handle (shared mode)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence

from .directory import DirectoryService
from .envelope import AncestryEnvelope, merge_beef
from .keys import KeyProvider, ProtocolID
from .util import b64e, parse_outpoint
from .wallet import Include, Wallet


@dataclass
class LocatedToken:
    outpoint: str
    satoshis: int
    locking: Optional[bytes] = None


@dataclass
class TokenSet:
    """Snapshot of the live tokens for one key slot."""
    tokens: List[LocatedToken] = field(default_factory=list)
    beef: Optional[bytes] = None

    def __len__(self) -> int:
        return len(self.tokens)

    def __iter__(self) -> Iterator[LocatedToken]:
        return iter(self.tokens)

    def envelope(self, token: LocatedToken, max_depth: Optional[int] = None) -> AncestryEnvelope:
        """Ancestry envelope rooted at one of the located tokens."""
        txid, index = parse_outpoint(token.outpoint)
        return AncestryEnvelope.from_beef(self.beef or b"", txid, index, max_depth=max_depth)


async def obfuscate_key(
    keys: KeyProvider,
    protocol_id: ProtocolID,
    key: str,
    counterparty: str
) -> str:
    """
    Derive the opaque lookup handle for a key: base64 HMAC of the key under
    a symmetric key both parties to the counterparty relation can derive.
    """
    mac = await keys.create_hmac(key.encode("utf-8"), protocol_id, key, counterparty)
    return b64e(mac)


class KeyIndex(ABC):
    """Abstract key index."""

    # Shared-mode layout: lookup handle in field 0, value last
    obfuscated: bool = False
    # Decode failures from a trusted source are corruption, not noise
    trusted: bool = True

    @abstractmethod
    async def locate(
        self,
        namespace: str,
        tag: str,
        include: Include = Include.LOCKING_SCRIPTS,
        history: bool = False
    ) -> TokenSet:
        """
        Locate live tokens.

        Args:
            namespace: Basket the tokens live in
            tag: The key (local) or its obfuscated handle (shared)
            include: ENTIRE_TRANSACTIONS when the tokens will be spent
            history: Also return the full ancestry chain
        """

    async def announce(self, txid: str, beef: Optional[bytes], topics: Sequence[str]) -> None:
        """Publish a new transaction to the index's backing source."""
        return None


class WalletKeyIndex(KeyIndex):
    """Locates tokens tracked by the local wallet."""

    obfuscated = False
    trusted = True

    def __init__(self, wallet: Wallet):
        self.wallet = wallet

    async def locate(
        self,
        namespace: str,
        tag: str,
        include: Include = Include.LOCKING_SCRIPTS,
        history: bool = False
    ) -> TokenSet:
        if history:
            include = Include.ENTIRE_TRANSACTIONS
        result = await self.wallet.list_outputs(
            basket=namespace,
            tags=[tag],
            include=include,
            include_ancestry=history,
        )
        return TokenSet(
            tokens=[
                LocatedToken(outpoint=o.outpoint, satoshis=o.satoshis, locking=o.locking)
                for o in result.outputs
            ],
            beef=result.beef,
        )


class DirectoryKeyIndex(KeyIndex):
    """Locates tokens through a directory service (shared mode)."""

    obfuscated = True
    trusted = False

    def __init__(self, directory: DirectoryService):
        self.directory = directory

    async def locate(
        self,
        namespace: str,
        tag: str,
        include: Include = Include.LOCKING_SCRIPTS,
        history: bool = False
    ) -> TokenSet:
        results = await self.directory.lookup(tag, history=history)
        beef = None
        if results and (include == Include.ENTIRE_TRANSACTIONS or history):
            beef = merge_beef(r.beef for r in results)
        return TokenSet(
            tokens=[
                LocatedToken(outpoint=r.outpoint, satoshis=r.satoshis, locking=r.locking)
                for r in results
            ],
            beef=beef,
        )

    async def announce(self, txid: str, beef: Optional[bytes], topics: Sequence[str]) -> None:
        if beef is None:
            return
        await self.directory.submit(beef, txid, topics)
