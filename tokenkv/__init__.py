"""
TokenKV - key-value storage over signed ledger tokens

Version: 1.0.0

Each key maps to at most one live token: an unspent ledger output whose
locking condition carries the value and a signature by the key's owner.
Writing spends every live token for the key and creates exactly one
replacement in the same transaction, so concurrent or interrupted writers
converge back to a single value on the next write.

Usage:
    from tokenkv import InMemoryWallet, KVStore, LocalKeyProvider

    store = KVStore(InMemoryWallet(), LocalKeyProvider.generate())

    await store.set("Hello", "World")
    await store.get("Hello")         # "World"
    await store.history("Hello")     # ["World"]
    await store.remove("Hello")

Shared mode:
    store = KVStore(
        wallet,
        keys,
        StoreConfig(protocol="shared notes", counterparty=their_identity_hex),
        index=DirectoryKeyIndex(HttpDirectoryService("https://directory.example")),
    )
"""

__version__ = "1.0.0"

# Engine
from .store import KVStore

# Configuration
from .config import StoreConfig, StoreOverrides, SELF, ANYONE

# Errors
from .errors import (
    KVStoreError,
    ConfigurationError,
    AmbiguousStateError,
    CorruptTokenError,
    ConsolidationFailure,
    EnvelopeError,
    LedgerError,
    DoubleSpendError,
    InputReservedError,
    InvalidUnlockError,
    UnknownActionError,
    DirectoryError,
)

# Keys
from .keys import KeyProvider, LocalKeyProvider, FileKeyProvider, get_key_provider

# Token codec
from .codec import TokenCodec, DecodedToken, DecodeResult, Verification, verify_token

# Lineage
from .envelope import AncestryEnvelope
from .historian import Historian

# Wallet / ledger
from .transaction import Transaction, TxInput, TxOutput
from .wallet import (
    Wallet,
    InMemoryLedger,
    InMemoryWallet,
    Include,
    OutputSpec,
    InputSpec,
    ActionResult,
    SignableTransaction,
)

# Key index and directory
from .index import KeyIndex, WalletKeyIndex, DirectoryKeyIndex, TokenSet, LocatedToken, obfuscate_key
from .directory import DirectoryService, InMemoryDirectory, HttpDirectoryService, LookupResult

# Logging
from .logging_config import configure_logging, audit_log


__all__ = [
    # Version
    "__version__",

    # Engine
    "KVStore",

    # Configuration
    "StoreConfig",
    "StoreOverrides",
    "SELF",
    "ANYONE",

    # Errors
    "KVStoreError",
    "ConfigurationError",
    "AmbiguousStateError",
    "CorruptTokenError",
    "ConsolidationFailure",
    "EnvelopeError",
    "LedgerError",
    "DoubleSpendError",
    "InputReservedError",
    "InvalidUnlockError",
    "UnknownActionError",
    "DirectoryError",

    # Keys
    "KeyProvider",
    "LocalKeyProvider",
    "FileKeyProvider",
    "get_key_provider",

    # Codec
    "TokenCodec",
    "DecodedToken",
    "DecodeResult",
    "Verification",
    "verify_token",

    # Lineage
    "AncestryEnvelope",
    "Historian",

    # Wallet
    "Transaction",
    "TxInput",
    "TxOutput",
    "Wallet",
    "InMemoryLedger",
    "InMemoryWallet",
    "Include",
    "OutputSpec",
    "InputSpec",
    "ActionResult",
    "SignableTransaction",

    # Index
    "KeyIndex",
    "WalletKeyIndex",
    "DirectoryKeyIndex",
    "TokenSet",
    "LocatedToken",
    "obfuscate_key",
    "DirectoryService",
    "InMemoryDirectory",
    "HttpDirectoryService",
    "LookupResult",

    # Logging
    "configure_logging",
    "audit_log",
]
