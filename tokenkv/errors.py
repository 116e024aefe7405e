"""
TokenKV error taxonomy.

Read-side errors (AmbiguousStateError, CorruptTokenError) are surfaced to
the caller and are recoverable only by writing. ConsolidationFailure is
raised and handled inside the engine; it never escapes set() or remove().
"""

from typing import List, Optional, Sequence


class KVStoreError(Exception):
    """Base class for all TokenKV errors."""


class ConfigurationError(KVStoreError):
    """Contradictory or missing configuration, raised before any ledger call."""


class AmbiguousStateError(KVStoreError):
    """More than one live token was found for a key on a plain read."""

    def __init__(self, key: str, outpoints: Sequence[str]):
        self.key = key
        self.outpoints: List[str] = list(outpoints)
        super().__init__(
            "Multiple tokens found for this key. You need to call set to "
            "collapse this ambiguous state before you can get this value again."
        )


class CorruptTokenError(KVStoreError):
    """A live token's locking condition could not be decoded."""

    def __init__(self, outpoint: str, basket: str, reason: str = ""):
        self.outpoint = outpoint
        self.basket = basket
        self.reason = reason
        super().__init__(
            f"Invalid value found. You need to call set to collapse the corrupted "
            f"state (or relinquish the corrupted {outpoint} output from the "
            f"{basket} basket) before you can get this value again."
        )


class ConsolidationFailure(KVStoreError):
    """Signing or submission failed after inputs were committed to a spend."""

    def __init__(
        self,
        outpoints: Sequence[str],
        cause: Optional[BaseException] = None,
        reference: Optional[str] = None
    ):
        self.outpoints: List[str] = list(outpoints)
        self.cause = cause
        # Draft reference, when the wallet got as far as creating one
        self.reference = reference
        super().__init__(f"Consolidation of {len(self.outpoints)} token(s) failed: {cause}")


class EnvelopeError(KVStoreError, ValueError):
    """A node of an ancestry envelope is malformed."""


class LedgerError(KVStoreError):
    """The ledger rejected a transaction."""


class DoubleSpendError(LedgerError):
    """An input was already spent by another transaction."""

    def __init__(self, outpoint: str, spent_by: str):
        self.outpoint = outpoint
        self.spent_by = spent_by
        super().__init__(f"Output {outpoint} already spent by {spent_by}")


class InputReservedError(LedgerError):
    """An input is already held by another pending draft."""

    def __init__(self, outpoint: str):
        self.outpoint = outpoint
        super().__init__(f"Input {outpoint} is reserved by a pending action")


class InvalidUnlockError(LedgerError):
    """An unlocking proof did not verify against the spent output's owner key."""


class UnknownActionError(LedgerError):
    """A signing request referenced a draft the wallet does not hold."""


class DirectoryError(KVStoreError):
    """The directory service could not be reached or returned an error."""
