"""
TokenKV Lineage Reconstruction

Walks an ancestry envelope and returns every prior value of a key that can
be proven to belong to the expected party, newest first.

Algorithm:
1. At depth 0, the envelope's own designated output is the current value.
2. For each input (in input order) that carries an embedded envelope, the
   spent output is the previous value; then recurse into that envelope.
3. An entry counts only if it decodes, is owned by the expected owner key,
   is signed by an expected signing key over its fields, and passes the
   optional validate predicate (one that raises rejects the entry).
   Anything else (change outputs, unrelated spends, forgeries, malformed
   nodes) is skipped, never raised.

Ordering is structural only: a node's value precedes those of its
ancestors; sibling branches are appended depth-first in input order.
"""

import logging
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

from .codec import TokenCodec, Verification, verify_token
from .envelope import AncestryEnvelope
from .errors import EnvelopeError
from .logging_config import audit_log

logger = logging.getLogger(__name__)


class Historian:
    """
    Lineage reconstructor bound to one owner key and its signing key(s).
    """

    def __init__(
        self,
        owner_key: str,
        signing_keys: Union[str, Iterable[str]],
        validate: Optional[Callable[[bytes], bool]] = None,
        max_depth: Optional[int] = None
    ):
        """
        Args:
            owner_key: Hex public key every entry must be locked to
            signing_keys: Hex key (or keys) whose signature authenticates entries
            validate: Optional extra predicate over an entry's value bytes
            max_depth: Stop descending below this many ancestors
        """
        self.owner_key = owner_key.lower()
        if isinstance(signing_keys, str):
            signing_keys = (signing_keys,)
        self.signing_keys = tuple(k.lower() for k in signing_keys)
        self.validate = validate or (lambda value: True)
        self.max_depth = max_depth

    def reconstruct(
        self,
        envelope: Union[AncestryEnvelope, Mapping[str, Any]],
        current_depth: int = 0
    ) -> List[bytes]:
        """
        Return the verified value history for an envelope, newest first.

        Accepts an AncestryEnvelope or its dict form.
        """
        if not isinstance(envelope, AncestryEnvelope):
            envelope = AncestryEnvelope.from_dict(envelope)

        history: List[bytes] = []

        if current_depth == 0:
            value = self.decode_token_value(envelope, current_depth)
            if value is not None:
                history.append(value)

        if self.max_depth is not None and current_depth >= self.max_depth:
            logger.debug("Lineage depth limit %d reached at %s", self.max_depth, envelope.txid)
            return history

        for _, input_envelope in envelope.children():
            value = self.decode_token_value(input_envelope, current_depth + 1)
            if value is not None:
                history.append(value)
            history.extend(self.reconstruct(input_envelope, current_depth + 1))

        return history

    def decode_token_value(self, envelope: AncestryEnvelope, depth: int = 0) -> Optional[bytes]:
        """Value of the envelope's designated output, or None if it is not a verified entry."""
        try:
            locking = envelope.locking_condition()
        except EnvelopeError as e:
            audit_log.lineage_entry_rejected(envelope.txid, depth, str(e))
            return None

        result = TokenCodec.decode(locking)
        if not result.ok:
            audit_log.lineage_entry_rejected(envelope.txid, depth, result.reason)
            return None

        outcome = verify_token(result.token, self.owner_key, self.signing_keys)
        if outcome != Verification.VALID:
            audit_log.lineage_entry_rejected(envelope.txid, depth, outcome.value)
            return None

        value = result.token.value
        try:
            accepted = self.validate(value)
        except Exception as e:
            audit_log.lineage_entry_rejected(envelope.txid, depth, f"validator raised {e!r}")
            return None
        if not accepted:
            audit_log.lineage_entry_rejected(envelope.txid, depth, "rejected by validator")
            return None
        return value
