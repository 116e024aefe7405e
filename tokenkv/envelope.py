"""
Ancestry bundles and envelopes.

A bundle ("BEEF") is a set of transactions keyed by txid, carried alongside
outputs so a spender or auditor can see where they came from. An
AncestryEnvelope is the tree view of a bundle rooted at one output: each
node holds its transaction and designated output, plus a mapping from input
index to the node for the output that input spends.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .errors import EnvelopeError
from .transaction import Transaction
from .util import canonicalize

logger = logging.getLogger(__name__)

BEEF_FORMAT = "tokenkv-beef/1"


# ============================================================
# Bundles
# ============================================================

def encode_beef(transactions: Mapping[str, Transaction]) -> bytes:
    return canonicalize({
        "format": BEEF_FORMAT,
        "txs": {txid: tx.to_dict() for txid, tx in transactions.items()},
    })


def decode_beef(raw: Optional[bytes]) -> Dict[str, Transaction]:
    """
    Decode a bundle. Entries whose content does not hash to their txid are
    dropped. Raises EnvelopeError if the bundle itself is malformed.
    """
    if not raw:
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EnvelopeError(f"Malformed bundle: {e}") from e
    if not isinstance(data, dict) or data.get("format") != BEEF_FORMAT:
        raise EnvelopeError("Unknown bundle format")
    txs = data.get("txs")
    if not isinstance(txs, dict):
        raise EnvelopeError("Bundle has no transactions")

    out: Dict[str, Transaction] = {}
    for txid, tx_dict in txs.items():
        try:
            tx = Transaction.from_dict(tx_dict)
        except ValueError as e:
            logger.debug("Dropping malformed bundle entry %s: %s", txid, e)
            continue
        if tx.txid() != txid:
            logger.debug("Dropping bundle entry %s: txid mismatch", txid)
            continue
        out[txid] = tx
    return out


def merge_beef(bundles: Iterable[Optional[bytes]]) -> bytes:
    merged: Dict[str, Transaction] = {}
    for raw in bundles:
        merged.update(decode_beef(raw))
    return encode_beef(merged)


def collect_ancestry(
    lookup: Callable[[str], Optional[Transaction]],
    txids: Iterable[str],
    recursive: bool = False
) -> Dict[str, Transaction]:
    """
    Gather transactions by txid. With recursive=True, also gather every
    ancestor reachable through inputs that lookup can resolve.
    """
    out: Dict[str, Transaction] = {}
    pending = list(txids)
    while pending:
        txid = pending.pop()
        if txid in out:
            continue
        tx = lookup(txid)
        if tx is None:
            continue
        out[txid] = tx
        if recursive:
            pending.extend(i.source_txid for i in tx.inputs)
    return out


# ============================================================
# Envelopes
# ============================================================

@dataclass
class AncestryEnvelope:
    """
    One node of an ancestry tree.

    raw_tx may be a Transaction, a transaction dict, serialized bytes, or
    None; locking may be given directly when the transaction is absent.
    Parsing is deferred so one malformed node does not poison its siblings.
    """
    txid: str
    output_index: int
    raw_tx: Any = None
    locking: Optional[bytes] = None
    inputs: Dict[int, "AncestryEnvelope"] = field(default_factory=dict)

    def transaction(self) -> Transaction:
        raw = self.raw_tx
        if isinstance(raw, Transaction):
            return raw
        try:
            if isinstance(raw, (bytes, bytearray)):
                return Transaction.deserialize(bytes(raw))
            if isinstance(raw, str):
                return Transaction.deserialize(bytes.fromhex(raw))
            if isinstance(raw, dict):
                return Transaction.from_dict(raw)
        except ValueError as e:
            raise EnvelopeError(f"Malformed transaction in envelope {self.txid}: {e}") from e
        raise EnvelopeError(f"Envelope {self.txid or '<unknown>'} carries no transaction")

    def locking_condition(self) -> bytes:
        """Locking condition of the designated output."""
        if self.locking is not None:
            return self.locking
        tx = self.transaction()
        if not 0 <= self.output_index < len(tx.outputs):
            raise EnvelopeError(f"Envelope {self.txid} has no output {self.output_index}")
        return tx.outputs[self.output_index].locking

    def children(self) -> List[Tuple[int, "AncestryEnvelope"]]:
        return list(self.inputs.items())

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "txid": self.txid,
            "outputIndex": self.output_index,
            "inputs": {str(i): child.to_dict() for i, child in self.inputs.items()},
        }
        if isinstance(self.raw_tx, Transaction):
            d["rawTx"] = self.raw_tx.serialize().hex()
        if self.locking is not None:
            d["outputScript"] = self.locking.hex()
        return d

    @classmethod
    def from_dict(cls, d: Any) -> "AncestryEnvelope":
        """
        Build an envelope from its JSON form. Never raises: malformed
        nodes become envelopes whose transaction() raises EnvelopeError.
        """
        if not isinstance(d, dict):
            return cls(txid="", output_index=-1)

        try:
            output_index = int(d.get("outputIndex", 0))
        except (TypeError, ValueError):
            output_index = -1
        locking = None
        if isinstance(d.get("outputScript"), str):
            try:
                locking = bytes.fromhex(d["outputScript"])
            except ValueError:
                locking = None

        node = cls(
            txid=str(d.get("txid", "")),
            output_index=output_index,
            raw_tx=d.get("rawTx"),
            locking=locking,
        )

        inputs = d.get("inputs")
        if isinstance(inputs, str):
            try:
                inputs = json.loads(inputs)
            except json.JSONDecodeError:
                inputs = None
        if isinstance(inputs, list):
            inputs = dict(enumerate(inputs))
        if isinstance(inputs, dict):
            for position, (k, child) in enumerate(inputs.items()):
                try:
                    index = int(k)
                except (TypeError, ValueError):
                    index = position
                node.inputs[index] = cls.from_dict(child)
        return node

    @classmethod
    def from_beef(
        cls,
        beef: Union[bytes, Mapping[str, Transaction]],
        txid: str,
        output_index: int,
        max_depth: Optional[int] = None
    ) -> "AncestryEnvelope":
        """
        Build the tree rooted at (txid, output_index). Inputs whose source
        transaction is not in the bundle are leaves of the tree.
        """
        txs = beef if isinstance(beef, Mapping) else decode_beef(beef)
        root = cls(txid=txid, output_index=output_index, raw_tx=txs.get(txid))
        stack = [(root, 0)]
        while stack:
            node, depth = stack.pop()
            tx = node.raw_tx
            if not isinstance(tx, Transaction):
                continue
            if max_depth is not None and depth >= max_depth:
                continue
            for i, inp in enumerate(tx.inputs):
                if inp.source_txid not in txs:
                    continue
                child = cls(
                    txid=inp.source_txid,
                    output_index=inp.source_index,
                    raw_tx=txs[inp.source_txid],
                )
                node.inputs[i] = child
                stack.append((child, depth + 1))
        return root
