"""
Ledger transaction model.

A transaction spends outpoints ("<txid>.<index>") and creates outputs whose
locking conditions are token codec payloads. The txid commits to the
unlocking proofs; the per-input sighash does not, so proofs can be produced
against a draft before the txid is known.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .util import canonicalize, format_outpoint, sha256_bytes, sha256_hex


@dataclass
class TxInput:
    source_txid: str
    source_index: int
    unlocking: bytes = b""
    description: str = ""

    @property
    def outpoint(self) -> str:
        return format_outpoint(self.source_txid, self.source_index)

    def to_dict(self, include_unlocking: bool = True) -> Dict[str, Any]:
        d = {
            "source_txid": self.source_txid,
            "source_index": self.source_index,
            "description": self.description,
        }
        if include_unlocking:
            d["unlocking"] = self.unlocking.hex()
        return d


@dataclass
class TxOutput:
    locking: bytes
    satoshis: int
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locking": self.locking.hex(),
            "satoshis": self.satoshis,
            "description": self.description,
        }


@dataclass
class Transaction:
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    nonce: str = ""
    description: str = ""

    def to_dict(self, include_unlocking: bool = True) -> Dict[str, Any]:
        return {
            "description": self.description,
            "inputs": [i.to_dict(include_unlocking) for i in self.inputs],
            "nonce": self.nonce,
            "outputs": [o.to_dict() for o in self.outputs],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Transaction":
        """Parse a transaction dict; raises ValueError on malformed input."""
        try:
            inputs = [
                TxInput(
                    source_txid=str(i["source_txid"]),
                    source_index=int(i["source_index"]),
                    unlocking=bytes.fromhex(i.get("unlocking", "")),
                    description=str(i.get("description", "")),
                )
                for i in d["inputs"]
            ]
            outputs = [
                TxOutput(
                    locking=bytes.fromhex(o["locking"]),
                    satoshis=int(o["satoshis"]),
                    description=str(o.get("description", "")),
                )
                for o in d["outputs"]
            ]
            return cls(
                inputs=inputs,
                outputs=outputs,
                nonce=str(d.get("nonce", "")),
                description=str(d.get("description", "")),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed transaction: {e}") from e

    def serialize(self) -> bytes:
        return canonicalize(self.to_dict())

    @classmethod
    def deserialize(cls, raw: bytes) -> "Transaction":
        try:
            return cls.from_dict(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Malformed transaction bytes: {e}") from e

    def txid(self) -> str:
        return sha256_hex(self.serialize())

    def sighash(self, input_index: int) -> bytes:
        """Digest an unlocking proof for one input signs."""
        if not 0 <= input_index < len(self.inputs):
            raise IndexError(f"No input {input_index}")
        return sha256_bytes(canonicalize({
            "input_index": input_index,
            "tx": self.to_dict(include_unlocking=False),
        }))
