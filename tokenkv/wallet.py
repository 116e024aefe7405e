"""
TokenKV Ledger / Wallet interface

The store never touches the ledger directly; it drives a Wallet through a
small create / sign / relinquish cycle:

    list_outputs(basket, tags)           locate tagged outputs
    create_action(outputs)               create outputs, no inputs
    create_action(inputs, outputs, beef) draft a spend -> SignableTransaction
    sign_action(reference, spends)       attach per-input proofs and submit
    abort_action(reference)              drop a draft and release its inputs
    relinquish_output(basket, outpoint)  stop tracking without spending

InMemoryLedger and InMemoryWallet are a complete reference implementation
used for tests and single-process deployments. Several wallets may share
one ledger; the ledger enforces the conflict rules (one spend per output,
proofs must verify against the spent output's owner key).
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .codec import TokenCodec
from .envelope import collect_ancestry, decode_beef, encode_beef
from .errors import (
    DoubleSpendError,
    InputReservedError,
    InvalidUnlockError,
    LedgerError,
    UnknownActionError,
)
from .keys import verify_ed25519
from .transaction import Transaction, TxInput, TxOutput
from .util import format_outpoint, generate_nonce, parse_outpoint


class Include(str, Enum):
    """How much transaction context list_outputs returns."""
    LOCKING_SCRIPTS = "locking scripts"
    ENTIRE_TRANSACTIONS = "entire transactions"


@dataclass
class WalletOutput:
    outpoint: str
    satoshis: int
    locking: Optional[bytes] = None
    tags: Tuple[str, ...] = ()


@dataclass
class ListOutputsResult:
    outputs: List[WalletOutput] = field(default_factory=list)
    beef: Optional[bytes] = None

    @property
    def total_outputs(self) -> int:
        return len(self.outputs)


@dataclass
class OutputSpec:
    locking: bytes
    satoshis: int
    description: str = ""
    basket: Optional[str] = None
    tags: Tuple[str, ...] = ()


@dataclass
class InputSpec:
    outpoint: str
    description: str = ""


@dataclass
class SignableTransaction:
    reference: str
    tx: Transaction


@dataclass
class ActionResult:
    txid: Optional[str] = None
    signable: Optional[SignableTransaction] = None
    beef: Optional[bytes] = None


class Wallet(ABC):
    """Abstract ledger/wallet collaborator."""

    @abstractmethod
    async def list_outputs(
        self,
        basket: str,
        tags: Sequence[str],
        include: Include = Include.LOCKING_SCRIPTS,
        include_ancestry: bool = False
    ) -> ListOutputsResult:
        """
        List live outputs in a basket carrying all of the given tags.

        With Include.ENTIRE_TRANSACTIONS the result carries a bundle of the
        containing transactions; include_ancestry extends it to every
        known ancestor.
        """

    @abstractmethod
    async def create_action(
        self,
        description: str,
        outputs: Sequence[OutputSpec] = (),
        inputs: Sequence[InputSpec] = (),
        input_beef: Optional[bytes] = None
    ) -> ActionResult:
        """
        Without inputs, create and submit the outputs and return the txid.
        With inputs, reserve them and return a SignableTransaction draft.
        """

    @abstractmethod
    async def sign_action(self, reference: str, spends: Mapping[int, bytes]) -> ActionResult:
        """Attach unlocking proofs to a draft and submit it."""

    @abstractmethod
    async def abort_action(self, reference: str) -> bool:
        """Drop an unsigned draft and release its inputs. Returns False if unknown."""

    @abstractmethod
    async def relinquish_output(self, basket: str, outpoint: str) -> bool:
        """
        Stop tracking an output. Returns False if it was not tracked, or if
        another pending draft is spending it.
        """


class InMemoryLedger:
    """
    Append-only transaction graph with UTXO conflict rules.

    Only token outputs are spendable: an input's proof must be an Ed25519
    signature over the spending transaction's sighash, made by the key that
    owns the spent output.
    """

    def __init__(self):
        self._txs: Dict[str, Transaction] = {}
        self._spent: Dict[str, str] = {}
        self._lock = threading.RLock()

    def get_transaction(self, txid: str) -> Optional[Transaction]:
        with self._lock:
            return self._txs.get(txid)

    def output(self, outpoint: str) -> Optional[TxOutput]:
        txid, index = parse_outpoint(outpoint)
        tx = self.get_transaction(txid)
        if tx is None or index >= len(tx.outputs):
            return None
        return tx.outputs[index]

    def spent_by(self, outpoint: str) -> Optional[str]:
        with self._lock:
            return self._spent.get(outpoint)

    def is_unspent(self, outpoint: str) -> bool:
        return self.output(outpoint) is not None and self.spent_by(outpoint) is None

    def broadcast(self, tx: Transaction) -> str:
        """Validate and record a transaction. Returns its txid."""
        with self._lock:
            txid = tx.txid()
            if txid in self._txs:
                raise LedgerError(f"Transaction {txid} already recorded")

            seen: Set[str] = set()
            for i, inp in enumerate(tx.inputs):
                outpoint = inp.outpoint
                if outpoint in seen:
                    raise LedgerError(f"Input {outpoint} spent twice in one transaction")
                seen.add(outpoint)

                source = self.output(outpoint)
                if source is None:
                    raise LedgerError(f"Unknown input {outpoint}")
                spender = self._spent.get(outpoint)
                if spender is not None:
                    raise DoubleSpendError(outpoint, spender)

                decoded = TokenCodec.decode(source.locking)
                if not decoded.ok:
                    raise InvalidUnlockError(f"Input {outpoint} is not spendable: {decoded.reason}")
                if not verify_ed25519(inp.unlocking, tx.sighash(i), decoded.token.owning_key):
                    raise InvalidUnlockError(f"Unlocking proof for {outpoint} does not verify")

            self._txs[txid] = tx
            for inp in tx.inputs:
                self._spent[inp.outpoint] = txid
            return txid

    def beef_for(self, txids: Iterable[str], recursive: bool = False) -> bytes:
        with self._lock:
            return encode_beef(collect_ancestry(self._txs.get, txids, recursive))


@dataclass
class _Tracked:
    basket: str
    satoshis: int
    tags: Tuple[str, ...]


class InMemoryWallet(Wallet):
    """One party's view of an InMemoryLedger: baskets, tags and pending drafts."""

    def __init__(self, ledger: Optional[InMemoryLedger] = None):
        self.ledger = ledger or InMemoryLedger()
        self._tracked: Dict[str, _Tracked] = {}
        self._drafts: Dict[str, Tuple[Transaction, List[OutputSpec]]] = {}
        self._reserved: Set[str] = set()
        self._lock = threading.RLock()

    def tracked_outpoints(self, basket: Optional[str] = None) -> List[str]:
        with self._lock:
            return [
                op for op, t in self._tracked.items()
                if basket is None or t.basket == basket
            ]

    def _track_outputs(self, txid: str, outputs: Sequence[OutputSpec]) -> None:
        for index, spec in enumerate(outputs):
            if spec.basket:
                self._tracked[format_outpoint(txid, index)] = _Tracked(
                    basket=spec.basket,
                    satoshis=spec.satoshis,
                    tags=tuple(spec.tags),
                )

    async def list_outputs(
        self,
        basket: str,
        tags: Sequence[str],
        include: Include = Include.LOCKING_SCRIPTS,
        include_ancestry: bool = False
    ) -> ListOutputsResult:
        with self._lock:
            outputs = []
            for outpoint, tracked in self._tracked.items():
                if tracked.basket != basket:
                    continue
                if not all(tag in tracked.tags for tag in tags):
                    continue
                if not self.ledger.is_unspent(outpoint):
                    continue
                outputs.append(WalletOutput(
                    outpoint=outpoint,
                    satoshis=tracked.satoshis,
                    locking=self.ledger.output(outpoint).locking,
                    tags=tracked.tags,
                ))

        beef = None
        if include == Include.ENTIRE_TRANSACTIONS and outputs:
            txids = {parse_outpoint(o.outpoint)[0] for o in outputs}
            beef = self.ledger.beef_for(txids, recursive=include_ancestry)
        return ListOutputsResult(outputs=outputs, beef=beef)

    async def create_action(
        self,
        description: str,
        outputs: Sequence[OutputSpec] = (),
        inputs: Sequence[InputSpec] = (),
        input_beef: Optional[bytes] = None
    ) -> ActionResult:
        tx_inputs = []
        for spec in inputs:
            txid, index = parse_outpoint(spec.outpoint)
            tx_inputs.append(TxInput(source_txid=txid, source_index=index, description=spec.description))
        tx = Transaction(
            inputs=tx_inputs,
            outputs=[TxOutput(o.locking, o.satoshis, o.description) for o in outputs],
            nonce=generate_nonce(8),
            description=description,
        )

        with self._lock:
            if not tx_inputs:
                txid = self.ledger.broadcast(tx)
                self._track_outputs(txid, outputs)
                return ActionResult(txid=txid, beef=self.ledger.beef_for([txid], recursive=True))

            known = decode_beef(input_beef)
            for inp in tx_inputs:
                outpoint = inp.outpoint
                if inp.source_txid not in known and self.ledger.get_transaction(inp.source_txid) is None:
                    raise LedgerError(f"Input {outpoint} not found in input BEEF or ledger")
                if outpoint in self._reserved:
                    raise InputReservedError(outpoint)
                spender = self.ledger.spent_by(outpoint)
                if spender is not None:
                    raise DoubleSpendError(outpoint, spender)

            reference = generate_nonce()
            self._drafts[reference] = (tx, list(outputs))
            self._reserved.update(inp.outpoint for inp in tx_inputs)

        draft = Transaction.from_dict(tx.to_dict())
        return ActionResult(signable=SignableTransaction(reference=reference, tx=draft))

    async def sign_action(self, reference: str, spends: Mapping[int, bytes]) -> ActionResult:
        with self._lock:
            draft = self._drafts.pop(reference, None)
            if draft is None:
                raise UnknownActionError(f"No pending action {reference}")
            tx, outputs = draft
            try:
                missing = set(range(len(tx.inputs))) - set(spends)
                if missing:
                    raise InvalidUnlockError(f"Missing unlocking proofs for inputs {sorted(missing)}")
                for index, proof in spends.items():
                    tx.inputs[index].unlocking = bytes(proof)
                txid = self.ledger.broadcast(tx)
            finally:
                for inp in tx.inputs:
                    self._reserved.discard(inp.outpoint)

            for inp in tx.inputs:
                self._tracked.pop(inp.outpoint, None)
            self._track_outputs(txid, outputs)
            return ActionResult(txid=txid, beef=self.ledger.beef_for([txid], recursive=True))

    async def abort_action(self, reference: str) -> bool:
        with self._lock:
            draft = self._drafts.pop(reference, None)
            if draft is None:
                return False
            tx, _ = draft
            for inp in tx.inputs:
                self._reserved.discard(inp.outpoint)
            return True

    async def relinquish_output(self, basket: str, outpoint: str) -> bool:
        with self._lock:
            # Another draft is mid-spend; its outcome settles the output
            if outpoint in self._reserved:
                return False
            tracked = self._tracked.get(outpoint)
            if tracked is None or tracked.basket != basket:
                return False
            del self._tracked[outpoint]
            return True
