"""
Directory service for shared mode.

A directory indexes live tokens by their obfuscated key (field 0) so that
several parties can find the tokens they share without the directory
learning the plaintext key. Writers submit each new transaction with its
ancestry bundle; outputs spent by a submitted transaction leave the index.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests

from .codec import TokenCodec
from .config import DEFAULT_TOPICS, DIRECTORY_HOST
from .envelope import collect_ancestry, decode_beef, encode_beef
from .errors import DirectoryError
from .transaction import Transaction
from .util import b64e, format_outpoint, parse_outpoint

logger = logging.getLogger(__name__)

SHARED_FIELD_COUNT = 2


@dataclass
class LookupResult:
    """One indexed token plus the bundle needed to spend or audit it."""
    txid: str
    output_index: int
    locking: bytes
    satoshis: int
    beef: Optional[bytes] = None

    @property
    def outpoint(self) -> str:
        return format_outpoint(self.txid, self.output_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "outputIndex": self.output_index,
            "outputScript": self.locking.hex(),
            "satoshis": self.satoshis,
            "beef": self.beef.hex() if self.beef else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LookupResult":
        try:
            beef = d.get("beef")
            return cls(
                txid=str(d["txid"]),
                output_index=int(d["outputIndex"]),
                locking=bytes.fromhex(d["outputScript"]),
                satoshis=int(d.get("satoshis", 0)),
                beef=bytes.fromhex(beef) if beef else None,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValueError(f"Malformed lookup result: {e}") from e


class DirectoryService(ABC):
    """Abstract directory collaborator."""

    @abstractmethod
    async def lookup(self, protected_key: str, history: bool = False) -> List[LookupResult]:
        """
        Find live tokens indexed under protected_key.

        Args:
            protected_key: Base64 obfuscated key
            history: Include each token's full ancestry in its bundle
        """

    @abstractmethod
    async def submit(self, beef: bytes, txid: str, topics: Sequence[str]) -> List[int]:
        """Submit a transaction; returns the indexes of admitted outputs."""


class InMemoryDirectory(DirectoryService):
    """
    In-process directory.

    When a ledger is given, only transactions the ledger has recorded are
    admitted, so a forged spend cannot evict a live token from the index.
    """

    def __init__(self, topics: Sequence[str] = DEFAULT_TOPICS, ledger=None):
        self.topics = set(topics)
        self.ledger = ledger
        self._txs: Dict[str, Transaction] = {}
        self._index: Dict[str, str] = {}
        self._lock = threading.RLock()

    async def submit(self, beef: bytes, txid: str, topics: Sequence[str]) -> List[int]:
        if not self.topics.intersection(topics):
            return []
        txs = decode_beef(beef)
        tx = txs.get(txid)
        if tx is None:
            raise DirectoryError(f"Submitted bundle does not contain {txid}")
        if self.ledger is not None and self.ledger.get_transaction(txid) is None:
            raise DirectoryError(f"Transaction {txid} is not on the ledger")

        with self._lock:
            self._txs.update(txs)
            for inp in tx.inputs:
                self._index.pop(inp.outpoint, None)
            admitted = []
            for index, output in enumerate(tx.outputs):
                decoded = TokenCodec.decode(output.locking)
                if decoded.ok and len(decoded.token.fields) == SHARED_FIELD_COUNT:
                    self._index[format_outpoint(txid, index)] = b64e(decoded.token.fields[0])
                    admitted.append(index)
        logger.debug("Admitted outputs %s of %s", admitted, txid)
        return admitted

    async def lookup(self, protected_key: str, history: bool = False) -> List[LookupResult]:
        with self._lock:
            results = []
            for outpoint, key in self._index.items():
                if key != protected_key:
                    continue
                txid, index = parse_outpoint(outpoint)
                output = self._txs[txid].outputs[index]
                results.append(LookupResult(
                    txid=txid,
                    output_index=index,
                    locking=output.locking,
                    satoshis=output.satoshis,
                    beef=encode_beef(collect_ancestry(self._txs.get, [txid], recursive=history)),
                ))
            return results


class HttpDirectoryService(DirectoryService):
    """
    Directory client over HTTP (see tokenkv.service for the server).

    Requests run in a worker thread so the event loop is not blocked.
    """

    def __init__(
        self,
        host: str = DIRECTORY_HOST,
        session: Optional[Any] = None,
        timeout: float = 10.0,
        provider: str = "kvstore"
    ):
        self.host = host.rstrip("/")
        self.timeout = timeout
        self.provider = provider
        self._session = session or requests.Session()

    def _post(self, path: str, body: Dict[str, Any]) -> Any:
        url = f"{self.host}{path}"
        try:
            resp = self._session.post(url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise DirectoryError(f"POST {url} failed: {e}") from e
        if resp.status_code >= 400:
            raise DirectoryError(f"POST {url} returned {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    async def lookup(self, protected_key: str, history: bool = False) -> List[LookupResult]:
        data = await asyncio.to_thread(self._post, "/lookup", {
            "provider": self.provider,
            "query": {"protectedKey": protected_key, "history": history},
        })
        if not isinstance(data, list):
            raise DirectoryError("Lookup response is not a list")
        results = []
        for entry in data:
            try:
                results.append(LookupResult.from_dict(entry))
            except ValueError as e:
                logger.warning("Skipping malformed lookup entry: %s", e)
        return results

    async def submit(self, beef: bytes, txid: str, topics: Sequence[str]) -> List[int]:
        data = await asyncio.to_thread(self._post, "/submit", {
            "beef": beef.hex(),
            "txid": txid,
            "topics": list(topics),
        })
        return [int(i) for i in data.get("admitted", [])]
