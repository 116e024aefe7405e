"""
Lineage reconstruction tests.

Chains are assembled directly from transactions so that forged, foreign and
malformed ancestors can be placed anywhere in the tree.
"""

import json
import unittest

from tokenkv.codec import TokenCodec
from tokenkv.envelope import AncestryEnvelope
from tokenkv.historian import Historian
from tokenkv.keys import LocalKeyProvider
from tokenkv.transaction import Transaction, TxInput, TxOutput

PROTOCOL = (2, "history tests")
KEY = "Hello"


class TestHistorian(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.keys = LocalKeyProvider.from_seed(b"\x11" * 32)
        self.stranger = LocalKeyProvider.from_seed(b"\x22" * 32)
        self.codec = TokenCodec(self.keys)
        self.owner = await self.keys.get_public_key(PROTOCOL, KEY, "self", for_self=True)
        self.txs = {}

    async def token(self, value, keys=None):
        codec = TokenCodec(keys) if keys else self.codec
        return await codec.lock([value], PROTOCOL, KEY, "self")

    def add_tx(self, outputs, spends=(), nonce=""):
        tx = Transaction(
            inputs=[TxInput(txid, index) for txid, index in spends],
            outputs=[TxOutput(locking, 1) for locking in outputs],
            nonce=nonce or str(len(self.txs)),
        )
        self.txs[tx.txid()] = tx
        return tx.txid()

    async def linear_chain(self, *values, keys_for=None):
        keys_for = keys_for or {}
        prev = None
        for value in values:
            locking = await self.token(value, keys_for.get(value))
            prev = self.add_tx([locking], [(prev, 0)] if prev else [])
        return prev

    def envelope(self, txid, index=0):
        return AncestryEnvelope.from_beef(self.txs, txid, index)

    def historian(self, **kwargs):
        return Historian(self.owner, self.owner, **kwargs)

    async def test_newest_first(self):
        tip = await self.linear_chain(b"v1", b"v2", b"v3")
        self.assertEqual(self.historian().reconstruct(self.envelope(tip)), [b"v3", b"v2", b"v1"])

    async def test_root_without_inputs_reports_itself(self):
        tip = await self.linear_chain(b"only")
        self.assertEqual(self.historian().reconstruct(self.envelope(tip)), [b"only"])

    async def test_foreign_ancestor_dropped(self):
        tip = await self.linear_chain(b"v1", b"v2", b"v3", keys_for={b"v2": self.stranger})
        self.assertEqual(self.historian().reconstruct(self.envelope(tip)), [b"v3", b"v1"])

    async def test_forged_ancestor_dropped(self):
        real = TokenCodec.decode(await self.token(b"v1")).token
        forged = TokenCodec.encode([b"forged"], real.owning_key, real.signature)
        root = self.add_tx([forged])
        tip = self.add_tx([await self.token(b"v2")], [(root, 0)])
        self.assertEqual(self.historian().reconstruct(self.envelope(tip)), [b"v2"])

    async def test_unrelated_inputs_skipped(self):
        v1 = await self.linear_chain(b"v1")
        funding = self.add_tx([b"not a token"])
        tip = self.add_tx([await self.token(b"v2")], [(funding, 0), (v1, 0)])
        self.assertEqual(self.historian().reconstruct(self.envelope(tip)), [b"v2", b"v1"])

    async def test_siblings_in_input_order(self):
        a = await self.linear_chain(b"a1", b"a2")
        b = await self.linear_chain(b"b1")
        tip = self.add_tx([await self.token(b"merged")], [(a, 0), (b, 0)])
        self.assertEqual(
            self.historian().reconstruct(self.envelope(tip)),
            [b"merged", b"a2", b"a1", b"b1"]
        )

    async def test_validate_predicate(self):
        tip = await self.linear_chain(b"keep-1", b"drop", b"keep-2")
        historian = self.historian(validate=lambda v: v.startswith(b"keep"))
        self.assertEqual(historian.reconstruct(self.envelope(tip)), [b"keep-2", b"keep-1"])

    async def test_raising_predicate_rejects_only_that_entry(self):
        tip = await self.linear_chain(b"1", b"x", b"3")
        historian = self.historian(validate=lambda v: int(v) > 0)
        self.assertEqual(historian.reconstruct(self.envelope(tip)), [b"3", b"1"])

    async def test_max_depth(self):
        tip = await self.linear_chain(b"v1", b"v2", b"v3", b"v4")
        historian = self.historian(max_depth=2)
        self.assertEqual(historian.reconstruct(self.envelope(tip)), [b"v4", b"v3", b"v2"])

    async def test_accepts_dict_with_json_string_inputs(self):
        tip = await self.linear_chain(b"v1", b"v2")
        d = self.envelope(tip).to_dict()
        d["inputs"] = json.dumps(d["inputs"])
        self.assertEqual(self.historian().reconstruct(d), [b"v2", b"v1"])

    async def test_malformed_node_does_not_hide_ancestors(self):
        tip = await self.linear_chain(b"v1")
        child = self.envelope(tip).to_dict()
        broken = {"txid": "broken", "outputIndex": 0, "rawTx": "zz", "inputs": {"0": child}}
        self.assertEqual(self.historian().reconstruct(broken), [b"v1"])

    async def test_garbage_envelope(self):
        self.assertEqual(self.historian().reconstruct({"inputs": "[not json"}), [])
        self.assertEqual(self.historian().reconstruct({}), [])

    async def test_counterparty_signer_accepted(self):
        # A token owned by us but written by the counterparty
        alice, bob = self.keys, self.stranger
        owner = await alice.get_public_key(PROTOCOL, KEY, bob.identity_hex, for_self=True)
        bob_signer = await alice.get_public_key(PROTOCOL, KEY, bob.identity_hex, for_self=False)
        locking = await TokenCodec(bob).lock([b"from bob"], PROTOCOL, KEY, alice.identity_hex)
        tip = self.add_tx([locking])

        historian = Historian(owner, [owner, bob_signer])
        self.assertEqual(historian.reconstruct(self.envelope(tip)), [b"from bob"])
        self.assertEqual(Historian(owner, owner).reconstruct(self.envelope(tip)), [])


if __name__ == "__main__":
    unittest.main()
