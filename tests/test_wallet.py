"""
In-memory ledger and wallet tests: conflict rules and the draft/sign cycle.
"""

import unittest

from tokenkv.codec import TokenCodec
from tokenkv.errors import (
    DoubleSpendError,
    InputReservedError,
    InvalidUnlockError,
    UnknownActionError,
)
from tokenkv.keys import LocalKeyProvider
from tokenkv.wallet import InMemoryWallet, Include, InputSpec, OutputSpec

PROTOCOL = (2, "wallet tests")
BASKET = "tokens"


class TestInMemoryWallet(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.wallet = InMemoryWallet()
        self.ledger = self.wallet.ledger
        self.keys = LocalKeyProvider.from_seed(b"\x77" * 32)
        self.codec = TokenCodec(self.keys)

    async def mint(self, value=b"v", tags=("k",)):
        locking = await self.codec.lock([value], PROTOCOL, "k", "self")
        result = await self.wallet.create_action(
            "mint", outputs=[OutputSpec(locking, 1, "", BASKET, tags)]
        )
        return f"{result.txid}.0"

    async def draft_spend(self, *outpoints):
        listing = await self.wallet.list_outputs(BASKET, ["k"], Include.ENTIRE_TRANSACTIONS)
        result = await self.wallet.create_action(
            "spend",
            inputs=[InputSpec(op) for op in outpoints],
            input_beef=listing.beef,
        )
        return result.signable

    async def proofs(self, signable):
        return {
            i: await self.codec.unlock(signable.tx, i, PROTOCOL, "k", "self")
            for i in range(len(signable.tx.inputs))
        }

    async def test_list_outputs_by_tag(self):
        a = await self.mint(tags=("k",))
        await self.mint(tags=("other",))
        listing = await self.wallet.list_outputs(BASKET, ["k"])
        self.assertEqual([o.outpoint for o in listing.outputs], [a])
        self.assertEqual(listing.total_outputs, 1)
        self.assertIsNone(listing.beef)

    async def test_entire_transactions_carries_bundle(self):
        await self.mint()
        listing = await self.wallet.list_outputs(BASKET, ["k"], Include.ENTIRE_TRANSACTIONS)
        self.assertIsNotNone(listing.beef)

    async def test_draft_and_sign(self):
        outpoint = await self.mint()
        signable = await self.draft_spend(outpoint)
        result = await self.wallet.sign_action(signable.reference, await self.proofs(signable))
        self.assertEqual(self.ledger.spent_by(outpoint), result.txid)
        self.assertEqual(self.wallet.tracked_outpoints(BASKET), [])

    async def test_bad_proof_rejected(self):
        outpoint = await self.mint()
        signable = await self.draft_spend(outpoint)
        with self.assertRaises(InvalidUnlockError):
            await self.wallet.sign_action(signable.reference, {0: b"\x00" * 64})
        self.assertTrue(self.ledger.is_unspent(outpoint))

    async def test_missing_proof_rejected(self):
        outpoint = await self.mint()
        signable = await self.draft_spend(outpoint)
        with self.assertRaises(InvalidUnlockError):
            await self.wallet.sign_action(signable.reference, {})

    async def test_unknown_reference(self):
        with self.assertRaises(UnknownActionError):
            await self.wallet.sign_action("nope", {})

    async def test_reserved_inputs(self):
        outpoint = await self.mint()
        await self.draft_spend(outpoint)
        with self.assertRaises(InputReservedError):
            await self.draft_spend(outpoint)

    async def test_double_spend(self):
        outpoint = await self.mint()
        first = await self.draft_spend(outpoint)
        await self.wallet.sign_action(first.reference, await self.proofs(first))

        other = InMemoryWallet(self.ledger)
        with self.assertRaises(DoubleSpendError):
            await other.create_action("again", inputs=[InputSpec(outpoint)])

    async def test_relinquish(self):
        outpoint = await self.mint()
        self.assertTrue(await self.wallet.relinquish_output(BASKET, outpoint))
        self.assertFalse(await self.wallet.relinquish_output(BASKET, outpoint))
        self.assertEqual((await self.wallet.list_outputs(BASKET, ["k"])).outputs, [])
        self.assertTrue(self.ledger.is_unspent(outpoint))

    async def test_abort_releases_inputs(self):
        outpoint = await self.mint()
        signable = await self.draft_spend(outpoint)
        self.assertTrue(await self.wallet.abort_action(signable.reference))
        self.assertFalse(await self.wallet.abort_action(signable.reference))
        with self.assertRaises(UnknownActionError):
            await self.wallet.sign_action(signable.reference, await self.proofs(signable))
        again = await self.draft_spend(outpoint)
        await self.wallet.sign_action(again.reference, await self.proofs(again))
        self.assertIsNotNone(self.ledger.spent_by(outpoint))

    async def test_relinquish_leaves_pending_draft_alone(self):
        outpoint = await self.mint()
        signable = await self.draft_spend(outpoint)
        self.assertFalse(await self.wallet.relinquish_output(BASKET, outpoint))
        self.assertEqual(self.wallet.tracked_outpoints(BASKET), [outpoint])
        result = await self.wallet.sign_action(signable.reference, await self.proofs(signable))
        self.assertEqual(self.ledger.spent_by(outpoint), result.txid)

    async def test_relinquish_other_basket(self):
        outpoint = await self.mint()
        self.assertFalse(await self.wallet.relinquish_output("elsewhere", outpoint))
        self.assertEqual(self.wallet.tracked_outpoints(BASKET), [outpoint])


if __name__ == "__main__":
    unittest.main()
