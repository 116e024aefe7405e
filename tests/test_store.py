"""
TokenKV Consolidation Engine Test Suite

Critical invariant tested:
    AFTER ANY SUCCESSFUL WRITE, A KEY HAS EXACTLY ONE LIVE TOKEN
"""

import asyncio
import re
import unittest
from unittest.mock import AsyncMock

from tokenkv import (
    AmbiguousStateError,
    ConfigurationError,
    CorruptTokenError,
    InMemoryWallet,
    InputSpec,
    KVStore,
    LedgerError,
    LocalKeyProvider,
    OutputSpec,
    StoreConfig,
    StoreOverrides,
    TokenCodec,
    Transaction,
    TxInput,
)
from tokenkv.util import parse_outpoint

BASKET = "test-kvstore"
OUTPOINT = re.compile(r"^[0-9a-f]{64}\.\d+$")


class StoreTestCase(unittest.IsolatedAsyncioTestCase):
    """Shared fixtures: one wallet, one identity, one store."""

    encrypt = True

    async def asyncSetUp(self):
        self.wallet = InMemoryWallet()
        self.ledger = self.wallet.ledger
        self.keys = LocalKeyProvider.from_seed(b"\x33" * 32)
        self.config = StoreConfig(basket=BASKET, encrypt=self.encrypt)
        self.store = KVStore(self.wallet, self.keys, self.config)

    async def plant(self, value, key="Hello", keys=None):
        """Create a well-formed token for key directly through the wallet."""
        keys = keys or self.keys
        payload = value.encode("utf-8")
        if self.encrypt:
            payload = await keys.encrypt(payload, self.config.protocol_id, key, "self")
        locking = await TokenCodec(keys).lock([payload], self.config.protocol_id, key, "self")
        return await self.plant_raw(locking, key)

    async def plant_raw(self, locking, key="Hello"):
        result = await self.wallet.create_action(
            "plant",
            outputs=[OutputSpec(locking, 1, "", BASKET, (key,))],
        )
        return f"{result.txid}.0"

    def live(self):
        return [op for op in self.wallet.tracked_outpoints(BASKET) if self.ledger.is_unspent(op)]

    def spy_relinquish(self):
        calls = []
        original = self.wallet.relinquish_output

        async def relinquish(basket, outpoint):
            calls.append(outpoint)
            return await original(basket, outpoint)

        self.wallet.relinquish_output = relinquish
        return calls


class TestBasicOperations(StoreTestCase):

    async def test_set_then_get(self):
        outpoint = await self.store.set("Hello", "World")
        self.assertRegex(outpoint, OUTPOINT)
        self.assertEqual(await self.store.get("Hello"), "World")

    async def test_overwrite(self):
        await self.store.set("Hello", "World")
        await self.store.set("Hello", "Mom")
        self.assertEqual(await self.store.get("Hello"), "Mom")

    async def test_unknown_key_returns_default(self):
        self.assertIsNone(await self.store.get("foo"))
        self.assertEqual(await self.store.get("foo", "bar"), "bar")

    async def test_keys_are_independent(self):
        await self.store.set("a", "1")
        await self.store.set("b", "2")
        self.assertEqual(await self.store.get("a"), "1")
        self.assertEqual(await self.store.get("b"), "2")
        self.assertEqual(len(self.live()), 2)

    async def test_unicode_and_empty_values(self):
        await self.store.set("greeting", "héllo wörld ✓")
        self.assertEqual(await self.store.get("greeting"), "héllo wörld ✓")
        await self.store.set("greeting", "")
        self.assertEqual(await self.store.get("greeting", "default"), "")

    async def test_non_string_value_rejected(self):
        with self.assertRaises(TypeError):
            await self.store.set("Hello", b"bytes")

    async def test_exactly_one_live_token_after_each_write(self):
        for i in range(5):
            outpoint = await self.store.set("Hello", f"value-{i}")
            self.assertEqual(self.live(), [outpoint])

    async def test_update_spends_previous_token(self):
        first = await self.store.set("Hello", "World")
        second = await self.store.set("Hello", "Mom")
        txid, _ = parse_outpoint(second)
        self.assertEqual(self.ledger.spent_by(first), txid)

    async def test_token_amount_override(self):
        await self.store.set("Hello", "World", StoreOverrides(token_amount=5))
        listing = await self.wallet.list_outputs(BASKET, ["Hello"])
        self.assertEqual([o.satoshis for o in listing.outputs], [5])


class TestRemove(StoreTestCase):

    async def test_remove(self):
        await self.store.set("Hello", "World")
        outpoint = await self.store.remove("Hello")
        self.assertRegex(outpoint, OUTPOINT)
        self.assertIsNone(await self.store.get("Hello"))
        self.assertEqual(self.live(), [])

    async def test_remove_missing_key_is_noop(self):
        self.wallet.create_action = AsyncMock()
        self.assertIsNone(await self.store.remove("nothing"))
        self.wallet.create_action.assert_not_called()

    async def test_set_after_remove(self):
        await self.store.set("Hello", "World")
        await self.store.remove("Hello")
        await self.store.set("Hello", "again")
        self.assertEqual(await self.store.get("Hello"), "again")

    async def test_remove_collapses_duplicates(self):
        await self.plant("one")
        await self.plant("two")
        await self.store.remove("Hello")
        self.assertEqual(self.live(), [])
        self.assertIsNone(await self.store.get("Hello"))


class TestAmbiguousState(StoreTestCase):

    async def test_get_with_duplicates_raises(self):
        planted = [await self.plant(v) for v in ("a", "b", "c")]
        with self.assertRaises(AmbiguousStateError) as ctx:
            await self.store.get("Hello")
        self.assertEqual(sorted(ctx.exception.outpoints), sorted(planted))
        self.assertIn("call set to collapse", str(ctx.exception))

    async def test_set_collapses_duplicates(self):
        planted = [await self.plant(v) for v in ("a", "b", "c")]
        outpoint = await self.store.set("Hello", "fixed")

        txid, _ = parse_outpoint(outpoint)
        for op in planted:
            self.assertEqual(self.ledger.spent_by(op), txid)
        self.assertEqual(self.live(), [outpoint])
        self.assertEqual(await self.store.get("Hello"), "fixed")

    async def test_history_with_duplicates_raises(self):
        await self.plant("a")
        await self.plant("b")
        with self.assertRaises(AmbiguousStateError):
            await self.store.history("Hello")


class TestCorruptState(StoreTestCase):

    async def test_undecodable_token_raises(self):
        bad = await self.plant_raw(b"garbage")
        with self.assertRaises(CorruptTokenError) as ctx:
            await self.store.get("Hello")
        self.assertEqual(ctx.exception.outpoint, bad)
        self.assertIn(bad, str(ctx.exception))
        self.assertIn(BASKET, str(ctx.exception))

    async def test_wrong_field_count_raises(self):
        locking = await TokenCodec(self.keys).lock(
            [b"extra", b"value"], self.config.protocol_id, "Hello", "self"
        )
        await self.plant_raw(locking)
        with self.assertRaises(CorruptTokenError):
            await self.store.get("Hello")

    async def test_undecryptable_value_raises(self):
        locking = await TokenCodec(self.keys).lock(
            [b"not ciphertext"], self.config.protocol_id, "Hello", "self"
        )
        await self.plant_raw(locking)
        with self.assertRaises(CorruptTokenError):
            await self.store.get("Hello")

    async def test_set_releases_corrupt_token_then_recovers(self):
        bad = await self.plant_raw(b"garbage")
        calls = self.spy_relinquish()

        # The corrupt output cannot be unlocked, so the first write fails
        # and releases it
        self.assertIsNone(await self.store.set("Hello", "fresh"))
        self.assertEqual(calls, [bad])
        self.assertIsNone(await self.store.get("Hello"))

        outpoint = await self.store.set("Hello", "fresh")
        self.assertEqual(self.live(), [outpoint])
        self.assertEqual(await self.store.get("Hello"), "fresh")

    async def test_foreign_token_is_absent(self):
        stranger = LocalKeyProvider.from_seed(b"\x44" * 32)
        await self.plant("not yours", keys=stranger)
        self.assertEqual(await self.store.get("Hello", "default"), "default")


class TestConsolidationFailure(StoreTestCase):

    async def test_sign_failure_relinquishes_each_token_once(self):
        planted = [await self.plant(v) for v in ("a", "b")]
        calls = self.spy_relinquish()
        self.wallet.sign_action = AsyncMock(side_effect=LedgerError("rejected"))

        self.assertIsNone(await self.store.set("Hello", "new"))

        self.assertEqual(sorted(calls), sorted(planted))
        self.assertEqual(len(calls), len(set(calls)))
        self.assertEqual(self.wallet.tracked_outpoints(BASKET), [])
        for op in planted:
            self.assertTrue(self.ledger.is_unspent(op))
        self.assertIsNone(await self.store.get("Hello"))

    async def test_unlock_failure_aborts_draft(self):
        planted = await self.plant("a")
        self.store.codec.unlock = AsyncMock(side_effect=RuntimeError("signer offline"))

        self.assertIsNone(await self.store.set("Hello", "new"))

        self.assertEqual(self.wallet.tracked_outpoints(BASKET), [])
        # The inputs are free again for a later spend
        result = await self.wallet.create_action("again", inputs=[InputSpec(planted)])
        self.assertIsNotNone(result.signable)

    async def test_remove_failure_relinquishes(self):
        planted = await self.plant("a")
        calls = self.spy_relinquish()
        self.wallet.sign_action = AsyncMock(side_effect=LedgerError("rejected"))

        self.assertIsNone(await self.store.remove("Hello"))
        self.assertEqual(calls, [planted])

    async def test_lost_race(self):
        outpoint = await self.store.set("Hello", "World")
        original = self.wallet.create_action

        async def create_then_compete(*args, **kwargs):
            result = await original(*args, **kwargs)
            # A competing writer spends the token before we sign
            txid, index = parse_outpoint(outpoint)
            rival = Transaction(inputs=[TxInput(txid, index)], outputs=[], nonce="rival")
            rival.inputs[0].unlocking = await TokenCodec(self.keys).unlock(
                rival, 0, self.config.protocol_id, "Hello", "self"
            )
            self.ledger.broadcast(rival)
            return result

        self.wallet.create_action = create_then_compete
        self.assertIsNone(await self.store.set("Hello", "Mom"))
        self.wallet.create_action = original

        self.assertIsNone(await self.store.get("Hello"))
        retried = await self.store.set("Hello", "Mom")
        self.assertEqual(self.live(), [retried])
        self.assertEqual(await self.store.get("Hello"), "Mom")

    async def test_errors_before_spend_surface(self):
        self.wallet.list_outputs = AsyncMock(side_effect=LedgerError("offline"))
        with self.assertRaises(LedgerError):
            await self.store.set("Hello", "World")
        with self.assertRaises(LedgerError):
            await self.store.get("Hello")

    async def test_audit_events(self):
        await self.store.set("Hello", "World")
        with self.assertLogs("tokenkv.audit", level="INFO") as logs:
            await self.store.set("Hello", "Mom")
        self.assertTrue(any("TOKEN_CONSOLIDATED" in line for line in logs.output))
        self.assertFalse(any("Mom" in line for line in logs.output))


class SuspendingKeyProvider(LocalKeyProvider):
    """Yields to the event loop on every signature, as a remote wallet would."""

    async def create_signature(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().create_signature(*args, **kwargs)


class TestConcurrentWriters(StoreTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.keys = SuspendingKeyProvider.from_seed(b"\x33" * 32)
        self.store = KVStore(self.wallet, self.keys, self.config)

    async def test_overlapping_sets_leave_one_winner(self):
        original = await self.store.set("Hello", "World")
        calls = self.spy_relinquish()

        results = await asyncio.gather(
            self.store.set("Hello", "A"),
            self.store.set("Hello", "B"),
        )

        winners = [(op, v) for op, v in zip(results, ("A", "B")) if op is not None]
        self.assertEqual(len(winners), 1)
        outpoint, value = winners[0]
        self.assertEqual(await self.store.get("Hello"), value)
        self.assertEqual(self.live(), [outpoint])
        self.assertEqual(self.ledger.spent_by(original), parse_outpoint(outpoint)[0])
        self.assertEqual(calls, [original])

    async def test_loser_retries_against_winner(self):
        await self.store.set("Hello", "World")
        results = await asyncio.gather(
            self.store.set("Hello", "A"),
            self.store.set("Hello", "B"),
        )
        loser = "B" if results[0] is not None else "A"

        retried = await self.store.set("Hello", loser)
        self.assertEqual(self.live(), [retried])
        self.assertEqual(await self.store.get("Hello"), loser)


class TestConfiguration(StoreTestCase):

    async def test_conflicting_move_flags(self):
        self.wallet.list_outputs = AsyncMock()
        with self.assertRaises(ConfigurationError):
            await self.store.set(
                "Hello", "World", StoreOverrides(move_to_self=True, move_from_self=True)
            )
        self.wallet.list_outputs.assert_not_called()

    def test_missing_basket(self):
        with self.assertRaises(ConfigurationError):
            StoreConfig(basket="")


class TestHistory(StoreTestCase):

    async def test_history_newest_first(self):
        await self.store.set("Hello", "World")
        await self.store.set("Hello", "Mom")
        await self.store.set("Hello", "again")
        self.assertEqual(await self.store.history("Hello"), ["again", "Mom", "World"])

    async def test_history_unknown_key(self):
        self.assertEqual(await self.store.history("nothing"), [])

    async def test_history_after_collapse(self):
        await self.plant("a")
        await self.plant("b")
        await self.store.set("Hello", "merged")
        history = await self.store.history("Hello")
        self.assertEqual(history[0], "merged")
        self.assertEqual(sorted(history[1:]), ["a", "b"])

    async def test_history_validate(self):
        for v in ("1", "two", "3"):
            await self.store.set("Hello", v)
        self.assertEqual(await self.store.history("Hello", validate=str.isdigit), ["3", "1"])

    async def test_history_raising_validator_skips_entry(self):
        for v in ("1", "two", "3"):
            await self.store.set("Hello", v)
        values = await self.store.history("Hello", validate=lambda v: int(v) > 0)
        self.assertEqual(values, ["3", "1"])


class TestPlaintextValues(StoreTestCase):

    encrypt = False

    async def test_value_stored_in_clear(self):
        outpoint = await self.store.set("Hello", "World")
        token = TokenCodec.decode(self.ledger.output(outpoint).locking).token
        self.assertEqual(token.fields, (b"World",))
        self.assertEqual(await self.store.get("Hello"), "World")
        self.assertEqual(await self.store.history("Hello"), ["World"])


class TestEncryptedValues(StoreTestCase):

    async def test_value_not_stored_in_clear(self):
        outpoint = await self.store.set("Hello", "World")
        token = TokenCodec.decode(self.ledger.output(outpoint).locking).token
        self.assertNotIn(b"World", token.value)


if __name__ == "__main__":
    unittest.main()
