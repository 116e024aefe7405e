"""
TokenKV Token Consolidation Engine

Each key maps to at most one live token. Writing consumes every live token
for the key and creates exactly one replacement in a single transaction;
removing consumes them and creates nothing.

State machine for set/remove:

    locate (entire transactions)
      |-- no tokens ------------> create output (set) / no-op (remove)
      |-- one or more tokens ---> draft spend of ALL tokens
                                    -> one unlocking proof per input
                                    -> sign_action
                                         |-- ok -----> new outpoint
                                         |-- error --> abort our draft,
                                                       relinquish every
                                                       attempted token,
                                                       return None

A failed consolidation is never retried here and never falls back to
creating a parallel token; the caller's next set re-locates and retries
against whatever the ledger settled to.
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple

from nacl.exceptions import CryptoError

from .codec import DecodedToken, TokenCodec, Verification, verify_token
from .config import StoreConfig, StoreOverrides
from .errors import (
    AmbiguousStateError,
    ConsolidationFailure,
    CorruptTokenError,
    LedgerError,
)
from .historian import Historian
from .index import KeyIndex, LocatedToken, TokenSet, WalletKeyIndex, obfuscate_key
from .keys import KeyProvider
from .logging_config import audit_log, set_operation_id
from .util import b64d, format_outpoint
from .wallet import ActionResult, Include, InputSpec, OutputSpec, Wallet

logger = logging.getLogger(__name__)

LiveToken = Tuple[LocatedToken, DecodedToken]


class KVStore:
    """
    Key-value store over ledger tokens.

    Local mode (default): tokens live in a wallet basket, tagged with the key.
    Shared mode: pass a DirectoryKeyIndex; tokens are indexed under an
    obfuscated lookup handle carried in field 0.
    """

    def __init__(
        self,
        wallet: Wallet,
        keys: KeyProvider,
        config: Optional[StoreConfig] = None,
        index: Optional[KeyIndex] = None,
        codec: Optional[TokenCodec] = None
    ):
        self.wallet = wallet
        self.keys = keys
        self.config = config or StoreConfig.from_env()
        self.index = index or WalletKeyIndex(wallet)
        self.codec = codec or TokenCodec(keys)

    @property
    def field_count(self) -> int:
        return 2 if self.index.obfuscated else 1

    # ============================================================
    # Public operations
    # ============================================================

    async def get(
        self,
        key: str,
        default: Optional[str] = None,
        overrides: Optional[StoreOverrides] = None
    ) -> Optional[str]:
        """
        Read the current value of a key.

        Returns default when the key has no live token. Raises
        AmbiguousStateError when it has more than one, and
        CorruptTokenError when a locally tracked token cannot be decoded.
        """
        cfg = self.config.merged(overrides)
        set_operation_id()
        tag = await self._key_tag(key, cfg, cfg.lookup_counterparty)
        token_set = await self.index.locate(cfg.basket, tag, Include.LOCKING_SCRIPTS)
        live = await self._live_tokens(key, cfg, token_set)
        if not live:
            return default
        if len(live) > 1:
            outpoints = [located.outpoint for located, _ in live]
            audit_log.ambiguous_state(cfg.basket, key, outpoints)
            raise AmbiguousStateError(key, outpoints)

        located, decoded = live[0]
        try:
            return await self._open_value(key, cfg, decoded.value)
        except (CryptoError, ValueError) as e:
            audit_log.corrupt_token(cfg.basket, located.outpoint, str(e))
            raise CorruptTokenError(located.outpoint, cfg.basket, str(e)) from e

    async def set(
        self,
        key: str,
        value: str,
        overrides: Optional[StoreOverrides] = None
    ) -> Optional[str]:
        """
        Write a value, collapsing every live token for the key into one.

        Returns the new token's outpoint, or None if the consolidation
        spend failed (the attempted tokens are relinquished).
        """
        if not isinstance(value, str):
            raise TypeError("value must be a string")
        cfg = self.config.merged(overrides)
        set_operation_id()
        tag = await self._key_tag(key, cfg, cfg.lookup_counterparty)
        # The new token is indexed under its owner's relation, which differs
        # from the lookup relation when moving to or from self
        new_tag = await self._key_tag(key, cfg, cfg.lock_counterparty)
        locking = await self._lock_value(key, value, cfg, new_tag)
        output = OutputSpec(
            locking=locking,
            satoshis=cfg.token_amount,
            description="Key-value token",
            basket=cfg.basket,
            tags=(new_tag,),
        )

        token_set = await self.index.locate(cfg.basket, tag, Include.ENTIRE_TRANSACTIONS)
        tokens = await self._consumable(key, cfg, token_set)

        if not tokens:
            result = await self.wallet.create_action(
                description=f"Set {key} in {cfg.basket}",
                outputs=[output],
            )
            outpoint = format_outpoint(result.txid, 0)
            audit_log.token_created(cfg.basket, key, outpoint)
            await self._announce(result, cfg)
            return outpoint

        try:
            result = await self._consolidate(key, cfg, token_set, tokens, [output])
        except ConsolidationFailure as failure:
            await self._recover(key, cfg, failure)
            return None

        outpoint = format_outpoint(result.txid, 0)
        audit_log.token_consolidated(cfg.basket, key, [t.outpoint for t in tokens], outpoint)
        await self._announce(result, cfg)
        return outpoint

    async def remove(
        self,
        key: str,
        overrides: Optional[StoreOverrides] = None
    ) -> Optional[str]:
        """
        Consume every live token for a key without replacement.

        Returns "<txid>.0" of the removing transaction, or None if the key
        did not exist or the spend failed.
        """
        cfg = self.config.merged(overrides)
        set_operation_id()
        tag = await self._key_tag(key, cfg, cfg.lookup_counterparty)
        token_set = await self.index.locate(cfg.basket, tag, Include.ENTIRE_TRANSACTIONS)
        tokens = await self._consumable(key, cfg, token_set)
        if not tokens:
            return None

        try:
            result = await self._consolidate(key, cfg, token_set, tokens, [])
        except ConsolidationFailure as failure:
            await self._recover(key, cfg, failure)
            return None

        audit_log.token_consolidated(cfg.basket, key, [t.outpoint for t in tokens], None)
        await self._announce(result, cfg)
        return format_outpoint(result.txid, 0)

    async def history(
        self,
        key: str,
        overrides: Optional[StoreOverrides] = None,
        validate: Optional[Callable[[str], bool]] = None
    ) -> List[str]:
        """
        Every verifiable value the key has held, newest first.
        """
        cfg = self.config.merged(overrides)
        set_operation_id()
        tag = await self._key_tag(key, cfg, cfg.lookup_counterparty)
        token_set = await self.index.locate(
            cfg.basket, tag, Include.ENTIRE_TRANSACTIONS, history=True
        )
        live = await self._live_tokens(key, cfg, token_set)
        if not live:
            return []
        if len(live) > 1:
            outpoints = [located.outpoint for located, _ in live]
            audit_log.ambiguous_state(cfg.basket, key, outpoints)
            raise AmbiguousStateError(key, outpoints)

        owner, signers = await self._expected_keys(key, cfg)
        historian = Historian(owner, signers, max_depth=cfg.max_history_depth)
        envelope = token_set.envelope(live[0][0], max_depth=cfg.max_history_depth)

        values = []
        for raw in historian.reconstruct(envelope):
            try:
                value = await self._open_value(key, cfg, raw)
            except (CryptoError, ValueError) as e:
                logger.warning("Dropping undecryptable history entry for %s: %s", cfg.basket, e)
                continue
            if validate is not None:
                try:
                    accepted = validate(value)
                except Exception:
                    logger.warning("History validator raised for an entry in %s", cfg.basket, exc_info=True)
                    continue
                if not accepted:
                    continue
            values.append(value)
        return values

    # ============================================================
    # Token handling
    # ============================================================

    async def _key_tag(self, key: str, cfg: StoreConfig, counterparty: str) -> str:
        if not self.index.obfuscated:
            return key
        return await obfuscate_key(self.keys, cfg.protocol_id, key, counterparty)

    async def _expected_keys(self, key: str, cfg: StoreConfig) -> Tuple[str, Tuple[str, ...]]:
        """Owner key a readable token must carry, and the keys allowed to have signed it."""
        cp = cfg.unlock_counterparty
        owner = await self.keys.get_public_key(cfg.protocol_id, key, cp, for_self=True)
        other = await self.keys.get_public_key(cfg.protocol_id, key, cp, for_self=False)
        return owner, tuple(dict.fromkeys((owner, other)))

    async def _lock_value(self, key: str, value: str, cfg: StoreConfig, tag: str) -> bytes:
        payload = value.encode("utf-8")
        if cfg.encrypt:
            payload = await self.keys.encrypt(payload, cfg.protocol_id, key, cfg.lock_counterparty)
        fields = [b64d(tag), payload] if self.index.obfuscated else [payload]
        return await self.codec.lock(fields, cfg.protocol_id, key, cfg.lock_counterparty)

    async def _open_value(self, key: str, cfg: StoreConfig, payload: bytes) -> str:
        if cfg.encrypt:
            payload = await self.keys.decrypt(payload, cfg.protocol_id, key, cfg.unlock_counterparty)
        return payload.decode("utf-8")

    async def _live_tokens(self, key: str, cfg: StoreConfig, token_set: TokenSet) -> List[LiveToken]:
        """
        Decode and verify located tokens. Tokens that fail verification are
        absent. Tokens that fail to decode are corruption when the index is
        trusted and absent otherwise.
        """
        owner, signers = await self._expected_keys(key, cfg)
        live: List[LiveToken] = []
        for located in token_set:
            result = TokenCodec.decode(located.locking)
            reason = result.reason
            if result.ok and len(result.token.fields) != self.field_count:
                reason = f"expected {self.field_count} field(s), found {len(result.token.fields)}"
            if reason is not None:
                if self.index.trusted:
                    audit_log.corrupt_token(cfg.basket, located.outpoint, reason)
                    raise CorruptTokenError(located.outpoint, cfg.basket, reason)
                logger.debug("Ignoring undecodable token %s: %s", located.outpoint, reason)
                continue

            outcome = verify_token(result.token, owner, signers)
            if outcome != Verification.VALID:
                logger.debug("Ignoring token %s: %s", located.outpoint, outcome.value)
                continue
            live.append((located, result.token))
        return live

    async def _consumable(self, key: str, cfg: StoreConfig, token_set: TokenSet) -> List[LocatedToken]:
        """
        Tokens a write must consume. From a trusted index that is every
        located token, including corrupt ones, so none is left behind as a
        phantom duplicate. From an untrusted index only tokens we own.
        """
        if self.index.trusted:
            return list(token_set)
        owner, _ = await self._expected_keys(key, cfg)
        tokens = []
        for located in token_set:
            result = TokenCodec.decode(located.locking)
            if result.ok and result.token.owning_key == owner:
                tokens.append(located)
        return tokens

    # ============================================================
    # Consolidation
    # ============================================================

    async def _consolidate(
        self,
        key: str,
        cfg: StoreConfig,
        token_set: TokenSet,
        tokens: Sequence[LocatedToken],
        outputs: Sequence[OutputSpec]
    ) -> ActionResult:
        """
        Spend all tokens in one transaction. Every proof is computed against
        the same draft built from this one snapshot. Any error from the draft
        onward raises ConsolidationFailure.
        """
        outpoints = [t.outpoint for t in tokens]
        verb = "Update" if outputs else "Remove"
        reference = None
        try:
            action = await self.wallet.create_action(
                description=f"{verb} {key} in {cfg.basket}",
                outputs=outputs,
                inputs=[InputSpec(op, "Previous key-value token") for op in outpoints],
                input_beef=token_set.beef,
            )
            signable = action.signable
            if signable is None:
                raise LedgerError("Wallet returned no signable draft")
            reference = signable.reference

            spends = {}
            for i in range(len(outpoints)):
                spends[i] = await self.codec.unlock(
                    signable.tx, i, cfg.protocol_id, key, cfg.unlock_counterparty
                )
            return await self.wallet.sign_action(reference, spends)
        except Exception as e:
            raise ConsolidationFailure(outpoints, e, reference) from e

    async def _recover(self, key: str, cfg: StoreConfig, failure: ConsolidationFailure) -> None:
        """
        Drop our own draft, then relinquish every token the failed
        consolidation attempted to consume, once each. The wallet keeps
        tracking tokens another pending draft is spending.
        """
        audit_log.consolidation_failed(cfg.basket, key, failure.outpoints, repr(failure.cause))
        if failure.reference is not None:
            try:
                await self.wallet.abort_action(failure.reference)
            except Exception:
                logger.exception("Could not abort pending action %s", failure.reference)
        for outpoint in failure.outpoints:
            try:
                released = await self.wallet.relinquish_output(cfg.basket, outpoint)
            except Exception:
                logger.exception("Could not relinquish %s from %s", outpoint, cfg.basket)
                continue
            audit_log.token_relinquished(cfg.basket, outpoint, released)

    async def _announce(self, result: ActionResult, cfg: StoreConfig) -> None:
        """
        Publish a completed write to the index. The ledger write already
        succeeded, so a publishing error is logged rather than raised.
        """
        try:
            await self.index.announce(result.txid, result.beef, cfg.topics)
        except Exception:
            logger.exception("Could not announce %s to the key index", result.txid)
