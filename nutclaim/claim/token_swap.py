import asyncio
from typing import List, Tuple

from loguru import logger

from ..core.base import (
    CashuAccount,
    CompletedTokenSwap,
    FailedTokenSwap,
    PendingTokenSwap,
    Proof,
    Token,
    TokenSwap,
    WalletKeyset,
    normalize_mint_url,
    token_hash,
)
from ..core.errors import (
    TOKEN_ALREADY_SPENT,
    AmountTooSmallError,
    CrossMintClaimError,
    MintOperationError,
    QuoteStateError,
    VersionConflictError,
)
from ..core.helpers import get_fees_for_proofs, sum_proofs
from ..core.settings import settings
from ..wallet.claimability import assert_claimable, sign_p2pk_inputs
from ..wallet.protocols import MintWallet
from ..wallet.secrets import OutputData, derive_outputs
from ..wallet.wallet import WalletProvider
from .session import ClaimSession
from .store import ACCOUNTS, ClaimStore


def _is_already_spent(e: MintOperationError) -> bool:
    return e.code == TOKEN_ALREADY_SPENT or "already spent" in str(e.detail).lower()


class TokenSwapService:
    """Claims a token of the account's own mint by swapping its proofs.

    The swap is keyed by the hash of the token, preparing the same token
    twice returns the swap that already exists.
    """

    def __init__(self, session: ClaimSession, store: ClaimStore, wallets: WalletProvider):
        self.session = session
        self.store = store
        self.wallets = wallets

    async def prepare(
        self, user_id: str, token: Token, account: CashuAccount
    ) -> TokenSwap:
        """Stores a PENDING swap for `token` and reserves the counters of its outputs.

        Raises:
            CrossMintClaimError: if the token is of another mint or unit
            ClaimValidationError: if no proof of the token can be claimed
            AmountTooSmallError: if nothing is left after fees
        """
        key = token_hash(token)
        existing = await self.store.get_token_swap(key, user_id)
        if existing is not None:
            logger.debug(f"Token {key} was already claimed: {existing.state}")
            return existing

        if (
            normalize_mint_url(token.mint) != normalize_mint_url(account.mint_url)
            or token.unit != account.unit
        ):
            raise CrossMintClaimError()

        proofs = assert_claimable(token.proofs, self.session.claim_public_keys)
        wallet = await self.wallets.get(account.mint_url, account.unit)
        input_keysets: List[WalletKeyset] = [
            await wallet.get_keyset(keyset_id) for keyset_id in {p.id for p in proofs}
        ]
        input_amount = sum_proofs(proofs)
        fee = get_fees_for_proofs(proofs, input_keysets)
        amount = input_amount - fee
        if amount < 1:
            raise AmountTooSmallError()

        keyset = await wallet.get_keyset()
        counter = account.counter_for(keyset.id)
        outputs = derive_outputs(self.session.bip32, keyset, counter, amount)
        swap, _ = await self.store.create_token_swap(
            PendingTokenSwap(
                token_hash=key,
                user_id=user_id,
                account_id=account.id,
                token_proofs=proofs,
                input_amount=input_amount,
                fee_amount=fee,
                amount=amount,
                keyset_id=keyset.id,
                keyset_counter=counter,
                output_amounts=[o.amount for o in outputs],
            ),
            account.version,
        )
        logger.debug(f"Prepared swap of token {key}: {input_amount} - {fee} fee")
        return swap

    async def fail(self, swap: TokenSwap, reason: str) -> FailedTokenSwap:
        if isinstance(swap, FailedTokenSwap):
            return swap
        if isinstance(swap, CompletedTokenSwap):
            raise QuoteStateError(f"Cannot fail completed token swap {swap.id}")
        failed = await self.store.fail_token_swap(
            swap.token_hash, swap.user_id, swap.version, reason
        )
        logger.debug(f"Token swap {swap.id} failed: {reason}")
        return failed

    async def finalize(
        self, account: CashuAccount, swap: TokenSwap
    ) -> Tuple[CompletedTokenSwap, CashuAccount]:
        """Swaps the token proofs for the reserved outputs and adds them to the account.

        A mint error other than the already signed class fails the swap with
        the mint's message. Network errors leave it PENDING for a retry.
        """
        if isinstance(swap, CompletedTokenSwap):
            return swap, account
        if isinstance(swap, FailedTokenSwap):
            raise QuoteStateError(f"Token swap {swap.id} failed: {swap.failure_reason}")

        wallet = await self.wallets.get(account.mint_url, account.unit)
        keyset = await wallet.get_keyset(swap.keyset_id)
        outputs = derive_outputs(
            self.session.bip32,
            keyset,
            swap.keyset_counter,
            swap.amount,
            swap.output_amounts,
        )
        inputs = sign_p2pk_inputs(swap.token_proofs, self.session.claim_private_key)
        return await asyncio.shield(
            self._swap_and_commit(wallet, keyset, swap, account, inputs, outputs)
        )

    async def _swap_and_commit(
        self,
        wallet: MintWallet,
        keyset: WalletKeyset,
        swap: PendingTokenSwap,
        account: CashuAccount,
        inputs: List[Proof],
        outputs: List[OutputData],
    ) -> Tuple[CompletedTokenSwap, CashuAccount]:
        try:
            proofs = await wallet.swap(inputs, keyset, outputs)
        except MintOperationError as e:
            # spent inputs can also mean our own earlier swap went through
            if not _is_already_spent(e):
                await self.fail(swap, e.detail)
                raise
            proofs = await wallet.restore(keyset, swap.keyset_counter, len(outputs))
            if len(proofs) != len(outputs):
                await self.fail(swap, e.detail)
                raise
            logger.warning(f"Token {swap.id} was spent by us before, restored")

        for _ in range(settings.claim_version_conflict_retries):
            try:
                return await self.store.complete_token_swap(
                    swap.token_hash, swap.user_id, swap.version, proofs, account.version
                )
            except VersionConflictError as e:
                if e.entity != ACCOUNTS:
                    raise
                account = await self.store.get_account(account.id)
        return await self.store.complete_token_swap(
            swap.token_hash, swap.user_id, swap.version, proofs, account.version
        )
