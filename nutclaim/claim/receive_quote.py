import asyncio
import time
import uuid
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from loguru import logger

from ..core.base import (
    CashuAccount,
    CompletedReceiveQuote,
    ExpiredReceiveQuote,
    FailedReceiveQuote,
    MintQuoteState,
    PaidReceiveQuote,
    Proof,
    ReceiveQuote,
    ReceiveQuoteType,
    Token,
    UnpaidReceiveQuote,
    WalletKeyset,
)
from ..core.errors import (
    CashuError,
    ClaimValidationError,
    QuoteNotPaidError,
    QuoteStateError,
    VersionConflictError,
)
from ..core.helpers import get_fees_for_proofs, sum_proofs
from ..core.settings import settings
from ..wallet.claimability import assert_claimable, sign_p2pk_inputs
from ..wallet.protocols import MintWallet
from ..wallet.secrets import OutputData, derive_outputs
from ..wallet.wallet import WalletProvider
from .cross_mint import CrossMintQuoteResolver
from .session import ClaimSession
from .store import ACCOUNTS, ClaimStore

# mints that don't tell us when a quote expires
DEFAULT_QUOTE_EXPIRY = 3600


class ReceiveQuoteService:
    """Moves a receive quote from creation to minted proofs.

    UNPAID -> PAID -> COMPLETED, UNPAID -> EXPIRED and UNPAID/PAID -> FAILED.
    Every transition is a versioned write, a stale quote or account raises
    VersionConflictError and has to be refetched by the caller.
    """

    def __init__(
        self,
        session: ClaimSession,
        store: ClaimStore,
        wallets: WalletProvider,
        resolver: Optional[CrossMintQuoteResolver] = None,
    ):
        self.session = session
        self.store = store
        self.wallets = wallets
        self.resolver = resolver or CrossMintQuoteResolver()

    async def create(
        self,
        user_id: str,
        account: CashuAccount,
        amount: int,
        description: Optional[str] = None,
    ) -> UnpaidReceiveQuote:
        """Requests a locked mint quote for `amount` and stores it as UNPAID."""
        wallet = await self.wallets.get(account.mint_url, account.unit)
        locking_path, locking_pubkey = self.session.derive_locking_key()
        description = description or settings.claim_quote_description
        mint_quote = await wallet.create_locked_mint_quote(
            amount, locking_pubkey, memo=description
        )
        quote = UnpaidReceiveQuote(
            id=str(uuid.uuid4()),
            user_id=user_id,
            account_id=account.id,
            quote_id=mint_quote.quote,
            amount=amount,
            unit=account.unit,
            description=description,
            payment_request=mint_quote.request,
            locking_derivation_path=locking_path,
            expires_at=mint_quote.expiry or int(time.time()) + DEFAULT_QUOTE_EXPIRY,
            type=ReceiveQuoteType.lightning,
        )
        quote = await self.store.create_quote(quote)
        logger.debug(f"Created receive quote {quote.id} (mint quote {quote.quote_id})")
        return quote

    async def create_from_token(
        self,
        user_id: str,
        token: Token,
        account: CashuAccount,
        exchange_rate: Union[Decimal, str, int] = 1,
    ) -> ReceiveQuote:
        """Claims a token of another mint or unit into `account` over Lightning.

        The token is melted at its mint to pay a locked mint quote of the
        account's mint. The returned quote completes like any other receive
        quote once the mint sees the payment.

        Raises:
            ClaimValidationError: if no proof of the token can be claimed
            AmountTooSmallError: if nothing is left after fees
            QuoteResolutionError: if no quote pair fits the token amount
        """
        claimable = assert_claimable(token.proofs, self.session.claim_public_keys)
        source = await self.wallets.get(token.mint, token.unit)
        proofs = await source.check_unspent(claimable)
        if not proofs:
            raise ClaimValidationError("This ecash has already been spent.")

        keysets: List[WalletKeyset] = [
            await source.get_keyset(keyset_id) for keyset_id in {p.id for p in proofs}
        ]
        available = sum_proofs(proofs) - get_fees_for_proofs(proofs, keysets)

        destination = await self.wallets.get(account.mint_url, account.unit)
        locking_path, locking_pubkey = self.session.derive_locking_key()
        description = token.memo or settings.claim_quote_description
        cross_mint = await self.resolver.resolve(
            source,
            destination,
            available,
            exchange_rate=exchange_rate,
            locking_pubkey=locking_pubkey,
            description=description,
        )
        mint_quote = cross_mint.mint_quote
        quote = await self.store.create_quote(
            UnpaidReceiveQuote(
                id=str(uuid.uuid4()),
                user_id=user_id,
                account_id=account.id,
                quote_id=mint_quote.quote,
                amount=cross_mint.amount_to_mint,
                unit=account.unit,
                description=description,
                payment_request=mint_quote.request,
                locking_derivation_path=locking_path,
                expires_at=mint_quote.expiry or int(time.time()) + DEFAULT_QUOTE_EXPIRY,
                type=ReceiveQuoteType.token,
            )
        )

        inputs = sign_p2pk_inputs(proofs, self.session.claim_private_key)
        try:
            await source.melt_proofs(cross_mint.melt_quote, inputs)
        except CashuError as e:
            logger.warning(f"Melting token for quote {quote.id} failed: {e}")
            await self.fail(quote, e.detail)
            raise
        logger.debug(
            f"Melted {sum_proofs(proofs)} {token.unit} at {token.mint} for quote {quote.id}"
        )
        return quote

    async def expire(self, quote: ReceiveQuote) -> ExpiredReceiveQuote:
        if isinstance(quote, ExpiredReceiveQuote):
            return quote
        if not isinstance(quote, UnpaidReceiveQuote):
            raise QuoteStateError(f"Cannot expire quote {quote.id} in state {quote.state}")
        if not quote.expired:
            raise QuoteStateError(f"Quote {quote.id} has not expired yet")
        expired = await self.store.mark_quote_expired(quote.id, quote.version)
        logger.debug(f"Receive quote {quote.id} expired")
        return expired

    async def fail(self, quote: ReceiveQuote, reason: str) -> FailedReceiveQuote:
        if isinstance(quote, FailedReceiveQuote):
            return quote
        if quote.state.terminal:
            raise QuoteStateError(f"Cannot fail quote {quote.id} in state {quote.state}")
        failed = await self.store.mark_quote_failed(quote.id, quote.version, reason)
        logger.debug(f"Receive quote {quote.id} failed: {reason}")
        return failed

    async def complete(
        self, account: CashuAccount, quote: ReceiveQuote
    ) -> Tuple[CompletedReceiveQuote, CashuAccount]:
        """Mints the proofs of a paid quote into the account.

        An UNPAID quote is checked at the mint first and raises
        QuoteNotPaidError without any write unless the mint reports it PAID
        or ISSUED. It then reserves the counters of its outputs and becomes
        PAID. A PAID quote derives the same outputs again from the stored
        counter, so a retry never uses new counters. Once the mint is called,
        cancelling the caller does not stop the mint call or the commit.
        """
        if isinstance(quote, CompletedReceiveQuote):
            return quote, account
        if isinstance(quote, (ExpiredReceiveQuote, FailedReceiveQuote)):
            raise QuoteStateError(f"Cannot complete quote {quote.id} in state {quote.state}")

        wallet = await self.wallets.get(account.mint_url, account.unit)
        if isinstance(quote, UnpaidReceiveQuote):
            # nothing is reserved before the mint confirms the payment
            mint_quote = await wallet.check_mint_quote(quote.quote_id)
            if mint_quote.mint_quote_state not in (
                MintQuoteState.paid,
                MintQuoteState.issued,
            ):
                raise QuoteNotPaidError()
            keyset = await wallet.get_keyset()
            counter = account.counter_for(keyset.id)
            outputs = derive_outputs(self.session.bip32, keyset, counter, quote.amount)
            quote, account = await self.store.process_payment(
                quote.id,
                quote.version,
                keyset.id,
                counter,
                [o.amount for o in outputs],
                account.version,
            )
        else:
            keyset = await wallet.get_keyset(quote.keyset_id)
            outputs = derive_outputs(
                self.session.bip32,
                keyset,
                quote.keyset_counter,
                quote.amount,
                quote.output_amounts,
            )

        return await asyncio.shield(
            self._mint_and_commit(wallet, keyset, quote, account, outputs)
        )

    async def _mint_and_commit(
        self,
        wallet: MintWallet,
        keyset: WalletKeyset,
        quote: PaidReceiveQuote,
        account: CashuAccount,
        outputs: List[OutputData],
    ) -> Tuple[CompletedReceiveQuote, CashuAccount]:
        private_key = self.session.derive_private_key(
            quote.locking_derivation_path
        ).serialize()
        proofs = await wallet.mint_proofs(quote.quote_id, keyset, outputs, private_key)
        logger.debug(f"Minted {sum_proofs(proofs)} {quote.unit} for quote {quote.id}")
        return await self._commit(quote, account, proofs)

    async def _commit(
        self, quote: PaidReceiveQuote, account: CashuAccount, proofs: List[Proof]
    ) -> Tuple[CompletedReceiveQuote, CashuAccount]:
        # other quotes of the account may complete meanwhile, the proofs we
        # hold are still good for the latest account version
        for _ in range(settings.claim_version_conflict_retries):
            try:
                return await self.store.complete_receive(
                    quote.id, quote.version, proofs, account.version
                )
            except VersionConflictError as e:
                if e.entity != ACCOUNTS:
                    raise
                account = await self.store.get_account(account.id)
        return await self.store.complete_receive(
            quote.id, quote.version, proofs, account.version
        )
