from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from loguru import logger

from ..core.base import Amount
from ..core.errors import AmountTooSmallError, QuoteResolutionError
from ..core.models import PostMeltQuoteResponse, PostMintQuoteResponse
from ..core.settings import settings
from ..wallet.protocols import MintWallet


@dataclass
class CrossMintQuote:
    mint_quote: PostMintQuoteResponse
    melt_quote: PostMeltQuoteResponse
    amount_to_mint: int


class CrossMintQuoteResolver:
    """Finds a mint quote on one mint that can be paid by melting at another.

    The melt fee is only known once a melt quote for the invoice exists, so
    the amount to mint is lowered by the overshoot of each attempt until the
    melt fits into the available amount.
    """

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or settings.claim_cross_mint_max_attempts

    async def resolve(
        self,
        source_wallet: MintWallet,
        destination_wallet: MintWallet,
        amount: int,
        exchange_rate: Union[Decimal, str, int] = 1,
        locking_pubkey: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CrossMintQuote:
        """
        Args:
            source_wallet (MintWallet): Wallet that melts
            destination_wallet (MintWallet): Wallet that mints
            amount (int): Amount available at the source, in the source unit
            exchange_rate: Price of one major unit of the source currency in
                major units of the destination currency
            locking_pubkey (Optional[str]): NUT-20 key to lock the mint quote to
            description (Optional[str]): Invoice description

        Raises:
            AmountTooSmallError: if the amount to mint drops below one unit
            QuoteResolutionError: if no quote pair fits after `max_attempts`
        """
        amount_to_melt = amount
        for attempt in range(1, self.max_attempts + 1):
            amount_to_mint = (
                Amount(source_wallet.unit, amount_to_melt)
                .convert(destination_wallet.unit, exchange_rate)
                .amount
            )
            if amount_to_mint < 1:
                raise AmountTooSmallError()

            mint_quote = await destination_wallet.create_locked_mint_quote(
                amount_to_mint, locking_pubkey, memo=description
            )
            melt_quote = await source_wallet.create_melt_quote(mint_quote.request)
            required = melt_quote.amount + melt_quote.fee_reserve
            logger.debug(
                f"Attempt {attempt}: minting {amount_to_mint} {destination_wallet.unit} requires {required} of {amount} {source_wallet.unit}"
            )
            if required <= amount:
                return CrossMintQuote(
                    mint_quote=mint_quote,
                    melt_quote=melt_quote,
                    amount_to_mint=amount_to_mint,
                )
            amount_to_melt -= required - amount

        raise QuoteResolutionError(self.max_attempts)
