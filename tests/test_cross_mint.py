import asyncio
import uuid
from typing import List, Optional

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from nutclaim.claim.cross_mint import CrossMintQuoteResolver
from nutclaim.core.base import Amount, Unit
from nutclaim.core.errors import AmountTooSmallError, QuoteResolutionError
from nutclaim.core.models import PostMeltQuoteResponse, PostMintQuoteResponse


class StubWallet:
    """Mints any amount and charges `fee_ppm` plus `fee_min` to pay an invoice."""

    def __init__(self, unit: str, fee_min: int = 0, fee_ppm: int = 0, rate: str = "1"):
        self.unit = Unit[unit]
        self.fee_min = fee_min
        self.fee_ppm = fee_ppm
        # price of one major unit of the invoice currency in our currency
        self.rate = rate
        self.mint_quotes: List[PostMintQuoteResponse] = []
        self.invoices = {}

    async def create_locked_mint_quote(
        self, amount: int, pubkey: Optional[str], memo: Optional[str] = None
    ) -> PostMintQuoteResponse:
        quote = PostMintQuoteResponse(
            quote=str(uuid.uuid4()),
            request=f"lnstub{uuid.uuid4().hex}",
            state="UNPAID",
            amount=amount,
            unit=self.unit.name,
            pubkey=pubkey,
        )
        self.mint_quotes.append(quote)
        return quote

    async def create_melt_quote(self, payment_request: str) -> PostMeltQuoteResponse:
        invoice_unit, invoice_amount = self.invoices[payment_request]
        amount = Amount(invoice_unit, invoice_amount).convert(self.unit, self.rate).amount
        return PostMeltQuoteResponse(
            quote=str(uuid.uuid4()),
            amount=amount,
            fee_reserve=max(self.fee_min, amount * self.fee_ppm // 1_000_000),
        )


def connect(source: StubWallet, destination: StubWallet):
    """Lets `source` see the invoices of `destination`."""
    original = destination.create_locked_mint_quote

    async def create_locked_mint_quote(amount, pubkey, memo=None):
        quote = await original(amount, pubkey, memo)
        source.invoices[quote.request] = (destination.unit, amount)
        return quote

    destination.create_locked_mint_quote = create_locked_mint_quote


@pytest.mark.asyncio
async def test_resolve_without_fees():
    source, destination = StubWallet("sat"), StubWallet("sat")
    connect(source, destination)
    resolved = await CrossMintQuoteResolver().resolve(source, destination, 100)
    assert resolved.amount_to_mint == 100
    assert resolved.melt_quote.amount == 100
    assert len(destination.mint_quotes) == 1


@pytest.mark.asyncio
async def test_resolve_lowers_amount_by_overshoot():
    source, destination = StubWallet("sat", fee_min=2), StubWallet("sat")
    connect(source, destination)
    resolved = await CrossMintQuoteResolver().resolve(
        source, destination, 100, locking_pubkey="02" + "11" * 32
    )
    # 100 + 2 > 100, then 98 + 2 == 100
    assert resolved.amount_to_mint == 98
    assert resolved.melt_quote.amount + resolved.melt_quote.fee_reserve == 100
    assert len(destination.mint_quotes) == 2
    assert resolved.mint_quote.pubkey == "02" + "11" * 32


@pytest.mark.asyncio
async def test_resolve_across_currencies():
    # 1 usd = 0.00002 btc, 1 btc = 50000 usd
    source = StubWallet("sat", fee_min=1, rate="0.00002")
    destination = StubWallet("usd")
    connect(source, destination)
    resolved = await CrossMintQuoteResolver().resolve(
        source, destination, 10_000, exchange_rate="50000"
    )
    assert resolved.amount_to_mint == 499
    required = resolved.melt_quote.amount + resolved.melt_quote.fee_reserve
    assert required <= 10_000


@pytest.mark.asyncio
async def test_resolve_amount_too_small():
    source, destination = StubWallet("sat", fee_min=5), StubWallet("sat")
    connect(source, destination)
    with pytest.raises(AmountTooSmallError):
        await CrossMintQuoteResolver().resolve(source, destination, 4)


@pytest.mark.asyncio
async def test_resolve_gives_up():
    # a one percent fee never fits on the first attempt
    source = StubWallet("sat", fee_min=0, fee_ppm=10_000)
    destination = StubWallet("sat")
    connect(source, destination)
    with pytest.raises(QuoteResolutionError) as exc:
        await CrossMintQuoteResolver(max_attempts=1).resolve(source, destination, 1000)
    assert exc.value.attempts == 1
    assert "after 1 attempts" in exc.value.detail


@settings(deadline=None, max_examples=50)
@given(
    amount=st.integers(min_value=1, max_value=2_000_000),
    fee_min=st.integers(min_value=0, max_value=100),
    fee_ppm=st.integers(min_value=0, max_value=50_000),
)
def test_fuzz_resolved_quotes_fit_the_amount(amount, fee_min, fee_ppm):
    source = StubWallet("sat", fee_min=fee_min, fee_ppm=fee_ppm)
    destination = StubWallet("sat")
    connect(source, destination)
    resolver = CrossMintQuoteResolver(max_attempts=5)
    try:
        resolved = asyncio.run(resolver.resolve(source, destination, amount))
    except (AmountTooSmallError, QuoteResolutionError):
        return
    assert resolved.amount_to_mint >= 1
    assert resolved.melt_quote.amount + resolved.melt_quote.fee_reserve <= amount
    assert len(destination.mint_quotes) <= 5
