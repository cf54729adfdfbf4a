import httpx
import pytest

from nutclaim.core.base import MintQuoteState
from nutclaim.core.errors import MintOperationError, RateLimitError
from nutclaim.wallet.v1_api import LedgerAPI

MINT_URL = "http://mint-http.test"


def ledger_with(handler) -> LedgerAPI:
    ledger = LedgerAPI(MINT_URL + "/")
    ledger.httpx = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ledger


def test_client_is_created_on_first_request():
    ledger = LedgerAPI(MINT_URL)
    assert ledger.httpx is None
    # a second ledger does not share the client of the first one
    assert LedgerAPI(MINT_URL).httpx is None


@pytest.mark.asyncio
async def test_get_mint_quote():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/mint/quote/bolt11/q1"
        return httpx.Response(200, json={"quote": "q1", "request": "lnbc1", "state": "PAID"})

    ledger = ledger_with(handler)
    resp = await ledger.get_mint_quote("q1")
    assert resp.mint_quote_state == MintQuoteState.paid
    await ledger.close()
    assert ledger.httpx is None


@pytest.mark.asyncio
async def test_mint_error_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"detail": "quote not paid", "code": 20001})

    ledger = ledger_with(handler)
    with pytest.raises(MintOperationError) as exc:
        await ledger.get_mint_quote("q1")
    assert exc.value.code == 20001
    assert "quote not paid" in str(exc.value)


@pytest.mark.asyncio
async def test_rate_limited():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="slow down")

    ledger = ledger_with(handler)
    with pytest.raises(RateLimitError):
        await ledger.get_mint_quote("q1")


@pytest.mark.asyncio
async def test_deprecated_paid_flag():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"quote": "q1", "request": "lnbc1", "paid": True})

    ledger = ledger_with(handler)
    assert (await ledger.get_mint_quote("q1")).mint_quote_state == MintQuoteState.paid
