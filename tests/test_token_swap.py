import httpx
import pytest

from nutclaim.core.base import TokenSwapState, TokenV4
from nutclaim.core.crypto.secp import PrivateKey
from nutclaim.core.errors import (
    AmountTooSmallError,
    ClaimValidationError,
    CrossMintClaimError,
    MintOperationError,
    QuoteStateError,
)
from tests.conftest import MINT_A, MINT_B
from tests.helpers import assert_amt, assert_err, p2pk_secret


@pytest.mark.asyncio
async def test_prepare_and_finalize(token_swaps, store, account, mint_a):
    proofs = mint_a.issue_proofs([8, 8])
    token = TokenV4.from_proofs(MINT_A, "sat", proofs)
    swap = await token_swaps.prepare("user1", token, account)
    assert swap.state == TokenSwapState.pending
    assert swap.input_amount == 16
    assert swap.fee_amount == 0
    assert swap.amount == 16
    assert swap.output_amounts == [16]
    assert swap.keyset_counter == 0

    completed, account = await token_swaps.finalize(account, swap)
    assert completed.state == TokenSwapState.completed
    assert account.balance == 16
    assert_amt((await store.get_account(account.id)).proofs, 16)
    assert account.counter_for(mint_a.keyset().id) == 1
    assert all(p.Y in mint_a.spent for p in proofs)

    # finalizing a completed swap changes nothing
    again, _ = await token_swaps.finalize(account, completed)
    assert again is completed
    assert mint_a.calls["swap"] == 1


@pytest.mark.asyncio
async def test_prepare_same_token_twice(token_swaps, store, account, mint_a):
    proofs = mint_a.issue_proofs([2, 4])
    swap = await token_swaps.prepare(
        "user1", TokenV4.from_proofs(MINT_A, "sat", proofs), account
    )
    # same ecash, different encoding
    account = await store.get_account(account.id)
    again = await token_swaps.prepare(
        "user1", TokenV4.from_proofs(MINT_A.upper() + "/", "sat", proofs[::-1]), account
    )
    assert again.token_hash == swap.token_hash
    assert again.keyset_counter == swap.keyset_counter
    assert (await store.get_account(account.id)).counter_for(mint_a.keyset().id) == 2


@pytest.mark.asyncio
async def test_prepare_other_mint_or_unit(token_swaps, account, mint_a, mint_b):
    with pytest.raises(CrossMintClaimError):
        await token_swaps.prepare(
            "user1", TokenV4.from_proofs(MINT_B, "sat", mint_b.issue_proofs([8])), account
        )
    with pytest.raises(CrossMintClaimError):
        await token_swaps.prepare(
            "user1", TokenV4.from_proofs(MINT_A, "usd", mint_a.issue_proofs([8])), account
        )


@pytest.mark.asyncio
async def test_claim_token_locked_to_us(token_swaps, account, mint_a, session):
    secret = p2pk_secret(session.claim_public_keys[0])
    proofs = mint_a.issue_proofs([1, 2], secret=secret)
    swap = await token_swaps.prepare(
        "user1", TokenV4.from_proofs(MINT_A, "sat", proofs), account
    )
    completed, account = await token_swaps.finalize(account, swap)
    assert account.balance == 3
    # the new proofs are not locked
    assert all(not p.secret.startswith("[") for p in account.proofs)


@pytest.mark.asyncio
async def test_claim_token_locked_to_someone_else(token_swaps, account, mint_a):
    other = PrivateKey().pubkey.serialize().hex()
    proofs = mint_a.issue_proofs([4], secret=p2pk_secret(other))
    with pytest.raises(ClaimValidationError):
        await token_swaps.prepare(
            "user1", TokenV4.from_proofs(MINT_A, "sat", proofs), account
        )


@pytest.mark.asyncio
async def test_swap_fees(token_swaps, store, network):
    ledger = network.add_mint("http://fees.test", input_fee_ppk=100)
    account = await store.create_account("user1", "http://fees.test", "sat")
    proofs = ledger.issue_proofs([1] * 11)
    swap = await token_swaps.prepare(
        "user1", TokenV4.from_proofs("http://fees.test", "sat", proofs), account
    )
    assert swap.input_amount == 11
    assert swap.fee_amount == 2
    assert swap.amount == 9
    _, account = await token_swaps.finalize(account, swap)
    assert account.balance == 9


@pytest.mark.asyncio
async def test_swap_amount_too_small(token_swaps, store, network):
    ledger = network.add_mint("http://fees.test", input_fee_ppk=100)
    account = await store.create_account("user1", "http://fees.test", "sat")
    token = TokenV4.from_proofs("http://fees.test", "sat", ledger.issue_proofs([1]))
    with pytest.raises(AmountTooSmallError):
        await token_swaps.prepare("user1", token, account)


@pytest.mark.asyncio
async def test_finalize_after_lost_response(token_swaps, store, account, mint_a):
    proofs = mint_a.issue_proofs([8, 4])
    swap = await token_swaps.prepare(
        "user1", TokenV4.from_proofs(MINT_A, "sat", proofs), account
    )
    mint_a.lose_response["swap"] = 1
    with pytest.raises(httpx.ConnectError):
        await token_swaps.finalize(account, swap)
    pending = await store.get_token_swap(swap.token_hash, "user1")
    assert pending.state == TokenSwapState.pending

    # the inputs are spent now, the outputs are ours
    completed, account = await token_swaps.finalize(account, pending)
    assert completed.state == TokenSwapState.completed
    assert account.balance == 12
    assert mint_a.calls["restore"] == 1


@pytest.mark.asyncio
async def test_finalize_token_spent_by_someone_else(token_swaps, store, account, mint_a):
    proofs = mint_a.issue_proofs([8])
    swap = await token_swaps.prepare(
        "user1", TokenV4.from_proofs(MINT_A, "sat", proofs), account
    )
    for p in proofs:
        mint_a.spent[p.Y] = p
    await assert_err(token_swaps.finalize(account, swap), "Token already spent")
    failed = await store.get_token_swap(swap.token_hash, "user1")
    assert failed.state == TokenSwapState.failed
    assert "already spent" in failed.failure_reason.lower()
    assert (await store.get_account(account.id)).balance == 0
    with pytest.raises(QuoteStateError):
        await token_swaps.finalize(account, failed)


@pytest.mark.asyncio
async def test_finalize_mint_error_fails_swap(token_swaps, store, account, mint_a):
    swap = await token_swaps.prepare(
        "user1", TokenV4.from_proofs(MINT_A, "sat", mint_a.issue_proofs([8])), account
    )
    mint_a.fail_next["swap"] = [MintOperationError("keyset is inactive", 12002)]
    with pytest.raises(MintOperationError):
        await token_swaps.finalize(account, swap)
    failed = await store.get_token_swap(swap.token_hash, "user1")
    assert failed.failure_reason == "keyset is inactive"
    assert mint_a.calls.get("restore") is None


@pytest.mark.asyncio
async def test_finalize_network_error_keeps_swap_pending(token_swaps, store, account, mint_a):
    swap = await token_swaps.prepare(
        "user1", TokenV4.from_proofs(MINT_A, "sat", mint_a.issue_proofs([8])), account
    )
    mint_a.fail_next["swap"] = [httpx.ConnectError("mint unreachable")]
    with pytest.raises(httpx.ConnectError):
        await token_swaps.finalize(account, swap)
    pending = await store.get_token_swap(swap.token_hash, "user1")
    assert pending.state == TokenSwapState.pending
    _, account = await token_swaps.finalize(account, pending)
    assert account.balance == 8


@pytest.mark.asyncio
async def test_fail(token_swaps, store, account, mint_a):
    swap = await token_swaps.prepare(
        "user1", TokenV4.from_proofs(MINT_A, "sat", mint_a.issue_proofs([8])), account
    )
    failed = await token_swaps.fail(swap, "user cancelled")
    assert failed.state == TokenSwapState.failed
    assert await token_swaps.fail(failed, "again") is failed

    account = await store.get_account(account.id)
    other = await token_swaps.prepare(
        "user1", TokenV4.from_proofs(MINT_A, "sat", mint_a.issue_proofs([8])), account
    )
    completed, _ = await token_swaps.finalize(account, other)
    with pytest.raises(QuoteStateError):
        await token_swaps.fail(completed, "too late")
