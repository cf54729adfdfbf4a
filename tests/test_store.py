import time
import uuid

import pytest

from nutclaim.claim.store import (
    ACCOUNTS,
    RECEIVE_QUOTES,
    TOKEN_SWAPS,
    ChangeKind,
    merge_proofs,
)
from nutclaim.core.base import (
    CompletedReceiveQuote,
    ExpiredReceiveQuote,
    FailedReceiveQuote,
    PaidReceiveQuote,
    PendingTokenSwap,
    Proof,
    ReceiveQuoteState,
    TokenSwapState,
    UnpaidReceiveQuote,
)
from nutclaim.core.errors import NotFoundError, QuoteStateError, VersionConflictError
from tests.conftest import MINT_A


def unpaid_quote(account, amount: int = 100, expires_in: int = 3600) -> UnpaidReceiveQuote:
    return UnpaidReceiveQuote(
        id=str(uuid.uuid4()),
        user_id=account.user_id,
        account_id=account.id,
        quote_id=str(uuid.uuid4()),
        amount=amount,
        unit=account.unit,
        payment_request=f"lnfake{amount}n1abc",
        locking_derivation_path="m/129372'/0'/0'/1",
        expires_at=int(time.time()) + expires_in,
    )


def pending_swap(account, token_hash: str = "aa" * 32) -> PendingTokenSwap:
    return PendingTokenSwap(
        token_hash=token_hash,
        user_id=account.user_id,
        account_id=account.id,
        token_proofs=[Proof(id="00ad268c4d1f5826", amount=8, secret="ab" * 32, C="02")],
        input_amount=8,
        fee_amount=1,
        amount=7,
        keyset_id="00ad268c4d1f5826",
        keyset_counter=0,
        output_amounts=[1, 2, 4],
    )


def proofs(*amounts: int):
    return [
        Proof(id="00ad268c4d1f5826", amount=a, secret=uuid.uuid4().hex, C="02")
        for a in amounts
    ]


def test_merge_proofs_skips_known_secrets():
    existing = proofs(1, 2)
    new = [existing[0]] + proofs(4)
    merged = merge_proofs(existing, new)
    assert [p.amount for p in merged] == [1, 2, 4]


@pytest.mark.asyncio
async def test_accounts(store):
    account = await store.create_account("user1", "http://Mint-A.test/", "sat")
    assert account.mint_url == MINT_A
    assert account.version == 0
    assert account.balance == 0
    assert (await store.get_account(account.id)).id == account.id
    found = await store.get_account_by_mint("user1", "http://mint-a.test", "sat")
    assert found and found.id == account.id
    assert await store.get_account_by_mint("user1", MINT_A, "usd") is None
    assert await store.get_account_by_mint("user2", MINT_A, "sat") is None
    assert [a.id for a in await store.get_accounts("user1")] == [account.id]
    with pytest.raises(NotFoundError):
        await store.get_account("nope")


@pytest.mark.asyncio
async def test_quote_lifecycle(store, account):
    quote = await store.create_quote(unpaid_quote(account))
    assert (await store.get_quote(quote.id)).state == ReceiveQuoteState.unpaid
    assert [q.id for q in await store.get_pending_quotes("user1")] == [quote.id]

    paid, account = await store.process_payment(
        quote.id, 0, "00ad268c4d1f5826", 7, [4, 32, 64], 0
    )
    assert isinstance(paid, PaidReceiveQuote)
    assert paid.version == 1
    assert account.version == 1
    assert account.counter_for("00ad268c4d1f5826") == 10
    stored = await store.get_account(account.id)
    assert stored.keyset_counters == {"00ad268c4d1f5826": 10}
    assert stored.version == 1

    minted = proofs(4, 32, 64)
    completed, account = await store.complete_receive(quote.id, 1, minted, 1)
    assert isinstance(completed, CompletedReceiveQuote)
    assert completed.keyset_counter == 7
    assert account.balance == 100
    assert (await store.get_account(account.id)).balance == 100
    assert await store.get_pending_quotes("user1") == []


@pytest.mark.asyncio
async def test_counter_never_moves_backwards(store, account):
    q1 = await store.create_quote(unpaid_quote(account))
    q2 = await store.create_quote(unpaid_quote(account))
    _, account = await store.process_payment(q1.id, 0, "00ad268c4d1f5826", 10, [1], 0)
    _, account = await store.process_payment(
        q2.id, 0, "00ad268c4d1f5826", 3, [1], account.version
    )
    assert account.counter_for("00ad268c4d1f5826") == 11


@pytest.mark.asyncio
async def test_stale_quote_version(store, account):
    quote = await store.create_quote(unpaid_quote(account))
    await store.mark_quote_failed(quote.id, 0, "boom")
    with pytest.raises(VersionConflictError) as exc:
        await store.process_payment(quote.id, 0, "00ad268c4d1f5826", 0, [1], 0)
    assert exc.value.entity == RECEIVE_QUOTES


@pytest.mark.asyncio
async def test_stale_account_version_writes_nothing(store, account):
    quote = await store.create_quote(unpaid_quote(account))
    with pytest.raises(VersionConflictError) as exc:
        await store.process_payment(quote.id, 0, "00ad268c4d1f5826", 0, [1], 5)
    assert exc.value.entity == ACCOUNTS
    # the quote was not touched either
    stored = await store.get_quote(quote.id)
    assert stored.state == ReceiveQuoteState.unpaid
    assert stored.version == 0


@pytest.mark.asyncio
async def test_expire_and_fail(store, account):
    quote = await store.create_quote(unpaid_quote(account))
    expired = await store.mark_quote_expired(quote.id, 0)
    assert isinstance(expired, ExpiredReceiveQuote)
    assert expired.version == 1
    with pytest.raises(QuoteStateError):
        await store.mark_quote_failed(quote.id, 1, "too late")

    other = await store.create_quote(unpaid_quote(account))
    _, account = await store.process_payment(other.id, 0, "00ad268c4d1f5826", 0, [1], 0)
    with pytest.raises(QuoteStateError):
        await store.mark_quote_expired(other.id, 1)
    failed = await store.mark_quote_failed(other.id, 1, "mint gone")
    assert isinstance(failed, FailedReceiveQuote)
    assert (await store.get_quote(other.id)).failure_reason == "mint gone"


@pytest.mark.asyncio
async def test_token_swap_lifecycle(store, account):
    swap, account = await store.create_token_swap(pending_swap(account), 0)
    assert account.counter_for("00ad268c4d1f5826") == 3
    assert (await store.get_token_swap(swap.token_hash, "user1")).state == (
        TokenSwapState.pending
    )
    assert await store.get_token_swap(swap.token_hash, "user2") is None
    assert len(await store.get_pending_token_swaps("user1")) == 1

    completed, account = await store.complete_token_swap(
        swap.token_hash, "user1", 0, proofs(1, 2, 4), account.version
    )
    assert completed.state == TokenSwapState.completed
    assert account.balance == 7
    assert await store.get_pending_token_swaps("user1") == []
    with pytest.raises(QuoteStateError):
        await store.fail_token_swap(swap.token_hash, "user1", 1, "nope")


@pytest.mark.asyncio
async def test_token_swap_stale_account(store, account):
    with pytest.raises(VersionConflictError) as exc:
        await store.create_token_swap(pending_swap(account), 3)
    assert exc.value.entity == ACCOUNTS
    assert await store.get_token_swap("aa" * 32, "user1") is None


@pytest.mark.asyncio
async def test_token_swap_conflict(store, account):
    swap, account = await store.create_token_swap(pending_swap(account), 0)
    await store.fail_token_swap(swap.token_hash, "user1", 0, "mint said no")
    with pytest.raises(VersionConflictError) as exc:
        await store.complete_token_swap(
            swap.token_hash, "user1", 0, proofs(1), account.version
        )
    assert exc.value.entity == TOKEN_SWAPS
    failed = await store.get_token_swap(swap.token_hash, "user1")
    assert failed.failure_reason == "mint said no"


@pytest.mark.asyncio
async def test_change_events(store, account):
    queue = store.channel.subscribe()
    quote = await store.create_quote(unpaid_quote(account))
    await store.process_payment(quote.id, 0, "00ad268c4d1f5826", 0, [1], 0)
    events = [queue.get_nowait() for _ in range(3)]
    assert [(e.table, e.kind) for e in events] == [
        (RECEIVE_QUOTES, ChangeKind.created),
        (RECEIVE_QUOTES, ChangeKind.updated),
        (ACCOUNTS, ChangeKind.updated),
    ]
    assert events[1].row.state == ReceiveQuoteState.paid
    store.channel.reconnect()
    assert queue.get_nowait().kind == ChangeKind.reconnect
    store.channel.unsubscribe(queue)
    await store.mark_quote_failed(quote.id, 1, "x")
    assert queue.empty()
