import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Tuple

from loguru import logger
from pydantic import BaseModel

from ..core.base import (
    CashuAccount,
    CompletedReceiveQuote,
    CompletedTokenSwap,
    ExpiredReceiveQuote,
    FailedReceiveQuote,
    FailedTokenSwap,
    PaidReceiveQuote,
    PendingTokenSwap,
    Proof,
    ReceiveQuote,
    ReceiveQuoteState,
    TokenSwap,
    TokenSwapState,
    UnpaidReceiveQuote,
    normalize_mint_url,
)
from ..core.db import Connection, Database
from ..core.errors import NotFoundError, QuoteStateError, VersionConflictError
from . import crud

ACCOUNTS = "accounts"
RECEIVE_QUOTES = "receive_quotes"
TOKEN_SWAPS = "token_swaps"


class ChangeKind(Enum):
    created = "CREATED"
    updated = "UPDATED"
    reconnect = "RECONNECT"


@dataclass
class ChangeEvent:
    table: Optional[str]
    kind: ChangeKind
    row: Optional[BaseModel] = None


class ChangeChannel:
    """In-process change notifications of the claim store.

    Events are published after the transaction that caused them committed.
    Every subscriber gets its own queue.
    """

    def __init__(self):
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: ChangeEvent) -> None:
        logger.trace(f"Change: {event.kind.name} {event.table}")
        for queue in self._subscribers:
            queue.put_nowait(event)

    def reconnect(self) -> None:
        """Tells subscribers that they may have missed events."""
        self.publish(ChangeEvent(table=None, kind=ChangeKind.reconnect))


class ClaimStore(Protocol):
    channel: ChangeChannel

    async def create_account(
        self, user_id: str, mint_url: str, unit: str
    ) -> CashuAccount: ...

    async def get_account(self, account_id: str) -> CashuAccount: ...

    async def get_account_by_mint(
        self, user_id: str, mint_url: str, unit: str
    ) -> Optional[CashuAccount]: ...

    async def get_accounts(self, user_id: str) -> List[CashuAccount]: ...

    async def get_quote(self, quote_id: str) -> ReceiveQuote: ...

    async def get_pending_quotes(self, user_id: str) -> List[ReceiveQuote]: ...

    async def create_quote(self, quote: UnpaidReceiveQuote) -> UnpaidReceiveQuote: ...

    async def mark_quote_expired(
        self, quote_id: str, version: int
    ) -> ExpiredReceiveQuote: ...

    async def mark_quote_failed(
        self, quote_id: str, version: int, reason: str
    ) -> FailedReceiveQuote: ...

    async def process_payment(
        self,
        quote_id: str,
        quote_version: int,
        keyset_id: str,
        counter: int,
        output_amounts: List[int],
        account_version: int,
    ) -> Tuple[PaidReceiveQuote, CashuAccount]: ...

    async def complete_receive(
        self,
        quote_id: str,
        quote_version: int,
        proofs: List[Proof],
        account_version: int,
    ) -> Tuple[CompletedReceiveQuote, CashuAccount]: ...

    async def get_token_swap(
        self, token_hash: str, user_id: str
    ) -> Optional[TokenSwap]: ...

    async def get_pending_token_swaps(self, user_id: str) -> List[PendingTokenSwap]: ...

    async def create_token_swap(
        self, swap: PendingTokenSwap, account_version: int
    ) -> Tuple[PendingTokenSwap, CashuAccount]: ...

    async def complete_token_swap(
        self,
        token_hash: str,
        user_id: str,
        swap_version: int,
        proofs: List[Proof],
        account_version: int,
    ) -> Tuple[CompletedTokenSwap, CashuAccount]: ...

    async def fail_token_swap(
        self, token_hash: str, user_id: str, version: int, reason: str
    ) -> FailedTokenSwap: ...


def merge_proofs(existing: List[Proof], new: List[Proof]) -> List[Proof]:
    """Appends `new` to `existing`, skipping proofs with a secret we already hold."""
    secrets = {p.secret for p in existing}
    merged = list(existing)
    for proof in new:
        if proof.secret not in secrets:
            secrets.add(proof.secret)
            merged.append(proof)
    return merged


def reserve_counter(
    account: CashuAccount, keyset_id: str, counter: int, count: int
) -> CashuAccount:
    counters = dict(account.keyset_counters)
    counters[keyset_id] = max(counters.get(keyset_id, 0), counter + count)
    return account.model_copy(update={"keyset_counters": counters})


class SqliteClaimStore:
    """Claim store on SQLite. Every write is conditioned on the version the caller read."""

    def __init__(self, db: Database, channel: Optional[ChangeChannel] = None):
        self.db = db
        self.channel = channel or ChangeChannel()

    def _publish(self, kind: ChangeKind, table: str, row: BaseModel):
        self.channel.publish(ChangeEvent(table=table, kind=kind, row=row))

    async def _account_at(
        self, conn: Connection, account_id: str, version: int
    ) -> CashuAccount:
        account = await crud.get_account(self.db, account_id, conn=conn)
        if account is None:
            raise NotFoundError(ACCOUNTS, account_id)
        if account.version != version:
            raise VersionConflictError(ACCOUNTS, account_id, version)
        return account

    async def _quote_at(
        self, conn: Connection, quote_id: str, version: int
    ) -> ReceiveQuote:
        quote = await crud.get_receive_quote(self.db, quote_id, conn=conn)
        if quote is None:
            raise NotFoundError(RECEIVE_QUOTES, quote_id)
        if quote.version != version:
            raise VersionConflictError(RECEIVE_QUOTES, quote_id, version)
        return quote

    async def _swap_at(
        self, conn: Connection, token_hash: str, user_id: str, version: int
    ) -> TokenSwap:
        swap = await crud.get_token_swap(self.db, token_hash, user_id, conn=conn)
        if swap is None:
            raise NotFoundError(TOKEN_SWAPS, token_hash)
        if swap.version != version:
            raise VersionConflictError(TOKEN_SWAPS, token_hash, version)
        return swap

    # ------- ACCOUNTS -------

    async def create_account(
        self, user_id: str, mint_url: str, unit: str
    ) -> CashuAccount:
        account = CashuAccount(
            id=str(uuid.uuid4()),
            user_id=user_id,
            mint_url=normalize_mint_url(mint_url),
            unit=unit,
        )
        await crud.store_account(self.db, account)
        logger.debug(f"Created account {account.id} for {account.mint_url} ({unit})")
        self._publish(ChangeKind.created, ACCOUNTS, account)
        return account

    async def get_account(self, account_id: str) -> CashuAccount:
        account = await crud.get_account(self.db, account_id)
        if account is None:
            raise NotFoundError(ACCOUNTS, account_id)
        return account

    async def get_account_by_mint(
        self, user_id: str, mint_url: str, unit: str
    ) -> Optional[CashuAccount]:
        return await crud.get_account_by_mint(
            self.db, user_id, normalize_mint_url(mint_url), unit
        )

    async def get_accounts(self, user_id: str) -> List[CashuAccount]:
        return await crud.get_accounts(self.db, user_id)

    # ------- RECEIVE QUOTES -------

    async def get_quote(self, quote_id: str) -> ReceiveQuote:
        quote = await crud.get_receive_quote(self.db, quote_id)
        if quote is None:
            raise NotFoundError(RECEIVE_QUOTES, quote_id)
        return quote

    async def get_pending_quotes(self, user_id: str) -> List[ReceiveQuote]:
        return await crud.get_receive_quotes(
            self.db,
            user_id,
            states=[ReceiveQuoteState.unpaid, ReceiveQuoteState.paid],
        )

    async def create_quote(self, quote: UnpaidReceiveQuote) -> UnpaidReceiveQuote:
        quote = quote.model_copy(update={"version": 0})
        await crud.store_receive_quote(self.db, quote)
        self._publish(ChangeKind.created, RECEIVE_QUOTES, quote)
        return quote

    async def mark_quote_expired(
        self, quote_id: str, version: int
    ) -> ExpiredReceiveQuote:
        async with self.db.connect() as conn:
            quote = await self._quote_at(conn, quote_id, version)
            if not isinstance(quote, UnpaidReceiveQuote):
                raise QuoteStateError(f"Cannot expire quote in state {quote.state}")
            expired = ExpiredReceiveQuote(**quote.base_fields())
            await crud.update_receive_quote(self.db, expired, version, conn=conn)
        expired.version = version + 1
        self._publish(ChangeKind.updated, RECEIVE_QUOTES, expired)
        return expired

    async def mark_quote_failed(
        self, quote_id: str, version: int, reason: str
    ) -> FailedReceiveQuote:
        async with self.db.connect() as conn:
            quote = await self._quote_at(conn, quote_id, version)
            if quote.state.terminal:
                raise QuoteStateError(f"Cannot fail quote in state {quote.state}")
            failed = FailedReceiveQuote(**quote.base_fields(), failure_reason=reason)
            await crud.update_receive_quote(self.db, failed, version, conn=conn)
        failed.version = version + 1
        self._publish(ChangeKind.updated, RECEIVE_QUOTES, failed)
        return failed

    async def process_payment(
        self,
        quote_id: str,
        quote_version: int,
        keyset_id: str,
        counter: int,
        output_amounts: List[int],
        account_version: int,
    ) -> Tuple[PaidReceiveQuote, CashuAccount]:
        """Marks a quote as paid and reserves the counters of its outputs, in one transaction."""
        async with self.db.connect() as conn:
            quote = await self._quote_at(conn, quote_id, quote_version)
            if not isinstance(quote, UnpaidReceiveQuote):
                raise QuoteStateError(f"Cannot pay quote in state {quote.state}")
            account = await self._account_at(conn, quote.account_id, account_version)
            paid = PaidReceiveQuote(
                **quote.base_fields(),
                keyset_id=keyset_id,
                keyset_counter=counter,
                output_amounts=output_amounts,
            )
            account = reserve_counter(account, keyset_id, counter, len(output_amounts))
            await crud.update_receive_quote(self.db, paid, quote_version, conn=conn)
            await crud.update_account(self.db, account, account_version, conn=conn)
        paid.version = quote_version + 1
        account.version = account_version + 1
        logger.debug(
            f"Quote {quote_id} paid, reserved counters {counter}..{counter + len(output_amounts) - 1} of keyset {keyset_id}"
        )
        self._publish(ChangeKind.updated, RECEIVE_QUOTES, paid)
        self._publish(ChangeKind.updated, ACCOUNTS, account)
        return paid, account

    async def complete_receive(
        self,
        quote_id: str,
        quote_version: int,
        proofs: List[Proof],
        account_version: int,
    ) -> Tuple[CompletedReceiveQuote, CashuAccount]:
        """Adds the minted proofs to the account and completes the quote, in one transaction."""
        async with self.db.connect() as conn:
            quote = await self._quote_at(conn, quote_id, quote_version)
            if not isinstance(quote, PaidReceiveQuote):
                raise QuoteStateError(f"Cannot complete quote in state {quote.state}")
            account = await self._account_at(conn, quote.account_id, account_version)
            completed = CompletedReceiveQuote(
                **quote.base_fields(),
                keyset_id=quote.keyset_id,
                keyset_counter=quote.keyset_counter,
                output_amounts=quote.output_amounts,
            )
            account = account.model_copy(
                update={"proofs": merge_proofs(account.proofs, proofs)}
            )
            await crud.update_receive_quote(self.db, completed, quote_version, conn=conn)
            await crud.update_account(self.db, account, account_version, conn=conn)
        completed.version = quote_version + 1
        account.version = account_version + 1
        self._publish(ChangeKind.updated, RECEIVE_QUOTES, completed)
        self._publish(ChangeKind.updated, ACCOUNTS, account)
        return completed, account

    # ------- TOKEN SWAPS -------

    async def get_token_swap(
        self, token_hash: str, user_id: str
    ) -> Optional[TokenSwap]:
        return await crud.get_token_swap(self.db, token_hash, user_id)

    async def get_pending_token_swaps(self, user_id: str) -> List[PendingTokenSwap]:
        swaps = await crud.get_token_swaps(
            self.db, user_id, state=TokenSwapState.pending
        )
        return [s for s in swaps if isinstance(s, PendingTokenSwap)]

    async def create_token_swap(
        self, swap: PendingTokenSwap, account_version: int
    ) -> Tuple[PendingTokenSwap, CashuAccount]:
        """Stores a new swap and reserves the counters of its outputs, in one transaction."""
        swap = swap.model_copy(update={"version": 0})
        async with self.db.connect() as conn:
            account = await self._account_at(conn, swap.account_id, account_version)
            account = reserve_counter(
                account, swap.keyset_id, swap.keyset_counter, len(swap.output_amounts)
            )
            await crud.store_token_swap(self.db, swap, conn=conn)
            await crud.update_account(self.db, account, account_version, conn=conn)
        account.version = account_version + 1
        self._publish(ChangeKind.created, TOKEN_SWAPS, swap)
        self._publish(ChangeKind.updated, ACCOUNTS, account)
        return swap, account

    async def complete_token_swap(
        self,
        token_hash: str,
        user_id: str,
        swap_version: int,
        proofs: List[Proof],
        account_version: int,
    ) -> Tuple[CompletedTokenSwap, CashuAccount]:
        async with self.db.connect() as conn:
            swap = await self._swap_at(conn, token_hash, user_id, swap_version)
            if not isinstance(swap, PendingTokenSwap):
                raise QuoteStateError(f"Cannot complete token swap in state {swap.state}")
            account = await self._account_at(conn, swap.account_id, account_version)
            completed = CompletedTokenSwap(**swap.base_fields())
            account = account.model_copy(
                update={"proofs": merge_proofs(account.proofs, proofs)}
            )
            await crud.update_token_swap(self.db, completed, swap_version, conn=conn)
            await crud.update_account(self.db, account, account_version, conn=conn)
        completed.version = swap_version + 1
        account.version = account_version + 1
        self._publish(ChangeKind.updated, TOKEN_SWAPS, completed)
        self._publish(ChangeKind.updated, ACCOUNTS, account)
        return completed, account

    async def fail_token_swap(
        self, token_hash: str, user_id: str, version: int, reason: str
    ) -> FailedTokenSwap:
        async with self.db.connect() as conn:
            swap = await self._swap_at(conn, token_hash, user_id, version)
            if not isinstance(swap, PendingTokenSwap):
                raise QuoteStateError(f"Cannot fail token swap in state {swap.state}")
            failed = FailedTokenSwap(**swap.base_fields(), failure_reason=reason)
            await crud.update_token_swap(self.db, failed, version, conn=conn)
        failed.version = version + 1
        self._publish(ChangeKind.updated, TOKEN_SWAPS, failed)
        return failed

