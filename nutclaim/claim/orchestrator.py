import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from ..core.base import (
    CashuAccount,
    CompletedReceiveQuote,
    CompletedTokenSwap,
    ExpiredReceiveQuote,
    FailedReceiveQuote,
    MintQuoteState,
    PaidReceiveQuote,
    ReceiveQuote,
    UnpaidReceiveQuote,
)
from ..core.errors import VersionConflictError
from ..core.settings import settings
from ..wallet.wallet import WalletProvider
from .receive_quote import ReceiveQuoteService
from .session import ClaimSession
from .store import RECEIVE_QUOTES, ChangeEvent, ChangeKind, ClaimStore
from .token_swap import TokenSwapService
from .tracker import (
    MintQuoteTracker,
    QuoteStateChanged,
    TrackedQuote,
    TrackerEvent,
    TrackingDegraded,
)

EXPIRED_UNPAID_REASON = "Quote expired before the mint received the payment"


@dataclass
class ProcessingSummary:
    completed: List[CompletedReceiveQuote] = field(default_factory=list)
    expired: List[ExpiredReceiveQuote] = field(default_factory=list)
    failed: List[FailedReceiveQuote] = field(default_factory=list)
    swaps: List[CompletedTokenSwap] = field(default_factory=list)
    # local id -> error, processing goes on with the next item
    errors: Dict[str, Exception] = field(default_factory=dict)


class QuoteOrchestrator:
    """Moves pending quotes and swaps of a user forward.

    `process_all_pending` is one pass over everything pending. `run` keeps the
    tracker fed with the pending quotes of the store and turns its events
    into transitions until it is cancelled.
    """

    def __init__(
        self,
        session: ClaimSession,
        store: ClaimStore,
        wallets: WalletProvider,
        receive_quotes: ReceiveQuoteService,
        token_swaps: TokenSwapService,
        tracker: Optional[MintQuoteTracker] = None,
    ):
        self.session = session
        self.store = store
        self.wallets = wallets
        self.receive_quotes = receive_quotes
        self.token_swaps = token_swaps
        self.tracker = tracker or MintQuoteTracker(wallets)

    @property
    def events(self) -> asyncio.Queue:
        return self.tracker.events

    async def process_all_pending(self, user_id: str) -> ProcessingSummary:
        """Finalizes pending swaps and checks every pending quote at its mint once."""
        summary = ProcessingSummary()
        for swap in await self.store.get_pending_token_swaps(user_id):
            try:
                account = await self.store.get_account(swap.account_id)
                completed, _ = await self.token_swaps.finalize(account, swap)
                summary.swaps.append(completed)
            except Exception as e:
                logger.warning(f"Finalizing token swap {swap.id} failed: {e}")
                summary.errors[swap.id] = e

        accounts = {a.id: a for a in await self.store.get_accounts(user_id)}
        for quote in await self.store.get_pending_quotes(user_id):
            account = accounts.get(quote.account_id)
            if account is None:
                continue
            try:
                wallet = await self.wallets.get(account.mint_url, account.unit)
                resp = await wallet.check_mint_quote(quote.quote_id)
                result = await self.dispatch(
                    QuoteStateChanged(
                        tracked=TrackedQuote.from_quote(quote, account),
                        state=resp.mint_quote_state,
                        deadline=quote.expired,
                    )
                )
            except Exception as e:
                logger.warning(f"Processing quote {quote.id} failed: {e}")
                summary.errors[quote.id] = e
                continue
            if isinstance(result, CompletedReceiveQuote):
                summary.completed.append(result)
            elif isinstance(result, ExpiredReceiveQuote):
                summary.expired.append(result)
            elif isinstance(result, FailedReceiveQuote):
                summary.failed.append(result)

        logger.debug(
            f"Processed pending of {user_id}: {len(summary.completed)} completed, {len(summary.expired)} expired, {len(summary.swaps)} swaps, {len(summary.errors)} errors"
        )
        return summary

    async def dispatch(self, event: QuoteStateChanged) -> Optional[ReceiveQuote]:
        """Applies a mint state of a quote to the local quote.

        Returns the quote after the transition, None if there was nothing to do.
        """
        for attempt in range(settings.claim_version_conflict_retries + 1):
            quote = await self.store.get_quote(event.tracked.id)
            if quote.state.terminal:
                logger.trace(f"Dropping {event.state} for quote {quote.id} ({quote.state})")
                return None
            account = await self.store.get_account(quote.account_id)
            try:
                return await self._transition(event, quote, account)
            except VersionConflictError as e:
                if attempt == settings.claim_version_conflict_retries:
                    raise
                logger.debug(f"Dispatch of quote {quote.id} conflicted, refetching: {e}")
        return None

    async def _transition(
        self, event: QuoteStateChanged, quote: ReceiveQuote, account: CashuAccount
    ) -> Optional[ReceiveQuote]:
        if event.state in (MintQuoteState.paid, MintQuoteState.issued):
            completed, _ = await self.receive_quotes.complete(account, quote)
            logger.debug(f"Quote {quote.id} completed ({event.state} at mint)")
            return completed
        if (
            event.state == MintQuoteState.unpaid
            and isinstance(quote, UnpaidReceiveQuote)
            and quote.expired
        ):
            return await self.receive_quotes.expire(quote)
        if (
            event.state == MintQuoteState.unpaid
            and isinstance(quote, PaidReceiveQuote)
            and quote.expired
        ):
            # counters are reserved but the mint never saw the payment
            return await self.receive_quotes.fail(quote, EXPIRED_UNPAID_REASON)
        return None

    # ------- LONG RUNNING -------

    async def _track_pending(self, user_id: str) -> None:
        accounts = {a.id: a for a in await self.store.get_accounts(user_id)}
        tracked = [
            TrackedQuote.from_quote(q, accounts[q.account_id])
            for q in await self.store.get_pending_quotes(user_id)
            if q.account_id in accounts
        ]
        await self.tracker.track(tracked)

    async def _synchronize(self, user_id: str, refresh: bool = False) -> None:
        try:
            await self.process_all_pending(user_id)
            await self._track_pending(user_id)
            if refresh:
                await self.tracker.refresh()
        except Exception as e:
            logger.warning(f"Synchronizing pending quotes of {user_id} failed: {e}")

    async def _consume_changes(self, user_id: str, changes: asyncio.Queue) -> None:
        while True:
            change: ChangeEvent = await changes.get()
            if change.kind == ChangeKind.reconnect:
                logger.debug("Store reconnected, resynchronizing")
                await self._synchronize(user_id, refresh=True)
            elif change.table == RECEIVE_QUOTES:
                try:
                    await self._track_pending(user_id)
                except Exception as e:
                    # the next change or reconnect tries again
                    logger.warning(f"Tracking pending quotes of {user_id} failed: {e}")

    async def _consume_events(self) -> None:
        while True:
            event: TrackerEvent = await self.events.get()
            if isinstance(event, TrackingDegraded):
                logger.warning(
                    f"Tracking of {event.mint_url} is degraded after {event.failures} failures: {event.error}"
                )
                continue
            try:
                await self.dispatch(event)
            except Exception as e:
                logger.warning(f"Dispatch of quote {event.tracked.id} failed: {e}")
                # report the state again with the next check
                self.tracker.forget(event.tracked)

    async def run(self, user_id: str) -> None:
        """Tracks and processes the pending quotes of `user_id` until cancelled."""
        changes = self.store.channel.subscribe()
        try:
            await self._synchronize(user_id)
            await asyncio.gather(
                self._consume_changes(user_id, changes),
                self._consume_events(),
            )
        finally:
            self.store.channel.unsubscribe(changes)
            await self.tracker.stop()
