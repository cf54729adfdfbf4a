import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set, Tuple, Union

from loguru import logger

from ..core.base import (
    CashuAccount,
    MintQuoteState,
    ReceiveQuote,
    normalize_mint_url,
)
from ..core.errors import MintOperationError, RateLimitError
from ..core.models import PostMintQuoteResponse
from ..core.settings import settings
from ..wallet.protocols import MintWallet, Unsubscribe
from ..wallet.wallet import WalletProvider

MintKey = Tuple[str, str]


@dataclass(frozen=True)
class TrackedQuote:
    id: str  # local receive quote id
    quote_id: str  # mint quote id
    mint_url: str
    unit: str
    expires_at: int

    @property
    def mint_key(self) -> MintKey:
        return normalize_mint_url(self.mint_url), self.unit

    @classmethod
    def from_quote(cls, quote: ReceiveQuote, account: CashuAccount) -> "TrackedQuote":
        return cls(
            id=quote.id,
            quote_id=quote.quote_id,
            mint_url=account.mint_url,
            unit=account.unit,
            expires_at=quote.expires_at,
        )


@dataclass
class QuoteStateChanged:
    tracked: TrackedQuote
    state: MintQuoteState
    # synthesized by the expiry timer
    deadline: bool = False


@dataclass
class TrackingDegraded:
    mint_url: str
    unit: str
    failures: int
    error: Exception


TrackerEvent = Union[QuoteStateChanged, TrackingDegraded]


class TrackingMode(Enum):
    subscription = "SUBSCRIPTION"
    polling = "POLLING"


@dataclass
class MintTracking:
    """Tracking state of one (mint, unit)."""

    key: MintKey
    mint_url: str
    # None until the mint could be loaded
    wallet: Optional[MintWallet] = None
    mode: Optional[TrackingMode] = None
    quotes: Dict[str, TrackedQuote] = field(default_factory=dict)
    # last state we reported per mint quote id
    states: Dict[str, MintQuoteState] = field(default_factory=dict)
    subscribed: FrozenSet[str] = frozenset()
    unsubscribe: Optional[Unsubscribe] = None
    poll_task: Optional[asyncio.Task] = None
    connect_task: Optional[asyncio.Task] = None
    # set once the websocket failed, the mint stays on polling afterwards
    subscription_failed: bool = False


class MintQuoteTracker:
    """Watches the mint state of pending receive quotes.

    Each mint is tracked in exactly one mode, websocket subscription if the
    mint supports it for bolt11 mint quotes and the unit, polling otherwise.
    Additionally every quote gets a timer at its expiry that triggers one more
    state check, because expiry itself is never announced by a mint.

    Changes are put into `events` as QuoteStateChanged and TrackingDegraded.
    """

    def __init__(self, wallets: WalletProvider, events: Optional[asyncio.Queue] = None):
        self.wallets = wallets
        self.events: asyncio.Queue = events if events is not None else asyncio.Queue()
        self.mints: Dict[MintKey, MintTracking] = {}
        self.deadlines: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def mode(self, mint_url: str, unit: str) -> Optional[TrackingMode]:
        tracking = self.mints.get((normalize_mint_url(mint_url), unit))
        return tracking.mode if tracking else None

    def _spawn(self, coro) -> asyncio.Task:
        task = self.loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit(self, event: TrackerEvent) -> None:
        self.events.put_nowait(event)

    # ------- TRACKED SET -------

    async def track(self, quotes: List[TrackedQuote]) -> None:
        """Replaces the set of tracked quotes."""
        by_mint: Dict[MintKey, Dict[str, TrackedQuote]] = {}
        for tracked in quotes:
            by_mint.setdefault(tracked.mint_key, {})[tracked.quote_id] = tracked

        for key in list(self.mints.keys()):
            if key not in by_mint:
                self._stop_mint(self.mints.pop(key))

        for key, mint_quotes in by_mint.items():
            tracking = self.mints.get(key)
            if tracking is None:
                sample = next(iter(mint_quotes.values()))
                tracking = MintTracking(key=key, mint_url=sample.mint_url)
                self.mints[key] = tracking
                try:
                    await self._load_wallet(tracking)
                except Exception as e:
                    # the other mints are tracked meanwhile
                    logger.warning(f"Loading {key[0]} failed, retrying: {e}")
                    tracking.connect_task = self._spawn(
                        self._connect(tracking, failures=1, error=e)
                    )
            tracking.quotes = mint_quotes
            tracking.states = {
                q: s for q, s in tracking.states.items() if q in mint_quotes
            }
            if tracking.wallet is not None:
                self._apply_mode(tracking)

        self._arm_deadlines(quotes)

    async def _load_wallet(self, tracking: MintTracking) -> None:
        wallet = await self.wallets.get(tracking.mint_url, tracking.key[1])
        tracking.wallet = wallet
        tracking.mode = (
            TrackingMode.subscription
            if wallet.supports_mint_quote_subscription()
            else TrackingMode.polling
        )
        logger.debug(
            f"Tracking {tracking.key[0]} ({tracking.key[1]}) by {tracking.mode.name}"
        )

    async def _connect(
        self, tracking: MintTracking, failures: int, error: Exception
    ) -> None:
        """Retries loading the mint with backoff, then starts tracking it."""
        while True:
            self._failed(tracking, failures, error)
            await asyncio.sleep(self._backoff(failures))
            try:
                await self._load_wallet(tracking)
                break
            except Exception as e:
                failures += 1
                error = e
                logger.debug(f"Loading {tracking.key[0]} failed ({failures}): {e}")
        tracking.connect_task = None
        if self.mints.get(tracking.key) is tracking:
            self._apply_mode(tracking)

    def _apply_mode(self, tracking: MintTracking, force: bool = False) -> None:
        if tracking.wallet is None:
            return
        if tracking.mode == TrackingMode.subscription:
            self._subscribe(tracking, force=force)
        elif tracking.poll_task is None or tracking.poll_task.done():
            tracking.poll_task = self._spawn(self._poll(tracking))

    def _subscribe(self, tracking: MintTracking, force: bool = False) -> None:
        quote_ids = frozenset(tracking.quotes.keys())
        if not force and tracking.subscribed.issuperset(quote_ids):
            return
        if tracking.unsubscribe is not None:
            tracking.unsubscribe()
            tracking.unsubscribe = None
        tracking.subscribed = frozenset()
        if not quote_ids:
            return
        key = tracking.key

        def on_update(resp: PostMintQuoteResponse):
            self.loop.call_soon_threadsafe(self._on_subscription_update, key, resp)

        def on_error(error: Exception):
            self.loop.call_soon_threadsafe(self._on_subscription_error, key, error)

        def on_reconnect():
            self.loop.call_soon_threadsafe(self._on_subscription_reconnect, key)

        tracking.unsubscribe = tracking.wallet.on_mint_quote_updates(
            sorted(quote_ids), on_update, on_error, on_reconnect
        )
        tracking.subscribed = quote_ids
        logger.debug(f"Subscribed to {len(quote_ids)} quotes on {key[0]}")

    def _stop_mint(self, tracking: MintTracking) -> None:
        if tracking.unsubscribe is not None:
            tracking.unsubscribe()
            tracking.unsubscribe = None
        tracking.subscribed = frozenset()
        if tracking.poll_task is not None:
            tracking.poll_task.cancel()
            tracking.poll_task = None
        if tracking.connect_task is not None:
            tracking.connect_task.cancel()
            tracking.connect_task = None

    # ------- SUBSCRIPTION -------

    def _on_subscription_update(self, key: MintKey, resp: PostMintQuoteResponse):
        tracking = self.mints.get(key)
        if tracking is None or tracking.mode != TrackingMode.subscription:
            return
        tracked = tracking.quotes.get(resp.quote)
        if tracked is None:
            return
        self._report(tracking, tracked, resp.mint_quote_state)

    def _on_subscription_error(self, key: MintKey, error: Exception):
        tracking = self.mints.get(key)
        if tracking is None or tracking.mode != TrackingMode.subscription:
            return
        logger.warning(f"Subscription to {key[0]} failed, falling back to polling: {error}")
        self._stop_mint(tracking)
        tracking.subscription_failed = True
        tracking.mode = TrackingMode.polling
        self._apply_mode(tracking)

    def _on_subscription_reconnect(self, key: MintKey):
        tracking = self.mints.get(key)
        if tracking is None:
            return
        logger.debug(f"Websocket of {key[0]} reconnected, checking quotes")
        self._spawn(self._check_all(tracking, report_unchanged=True))

    # ------- POLLING -------

    async def _poll(self, tracking: MintTracking) -> None:
        failures = 0
        while True:
            delay = settings.claim_poll_interval_seconds
            try:
                await self._check_all(tracking)
                failures = 0
            except RateLimitError:
                logger.warning(f"Rate limited by {tracking.key[0]}")
                delay = settings.claim_rate_limited_poll_interval_seconds
            except Exception as e:
                failures += 1
                delay = self._backoff(failures)
                logger.debug(f"Polling {tracking.key[0]} failed ({failures}): {e}")
                self._failed(tracking, failures, e)
            await asyncio.sleep(delay)

    def _backoff(self, failures: int) -> float:
        return min(
            settings.claim_poll_interval_seconds * 2**failures,
            settings.claim_transport_backoff_max_seconds,
        )

    def _failed(self, tracking: MintTracking, failures: int, error: Exception) -> None:
        if failures == settings.claim_degraded_after_failures:
            logger.warning(
                f"Tracking of {tracking.key[0]} degraded after {failures} failures"
            )
            self._emit(
                TrackingDegraded(
                    mint_url=tracking.key[0],
                    unit=tracking.key[1],
                    failures=failures,
                    error=error,
                )
            )

    async def _check_all(
        self, tracking: MintTracking, report_unchanged: bool = False
    ) -> None:
        for tracked in list(tracking.quotes.values()):
            try:
                resp = await tracking.wallet.check_mint_quote(tracked.quote_id)
            except MintOperationError as e:
                # a single unknown quote should not stop the others
                logger.warning(f"Checking quote {tracked.quote_id} failed: {e}")
                continue
            self._report(
                tracking, tracked, resp.mint_quote_state, force=report_unchanged
            )

    def _report(
        self,
        tracking: MintTracking,
        tracked: TrackedQuote,
        state: MintQuoteState,
        force: bool = False,
    ) -> None:
        if not force and tracking.states.get(tracked.quote_id) == state:
            return
        tracking.states[tracked.quote_id] = state
        logger.trace(f"Quote {tracked.quote_id} is {state}")
        self._emit(QuoteStateChanged(tracked=tracked, state=state))

    def forget(self, tracked: TrackedQuote) -> None:
        """Drops the last reported state of a quote so that the next check reports it again."""
        tracking = self.mints.get(tracked.mint_key)
        if tracking is not None:
            tracking.states.pop(tracked.quote_id, None)

    # ------- DEADLINES -------

    def _arm_deadlines(self, quotes: List[TrackedQuote]) -> None:
        tracked_ids = {q.id for q in quotes}
        for quote_id in list(self.deadlines.keys()):
            if quote_id not in tracked_ids:
                self.deadlines.pop(quote_id).cancel()
        for tracked in quotes:
            if tracked.id not in self.deadlines:
                self._arm_deadline(tracked, tracked.expires_at - time.time() + 1)

    def _arm_deadline(self, tracked: TrackedQuote, delay: float) -> None:
        self.deadlines[tracked.id] = self.loop.call_later(
            max(0, delay), self._on_deadline, tracked
        )

    def _on_deadline(self, tracked: TrackedQuote) -> None:
        self._spawn(self._check_deadline(tracked))

    async def _check_deadline(self, tracked: TrackedQuote) -> None:
        tracking = self.mints.get(tracked.mint_key)
        if tracking is None or tracked.quote_id not in tracking.quotes:
            return
        if tracking.wallet is None:
            self._arm_deadline(tracked, settings.claim_poll_interval_seconds)
            return
        try:
            resp = await tracking.wallet.check_mint_quote(tracked.quote_id)
        except Exception as e:
            logger.warning(f"Deadline check of quote {tracked.quote_id} failed: {e}")
            self._arm_deadline(tracked, settings.claim_poll_interval_seconds)
            return
        tracking.states[tracked.quote_id] = resp.mint_quote_state
        self._emit(
            QuoteStateChanged(tracked=tracked, state=resp.mint_quote_state, deadline=True)
        )

    # ------- LIFECYCLE -------

    async def refresh(self) -> None:
        """Resubscribes and checks every tracked quote once, for when events may have been missed."""
        for tracking in list(self.mints.values()):
            if tracking.wallet is None:
                continue
            tracking.states = {}
            if tracking.mode == TrackingMode.subscription:
                self._subscribe(tracking, force=True)
            try:
                await self._check_all(tracking, report_unchanged=True)
            except Exception as e:
                logger.warning(f"Refreshing quotes of {tracking.key[0]} failed: {e}")

    async def stop(self) -> None:
        for tracking in self.mints.values():
            self._stop_mint(tracking)
        self.mints.clear()
        for handle in self.deadlines.values():
            handle.cancel()
        self.deadlines.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
