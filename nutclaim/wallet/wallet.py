from typing import Callable, Dict, List, Optional, Tuple

from bip32 import BIP32
from loguru import logger

from ..core.base import (
    MeltQuoteState,
    Method,
    Proof,
    Unit,
    WalletKeyset,
    normalize_mint_url,
)
from ..core.errors import (
    CashuError,
    KeysetNotFoundError,
    LightningPaymentFailedError,
    is_already_issued_error,
)
from ..core.json_rpc.base import JSONRPCNotficationParams, JSONRPCSubscriptionKinds
from ..core.mint_info import MintInfo
from ..core.models import PostMeltQuoteResponse, PostMintQuoteResponse
from ..core.nuts import nut20
from .errors import NoActiveKeysetError, RestoreMismatchError, WalletError
from .protocols import SupportsTeardown, Unsubscribe
from .secrets import OutputData, construct_proofs, restore, restore_outputs
from .subscriptions import SubscriptionManager
from .v1_api import LedgerAPI


def async_ensure_mint_loaded(func):
    """Decorator that ensures that the mint is loaded before calling the wrapped
    function. If the mint is not loaded, it will be loaded first.
    """

    async def wrapper(self, *args, **kwargs):
        if not self.keysets:
            await self.load_mint()
        return await func(self, *args, **kwargs)

    return wrapper


class CashuWallet:
    """
    Wallet of one mint and one unit.

    The wallet holds no proofs and no counters, those live in the account of
    the claim store. It talks to the mint and turns outputs into proofs.
    """

    keysets: Dict[str, WalletKeyset]
    keyset_id: str
    mint_info: Optional[MintInfo] = None

    def __init__(
        self,
        ledger: LedgerAPI,
        unit: str,
        bip32: BIP32,
        subscription_factory: Callable[..., SubscriptionManager] = SubscriptionManager,
    ):
        self.ledger = ledger
        self.unit = Unit[unit]
        self.bip32 = bip32
        self.keysets = {}
        self.keyset_id = ""
        self.subscription_factory = subscription_factory
        self.subscriptions: Optional[SubscriptionManager] = None

    @property
    def url(self) -> str:
        return self.ledger.url

    def __repr__(self):
        return f"CashuWallet({self.url}, {self.unit.name})"

    # ---------- MINT ----------

    async def load_mint_info(self) -> MintInfo:
        """Loads the mint info from the mint."""
        mint_info_resp = await self.ledger._get_info()
        info = mint_info_resp.model_dump()
        info["nuts"] = info.get("nuts") or {}
        self.mint_info = MintInfo(**info)
        logger.debug(f"Mint info: {self.mint_info}")
        return self.mint_info

    async def load_mint_keysets(self):
        """Loads the keysets of the mint for the unit of the wallet and activates one."""
        logger.trace("Loading mint keysets.")
        mint_keysets = await self.ledger._get_keysets()
        active_keys = {k.id: k for k in await self.ledger._get_keys()}
        for mint_keyset in mint_keysets:
            if mint_keyset.unit != self.unit.name:
                continue
            keyset = self.keysets.get(mint_keyset.id) or active_keys.get(mint_keyset.id)
            if keyset is None:
                # inactive keysets are loaded when a proof needs them
                continue
            keyset.active = mint_keyset.active
            keyset.input_fee_ppk = mint_keyset.input_fee_ppk or 0
            self.keysets[keyset.id] = keyset

        active = [k for k in self.keysets.values() if k.active]
        if not active:
            raise NoActiveKeysetError(self.unit.name)
        self.keyset_id = active[0].id
        logger.debug(
            f"Activated keyset {self.keyset_id} ({self.unit.name}) fee: {self.keysets[self.keyset_id].input_fee_ppk}"
        )

    async def load_mint(self) -> None:
        """Loads the info and the keysets of the mint."""
        logger.trace(f"Loading mint {self.url}.")
        await self.load_mint_keysets()
        await self.load_mint_info()

    @async_ensure_mint_loaded
    async def get_keyset(self, keyset_id: Optional[str] = None) -> WalletKeyset:
        """Returns a keyset of the mint, the active one if `keyset_id` is None."""
        keyset_id = keyset_id or self.keyset_id
        if keyset_id not in self.keysets:
            mint_keysets = {k.id: k for k in await self.ledger._get_keysets()}
            if keyset_id not in mint_keysets:
                raise KeysetNotFoundError(keyset_id)
            keyset = await self.ledger._get_keyset(keyset_id)
            keyset.active = mint_keysets[keyset_id].active
            keyset.input_fee_ppk = mint_keysets[keyset_id].input_fee_ppk or 0
            self.keysets[keyset_id] = keyset
        return self.keysets[keyset_id]

    def supports_mint_quote_subscription(self) -> bool:
        if not self.mint_info:
            return False
        return self.mint_info.supports_websocket_mint_quote(Method.bolt11, self.unit)

    # ---------- MINT QUOTES ----------

    @async_ensure_mint_loaded
    async def create_locked_mint_quote(
        self, amount: int, pubkey: str, memo: Optional[str] = None
    ) -> PostMintQuoteResponse:
        """Requests a mint quote that can only be minted with a signature of `pubkey` (NUT-20)."""
        if self.mint_info and not self.mint_info.supports_locked_mint_quote():
            raise WalletError(f"Mint {self.url} does not support locked mint quotes.")
        quote = await self.ledger.mint_quote(amount, self.unit, pubkey=pubkey, memo=memo)
        logger.debug(f"Created mint quote {quote.quote} for {self.unit.str(amount)}")
        return quote

    async def check_mint_quote(self, quote_id: str) -> PostMintQuoteResponse:
        return await self.ledger.get_mint_quote(quote_id)

    def on_mint_quote_updates(
        self,
        quote_ids: List[str],
        on_update: Callable[[PostMintQuoteResponse], None],
        on_error: Callable[[Exception], None],
        on_reconnect: Optional[Callable[[], None]] = None,
    ) -> Unsubscribe:
        """Subscribes to state updates of mint quotes over the websocket of the mint.

        The callbacks are called from the websocket thread.

        Returns:
            Unsubscribe: Function that ends the subscription
        """
        if self.subscriptions is None:
            self.subscriptions = self.subscription_factory(
                self.url, on_error=on_error, on_reconnect=on_reconnect
            )
        else:
            self.subscriptions.on_error = on_error
            self.subscriptions.on_reconnect = on_reconnect

        def callback(params: JSONRPCNotficationParams):
            on_update(PostMintQuoteResponse.model_validate(params.payload))

        sub_id = self.subscriptions.subscribe(
            kind=JSONRPCSubscriptionKinds.BOLT11_MINT_QUOTE,
            filters=quote_ids,
            callback=callback,
        )
        subscriptions = self.subscriptions

        def unsubscribe():
            subscriptions.unsubscribe(sub_id)

        return unsubscribe

    # ---------- MINT / SWAP ----------

    async def mint_proofs(
        self,
        quote_id: str,
        keyset: WalletKeyset,
        outputs: List[OutputData],
        private_key: Optional[str] = None,
    ) -> List[Proof]:
        """Mints proofs for a paid quote.

        If the mint says it already signed the outputs or issued the quote,
        the signatures are restored for the same outputs instead.

        Args:
            quote_id (str): Quote ID
            keyset (WalletKeyset): Keyset of the outputs
            outputs (List[OutputData]): Outputs derived for the reserved counters
            private_key (Optional[str]): Hex key of a locked quote (NUT-20)
        """
        blinded_messages = [o.blinded_message for o in outputs]
        signature = (
            nut20.sign_mint_quote(quote_id, blinded_messages, private_key)
            if private_key
            else None
        )
        try:
            promises = await self.ledger.mint(blinded_messages, quote_id, signature)
        except CashuError as e:
            if not is_already_issued_error(e):
                raise
            logger.warning(f"Mint quote {quote_id} already issued, restoring: {e}")
            return await self._restore_all(keyset, outputs)
        return construct_proofs(promises, outputs, keyset)

    async def swap(
        self, inputs: List[Proof], keyset: WalletKeyset, outputs: List[OutputData]
    ) -> List[Proof]:
        """Swaps `inputs` for new proofs on `outputs`, restoring if they were already signed."""
        try:
            promises = await self.ledger.swap(
                inputs, [o.blinded_message for o in outputs]
            )
        except CashuError as e:
            if not is_already_issued_error(e):
                raise
            logger.warning(f"Outputs already signed, restoring: {e}")
            return await self._restore_all(keyset, outputs)
        return construct_proofs(promises, outputs, keyset)

    async def _restore_all(
        self, keyset: WalletKeyset, outputs: List[OutputData]
    ) -> List[Proof]:
        proofs = await restore_outputs(self.ledger, keyset, outputs)
        if len(proofs) != len(outputs):
            raise RestoreMismatchError(len(outputs), len(proofs))
        return proofs

    async def restore(
        self, keyset: WalletKeyset, counter: int, count: int
    ) -> List[Proof]:
        """Restores the proofs of `count` outputs starting at `counter`."""
        return await restore(self.ledger, self.bip32, keyset, counter, count)

    # ---------- MELT ----------

    async def create_melt_quote(self, payment_request: str) -> PostMeltQuoteResponse:
        return await self.ledger.melt_quote(payment_request, self.unit)

    async def melt_proofs(
        self, melt_quote: PostMeltQuoteResponse, proofs: List[Proof]
    ) -> PostMeltQuoteResponse:
        """Pays the invoice of a melt quote with `proofs`.

        Raises:
            LightningPaymentFailedError: if the mint could not pay the invoice
        """
        resp = await self.ledger.melt(melt_quote.quote, proofs)
        if resp.state == MeltQuoteState.unpaid.value or resp.paid is False:
            raise LightningPaymentFailedError(
                f"Lightning payment of melt quote {melt_quote.quote} failed"
            )
        logger.debug(f"Melted {len(proofs)} proofs for quote {melt_quote.quote}: {resp.state}")
        return resp

    async def check_unspent(self, proofs: List[Proof]) -> List[Proof]:
        """Returns the proofs the mint reports as unspent."""
        if not proofs:
            return []
        resp = await self.ledger.check_proof_state(proofs)
        unspent_ys = {s.Y for s in resp.states if s.unspent}
        return [p for p in proofs if p.Y in unspent_ys]

    async def close(self):
        if self.subscriptions is not None:
            self.subscriptions.close()
            self.subscriptions = None
        await self.ledger.close()


class WalletProvider:
    """Hands out one loaded wallet per (mint, unit) for a session."""

    def __init__(
        self,
        session: SupportsTeardown,
        ledger_factory: Callable[[str], LedgerAPI] = LedgerAPI,
        subscription_factory: Callable[..., SubscriptionManager] = SubscriptionManager,
    ):
        self.session = session
        self.ledger_factory = ledger_factory
        self.subscription_factory = subscription_factory
        self.wallets: Dict[Tuple[str, str], CashuWallet] = {}
        session.add_teardown_hook(self.clear)

    async def get(self, mint_url: str, unit: str) -> CashuWallet:
        key = (normalize_mint_url(mint_url), unit)
        wallet = self.wallets.get(key)
        if wallet is None:
            wallet = CashuWallet(
                self.ledger_factory(mint_url),
                unit,
                self.session.bip32,
                subscription_factory=self.subscription_factory,
            )
            await wallet.load_mint()
            self.wallets[key] = wallet
        return wallet

    def clear(self):
        """Drops all wallets. Their websockets are closed, http clients are left to the GC."""
        for wallet in self.wallets.values():
            if wallet.subscriptions is not None:
                wallet.subscriptions.close()
                wallet.subscriptions = None
        self.wallets.clear()

    async def close(self):
        for wallet in list(self.wallets.values()):
            await wallet.close()
        self.wallets.clear()
