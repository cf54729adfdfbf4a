from typing import Callable, List, Optional, Protocol

from ..core.base import Proof, Unit, WalletKeyset
from ..core.models import PostMeltQuoteResponse, PostMintQuoteResponse
from .secrets import OutputData

Unsubscribe = Callable[[], None]


class SupportsTeardown(Protocol):
    def add_teardown_hook(self, hook: Callable[[], None]) -> None: ...


class MintWallet(Protocol):
    """What the claim engine needs from the wallet of one mint and unit."""

    url: str
    unit: Unit

    async def get_keyset(self, keyset_id: Optional[str] = None) -> WalletKeyset: ...

    async def create_locked_mint_quote(
        self, amount: int, pubkey: str, memo: Optional[str] = None
    ) -> PostMintQuoteResponse: ...

    async def check_mint_quote(self, quote_id: str) -> PostMintQuoteResponse: ...

    def on_mint_quote_updates(
        self,
        quote_ids: List[str],
        on_update: Callable[[PostMintQuoteResponse], None],
        on_error: Callable[[Exception], None],
        on_reconnect: Optional[Callable[[], None]] = None,
    ) -> Unsubscribe: ...

    def supports_mint_quote_subscription(self) -> bool: ...

    async def mint_proofs(
        self,
        quote_id: str,
        keyset: WalletKeyset,
        outputs: List[OutputData],
        private_key: Optional[str] = None,
    ) -> List[Proof]: ...

    async def restore(
        self, keyset: WalletKeyset, counter: int, count: int
    ) -> List[Proof]: ...

    async def swap(
        self, inputs: List[Proof], keyset: WalletKeyset, outputs: List[OutputData]
    ) -> List[Proof]: ...

    async def create_melt_quote(self, payment_request: str) -> PostMeltQuoteResponse: ...

    async def melt_proofs(
        self, melt_quote: PostMeltQuoteResponse, proofs: List[Proof]
    ) -> PostMeltQuoteResponse: ...

    async def check_unspent(self, proofs: List[Proof]) -> List[Proof]: ...
