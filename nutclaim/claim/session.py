import secrets
from typing import Callable, List, Optional, Tuple

from bip32 import BIP32
from loguru import logger
from mnemonic import Mnemonic

from ..core.crypto.secp import PrivateKey
from ..core.errors import SessionClosedError

# unhardened index of the NUT-20 locking keys, m/129372'/0'/0'/<index>
LOCKING_KEY_BASE_PATH = "m/129372'/0'/0'"
# P2PK key other wallets lock ecash to when sending to us
CLAIM_KEY_PATH = "m/129372'/0'/1'/0"


class ClaimSession:
    """Seed material of one logged in user.

    Every component that needs a key gets it from the session. After
    `close()` the seed is gone and any access raises SessionClosedError.
    """

    def __init__(self, seed: bytes):
        self._bip32: Optional[BIP32] = BIP32.from_seed(seed)
        self._teardown_hooks: List[Callable[[], None]] = []

    @classmethod
    def from_mnemonic(cls, mnemonic: str, passphrase: str = "") -> "ClaimSession":
        mnemo = Mnemonic("english")
        if not mnemo.check(mnemonic):
            raise ValueError("Invalid mnemonic")
        return cls(mnemo.to_seed(mnemonic, passphrase=passphrase))

    @classmethod
    def from_seed(cls, seed: bytes) -> "ClaimSession":
        return cls(seed)

    @property
    def closed(self) -> bool:
        return self._bip32 is None

    @property
    def bip32(self) -> BIP32:
        if self._bip32 is None:
            raise SessionClosedError()
        return self._bip32

    def derive_private_key(self, path: str) -> PrivateKey:
        return PrivateKey(self.bip32.get_privkey_from_path(path), raw=True)

    def derive_locking_key(self) -> Tuple[str, str]:
        """Derives a fresh key to lock a mint quote to.

        Returns:
            Tuple[str, str]: Derivation path and the public key (hex)
        """
        path = f"{LOCKING_KEY_BASE_PATH}/{secrets.randbelow(2**31 - 1)}"
        pubkey = self.derive_private_key(path).pubkey.serialize().hex()
        return path, pubkey

    @property
    def claim_private_key(self) -> PrivateKey:
        return self.derive_private_key(CLAIM_KEY_PATH)

    @property
    def claim_public_keys(self) -> List[str]:
        return [self.claim_private_key.pubkey.serialize().hex()]

    def add_teardown_hook(self, hook: Callable[[], None]) -> None:
        if self.closed:
            raise SessionClosedError()
        self._teardown_hooks.append(hook)

    def close(self) -> None:
        if self.closed:
            return
        self._bip32 = None
        hooks, self._teardown_hooks = self._teardown_hooks, []
        for hook in hooks:
            try:
                hook()
            except Exception as e:
                logger.error(f"Session teardown hook failed: {e}")
        logger.debug("Claim session closed")

    async def __aenter__(self) -> "ClaimSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
