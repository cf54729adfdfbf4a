import asyncio
import time
from typing import Callable, List, Union

from nutclaim.core.base import Proof
from nutclaim.core.errors import CashuError
from nutclaim.core.p2pk import P2PKSecret
from nutclaim.core.secret import SecretKind, Tags


async def assert_err(f, msg: Union[str, CashuError]):
    """Compute f() and expect an error message 'msg'."""
    try:
        await f
    except Exception as exc:
        error_message: str = str(exc.args[0])
        if isinstance(msg, CashuError):
            if msg.detail not in error_message:
                raise Exception(
                    f"CashuError. Expected error: {msg.detail}, got: {error_message}"
                )
            return
        if msg not in error_message:
            raise Exception(f"Expected error: {msg}, got: {error_message}")
        return
    raise Exception(f"Expected error: {msg}, got no error")


def assert_amt(proofs: List[Proof], expected: int):
    """Assert amounts the proofs contain."""
    assert sum([p.amount for p in proofs]) == expected


def p2pk_secret(pubkey: str) -> str:
    return P2PKSecret(
        kind=SecretKind.P2PK.value, data=pubkey, tags=Tags(), nonce="00"
    ).serialize()


async def wait_for(condition: Callable[[], bool], timeout: float = 2.0):
    """Waits until `condition()` is true, polling the event loop."""
    start = time.time()
    while not condition():
        if time.time() - start > timeout:
            raise Exception("condition not met in time")
        await asyncio.sleep(0.01)
