import math
from typing import List

from ..core.base import BlindedSignature, Proof, WalletKeyset


def sum_proofs(proofs: List[Proof]):
    return sum([p.amount for p in proofs])


def sum_promises(promises: List[BlindedSignature]):
    return sum([p.amount for p in promises])


def get_fees_for_proofs(proofs: List[Proof], keysets: List[WalletKeyset]) -> int:
    """Input fee of a swap, NUT-02: ceil(sum of input_fee_ppk / 1000)."""
    fees_ppk = {k.id: k.input_fee_ppk for k in keysets}
    return math.ceil(sum([fees_ppk.get(p.id, 0) for p in proofs]) / 1000)
