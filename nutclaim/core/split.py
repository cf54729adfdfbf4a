from typing import Iterable, List


def amount_split(amount: int) -> List[int]:
    """Given an amount returns a list of amounts returned e.g. 13 is [1, 4, 8]."""
    if amount < 0:
        raise Exception("can't split negative amount")
    rv = []
    for i in range(amount.bit_length()):
        if amount & (1 << i):  # if bit i is set, add 2**i to list
            rv.append(1 << i)
    return rv


def amount_split_for_keyset(amount: int, denominations: Iterable[int]) -> List[int]:
    """Splits an amount into the denominations a keyset can sign.

    For keysets with all powers of two this is the same as `amount_split`.
    Amounts above the largest denomination repeat the largest one.
    """
    if amount < 0:
        raise Exception("can't split negative amount")
    available = sorted(set(denominations), reverse=True)
    if not available:
        raise Exception("keyset has no denominations")
    rv: List[int] = []
    remaining = amount
    for denomination in available:
        while remaining >= denomination:
            rv.append(denomination)
            remaining -= denomination
    if remaining:
        raise Exception(f"can't split {amount} into {available}")
    return sorted(rv)
