"""
Blind Diffie-Hellman key exchange as used by Cashu mints (NUT-00).

Mint with private key a and public key A = a*G for one amount.

Wallet:
Y = hash_to_curve(secret)
r = blinding factor, derived deterministically from the seed (NUT-13)
B_ = Y + r*G                  -> sent to the mint

Mint:
C_ = a*B_                     -> returned to the wallet

Wallet:
C = C_ - r*A  (= a*Y)         -> stored as the proof signature

Mint, when the proof is spent:
C == a*hash_to_curve(secret)
"""

import hashlib
from typing import Optional, Tuple

from .secp import PrivateKey, PublicKey

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"


def hash_to_curve(message: bytes) -> PublicKey:
    """Generates a secp256k1 point from a message.

    The point is PublicKey(0x02 || sha256(msg_hash || counter)) for the first
    counter that gives a valid point, where msg_hash is the hash of the
    domain separator and the message.
    """
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    counter = 0
    while counter < 2**16:
        _hash = hashlib.sha256(msg_to_hash + counter.to_bytes(4, "little")).digest()
        try:
            # will error if point does not lie on curve
            return PublicKey(b"\x02" + _hash, raw=True)
        except Exception:
            counter += 1
    # it is assumed that this loop will never reach 2**16
    raise ValueError("No valid point found")


def step1_alice(
    secret_msg: str, blinding_factor: Optional[PrivateKey] = None
) -> Tuple[PublicKey, PrivateKey]:
    Y: PublicKey = hash_to_curve(secret_msg.encode("utf-8"))
    r = blinding_factor or PrivateKey()
    B_: PublicKey = Y + r.pubkey
    return B_, r


def step2_bob(B_: PublicKey, a: PrivateKey) -> PublicKey:
    C_: PublicKey = B_.mult(a)
    return C_


def step3_alice(C_: PublicKey, r: PrivateKey, A: PublicKey) -> PublicKey:
    C: PublicKey = C_ - A.mult(r)
    return C


def verify(a: PrivateKey, C: PublicKey, secret_msg: str) -> bool:
    Y: PublicKey = hash_to_curve(secret_msg.encode("utf-8"))
    return C == Y.mult(a)
