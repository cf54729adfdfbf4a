import json
import re
from dataclasses import dataclass, field
from typing import List, Optional, Union

from loguru import logger

from ..core.base import P2PKWitness, Proof
from ..core.crypto.secp import PrivateKey
from ..core.errors import ClaimValidationError
from ..core.p2pk import P2PKSecret, schnorr_sign
from ..core.secret import Secret, SecretKind

INVALID_SECRET_REASON = "This ecash contains invalid spending conditions."
UNKNOWN_CONDITION_REASON = "This ecash contains an unknown spending condition."
NO_PERMISSION_REASON = "You do not have permission to claim this ecash"

_HEX = re.compile(r"^[0-9a-fA-F]+$")


@dataclass
class PlainSecret:
    secret: str


@dataclass
class ClaimableResult:
    claimable: List[Proof] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.claimable)


def parse_secret(secret: str) -> Union[PlainSecret, Secret]:
    """Parses the secret of a proof.

    Anything that is JSON must be a NUT-10 secret, so a digits-only secret
    like "1234" is invalid. Everything else must be a NUT-00 hex string.

    Raises:
        ValueError: if the secret is neither
    """
    try:
        return Secret.deserialize(secret)
    except json.JSONDecodeError:
        pass
    except ValueError as e:
        raise ValueError(f"Invalid secret: {e}") from e
    if _HEX.match(secret):
        return PlainSecret(secret=secret)
    raise ValueError("Invalid secret: neither NUT-10 nor hex")


def _cannot_claim_reason(proof: Proof, public_keys: List[str]) -> Optional[str]:
    try:
        secret = parse_secret(proof.secret)
    except ValueError as e:
        logger.trace(f"Invalid secret in proof {proof.Y}: {e}")
        return INVALID_SECRET_REASON
    if isinstance(secret, PlainSecret):
        return None
    if secret.kind != SecretKind.P2PK.value:
        return UNKNOWN_CONDITION_REASON
    if secret.data.lower() not in public_keys:
        return NO_PERMISSION_REASON
    return None


def get_claimable_proofs(proofs: List[Proof], public_keys: List[str]) -> ClaimableResult:
    """Returns the proofs the owner of `public_keys` can claim.

    Proofs with plain secrets can always be claimed. P2PK locked proofs can
    be claimed if they are locked to one of the public keys. Proofs with any
    other or a malformed spending condition can't be claimed.

    If no proof can be claimed, the result holds the reason for the first
    proof that failed.
    """
    keys = [k.lower() for k in public_keys]
    claimable: List[Proof] = []
    first_reason: Optional[str] = None
    for proof in proofs:
        reason = _cannot_claim_reason(proof, keys)
        if reason is None:
            claimable.append(proof)
        elif first_reason is None:
            first_reason = reason
    if not claimable:
        return ClaimableResult(claimable=[], reason=first_reason)
    return ClaimableResult(claimable=claimable)


def assert_claimable(proofs: List[Proof], public_keys: List[str]) -> List[Proof]:
    result = get_claimable_proofs(proofs, public_keys)
    if not result.ok:
        raise ClaimValidationError(result.reason)
    return result.claimable


def sign_p2pk_inputs(proofs: List[Proof], private_key: PrivateKey) -> List[Proof]:
    """Adds a signature witness to proofs locked to `private_key`.

    Returns copies, the proofs passed in are not modified.
    """
    pubkey = private_key.pubkey.serialize().hex()
    signed: List[Proof] = []
    for proof in proofs:
        try:
            secret = parse_secret(proof.secret)
        except ValueError:
            signed.append(proof)
            continue
        if (
            isinstance(secret, Secret)
            and secret.kind == SecretKind.P2PK.value
            and P2PKSecret.from_secret(secret).data.lower() == pubkey
        ):
            signature = schnorr_sign(proof.secret.encode("utf-8"), private_key).hex()
            witness = P2PKWitness(signatures=[signature]).model_dump_json()
            signed.append(proof.model_copy(update={"witness": witness}))
        else:
            signed.append(proof)
    return signed
