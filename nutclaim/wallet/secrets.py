from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from bip32 import BIP32
from loguru import logger

from ..core.base import BlindedMessage, BlindedSignature, Proof, WalletKeyset
from ..core.crypto import b_dhke
from ..core.crypto.secp import PrivateKey, PublicKey
from ..core.split import amount_split_for_keyset

# NUT-13: m/129372'/0'/{keyset_id_int}'/{counter}'
NUT13_BASE_PATH = "m/129372'/0'"


class SupportsRestore(Protocol):
    async def restore_promises(
        self, outputs: List[BlindedMessage]
    ) -> Tuple[List[BlindedMessage], List[BlindedSignature]]: ...


@dataclass
class OutputData:
    """A blinded output together with what is needed to unblind its signature."""

    blinded_message: BlindedMessage
    blinding_factor: PrivateKey
    secret: str
    derivation_path: str

    @property
    def amount(self) -> int:
        return self.blinded_message.amount


def keyset_id_to_int(keyset_id: str) -> int:
    return int.from_bytes(bytes.fromhex(keyset_id), "big") % (2**31 - 1)


def derivation_path(keyset_id: str, counter: int) -> str:
    return f"{NUT13_BASE_PATH}/{keyset_id_to_int(keyset_id)}'/{counter}'"


def derive_secret(
    bip32: BIP32, keyset_id: str, counter: int
) -> Tuple[str, PrivateKey, str]:
    """Deterministically generates the secret and blinding factor for one counter.

    Returns:
        Tuple[str, PrivateKey, str]: Secret (hex), blinding factor and derivation path
    """
    path = derivation_path(keyset_id, counter)
    secret = bip32.get_privkey_from_path(path + "/0")
    r = bip32.get_privkey_from_path(path + "/1")
    logger.trace(f"Derived secret for counter {counter}: {path}")
    return secret.hex(), PrivateKey(r, raw=True), path


def derive_outputs(
    bip32: BIP32,
    keyset: WalletKeyset,
    counter: int,
    amount: int,
    output_amounts: Optional[List[int]] = None,
) -> List[OutputData]:
    """Derives the blinded outputs for an amount.

    Output i uses counter + i, so a call with the same seed, keyset, counter
    and amount always returns the same outputs. The caller must reserve
    counters `counter .. counter + len(outputs) - 1` before sending them to a
    mint.

    Args:
        bip32 (BIP32): Wallet seed
        keyset (WalletKeyset): Keyset the outputs are for
        counter (int): First counter to use
        amount (int): Total amount of the outputs
        output_amounts (Optional[List[int]]): Amounts of the outputs. Defaults
            to the split of `amount` into the keyset's denominations.
    """
    if output_amounts is None:
        output_amounts = amount_split_for_keyset(amount, keyset.amounts)
    if sum(output_amounts) != amount:
        raise ValueError(
            f"output amounts {output_amounts} do not sum up to {amount}"
        )
    outputs: List[OutputData] = []
    for i, output_amount in enumerate(output_amounts):
        secret, r, path = derive_secret(bip32, keyset.id, counter + i)
        B_, r = b_dhke.step1_alice(secret, r)
        outputs.append(
            OutputData(
                blinded_message=BlindedMessage(
                    amount=output_amount, id=keyset.id, B_=B_.serialize().hex()
                ),
                blinding_factor=r,
                secret=secret,
                derivation_path=path,
            )
        )
    return outputs


def construct_proofs(
    signatures: List[BlindedSignature],
    outputs: List[OutputData],
    keyset: WalletKeyset,
) -> List[Proof]:
    """Unblinds the signatures of a mint into proofs."""
    if len(signatures) != len(outputs):
        raise ValueError(
            f"got {len(signatures)} signatures for {len(outputs)} outputs"
        )
    proofs: List[Proof] = []
    for signature, output in zip(signatures, outputs):
        if signature.id != keyset.id:
            raise ValueError(
                f"signature is from keyset {signature.id}, expected {keyset.id}"
            )
        C_ = PublicKey(bytes.fromhex(signature.C_), raw=True)
        C = b_dhke.step3_alice(C_, output.blinding_factor, keyset.public_keys[signature.amount])
        proofs.append(
            Proof(
                id=signature.id,
                amount=signature.amount,
                secret=output.secret,
                C=C.serialize().hex(),
                derivation_path=output.derivation_path,
            )
        )
    return proofs


async def restore_outputs(
    ledger: SupportsRestore, keyset: WalletKeyset, outputs: List[OutputData]
) -> List[Proof]:
    """Asks the mint for the signatures it already issued on `outputs`.

    The mint answers with the outputs it knows about, they are matched to
    ours by B_. Outputs the mint has never signed are left out.
    """
    restored_outputs, restored_signatures = await ledger.restore_promises(
        [o.blinded_message for o in outputs]
    )
    outputs_by_B_ = {o.blinded_message.B_: o for o in outputs}
    matched_outputs: List[OutputData] = []
    matched_signatures: List[BlindedSignature] = []
    for restored_output, signature in zip(restored_outputs, restored_signatures):
        output = outputs_by_B_.get(restored_output.B_)
        if output is None:
            logger.warning(f"Mint restored unknown output {restored_output.B_}")
            continue
        matched_outputs.append(output)
        matched_signatures.append(signature)
    logger.debug(
        f"Restored {len(matched_signatures)} of {len(outputs)} outputs for keyset {keyset.id}"
    )
    return construct_proofs(matched_signatures, matched_outputs, keyset)


async def restore(
    ledger: SupportsRestore,
    bip32: BIP32,
    keyset: WalletKeyset,
    counter: int,
    count: int,
) -> List[Proof]:
    """Restores the proofs of the counters `counter .. counter + count - 1`."""
    # the amounts are not part of B_, the mint tells us the real ones
    outputs = derive_outputs(bip32, keyset, counter, count, [1] * count)
    return await restore_outputs(ledger, keyset, outputs)
