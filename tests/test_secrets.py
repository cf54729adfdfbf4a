import pytest

from nutclaim.core.crypto import b_dhke
from nutclaim.core.crypto.secp import PublicKey
from nutclaim.wallet.secrets import (
    construct_proofs,
    derive_outputs,
    restore,
    restore_outputs,
)
from tests.helpers import assert_amt


def test_derive_outputs_deterministic(session, mint_a):
    keyset = mint_a.keyset()
    outputs1 = derive_outputs(session.bip32, keyset, 5, 13)
    outputs2 = derive_outputs(session.bip32, keyset, 5, 13)
    assert [o.amount for o in outputs1] == [1, 4, 8]
    assert [o.blinded_message.B_ for o in outputs1] == [
        o.blinded_message.B_ for o in outputs2
    ]
    assert [o.secret for o in outputs1] == [o.secret for o in outputs2]
    # output i uses counter + i
    shifted = derive_outputs(session.bip32, keyset, 6, 12)
    assert shifted[0].secret == outputs1[1].secret
    assert outputs1[0].derivation_path.endswith("/5'")


def test_derive_outputs_with_amounts(session, mint_a):
    keyset = mint_a.keyset()
    outputs = derive_outputs(session.bip32, keyset, 0, 3, [1, 1, 1])
    assert [o.amount for o in outputs] == [1, 1, 1]
    assert len({o.secret for o in outputs}) == 3
    with pytest.raises(ValueError):
        derive_outputs(session.bip32, keyset, 0, 4, [1, 1])


@pytest.mark.asyncio
async def test_construct_proofs(session, mint_a):
    keyset = mint_a.keyset()
    outputs = derive_outputs(session.bip32, keyset, 0, 6)
    signatures = mint_a._sign([o.blinded_message for o in outputs])
    proofs = construct_proofs(signatures, outputs, keyset)
    assert_amt(proofs, 6)
    for proof in proofs:
        a = mint_a.private_keys[keyset.id][proof.amount]
        assert b_dhke.verify(a, PublicKey(bytes.fromhex(proof.C), raw=True), proof.secret)
    with pytest.raises(ValueError):
        construct_proofs(signatures[:1], outputs, keyset)


@pytest.mark.asyncio
async def test_restore_outputs_only_returns_signed(session, mint_a):
    keyset = mint_a.keyset()
    outputs = derive_outputs(session.bip32, keyset, 0, 7)
    mint_a._sign([o.blinded_message for o in outputs[:2]])
    proofs = await restore_outputs(mint_a, keyset, outputs)
    assert len(proofs) == 2
    assert [p.secret for p in proofs] == [o.secret for o in outputs[:2]]


@pytest.mark.asyncio
async def test_restore_by_counter(session, mint_a):
    keyset = mint_a.keyset()
    outputs = derive_outputs(session.bip32, keyset, 10, 13)
    mint_a._sign([o.blinded_message for o in outputs])
    proofs = await restore(mint_a, session.bip32, keyset, 10, 3)
    # the mint returns the real amounts
    assert_amt(proofs, 13)
    assert [p.secret for p in proofs] == [o.secret for o in outputs]
    assert await restore(mint_a, session.bip32, keyset, 20, 3) == []
