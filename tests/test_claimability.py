import json

import pytest

from nutclaim.core.base import P2PKWitness, Proof
from nutclaim.core.crypto.secp import PrivateKey
from nutclaim.core.errors import ClaimValidationError
from nutclaim.core.p2pk import verify_schnorr_signature
from nutclaim.core.secret import Secret, SecretKind
from nutclaim.wallet.claimability import (
    INVALID_SECRET_REASON,
    NO_PERMISSION_REASON,
    UNKNOWN_CONDITION_REASON,
    PlainSecret,
    assert_claimable,
    get_claimable_proofs,
    parse_secret,
    sign_p2pk_inputs,
)
from tests.helpers import p2pk_secret

KEYSET = "009a1f293253e41e"


def proof(secret: str, amount: int = 1) -> Proof:
    return Proof(id=KEYSET, amount=amount, secret=secret, C="")


@pytest.fixture
def key():
    return PrivateKey()


@pytest.fixture
def pubkey(key):
    return key.pubkey.serialize().hex()


def test_parse_secret():
    assert isinstance(parse_secret("ab" * 32), PlainSecret)
    secret = parse_secret(p2pk_secret("02" + "11" * 32))
    assert isinstance(secret, Secret)
    assert secret.kind == SecretKind.P2PK.value
    with pytest.raises(ValueError):
        parse_secret("not a secret")
    with pytest.raises(ValueError):
        parse_secret(json.dumps(["P2PK", {"data": "02"}]))


def test_plain_secrets_are_claimable(pubkey):
    proofs = [proof("ab" * 32), proof("cd" * 32, 2)]
    result = get_claimable_proofs(proofs, [pubkey])
    assert result.ok
    assert result.claimable == proofs
    assert result.reason is None


def test_p2pk_locked_to_us(pubkey):
    proofs = [proof(p2pk_secret(pubkey))]
    assert get_claimable_proofs(proofs, [pubkey]).claimable == proofs
    # keys compare case insensitively
    assert get_claimable_proofs(proofs, [pubkey.upper()]).ok


def test_p2pk_locked_to_someone_else(pubkey):
    other = PrivateKey().pubkey.serialize().hex()
    result = get_claimable_proofs([proof(p2pk_secret(other))], [pubkey])
    assert not result.ok
    assert result.reason == NO_PERMISSION_REASON


def test_unknown_condition(pubkey):
    htlc = Secret(kind=SecretKind.HTLC.value, data="00" * 32, nonce="00").serialize()
    result = get_claimable_proofs([proof(htlc)], [pubkey])
    assert result.reason == UNKNOWN_CONDITION_REASON


def test_invalid_secret(pubkey):
    result = get_claimable_proofs([proof("hello world")], [pubkey])
    assert result.reason == INVALID_SECRET_REASON


def test_secret_that_is_json_but_not_nut10(pubkey):
    # digits are valid JSON, so they are not taken for a hex secret
    with pytest.raises(ValueError):
        parse_secret("1234")
    result = get_claimable_proofs([proof("1234")], [pubkey])
    assert result.reason == INVALID_SECRET_REASON
    assert isinstance(parse_secret("1234abcd" * 8), PlainSecret)


def test_partially_claimable(pubkey):
    other = PrivateKey().pubkey.serialize().hex()
    good = proof("ab" * 32, 4)
    bad = proof(p2pk_secret(other), 8)
    result = get_claimable_proofs([bad, good], [pubkey])
    assert result.ok
    assert result.claimable == [good]
    assert result.reason is None


def test_reason_of_first_failing_proof(pubkey):
    other = PrivateKey().pubkey.serialize().hex()
    result = get_claimable_proofs(
        [proof("hello world"), proof(p2pk_secret(other))], [pubkey]
    )
    assert result.reason == INVALID_SECRET_REASON


def test_assert_claimable_raises(pubkey):
    other = PrivateKey().pubkey.serialize().hex()
    with pytest.raises(ClaimValidationError) as exc:
        assert_claimable([proof(p2pk_secret(other))], [pubkey])
    assert exc.value.detail == NO_PERMISSION_REASON
    assert assert_claimable([proof("ab" * 32)], [pubkey])


def test_sign_p2pk_inputs(key, pubkey):
    locked = proof(p2pk_secret(pubkey))
    plain = proof("ab" * 32)
    signed = sign_p2pk_inputs([locked, plain], key)
    assert locked.witness is None
    assert signed[1] is plain
    witness = P2PKWitness.model_validate_json(signed[0].witness)
    assert verify_schnorr_signature(
        locked.secret.encode("utf-8"),
        key.pubkey,
        bytes.fromhex(witness.signatures[0]),
    )
