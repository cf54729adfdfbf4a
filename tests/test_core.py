from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from nutclaim.core.base import (
    Amount,
    Proof,
    TokenV3,
    TokenV4,
    Unit,
    deserialize_token,
    normalize_mint_url,
    token_hash,
)
from nutclaim.core.errors import (
    CashuError,
    MintOperationError,
    OutputsAlreadySignedError,
    QuoteAlreadyIssuedError,
    TokenAlreadySpentError,
    is_already_issued_error,
)
from nutclaim.core.helpers import get_fees_for_proofs
from nutclaim.core.split import amount_split, amount_split_for_keyset
from tests.mocks import FakeNetwork

TOKEN_V4 = "cashuBo2F0gaJhaUgArSaMTR9YJmFwgqNhYQJhc3hAMDZlM2UzZjY4NDRiOGZkOGQ3NDMwODY1MjY3MjQ5YWU3NjdhMzg5MDBjODdkNGE0ZDMxOGY4MTJmNzkzN2ZiMmFjWCEDXDG_wzG35Lu4vcAtiycLSQlNqH65afih9N2SrFJn3GCjYWEIYXN4QDBmNTE5YjgwOWZlNmQ5MzZkMjVhYmU1YjhjYTZhMDRlNDc3OTJjOTI0YTkwZWRmYjU1MmM1ZjkzODJkNzFjMDJhY1ghA4CNH8dD8NNt715E37Ar65X6p6uBUoDbe8JipQp81TIgYW11aHR0cDovL2xvY2FsaG9zdDozMzM4YXVjc2F0"
TOKEN_V3_MEMO = "cashuAeyJ0b2tlbiI6W3sicHJvb2ZzIjpbeyJpZCI6IjAwYWQyNjhjNGQxZjU4MjYiLCJhbW91bnQiOjgsInNlY3JldCI6IjNlNDlhMGQzNzllMWQ1YTY3MjhiYzUwMjM4YTRjZDFlMjBiY2M5MjM4MjAxMDg0MzcyNjdhNWZkZDM2NWZiMDYiLCJDIjoiMDIyYWQwODg5ZmVkNWE0YWNjODEwYTZhZTk4MTc0YjFlZGM2OTkwMWI0OTdkNTYzYmM5NjEyMjVlYzMwOGVkMTVkIn0seyJpZCI6IjAwYWQyNjhjNGQxZjU4MjYiLCJhbW91bnQiOjIsInNlY3JldCI6ImNmNjhhNTQ3ZWY2ZDVhNGFkZTI0ZGM5MDU5ZTE5ZmJkZDU0NmQ5MGE1OWI0ODE5MzdmN2FjNmRiNWMwZjFkMTUiLCJDIjoiMDMyZWQ5ZGQ3MzExMTg1ODk1NTFiM2E5YjJhNTM5YWZlYTcxOTU3OGZhNTI1ZTVmMmJkY2M4YjNlMzhjNjJkOTRjIn1dLCJtaW50IjoiaHR0cDovL2xvY2FsaG9zdDozMzM4In1dLCJtZW1vIjoiVGVzdCBtZW1vIiwidW5pdCI6InNhdCJ9"


def test_get_output_split():
    assert amount_split(13) == [1, 4, 8]
    assert amount_split(0) == []


def test_get_output_split_for_keyset():
    assert amount_split_for_keyset(13, [1, 2, 4, 8]) == [1, 4, 8]
    assert amount_split_for_keyset(20, [1, 2, 4, 8]) == [4, 8, 8]
    with pytest.raises(Exception):
        amount_split_for_keyset(3, [2, 4])


@given(st.integers(min_value=0, max_value=2**40))
def test_split_sums_to_amount(amount):
    parts = amount_split(amount)
    assert sum(parts) == amount
    assert len(set(parts)) == len(parts)
    assert amount_split_for_keyset(amount, [2**i for i in range(64)]) == parts


def test_tokenv4_deserialize_get_attributes():
    token = TokenV4.deserialize(TOKEN_V4)
    assert token.mint == "http://localhost:3338"
    assert token.amount == 10
    assert token.unit == Unit.sat.name
    assert token.memo is None
    assert len(token.proofs) == 2


def test_tokenv4_deserialize_serialize_with_padding():
    token = TokenV4.deserialize(TOKEN_V4 + "====")
    assert token.serialize() == TOKEN_V4


def test_tokenv3_deserialize_with_memo():
    token = TokenV3.deserialize(TOKEN_V3_MEMO)
    assert token.serialize() == TOKEN_V3_MEMO
    assert token.memo == "Test memo"
    assert token.amount == 10


def test_deserialize_token_prefix():
    assert isinstance(deserialize_token("cashu:" + TOKEN_V4), TokenV4)
    assert isinstance(deserialize_token(f"  {TOKEN_V3_MEMO}\n"), TokenV3)
    with pytest.raises(ValueError):
        deserialize_token("cashuC1234")


def test_token_hash_same_ecash_different_encoding():
    v3 = TokenV3.deserialize(TOKEN_V3_MEMO)
    v4 = TokenV4.from_proofs("http://LOCALHOST:3338/", "sat", list(reversed(v3.proofs)))
    assert token_hash(v3) == token_hash(v4)


def test_token_hash_differs_by_unit_and_proofs():
    v3 = TokenV3.deserialize(TOKEN_V3_MEMO)
    usd = TokenV4.from_proofs(v3.mint, "usd", v3.proofs)
    fewer = TokenV4.from_proofs(v3.mint, "sat", v3.proofs[:1])
    assert token_hash(v3) != token_hash(usd)
    assert token_hash(v3) != token_hash(fewer)


def test_normalize_mint_url():
    assert normalize_mint_url(" https://Mint.Example.com/ ") == "https://mint.example.com"
    assert normalize_mint_url("https://mint.example.com/cashu//") == (
        "https://mint.example.com/cashu"
    )


def test_amount_convert_same_currency():
    assert Amount(Unit.sat, 1500).convert(Unit.msat).amount == 1_500_000
    assert Amount(Unit.msat, 1999).convert(Unit.sat).amount == 1
    # rate is ignored within one currency
    assert Amount(Unit.sat, 10).convert(Unit.msat, rate=7).amount == 10_000


def test_amount_convert_rounds_down():
    # 1000 sat at 60000 usd/btc = 0.6 usd = 60 cents
    assert Amount(Unit.sat, 1000).convert(Unit.usd, Decimal("60000")).amount == 60
    assert Amount(Unit.sat, 1).convert(Unit.usd, "60000").amount == 0
    assert Amount(Unit.usd, 60).convert(Unit.sat, "0.0000166666").amount == 999
    assert Amount(Unit.usd, 150).convert(Unit.eur, "0.9").amount == 135


def test_fees_for_proofs():
    network = FakeNetwork()
    ledger = network.add_mint("http://fees.test", input_fee_ppk=100)
    keyset = ledger.keyset()
    proofs = [Proof(id=keyset.id, amount=1, secret=f"{i:02x}") for i in range(11)]
    assert get_fees_for_proofs(proofs, [keyset]) == 2
    assert get_fees_for_proofs(proofs[:10], [keyset]) == 1
    assert get_fees_for_proofs([], [keyset]) == 0


def test_is_already_issued_error_by_code():
    assert is_already_issued_error(OutputsAlreadySignedError())
    assert is_already_issued_error(QuoteAlreadyIssuedError())
    assert is_already_issued_error(MintOperationError("whatever", 10002))
    assert is_already_issued_error(MintOperationError("whatever", 20002))
    assert not is_already_issued_error(TokenAlreadySpentError())


def test_is_already_issued_error_by_message():
    assert is_already_issued_error(
        MintOperationError("Outputs have already been signed before.")
    )
    assert is_already_issued_error(CashuError("Mint quote already issued."))
    assert not is_already_issued_error(MintOperationError("quote not paid", 20001))
    assert not is_already_issued_error(Exception("network unreachable"))


def test_mint_operation_error_message():
    assert str(MintOperationError("quote not paid", 20001)) == (
        "Mint Error: quote not paid (Code: 20001)"
    )
    assert str(MintOperationError("oops")) == "Mint Error: oops"
