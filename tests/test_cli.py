import re

import pytest
from click.testing import CliRunner

from nutclaim.cli import cli as cli_module
from nutclaim.cli.cli import cli
from nutclaim.core.base import TokenV4
from nutclaim.core.settings import settings
from nutclaim.wallet.wallet import WalletProvider
from tests.conftest import MINT_A, MINT_B, TEST_MNEMONIC


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch, network):
    monkeypatch.setattr(settings, "mnemonic", TEST_MNEMONIC)
    monkeypatch.setattr(settings, "claim_database", str(tmp_path / "cli"))

    def wallet_provider(session):
        return WalletProvider(
            session,
            ledger_factory=network.ledger_factory,
            subscription_factory=network.subscription_factory,
        )

    monkeypatch.setattr(cli_module, "WalletProvider", wallet_provider)
    yield


def invoke(*args: str):
    runner = CliRunner()
    return runner.invoke(cli, ["--user", "cli_user", *args])


def add_account(mint_url: str) -> str:
    result = invoke("account", "add", mint_url)
    assert result.exception is None, result.output
    return re.search(r"Account: (\S+)", result.output).group(1)


def test_account_add_and_list(mint_a):
    account_id = add_account(MINT_A)
    result = invoke("account", "add", MINT_A + "/")
    assert f"Account exists: {account_id}" in result.output

    result = invoke("account", "list")
    assert result.exit_code == 0
    assert f"{account_id}  {MINT_A}  0 sat" in result.output


def test_account_add_unknown_unit(mint_a):
    result = invoke("account", "add", MINT_A, "--unit", "doge")
    assert result.exit_code != 0
    assert "Unknown unit" in result.output


def test_receive_and_process(mint_a, network):
    account_id = add_account(MINT_A)
    result = invoke("receive", "100", "--account", account_id)
    assert result.exception is None, result.output
    invoice = re.search(r"Invoice: (\S+)", result.output).group(1)
    assert invoice in network.invoices

    result = invoke("pending")
    assert "unpaid" in result.output

    assert network.pay_invoice(invoice)
    result = invoke("process")
    assert result.exception is None, result.output
    assert "Completed: 1" in result.output

    result = invoke("account", "list")
    assert "100 sat" in result.output
    assert "Nothing pending." in invoke("pending").output


def test_claim_same_mint(mint_a):
    account_id = add_account(MINT_A)
    token = TokenV4.from_proofs(MINT_A, "sat", mint_a.issue_proofs([8, 2])).serialize()
    result = invoke("claim", token, "--account", account_id)
    assert result.exception is None, result.output
    assert "Received 10 sat" in result.output
    assert "Balance: 10 sat" in result.output


def test_claim_other_mint(mint_a, mint_b):
    account_id = add_account(MINT_A)
    token = TokenV4.from_proofs(MINT_B, "sat", mint_b.issue_proofs([64])).serialize()
    result = invoke("claim", token, "--account", account_id)
    assert result.exception is None, result.output
    assert "62 sat will arrive" in result.output

    result = invoke("process")
    assert "Completed: 1" in result.output


def test_claim_same_token_twice(mint_a):
    account_id = add_account(MINT_A)
    proofs = mint_a.issue_proofs([8])
    token = TokenV4.from_proofs(MINT_A, "sat", proofs).serialize()
    assert invoke("claim", token, "--account", account_id).exit_code == 0

    # same token again, the swap is already completed
    result = invoke("claim", token, "--account", account_id)
    assert result.exit_code == 0
    assert "Balance: 8 sat" in result.output


def test_claim_invalid_token(mint_a):
    account_id = add_account(MINT_A)
    result = invoke("claim", "cashuXnonsense", "--account", account_id)
    assert result.exit_code != 0
    assert "Invalid token" in result.output


def test_missing_mnemonic(monkeypatch):
    monkeypatch.setattr(settings, "mnemonic", None)
    result = invoke("account", "list")
    assert result.exit_code != 0
    assert "MNEMONIC" in result.output
