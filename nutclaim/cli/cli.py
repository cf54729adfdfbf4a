#!/usr/bin/env python

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import AsyncIterator, Optional

import click
from click import Context

from ..claim import migrations
from ..claim.orchestrator import QuoteOrchestrator
from ..claim.receive_quote import ReceiveQuoteService
from ..claim.session import ClaimSession
from ..claim.store import SqliteClaimStore
from ..claim.token_swap import TokenSwapService
from ..core.base import Unit, deserialize_token, normalize_mint_url
from ..core.db import Database
from ..core.errors import CashuError
from ..core.logging import configure_logger
from ..core.migrations import migrate_databases
from ..core.settings import settings
from ..wallet.wallet import WalletProvider


class NaturalOrderGroup(click.Group):
    """For listing commands in help in order of definition"""

    def list_commands(self, ctx):
        return self.commands.keys()


# https://github.com/pallets/click/issues/85#issuecomment-503464628
def coro(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))

    return wrapper


class Claimer:
    """Everything a command needs, built from the settings."""

    def __init__(self, session: ClaimSession, db: Database):
        self.session = session
        self.db = db
        self.store = SqliteClaimStore(db)
        self.wallets = WalletProvider(session)
        self.receive_quotes = ReceiveQuoteService(session, self.store, self.wallets)
        self.token_swaps = TokenSwapService(session, self.store, self.wallets)
        self.orchestrator = QuoteOrchestrator(
            session, self.store, self.wallets, self.receive_quotes, self.token_swaps
        )


@asynccontextmanager
async def open_claimer() -> AsyncIterator[Claimer]:
    if not settings.mnemonic:
        raise click.ClickException("Set MNEMONIC in your environment or .env file.")
    db = Database("claim", settings.claim_database)
    await migrate_databases(db, migrations)
    async with ClaimSession.from_mnemonic(settings.mnemonic) as session:
        claimer = Claimer(session, db)
        try:
            yield claimer
        finally:
            await claimer.wallets.close()
            await db.close()


@click.group(cls=NaturalOrderGroup)
@click.option(
    "--user",
    "-U",
    "user_id",
    default="default",
    help="User the accounts belong to (default: default).",
)
@click.pass_context
def cli(ctx: Context, user_id: str):
    configure_logger()
    ctx.ensure_object(dict)
    ctx.obj["USER"] = user_id


@cli.group("account", help="Manage mint accounts.")
def account():
    pass


@account.command("add", help="Add an account for a mint and unit.")
@click.argument("mint_url", type=str)
@click.option("--unit", "-u", default="sat", help="Unit of the account.", type=str)
@click.pass_context
@coro
async def account_add(ctx: Context, mint_url: str, unit: str):
    if unit not in Unit.__members__:
        raise click.BadParameter(f"Unknown unit {unit}", param_hint="--unit")
    async with open_claimer() as claimer:
        existing = await claimer.store.get_account_by_mint(
            ctx.obj["USER"], mint_url, unit
        )
        if existing:
            print(f"Account exists: {existing.id}")
            return
        # load the mint once so that a wrong url fails here
        await claimer.wallets.get(mint_url, unit)
        acc = await claimer.store.create_account(ctx.obj["USER"], mint_url, unit)
        print(f"Account: {acc.id} ({acc.mint_url}, {acc.unit})")


@account.command("list", help="List accounts and balances.")
@click.pass_context
@coro
async def account_list(ctx: Context):
    async with open_claimer() as claimer:
        for acc in await claimer.store.get_accounts(ctx.obj["USER"]):
            print(f"{acc.id}  {acc.mint_url}  {Unit[acc.unit].str(acc.balance)}")


@cli.command("receive", help="Create an invoice to receive ecash.")
@click.argument("amount", type=int)
@click.option("--account", "-a", "account_id", required=True, help="Account id.")
@click.option("--memo", "-m", default=None, help="Invoice description.", type=str)
@coro
async def receive(amount: int, account_id: str, memo: Optional[str]):
    async with open_claimer() as claimer:
        acc = await claimer.store.get_account(account_id)
        quote = await claimer.receive_quotes.create(
            acc.user_id, acc, amount, description=memo
        )
        print(f"Pay invoice to receive {Unit[acc.unit].str(amount)}:\n")
        print(f"Invoice: {quote.payment_request}\n")
        print(f"Quote: {quote.id}")


@cli.command("claim", help="Claim an ecash token into an account.")
@click.argument("token", type=str)
@click.option("--account", "-a", "account_id", required=True, help="Account id.")
@click.option(
    "--rate",
    default="1",
    help="Exchange rate from the token currency to the account currency.",
    type=str,
)
@coro
async def claim(token: str, account_id: str, rate: str):
    try:
        token_obj = deserialize_token(token.strip())
    except ValueError as e:
        raise click.ClickException(f"Invalid token: {e}")
    async with open_claimer() as claimer:
        acc = await claimer.store.get_account(account_id)
        try:
            if (
                normalize_mint_url(token_obj.mint) == normalize_mint_url(acc.mint_url)
                and token_obj.unit == acc.unit
            ):
                swap = await claimer.token_swaps.prepare(acc.user_id, token_obj, acc)
                swap, acc = await claimer.token_swaps.finalize(acc, swap)
                print(f"Received {Unit[acc.unit].str(swap.amount)}")
            else:
                quote = await claimer.receive_quotes.create_from_token(
                    acc.user_id, token_obj, acc, exchange_rate=rate
                )
                print(
                    f"Melted token, {Unit[acc.unit].str(quote.amount)} will arrive with quote {quote.id}"
                )
        except CashuError as e:
            raise click.ClickException(e.detail)
        print(f"Balance: {Unit[acc.unit].str(acc.balance)}")


@cli.command("pending", help="Show pending quotes and token swaps.")
@click.pass_context
@coro
async def pending(ctx: Context):
    async with open_claimer() as claimer:
        user_id = ctx.obj["USER"]
        quotes = await claimer.store.get_pending_quotes(user_id)
        swaps = await claimer.store.get_pending_token_swaps(user_id)
        if not quotes and not swaps:
            print("Nothing pending.")
            return
        for q in quotes:
            print(
                f"Quote {q.id}  {q.state}  {Unit[q.unit].str(q.amount)}  {'expired' if q.expired else ''}"
            )
        for s in swaps:
            print(f"Swap {s.token_hash[:16]}  {s.state}  {s.amount}")


@cli.command("process", help="Check all pending quotes and swaps once.")
@click.pass_context
@coro
async def process(ctx: Context):
    async with open_claimer() as claimer:
        summary = await claimer.orchestrator.process_all_pending(ctx.obj["USER"])
        print(
            f"Completed: {len(summary.completed)}  Expired: {len(summary.expired)}  Swaps: {len(summary.swaps)}"
        )
        for item_id, error in summary.errors.items():
            print(f"Error {item_id}: {error}")


@cli.command("watch", help="Process pending quotes as their state changes.")
@click.pass_context
@coro
async def watch(ctx: Context):
    async with open_claimer() as claimer:
        print("Watching pending quotes. Press Ctrl-C to stop.")
        try:
            await claimer.orchestrator.run(ctx.obj["USER"])
        except asyncio.CancelledError:
            pass
