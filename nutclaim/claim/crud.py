import json
from typing import Any, Dict, List, Optional

from ..core.base import (
    CashuAccount,
    Proof,
    ReceiveQuote,
    ReceiveQuoteState,
    TokenSwap,
    TokenSwapState,
    receive_quote_from_row,
    token_swap_from_row,
)
from ..core.db import Connection, Database
from ..core.errors import NotFoundError, VersionConflictError


def proofs_to_json(proofs: List[Proof]) -> str:
    return json.dumps([p.to_dict() for p in proofs])


async def versioned_update(
    conn: Connection,
    table: str,
    keys: Dict[str, Any],
    version: int,
    values: Dict[str, Any],
) -> None:
    """Updates one row if it is still at `version` and bumps its version.

    Raises:
        NotFoundError: if there is no row for `keys`
        VersionConflictError: if the row has a different version
    """
    sets = ", ".join([f"{column} = :{column}" for column in values])
    where = " AND ".join([f"{column} = :key_{column}" for column in keys])
    key_values = {f"key_{column}": value for column, value in keys.items()}
    result = await conn.execute(
        f"""
        UPDATE {table}
        SET {sets}, version = version + 1
        WHERE {where} AND version = :expected_version
        """,
        {**values, **key_values, "expected_version": version},
    )
    if result.rowcount == 1:
        return
    key = "/".join([str(v) for v in keys.values()])
    row = await conn.fetchone(f"SELECT version FROM {table} WHERE {where}", key_values)
    if row is None:
        raise NotFoundError(table, key)
    raise VersionConflictError(table, key, version)


# ------- ACCOUNTS -------


async def store_account(
    db: Database,
    account: CashuAccount,
    conn: Optional[Connection] = None,
) -> None:
    await (conn or db).execute(
        """
        INSERT INTO accounts
          (id, user_id, mint_url, unit, proofs, keyset_counters, created_at, version)
        VALUES (:id, :user_id, :mint_url, :unit, :proofs, :keyset_counters, :created_at, :version)
        """,
        {
            "id": account.id,
            "user_id": account.user_id,
            "mint_url": account.mint_url,
            "unit": account.unit,
            "proofs": proofs_to_json(account.proofs),
            "keyset_counters": json.dumps(account.keyset_counters),
            "created_at": db.timestamp_now,
            "version": account.version,
        },
    )


async def get_account(
    db: Database,
    id: str,
    conn: Optional[Connection] = None,
) -> Optional[CashuAccount]:
    row = await (conn or db).fetchone(
        """
        SELECT * from accounts
        WHERE id = :id
        """,
        {"id": id},
    )
    return CashuAccount.from_row(row) if row else None


async def get_account_by_mint(
    db: Database,
    user_id: str,
    mint_url: str,
    unit: str,
    conn: Optional[Connection] = None,
) -> Optional[CashuAccount]:
    row = await (conn or db).fetchone(
        """
        SELECT * from accounts
        WHERE user_id = :user_id AND lower(mint_url) = :mint_url AND unit = :unit
        """,
        {"user_id": user_id, "mint_url": mint_url, "unit": unit},
    )
    return CashuAccount.from_row(row) if row else None


async def get_accounts(
    db: Database,
    user_id: str,
    conn: Optional[Connection] = None,
) -> List[CashuAccount]:
    rows = await (conn or db).fetchall(
        """
        SELECT * from accounts
        WHERE user_id = :user_id
        ORDER BY created_at
        """,
        {"user_id": user_id},
    )
    return [CashuAccount.from_row(r) for r in rows]


async def update_account(
    db: Database,
    account: CashuAccount,
    version: int,
    conn: Optional[Connection] = None,
) -> None:
    """Writes the proofs and counters of `account` if the stored row is at `version`."""
    async with db.get_connection(conn) as conn:
        await versioned_update(
            conn,
            "accounts",
            {"id": account.id},
            version,
            {
                "proofs": proofs_to_json(account.proofs),
                "keyset_counters": json.dumps(account.keyset_counters),
            },
        )


# ------- RECEIVE QUOTES -------


def _receive_quote_values(quote: ReceiveQuote) -> Dict[str, Any]:
    values = quote.base_fields()
    values["type"] = quote.type.value
    values["state"] = quote.state.value
    values["keyset_id"] = getattr(quote, "keyset_id", None)
    values["keyset_counter"] = getattr(quote, "keyset_counter", None)
    output_amounts = getattr(quote, "output_amounts", None)
    values["output_amounts"] = (
        json.dumps(output_amounts) if output_amounts is not None else None
    )
    values["failure_reason"] = getattr(quote, "failure_reason", None)
    return values


async def store_receive_quote(
    db: Database,
    quote: ReceiveQuote,
    conn: Optional[Connection] = None,
) -> None:
    await (conn or db).execute(
        """
        INSERT INTO receive_quotes
          (id, user_id, account_id, quote_id, amount, unit, description,
          payment_request, locking_derivation_path, expires_at, created_at, type,
          state, keyset_id, keyset_counter, output_amounts, failure_reason, version)
        VALUES (:id, :user_id, :account_id, :quote_id, :amount, :unit, :description,
          :payment_request, :locking_derivation_path, :expires_at, :created_at, :type,
          :state, :keyset_id, :keyset_counter, :output_amounts, :failure_reason, :version)
        """,
        _receive_quote_values(quote),
    )


async def get_receive_quote(
    db: Database,
    id: str,
    conn: Optional[Connection] = None,
) -> Optional[ReceiveQuote]:
    row = await (conn or db).fetchone(
        """
        SELECT * from receive_quotes
        WHERE id = :id
        """,
        {"id": id},
    )
    return receive_quote_from_row(row) if row else None


async def get_receive_quotes(
    db: Database,
    user_id: str,
    states: Optional[List[ReceiveQuoteState]] = None,
    conn: Optional[Connection] = None,
) -> List[ReceiveQuote]:
    clauses = ["user_id = :user_id"]
    values: Dict[str, Any] = {"user_id": user_id}
    if states:
        names = [f":state_{i}" for i in range(len(states))]
        clauses.append(f"state IN ({', '.join(names)})")
        values.update({f"state_{i}": s.value for i, s in enumerate(states)})
    rows = await (conn or db).fetchall(
        f"""
        SELECT * from receive_quotes
        WHERE {' AND '.join(clauses)}
        ORDER BY created_at
        """,
        values,
    )
    return [receive_quote_from_row(r) for r in rows]


async def update_receive_quote(
    db: Database,
    quote: ReceiveQuote,
    version: int,
    conn: Optional[Connection] = None,
) -> None:
    """Writes the state fields of `quote` if the stored row is at `version`."""
    values = _receive_quote_values(quote)
    async with db.get_connection(conn) as conn:
        await versioned_update(
            conn,
            "receive_quotes",
            {"id": quote.id},
            version,
            {
                k: values[k]
                for k in (
                    "state",
                    "keyset_id",
                    "keyset_counter",
                    "output_amounts",
                    "failure_reason",
                )
            },
        )


# ------- TOKEN SWAPS -------


def _token_swap_values(swap: TokenSwap) -> Dict[str, Any]:
    values = swap.base_fields()
    values["token_proofs"] = proofs_to_json(swap.token_proofs)
    values["output_amounts"] = json.dumps(swap.output_amounts)
    values["state"] = swap.state.value
    values["failure_reason"] = getattr(swap, "failure_reason", None)
    return values


async def store_token_swap(
    db: Database,
    swap: TokenSwap,
    conn: Optional[Connection] = None,
) -> None:
    await (conn or db).execute(
        """
        INSERT INTO token_swaps
          (token_hash, user_id, account_id, token_proofs, input_amount, fee_amount,
          amount, keyset_id, keyset_counter, output_amounts, state, failure_reason,
          created_at, version)
        VALUES (:token_hash, :user_id, :account_id, :token_proofs, :input_amount, :fee_amount,
          :amount, :keyset_id, :keyset_counter, :output_amounts, :state, :failure_reason,
          :created_at, :version)
        """,
        _token_swap_values(swap),
    )


async def get_token_swap(
    db: Database,
    token_hash: str,
    user_id: str,
    conn: Optional[Connection] = None,
) -> Optional[TokenSwap]:
    row = await (conn or db).fetchone(
        """
        SELECT * from token_swaps
        WHERE token_hash = :token_hash AND user_id = :user_id
        """,
        {"token_hash": token_hash, "user_id": user_id},
    )
    return token_swap_from_row(row) if row else None


async def get_token_swaps(
    db: Database,
    user_id: str,
    state: Optional[TokenSwapState] = None,
    conn: Optional[Connection] = None,
) -> List[TokenSwap]:
    clauses = ["user_id = :user_id"]
    values: Dict[str, Any] = {"user_id": user_id}
    if state:
        clauses.append("state = :state")
        values["state"] = state.value
    rows = await (conn or db).fetchall(
        f"""
        SELECT * from token_swaps
        WHERE {' AND '.join(clauses)}
        ORDER BY created_at
        """,
        values,
    )
    return [token_swap_from_row(r) for r in rows]


async def update_token_swap(
    db: Database,
    swap: TokenSwap,
    version: int,
    conn: Optional[Connection] = None,
) -> None:
    async with db.get_connection(conn) as conn:
        await versioned_update(
            conn,
            "token_swaps",
            {"token_hash": swap.token_hash, "user_id": swap.user_id},
            version,
            {
                "state": swap.state.value,
                "failure_reason": getattr(swap, "failure_reason", None),
            },
        )
