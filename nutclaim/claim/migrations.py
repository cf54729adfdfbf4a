from ..core.db import Connection


async def m000_create_migrations_table(conn: Connection):
    await conn.execute("""
    CREATE TABLE IF NOT EXISTS dbversions (
        db TEXT PRIMARY KEY,
        version INT NOT NULL
    )
    """)


async def m001_initial(conn: Connection):
    await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                mint_url TEXT NOT NULL,
                unit TEXT NOT NULL,
                proofs TEXT NOT NULL DEFAULT '[]',
                keyset_counters TEXT NOT NULL DEFAULT '{{}}',
                created_at {conn.big_int} NOT NULL,
                version INT NOT NULL DEFAULT 0,

                UNIQUE (user_id, mint_url, unit)
            );
        """)

    await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS receive_quotes (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                quote_id TEXT NOT NULL,
                amount {conn.big_int} NOT NULL,
                unit TEXT NOT NULL,
                description TEXT,
                payment_request TEXT NOT NULL,
                locking_derivation_path TEXT NOT NULL,
                expires_at {conn.big_int} NOT NULL,
                created_at {conn.big_int} NOT NULL,
                type TEXT NOT NULL,
                state TEXT NOT NULL,
                keyset_id TEXT,
                keyset_counter INT,
                output_amounts TEXT,
                failure_reason TEXT,
                version INT NOT NULL DEFAULT 0,

                UNIQUE (account_id, quote_id)
            );
        """)

    await conn.execute("""
            CREATE INDEX IF NOT EXISTS receive_quotes_user_state
            ON receive_quotes (user_id, state);
        """)


async def m002_token_swaps(conn: Connection):
    """
    Claims of inbound tokens, keyed by the token hash per user.
    """
    await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS token_swaps (
                token_hash TEXT NOT NULL,
                user_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                token_proofs TEXT NOT NULL,
                input_amount {conn.big_int} NOT NULL,
                fee_amount {conn.big_int} NOT NULL,
                amount {conn.big_int} NOT NULL,
                keyset_id TEXT NOT NULL,
                keyset_counter INT NOT NULL,
                output_amounts TEXT NOT NULL,
                state TEXT NOT NULL,
                failure_reason TEXT,
                created_at {conn.big_int} NOT NULL,
                version INT NOT NULL DEFAULT 0,

                PRIMARY KEY (token_hash, user_id)
            );
        """)
