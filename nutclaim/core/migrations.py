import re

from loguru import logger

from ..core.db import Connection, Database


async def migrate_databases(db: Database, migrations_module):
    """Creates the necessary databases if they don't exist already; or migrates them."""

    async def set_migration_version(conn: Connection, db_name: str, version: int):
        await conn.execute(
            """
            INSERT INTO dbversions (db, version) VALUES (:db, :version)
            ON CONFLICT (db) DO UPDATE SET version = :version
            """,
            {"db": db_name, "version": version},
        )

    async def run_migration(db: Database, migrations_module):
        db_name = migrations_module.__name__.split(".")[-2]
        for key, migrate in migrations_module.__dict__.items():
            match = matcher.match(key)
            if match:
                version = int(match.group(1))
                if version > current_versions.get(db_name, 0):
                    logger.debug(f"Migrating {db_name} db: {key}")
                    async with db.connect() as conn:
                        await migrate(conn)
                        await set_migration_version(conn, db_name, version)

    async with db.connect() as conn:
        exists = await conn.fetchone(
            "SELECT * FROM sqlite_master WHERE type='table' AND name='dbversions'"
        )
        if not exists:
            await migrations_module.m000_create_migrations_table(conn)

        rows = await conn.fetchall("SELECT * FROM dbversions")
        current_versions = {row["db"]: row["version"] for row in rows}
        matcher = re.compile(r"^m(\d\d\d)_")
    await run_migration(db, migrations_module)
