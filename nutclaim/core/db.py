import asyncio
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlalchemy.sql.expression import TextClause

from ..core.settings import settings

SQLITE = "SQLITE"


class Compat:
    type: Optional[str] = "<inherited>"

    @property
    def big_int(self) -> str:
        return "INT"

    @property
    def timestamp_now(self) -> int:
        return int(time.time())


# https://docs.sqlalchemy.org/en/20/core/connections.html#sqlalchemy.engine.CursorResult
class Connection(Compat):
    def __init__(self, conn: AsyncSession, txn, typ, name):
        self.conn = conn
        self.txn = txn
        self.type = typ
        self.name = name

    def rewrite_query(self, query) -> TextClause:
        return text(query)

    async def fetchall(self, query: str, values: Optional[dict] = None):
        result = await self.conn.execute(self.rewrite_query(query), values or {})
        return [
            r._mapping for r in result.all()
        ]  # will return [] if result list is empty

    async def fetchone(self, query: str, values: Optional[dict] = None):
        result = await self.conn.execute(self.rewrite_query(query), values or {})
        r = result.fetchone()
        return r._mapping if r is not None else None

    async def execute(self, query: str, values: Optional[dict] = None):
        return await self.conn.execute(self.rewrite_query(query), values or {})


class Database(Compat):
    _lock: Optional[asyncio.Lock] = None

    def __init__(self, db_name: str, db_location: str):
        self.name = db_name
        self.db_location = db_location
        if not os.path.exists(self.db_location):
            logger.info(f"Creating database directory: {self.db_location}")
            os.makedirs(self.db_location)
        self.path = os.path.join(self.db_location, f"{self.name}.sqlite3")
        database_uri = f"sqlite+aiosqlite:///{self.path}?check_same_thread=false"
        self.type = SQLITE

        kwargs = {}
        if not settings.db_connection_pool:
            kwargs["poolclass"] = NullPool

        self.engine = create_async_engine(database_uri, **kwargs)
        self.async_session = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    @asynccontextmanager
    async def get_connection(self, conn: Optional[Connection] = None):
        """Either yield the existing database connection (passthrough) or create a new one.

        Args:
            conn (Optional[Connection], optional): Connection object. Defaults to None.

        Yields:
            Connection: Connection object.
        """
        if conn is not None:
            # Yield the existing connection
            logger.trace("Reusing existing connection")
            yield conn
        else:
            logger.trace("get_connection: Creating new connection")
            async with self.connect() as new_conn:
                yield new_conn

    @asynccontextmanager
    async def connect(self):
        """Opens a session with one transaction. The transaction commits when
        the block exits and rolls back if it raises.

        Transactions of this process are serialized so that a read followed by
        a versioned write never interleaves with another writer. Other
        processes are handled by SQLite's busy timeout.
        """
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            session: AsyncSession = self.async_session()
            try:
                async with session.begin() as txn:
                    logger.trace("Connected to database. Starting transaction")
                    yield Connection(session, txn, self.type, self.name)
                    logger.trace("Committing transaction")
            finally:
                await session.close()

    async def fetchall(self, query: str, values: Optional[dict] = None) -> list:
        async with self.connect() as conn:
            return await conn.fetchall(query, values)

    async def fetchone(self, query: str, values: Optional[dict] = None):
        async with self.connect() as conn:
            return await conn.fetchone(query, values)

    async def execute(self, query: str, values: Optional[dict] = None):
        async with self.connect() as conn:
            return await conn.execute(query, values)

    async def close(self):
        await self.engine.dispose()
