"""PostgreSQL provisioning and connection pool management for calsync."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

from calsync.stores.postgres import create_schema

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class ConnectionParams:
    """Server address and credentials shared by every calsync database."""

    host: str = "localhost"
    port: int = 5432
    user: str = "calsync"
    password: str = "calsync"
    ssl: str | None = None

    def __post_init__(self) -> None:
        if self.ssl is not None and self.ssl not in SSL_MODES:
            raise ValueError(
                f"Unsupported sslmode {self.ssl!r}; expected one of {sorted(SSL_MODES)}"
            )

    @classmethod
    def from_env(cls) -> ConnectionParams:
        """DATABASE_URL when set, else POSTGRES_HOST/PORT/USER/PASSWORD/SSLMODE."""
        defaults = cls()
        url = os.environ.get("DATABASE_URL")
        if url:
            parsed = urlparse(url)
            sslmode = parse_qs(parsed.query).get("sslmode", [None])[0]
            return cls(
                host=parsed.hostname or defaults.host,
                port=parsed.port or defaults.port,
                user=parsed.username or defaults.user,
                password=parsed.password or defaults.password,
                ssl=sslmode.lower() if sslmode else None,
            )
        sslmode = os.environ.get("POSTGRES_SSLMODE", "").strip().lower()
        return cls(
            host=os.environ.get("POSTGRES_HOST", defaults.host),
            port=int(os.environ.get("POSTGRES_PORT", defaults.port)),
            user=os.environ.get("POSTGRES_USER", defaults.user),
            password=os.environ.get("POSTGRES_PASSWORD", defaults.password),
            ssl=sslmode or None,
        )

    def connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs


class Database:
    """Owns the asyncpg pool backing the PostgreSQL stores.

    ``provision()`` creates the database when missing, ``connect()`` opens the
    pool (with ``schema`` ahead of ``public`` on the search_path when set) and
    ``ensure_schema()`` bootstraps the calsync tables.
    """

    def __init__(
        self,
        db_name: str,
        schema: str | None = None,
        params: ConnectionParams | None = None,
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.schema = schema or None
        self.params = params or ConnectionParams()
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str, schema: str | None = None) -> Database:
        return cls(db_name, schema, ConnectionParams.from_env())

    @property
    def search_path(self) -> str | None:
        if self.schema is None or self.schema == "public":
            return None
        return f"{_quote_ident(self.schema)},public"

    async def provision(self) -> None:
        """Create the database when it doesn't exist."""
        conn = await asyncpg.connect(**self.params.connect_kwargs("postgres"))
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if exists:
                logger.info("Database already exists: %s", self.db_name)
                return
            # CREATE DATABASE takes no parameters.
            await conn.execute(f"CREATE DATABASE {_quote_ident(self.db_name)} TEMPLATE template0")
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Create and return a connection pool to the calsync database."""
        kwargs = self.params.connect_kwargs(self.db_name)
        if self.search_path is not None:
            kwargs["server_settings"] = {"search_path": self.search_path}
        self.pool = await asyncpg.create_pool(
            min_size=self.min_pool_size, max_size=self.max_pool_size, **kwargs
        )
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool

    async def ensure_schema(self) -> None:
        """Create the calsync schema objects in the connected database."""
        pool = self.require_pool()
        if self.schema is not None:
            await pool.execute(f"CREATE SCHEMA IF NOT EXISTS {_quote_ident(self.schema)}")
        await create_schema(pool)
        logger.info("calsync tables ready in %s (schema=%s)", self.db_name, self.schema or "public")

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)
