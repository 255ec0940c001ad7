"""Engine, session factory and unit-of-work helpers."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from rewards_api.core.logging import log_context
from rewards_api.core.settings import settings

T = TypeVar("T")

SessionFactory = Callable[[], AsyncSession]

_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


class TransientStoreError(RuntimeError):
    """Raised when a unit of work keeps failing on infrastructure errors."""


class OperationTimeout(TimeoutError):
    """Raised when a unit of work exceeds its time budget and was rolled back."""


def build_engine(database_url: str, **kwargs) -> AsyncEngine:
    """Create an async engine; SQLite connections take write locks up front."""

    if database_url.startswith("sqlite"):
        connect_args = dict(kwargs.pop("connect_args", {}) or {})
        connect_args.setdefault("timeout", 30)
        engine = create_async_engine(database_url, future=True, connect_args=connect_args, **kwargs)
        _use_immediate_transactions(engine)
        return engine
    return create_async_engine(database_url, future=True, pool_pre_ping=True, **kwargs)


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    # SQLite has no row locks; BEGIN IMMEDIATE serializes writers so the
    # conditional updates below behave like SELECT ... FOR UPDATE.

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver glue
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver glue
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = build_engine(settings.database_url)
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def is_transient_error(exc: BaseException) -> bool:
    """Return True for database failures worth retrying as a whole transaction."""

    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        orig = getattr(exc, "orig", None)
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in _RETRYABLE_SQLSTATES:
            return True
        if isinstance(exc, OperationalError):
            return True
    return False


async def run_in_transaction(
    session_factory: SessionFactory,
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    label: str,
    timeout_seconds: float | None = None,
    max_attempts: int | None = None,
    retry_on: tuple[type[BaseException], ...] = (),
) -> T:
    """Run ``work`` inside one transaction, committing on success.

    Any exception rolls the transaction back. Transient database errors retry
    the whole unit a bounded number of times; business errors propagate
    unchanged unless listed in ``retry_on``. A unit exceeding
    ``timeout_seconds`` is cancelled and rolled back.
    """

    timeout = timeout_seconds if timeout_seconds is not None else settings.transaction_timeout_seconds
    attempts = max_attempts or settings.transaction_max_attempts

    async def _attempt() -> T:
        async with session_factory() as session:
            async with session.begin():
                return await work(session)

    attempt = 0
    with log_context(unit_of_work=label):
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(_attempt(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                logger.warning("Unit of work timed out", timeout_seconds=timeout)
                raise OperationTimeout(f"{label} exceeded {timeout}s and was rolled back") from exc
            except DBAPIError as exc:
                if not (is_transient_error(exc) or isinstance(exc, retry_on)):
                    raise
                if attempt >= attempts:
                    logger.error("Unit of work failed after retries", attempts=attempt, error=str(exc))
                    raise TransientStoreError(f"{label} failed after {attempt} attempts") from exc
                logger.warning("Retrying unit of work after transient error", attempt=attempt, error=str(exc))
                await asyncio.sleep(settings.transaction_retry_delay_seconds * attempt)
